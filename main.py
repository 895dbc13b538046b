"""NEPSE-Ingest Entry Point.

This module is the bootstrap and command-line layer. It contains NO
business logic - all functional code resides in /nepse_ingest.

Responsibilities:
    1. Parse the command line
    2. Load and validate configuration
    3. Initialize logging infrastructure (fail-fast on error)
    4. Dispatch one command (one-off fetches, the scheduler, archives)
    5. Map top-level exceptions to exit codes

Usage:
    python main.py fetch-prices --output output/prices.xlsx
    python main.py --dry-run fetch-index
    python main.py start
    python main.py run-job index_update

Exit codes:
    0 success, 1 application error, 2 layout shift or terminal extraction
    failure, 130 interrupted.
"""

import argparse
import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import AsyncGenerator, NoReturn, Sequence

from loguru import logger
from pydantic import BaseModel

from config.settings import GlobalConfig, get_config
from nepse_ingest.exceptions import (
    ConfigValidationError,
    ExtractionFailed,
    LayoutShiftError,
    LoggingInitializationError,
    NepseIngestError,
)
from nepse_ingest.logger import configure_logging
from nepse_ingest.market_time import trading_weekdays

INSTRUMENT_CLEANUPS = {
    "debenture": "debenture_cleanup",
    "mutual_fund": "mutual_fund_cleanup",
}


def build_parser() -> argparse.ArgumentParser:
    """Command-line interface definition."""
    parser = argparse.ArgumentParser(
        prog="nepse-ingest",
        description="Scrape NEPSE market data into the live cache and the durable store.",
    )
    parser.add_argument(
        "--headless",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Run the browser headless (default from HEADLESS)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Extract only; write nothing to the cache or the store",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Export fetched records to a .csv, .json or .xlsx file",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("fetch-prices", help="Fetch today's prices once")
    commands.add_parser("fetch-index", help="Fetch the market index and status once")
    commands.add_parser("fetch-history", help="Fetch the index history once")

    company = commands.add_parser("fetch-company", help="Fetch company details")
    company.add_argument("--security-id", type=int, help="Security id of a single company")
    company.add_argument("--symbol", help="Symbol of the single company, looked up when no id is given")
    company.add_argument(
        "--full",
        action="store_true",
        help="Every known security instead of only those lacking details",
    )

    commands.add_parser("start", help="Run the scheduler until interrupted")

    run_job = commands.add_parser("run-job", help="Run one scheduler job now")
    run_job.add_argument("name", help="Job name, e.g. index_update")

    archive = commands.add_parser("archive", help="Archive prices and the closing index")
    archive.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Business date (YYYY-MM-DD); defaults to today in exchange time",
    )

    cleanup = commands.add_parser("cleanup", help="Re-scrape one instrument class")
    cleanup.add_argument("--instrument", choices=sorted(INSTRUMENT_CLEANUPS), required=True)
    return parser


def _validate_startup_requirements(config: GlobalConfig) -> None:
    """Pre-flight checks; exits on an unusable environment.

    Raises:
        ConfigValidationError: If the market calendar is unusable.
        SystemExit: If the output directory cannot be created.
    """
    if not trading_weekdays(config):
        raise ConfigValidationError("trading_days", config.trading_days, "no recognizable weekday")
    if config.market_close_hour <= config.market_open_hour:
        raise ConfigValidationError(
            "market_close_hour",
            config.market_close_hour,
            f"must be after market_open_hour ({config.market_open_hour})",
        )

    try:
        config.output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.critical(
            "Failed to create output directory",
            output_dir=str(config.output_dir),
            error=str(exc),
        )
        sys.exit(1)

    logger.debug(
        "Startup validation complete",
        output_dir=str(config.output_dir),
        base_url=config.base_url,
        cache_enabled=config.cache_enabled,
    )


@asynccontextmanager
async def _open_stores(config: GlobalConfig) -> AsyncGenerator[tuple, None]:
    """Durable store (schema ensured) and the optional live cache."""
    from nepse_ingest.cache import LiveCache
    from nepse_ingest.store import Store

    store = Store.from_config(config)
    cache = LiveCache.from_config(config)
    try:
        await store.create_schema()
        yield store, cache
    finally:
        if cache is not None:
            await cache.close()
        await store.dispose()


def _export(records: Sequence[BaseModel], output: Path | None) -> None:
    if output is None:
        return
    from nepse_ingest.exporter import RecordExporter

    RecordExporter().export(records, output)


async def _fetch(args: argparse.Namespace, config: GlobalConfig, session) -> int:
    from nepse_ingest.history_scraper import extract_index_history
    from nepse_ingest.market_scraper import extract_market_summary
    from nepse_ingest.price_scraper import extract_today_prices
    from nepse_ingest.synchronizer import IndexHistorySink, MarketStateSynchronizer

    extractors = {
        "fetch-prices": extract_today_prices,
        "fetch-index": extract_market_summary,
        "fetch-history": extract_index_history,
    }
    result = await extractors[args.command](session, config)
    logger.info(
        "Fetch complete",
        product=result.product,
        items=result.count,
        strategy=result.strategy,
        attempts=result.attempts,
    )

    if args.dry_run:
        logger.info("Dry run, nothing written", product=result.product)
    else:
        async with _open_stores(config) as (store, cache):
            if args.command == "fetch-history":
                report = await IndexHistorySink(store).write(result.items)
            else:
                report = await MarketStateSynchronizer(store, cache, config).write(result.items)
        logger.info("Records written", **report.model_dump())

    _export(result.items, args.output)
    return 0


async def _fetch_company(args: argparse.Namespace, config: GlobalConfig, session) -> int:
    from nepse_ingest.company_scraper import CompanyScraper
    from nepse_ingest.synchronizer import CompanySink
    from nepse_ingest.validator import SecurityRef

    scraper = CompanyScraper(session, config)

    if args.security_id is None and args.symbol:
        async with _open_stores(config) as (store, _cache):
            quote = await store.price(args.symbol)
        if quote is None or not quote.security_id:
            logger.error("Unknown symbol, pass --security-id", symbol=args.symbol.upper())
            return 1
        args.security_id = quote.security_id

    if args.security_id is not None:
        security = SecurityRef(args.security_id, (args.symbol or str(args.security_id)).upper())
        record = await scraper.scrape_one(security)
        if not args.dry_run:
            async with _open_stores(config) as (store, _cache):
                await CompanySink(store).write([record])
        _export([record], args.output)
        return 0

    async with _open_stores(config) as (store, _cache):
        securities = await (store.securities() if args.full else store.securities_missing_details())
        sink = None if args.dry_run else CompanySink(store)
        result = await scraper.scrape_many(securities, sink=sink)

    _export(result.records, args.output)
    return 0 if not result.failed else 1


async def _run_scheduled(args: argparse.Namespace, config: GlobalConfig, session) -> int:
    from nepse_ingest.jobs import PipelineJobs, register_default_jobs
    from nepse_ingest.scheduler import Scheduler
    from nepse_ingest.validator import JobState

    async with _open_stores(config) as (store, cache):
        jobs = PipelineJobs(session, store, cache, config)
        scheduler = Scheduler(session, config, store)
        register_default_jobs(scheduler, jobs, config)

        if args.command == "start":
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(signum, stop.set)

            await scheduler.start()
            try:
                await stop.wait()
                logger.info("Stop signal received")
            finally:
                await scheduler.stop_all()
            return 0

        name = INSTRUMENT_CLEANUPS[args.instrument] if args.command == "cleanup" else args.name
        status = await scheduler.trigger(name)
        logger.info("Job finished", job=name, status=status.status.value, message=status.message)
        return 0 if status.status == JobState.SUCCESS else 1


async def _archive(args: argparse.Namespace, config: GlobalConfig) -> int:
    from nepse_ingest.archiver import archive_daily_prices, archive_market_index
    from nepse_ingest.market_time import now_local

    business_date = args.date or now_local(config).date()
    async with _open_stores(config) as (store, cache):
        prices = await archive_daily_prices(store, business_date)
        record = await archive_market_index(store, business_date, cache)
    logger.info(
        "Archive complete",
        business_date=str(business_date),
        prices=prices,
        closing_index=record.closing_index,
    )
    return 0


async def _run_command(args: argparse.Namespace, config: GlobalConfig) -> int:
    """Execute one CLI command.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    from nepse_ingest.browser import SessionManager

    logger.info(
        "Command started",
        command=args.command,
        app_name=config.app_name,
        environment=config.environment,
        headless=config.headless,
        dry_run=args.dry_run,
    )

    if args.command == "archive":
        return await _archive(args, config)

    async with SessionManager.create(config) as session:
        if args.command in ("fetch-prices", "fetch-index", "fetch-history"):
            return await _fetch(args, config, session)
        if args.command == "fetch-company":
            return await _fetch_company(args, config, session)
        if args.dry_run:
            logger.warning("--dry-run has no effect on scheduler commands", command=args.command)
        return await _run_scheduled(args, config, session)


def _handle_fatal_error(exc: Exception) -> NoReturn:
    """Log a fatal error and exit with the matching code."""
    if isinstance(exc, LayoutShiftError):
        logger.critical(
            "CRITICAL: Layout shift detected - halting to prevent data pollution",
            failure_ratio=f"{exc.failure_ratio:.1%}",
            threshold=f"{exc.threshold:.1%}",
            batch_size=exc.batch_size,
        )
        sys.exit(2)

    if isinstance(exc, ExtractionFailed):
        logger.critical(
            "Extraction failed after every attempt",
            product=exc.product,
            attempts=exc.attempts,
            context=exc.context,
        )
        sys.exit(2)

    if isinstance(exc, NepseIngestError):
        logger.critical(
            "Fatal application error",
            error_type=type(exc).__name__,
            message=exc.message,
            context=exc.context,
        )
        sys.exit(1)

    # Unexpected error - log full traceback
    logger.exception("Unexpected fatal error", error=str(exc))
    sys.exit(1)


def main(argv: Sequence[str] | None = None) -> int:
    """Application entry point.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    args = build_parser().parse_args(argv)

    # Step 1: Load configuration (validates via Pydantic)
    try:
        config = get_config()
    except Exception as exc:
        # Cannot log yet - print to stderr
        print(f"FATAL: Configuration loading failed: {exc}", file=sys.stderr)
        return 1
    if args.headless is not None:
        config = config.model_copy(update={"headless": args.headless})

    # Step 2: Initialize logging (fail-fast)
    try:
        configure_logging(config)
    except LoggingInitializationError as exc:
        print(f"FATAL: {exc}", file=sys.stderr)
        return 1

    # Step 3: Validate startup requirements
    try:
        _validate_startup_requirements(config)
    except ConfigValidationError as exc:
        logger.critical("Invalid configuration", error=exc.message, **exc.context)
        return 1

    # Step 4: Execute the command
    try:
        return asyncio.run(_run_command(args, config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C)")
        return 130  # Standard Unix SIGINT exit code
    except Exception as exc:
        _handle_fatal_error(exc)


if __name__ == "__main__":
    sys.exit(main())
