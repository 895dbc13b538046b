"""Default job registry of the ingestion pipeline.

    index_update            every ``index_poll_seconds`` during market hours
    price_update            every ``price_poll_minutes`` during market hours
    close_update            close hour + 1 min  (final summary and prices)
    price_archive           close hour + 5 min
    market_index_archive    close hour + 6 min
    index_history_update    close hour + 10 min
    company_details_update  02:00 daily (securities without details)
    company_details_full    manual
    debenture_cleanup       manual
    mutual_fund_cleanup     manual

All cron triggers use the exchange's fixed-offset timezone.
"""

import asyncio
from datetime import datetime
from typing import Callable, Sequence

from apscheduler.triggers.cron import CronTrigger

from config.settings import GlobalConfig, get_config
from nepse_ingest.archiver import archive_daily_prices, archive_market_index
from nepse_ingest.browser import SessionManager
from nepse_ingest.cache import LiveCache
from nepse_ingest.company_scraper import CompanyScraper
from nepse_ingest.extractor import Sleep
from nepse_ingest.history_scraper import extract_index_history
from nepse_ingest.logger import get_logger
from nepse_ingest.market_scraper import extract_market_summary
from nepse_ingest.market_time import market_timezone, now_local
from nepse_ingest.price_scraper import extract_today_prices
from nepse_ingest.scheduler import Scheduler
from nepse_ingest.store import Store
from nepse_ingest.synchronizer import CompanySink, IndexHistorySink, MarketStateSynchronizer
from nepse_ingest.validator import InstrumentClass, SecurityRef

log = get_logger(__name__)


class PipelineJobs:
    """Job bodies: extract, then hand the result to the matching sink.

    Each method returns a short status message recorded by the scheduler.
    Extraction failures, data-validity rejections and store errors
    propagate so the run is recorded as failed.
    """

    def __init__(
        self,
        session: SessionManager,
        store: Store,
        cache: LiveCache | None = None,
        config: GlobalConfig | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self.store = store
        self.cache = cache
        self.config = config or get_config()
        self._sleep = sleep
        self._clock = clock or (lambda: now_local(self.config))
        self.synchronizer = MarketStateSynchronizer(store, cache, self.config, clock=self._clock)
        self.company_sink = CompanySink(store)
        self.history_sink = IndexHistorySink(store)

    async def index_update(self) -> str:
        result = await extract_market_summary(self.session, self.config, sleep=self._sleep)
        report = await self.synchronizer.write(result.items)
        snapshot = result.items[0]
        return (
            f"Index {snapshot.index_value:.2f} ({snapshot.status.value}) via {result.strategy}; "
            f"appended={report.appended} stale={report.stale}"
        )

    async def price_update(self) -> str:
        status = await self.synchronizer.read_market_status()
        if status is None or not status.is_open:
            log.debug("Market not open, price update skipped", status=status)
            return f"Skipped: market {status.value if status else 'status unknown'}"
        return await self._sync_prices()

    async def close_update(self) -> str:
        summary = await extract_market_summary(self.session, self.config, sleep=self._sleep)
        await self.synchronizer.write(summary.items)
        prices = await self._sync_prices()
        return f"Close index {summary.items[0].index_value:.2f}; {prices}"

    async def _sync_prices(self) -> str:
        result = await extract_today_prices(self.session, self.config, sleep=self._sleep)
        report = await self.synchronizer.write(result.items)
        return (
            f"{report.accepted} prices via {result.strategy} "
            f"(rejected={report.rejected}, cache_degraded={report.cache_degraded})"
        )

    async def price_archive(self) -> str:
        business_date = self._clock().date()
        count = await archive_daily_prices(self.store, business_date)
        return f"Archived {count} prices for {business_date}"

    async def market_index_archive(self) -> str:
        business_date = self._clock().date()
        record = await archive_market_index(self.store, business_date, self.cache)
        return f"Archived index {record.closing_index:.2f} for {business_date}"

    async def index_history_update(self) -> str:
        result = await extract_index_history(self.session, self.config, sleep=self._sleep)
        report = await self.history_sink.write(result.items)
        return f"Stored {report.accepted} index history rows"

    async def company_details_update(self) -> str:
        securities = await self.store.securities_missing_details()
        return await self._scrape_companies(securities, "missing details")

    async def company_details_full(self) -> str:
        securities = await self.store.securities()
        return await self._scrape_companies(securities, "all securities")

    async def debenture_cleanup(self) -> str:
        securities = await self.store.securities_by_class(InstrumentClass.DEBENTURE)
        return await self._scrape_companies(securities, "debentures")

    async def mutual_fund_cleanup(self) -> str:
        securities = await self.store.securities_by_class(InstrumentClass.MUTUAL_FUND)
        return await self._scrape_companies(securities, "mutual funds")

    async def _scrape_companies(self, securities: Sequence[SecurityRef], scope: str) -> str:
        if not securities:
            return f"No securities to scrape ({scope})"
        scraper = CompanyScraper(self.session, self.config, sleep=self._sleep)
        result = await scraper.scrape_many(securities, sink=self.company_sink)
        return f"Company details ({scope}): {result.succeeded} stored, {len(result.failed)} failed"


def _poll_trigger(seconds: int, days: str, hours: str, tz) -> CronTrigger:
    if seconds < 60:
        return CronTrigger(day_of_week=days, hour=hours, second=f"*/{seconds}", timezone=tz)
    return CronTrigger(day_of_week=days, hour=hours, minute=f"*/{seconds // 60}", timezone=tz)


def register_default_jobs(
    scheduler: Scheduler,
    jobs: PipelineJobs,
    config: GlobalConfig | None = None,
) -> None:
    """Register every pipeline job with its cadence."""
    config = config or get_config()
    tz = market_timezone(config)
    days = config.trading_days
    market_hours = f"{config.market_open_hour}-{config.market_close_hour - 1}"
    close = config.market_close_hour

    def after_close(minute: int) -> CronTrigger:
        return CronTrigger(day_of_week=days, hour=close, minute=minute, timezone=tz)

    scheduler.register(
        "index_update",
        jobs.index_update,
        _poll_trigger(config.index_poll_seconds, days, market_hours, tz),
        description="Market index and status",
    )
    scheduler.register(
        "price_update",
        jobs.price_update,
        CronTrigger(
            day_of_week=days,
            hour=market_hours,
            minute=f"*/{config.price_poll_minutes}",
            timezone=tz,
        ),
        description="Live prices while the market is open",
    )
    scheduler.register("close_update", jobs.close_update, after_close(1), description="Closing data")
    scheduler.register(
        "price_archive",
        jobs.price_archive,
        after_close(5),
        uses_browser=False,
        description="Archive daily prices",
    )
    scheduler.register(
        "market_index_archive",
        jobs.market_index_archive,
        after_close(6),
        uses_browser=False,
        description="Archive closing index",
    )
    scheduler.register(
        "index_history_update",
        jobs.index_history_update,
        after_close(10),
        description="Index history",
    )
    scheduler.register(
        "company_details_update",
        jobs.company_details_update,
        CronTrigger(hour=2, minute=0, timezone=tz),
        description="Details of new securities",
        timeout_sec=config.batch_job_timeout_sec,
    )
    for name, func, description in (
        ("company_details_full", jobs.company_details_full, "Details of every security"),
        ("debenture_cleanup", jobs.debenture_cleanup, "Re-scrape debentures"),
        ("mutual_fund_cleanup", jobs.mutual_fund_cleanup, "Re-scrape mutual funds"),
    ):
        scheduler.register(
            name, func, description=description, timeout_sec=config.batch_job_timeout_sec
        )
    log.info("Default jobs registered", jobs=scheduler.job_names)
