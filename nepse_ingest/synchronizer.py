"""Market-state synchronizer: reconcile the fast cache with the durable store.

For every accepted extraction result the synchronizer:

    1. rejects values whose primary figure (index value, close price) is not positive;
    2. overwrites the live projection in the cache, stamped with ingestion time;
    3. appends to the day's intraday series unless the snapshot is unchanged
       from the last entry, or its status time lies ahead of the wall clock;
    4. upserts the same value into the durable store;
    5. keeps the series only until the end of the local day.

Cache failures are logged and the write continues against the store, which
is the system of record and the fallback read path. Store failures
propagate so the calling job is recorded as failed.
"""

import json
from datetime import datetime
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

from pydantic import BaseModel, ValidationError

from config.settings import GlobalConfig, get_config
from nepse_ingest.cache import (
    MARKET_INDEX_KEY,
    MARKET_STATUS_KEY,
    METADATA_KEY,
    STOCK_PRICES_KEY,
    LiveCache,
    market_series_key,
    price_series_key,
)
from nepse_ingest.exceptions import CacheError, DataValidityError
from nepse_ingest.logger import get_logger
from nepse_ingest.market_time import is_status_time_ahead, now_local, seconds_until_end_of_day
from nepse_ingest.parsers import parse_number
from nepse_ingest.store import Store
from nepse_ingest.validator import (
    CompanyRecord,
    IndexHistoryRecord,
    MarketIndexSnapshot,
    MarketStatus,
    PriceQuote,
)

log = get_logger(__name__)

Clock = Callable[[], datetime]


class SyncReport(BaseModel):
    """What one ``Sink.write`` call did."""

    accepted: int = 0
    rejected: int = 0
    appended: int = 0
    deduplicated: int = 0
    stale: int = 0
    cache_degraded: bool = False

    def merge(self, other: "SyncReport") -> "SyncReport":
        return SyncReport(
            accepted=self.accepted + other.accepted,
            rejected=self.rejected + other.rejected,
            appended=self.appended + other.appended,
            deduplicated=self.deduplicated + other.deduplicated,
            stale=self.stale + other.stale,
            cache_degraded=self.cache_degraded or other.cache_degraded,
        )


@runtime_checkable
class Sink(Protocol):
    """Destination for validated records; extractors know nothing else about storage."""

    async def write(self, records: Sequence[Any]) -> SyncReport: ...


def _index_fingerprint(member: Mapping[str, Any]) -> tuple[float, str | None, float, float]:
    return (
        parse_number(member.get("index_value")),
        member.get("status_time") or None,
        parse_number(member.get("traded_shares")),
        parse_number(member.get("turnover")),
    )


def _price_fingerprint(member: Mapping[str, Any]) -> tuple[float, float, str | None]:
    return (
        parse_number(member.get("close_price")),
        parse_number(member.get("volume")),
        member.get("last_updated_time") or None,
    )


class MarketStateSynchronizer:
    """Sink for market index snapshots and price quotes.

    Args:
        store: Durable store (system of record).
        cache: Fast cache, or None to run store-only.
        config: Settings; defaults to the global singleton.
        clock: Returns the current exchange-local time. Injected by tests.

    Example:
        synchronizer = MarketStateSynchronizer(store, cache)
        report = await synchronizer.write(result.items)
    """

    def __init__(
        self,
        store: Store,
        cache: LiveCache | None = None,
        config: GlobalConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.config = config or get_config()
        self._clock = clock or (lambda: now_local(self.config))

    async def write(self, records: Sequence[Any]) -> SyncReport:
        """Route a batch to the index or price path.

        Raises:
            DataValidityError: If a batch carries no positive primary value.
            StoreError: If the durable store rejects the write.
        """
        report = SyncReport()
        quotes = [record for record in records if isinstance(record, PriceQuote)]
        snapshots = [record for record in records if isinstance(record, MarketIndexSnapshot)]
        unknown = len(records) - len(quotes) - len(snapshots)
        if unknown:
            log.warning("Unsupported records ignored by synchronizer", count=unknown)
            report.rejected += unknown

        for snapshot in snapshots:
            report = report.merge(await self.sync_market_index(snapshot))
        if quotes:
            report = report.merge(await self.sync_prices(quotes))
        return report

    # -- market index -----------------------------------------------------

    async def sync_market_index(self, snapshot: MarketIndexSnapshot) -> SyncReport:
        """Apply one market index snapshot to the cache and the store."""
        if snapshot.index_value <= 0:
            log.warning(
                "Market index rejected",
                index_value=snapshot.index_value,
                trading_date=str(snapshot.trading_date),
            )
            raise DataValidityError(
                entity="MarketIndexSnapshot",
                field="index_value",
                value=snapshot.index_value,
                reason="index value must be greater than zero",
            )

        now = self._clock()
        report = SyncReport(accepted=1)
        if self.cache is not None:
            try:
                await self._cache_market_index(snapshot, now, report)
            except CacheError as exc:
                report.cache_degraded = True
                log.warning("Cache write failed, continuing with store", error=exc.message)

        await self.store.upsert_market_index(snapshot)
        log.info(
            "Market index synchronized",
            index_value=snapshot.index_value,
            status=snapshot.status.value,
            status_time=snapshot.status_time,
            appended=report.appended,
            cache_degraded=report.cache_degraded,
        )
        return report

    async def _cache_market_index(
        self, snapshot: MarketIndexSnapshot, now: datetime, report: SyncReport
    ) -> None:
        cache = self.cache
        stamp = now.isoformat()
        fields = snapshot.model_dump(mode="json")

        await cache.put_hash(MARKET_INDEX_KEY, {**fields, "is_open": snapshot.is_open, "last_updated": stamp})
        await cache.put_hash(
            MARKET_STATUS_KEY,
            {
                "status": snapshot.status.value,
                "is_open": snapshot.is_open,
                "trading_date": fields["trading_date"],
                "status_time": snapshot.status_time,
                "last_updated": stamp,
            },
        )

        series = market_series_key(fields["trading_date"])
        last = await cache.last_series_member(series)
        if last is not None and _index_fingerprint(last) == snapshot.fingerprint():
            report.deduplicated += 1
            log.debug("Unchanged market snapshot skipped", status_time=snapshot.status_time)
            return

        if is_status_time_ahead(snapshot.status_time, now):
            report.stale += 1
            log.warning(
                "Stale market snapshot skipped",
                status_time=snapshot.status_time,
                wall_clock=now.strftime("%H:%M"),
            )
            return

        await cache.append_series(series, {**fields, "ingested_at": stamp}, int(now.timestamp() * 1000))
        report.appended += 1
        await self._expire_end_of_day(series, now)

    # -- prices -----------------------------------------------------------

    async def sync_prices(self, quotes: Sequence[PriceQuote]) -> SyncReport:
        """Apply a batch of quotes; zero closes are dropped, duplicates collapse to the last."""
        if not quotes:
            return SyncReport()

        accepted: dict[str, PriceQuote] = {}
        rejected = 0
        for quote in quotes:
            if quote.close_price <= 0:
                rejected += 1
                log.debug("Quote with non-positive close rejected", symbol=quote.symbol)
                continue
            accepted[quote.symbol] = quote

        if not accepted:
            raise DataValidityError(
                entity="PriceQuote",
                field="close_price",
                value=0,
                reason=f"all {len(quotes)} quotes have a non-positive close",
            )
        if rejected:
            log.warning("Quotes with non-positive close rejected", rejected=rejected)

        now = self._clock()
        report = SyncReport(accepted=len(accepted), rejected=rejected)
        if self.cache is not None:
            try:
                await self._cache_prices(list(accepted.values()), now, report)
            except CacheError as exc:
                report.cache_degraded = True
                log.warning("Cache write failed, continuing with store", error=exc.message)

        await self.store.upsert_prices(accepted.values())
        log.info(
            "Prices synchronized",
            accepted=report.accepted,
            rejected=report.rejected,
            appended=report.appended,
            cache_degraded=report.cache_degraded,
        )
        return report

    async def _cache_prices(self, quotes: list[PriceQuote], now: datetime, report: SyncReport) -> None:
        cache = self.cache
        stamp = now.isoformat()
        score = int(now.timestamp() * 1000)
        payloads = {quote.symbol: quote.model_dump(mode="json") for quote in quotes}

        await cache.put_hash(
            STOCK_PRICES_KEY,
            {symbol: json.dumps(payload, sort_keys=True) for symbol, payload in payloads.items()},
        )
        await cache.put_hash(
            METADATA_KEY,
            {"last_price_update": stamp, "last_price_date": str(quotes[0].business_date)},
        )

        for quote in quotes:
            payload = payloads[quote.symbol]
            series = price_series_key(payload["business_date"], quote.symbol)
            last = await cache.last_series_member(series)
            if last is not None and _price_fingerprint(last) == quote.fingerprint():
                report.deduplicated += 1
                continue
            if is_status_time_ahead(quote.last_updated_time, now):
                report.stale += 1
                continue
            await cache.append_series(series, {**payload, "ingested_at": stamp}, score)
            report.appended += 1
            await self._expire_end_of_day(series, now)

    async def _expire_end_of_day(self, series: str, now: datetime) -> None:
        seconds = seconds_until_end_of_day(now)
        if seconds > 0:
            await self.cache.expire(series, seconds)

    # -- reads ------------------------------------------------------------

    async def read_market_index(self) -> MarketIndexSnapshot | None:
        """Live market index: cache first, durable store when empty or unavailable."""
        if self.cache is not None:
            try:
                fields = await self.cache.get_hash(MARKET_INDEX_KEY)
            except CacheError as exc:
                log.warning("Cache read failed, falling back to store", error=exc.message)
            else:
                if fields:
                    cleaned = {key: (value if value != "" else None) for key, value in fields.items()}
                    try:
                        return MarketIndexSnapshot.model_validate(cleaned)
                    except ValidationError as exc:
                        log.warning("Unreadable cached market index", errors=exc.error_count())
        return await self.store.latest_market_index()

    async def read_market_status(self) -> MarketStatus | None:
        if self.cache is not None:
            try:
                status = await self.cache.get_hash_field(MARKET_STATUS_KEY, "status")
            except CacheError as exc:
                log.warning("Cache read failed, falling back to store", error=exc.message)
            else:
                if status:
                    return MarketStatus(status)
        return await self.store.market_status()

    async def read_price(self, symbol: str) -> PriceQuote | None:
        symbol = symbol.upper()
        if self.cache is not None:
            try:
                raw = await self.cache.get_hash_field(STOCK_PRICES_KEY, symbol)
            except CacheError as exc:
                log.warning("Cache read failed, falling back to store", error=exc.message)
            else:
                if raw:
                    return PriceQuote.model_validate_json(raw)
        return await self.store.price(symbol)


class CompanySink:
    """Writes company records (profile, dividends, financials) to the store."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def write(self, records: Sequence[CompanyRecord]) -> SyncReport:
        report = SyncReport()
        for record in records:
            await self.store.upsert_company(record.profile)
            await self.store.upsert_dividends(record.dividends)
            await self.store.upsert_financials(record.financials)
            report.accepted += 1
            log.debug(
                "Company record stored",
                symbol=record.profile.symbol,
                dividends=len(record.dividends),
                financials=len(record.financials),
            )
        return report


class IndexHistorySink:
    """Writes index history rows; rows without a positive close are dropped."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def write(self, records: Sequence[IndexHistoryRecord]) -> SyncReport:
        valid = [record for record in records if record.closing_index > 0]
        await self.store.upsert_index_history(valid)
        report = SyncReport(accepted=len(valid), rejected=len(records) - len(valid))
        log.info("Index history stored", accepted=report.accepted, rejected=report.rejected)
        return report
