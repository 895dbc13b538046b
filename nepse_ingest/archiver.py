"""End-of-day archivers: fold the day's live data into permanent history."""

from datetime import date

from nepse_ingest.cache import MARKET_INDEX_KEY, LiveCache
from nepse_ingest.exceptions import CacheError, DataValidityError
from nepse_ingest.logger import get_logger
from nepse_ingest.parsers import NEPSE_INDEX_ID, NEPSE_INDEX_NAME
from nepse_ingest.store import Store
from nepse_ingest.validator import IndexHistoryRecord, MarketIndexSnapshot

log = get_logger(__name__)


async def archive_daily_prices(store: Store, business_date: date) -> int:
    """Copy the day's live prices into ``stock_price_history``.

    Only rows with a known security id and a positive close are archived.
    Re-running for the same date overwrites the same history rows.

    Returns:
        Number of rows archived.
    """
    quotes = await store.prices(business_date=business_date)
    archivable = [
        quote for quote in quotes if quote.security_id and quote.close_price > 0
    ]
    if not archivable:
        log.warning("No prices to archive", business_date=str(business_date))
        return 0

    count = await store.upsert_price_history(archivable)
    log.info(
        "Daily prices archived",
        business_date=str(business_date),
        archived=count,
        skipped=len(quotes) - count,
    )
    return count


async def _cached_snapshot(cache: LiveCache, business_date: date) -> MarketIndexSnapshot | None:
    try:
        fields = await cache.get_hash(MARKET_INDEX_KEY)
    except CacheError as exc:
        log.warning("Cache unavailable for index archive", error=exc.message)
        return None
    if not fields:
        return None

    snapshot = MarketIndexSnapshot.model_validate(
        {key: (value if value != "" else None) for key, value in fields.items()}
    )
    if snapshot.trading_date != business_date:
        log.warning(
            "Cached market index belongs to another day",
            cached=str(snapshot.trading_date),
            wanted=str(business_date),
        )
        return None
    return snapshot


async def archive_market_index(
    store: Store,
    business_date: date,
    cache: LiveCache | None = None,
) -> IndexHistoryRecord:
    """Archive the day's closing market index as exchange index 58.

    The store's row for the day is preferred; the live cache is the
    fallback.

    Raises:
        DataValidityError: If no positive closing value is available.
    """
    snapshot = await store.market_index_for(business_date)
    source = "store"
    if snapshot is None and cache is not None:
        snapshot = await _cached_snapshot(cache, business_date)
        source = "cache"

    if snapshot is None or snapshot.index_value <= 0:
        raise DataValidityError(
            entity="MarketIndexSnapshot",
            field="index_value",
            value=snapshot.index_value if snapshot else None,
            reason=f"no positive closing index for {business_date}",
        )

    record = IndexHistoryRecord(
        business_date=business_date,
        exchange_index_id=NEPSE_INDEX_ID,
        index_name=NEPSE_INDEX_NAME,
        closing_index=snapshot.index_value,
        turnover_value=snapshot.turnover,
        turnover_volume=snapshot.traded_shares,
        total_transaction=snapshot.transactions,
        abs_change=snapshot.change,
        percentage_change=snapshot.percentage_change,
    )
    await store.upsert_index_history([record])
    log.info(
        "Market index archived",
        business_date=str(business_date),
        closing_index=record.closing_index,
        source=source,
    )
    return record
