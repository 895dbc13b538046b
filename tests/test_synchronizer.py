"""Tests for the market-state synchronizer.

Covers the reconciliation contract between the live cache and the store:
- Rejection of non-positive values without touching either side
- Deduplication and the stale status-time guard of the intraday series
- Graceful degradation when the cache is down
- Fallback reads from the store
"""

import json
from datetime import date
from unittest.mock import AsyncMock

import pytest

from nepse_ingest.exceptions import DataValidityError, StoreError
from nepse_ingest.parsers import price_from_api
from nepse_ingest.store import Store
from nepse_ingest.synchronizer import (
    CompanySink,
    IndexHistorySink,
    MarketStateSynchronizer,
    Sink,
    SyncReport,
)
from nepse_ingest.validator import (
    CompanyProfile,
    CompanyRecord,
    Dividend,
    IndexHistoryRecord,
    MarketStatus,
    PriceQuote,
)

INDEX_SERIES = "test:intraday:market_index:2024-06-10"
LIVE_INDEX = "test:live:market_index"
LIVE_STATUS = "test:live:market_status"
LIVE_PRICES = "test:live:stock_prices"


@pytest.fixture
def synchronizer(store, live_cache, mock_config, market_clock) -> MarketStateSynchronizer:
    return MarketStateSynchronizer(store, live_cache, mock_config, clock=market_clock)


class TestSinkProtocol:
    """The synchronizer and the auxiliary sinks satisfy the Sink protocol."""

    def test_sinks_are_sinks(self, synchronizer, store) -> None:
        assert isinstance(synchronizer, Sink)
        assert isinstance(CompanySink(store), Sink)
        assert isinstance(IndexHistorySink(store), Sink)

    def test_reports_merge(self) -> None:
        merged = SyncReport(accepted=1, appended=1).merge(SyncReport(accepted=2, cache_degraded=True))
        assert merged.accepted == 3
        assert merged.appended == 1
        assert merged.cache_degraded is True


class TestMarketIndexScenarios:
    """End-to-end behavior of the market index path."""

    @pytest.mark.asyncio
    async def test_scenario_a_append_then_deduplicate(
        self, synchronizer, fake_redis, snapshot_factory
    ) -> None:
        """A fresh snapshot is appended; the identical payload a tick later is not."""
        first = await synchronizer.write([snapshot_factory(2450.32, "11:15 AM")])
        assert first.appended == 1
        assert await fake_redis.zcard(INDEX_SERIES) == 1

        second = await synchronizer.write([snapshot_factory(2450.32, "11:15 AM")])
        assert second.appended == 0
        assert second.deduplicated == 1
        assert await fake_redis.zcard(INDEX_SERIES) == 1

    @pytest.mark.asyncio
    async def test_scenario_b_zero_index_leaves_everything_unchanged(
        self, synchronizer, fake_redis, store, snapshot_factory
    ) -> None:
        await synchronizer.write([snapshot_factory(2450.32, "11:15 AM")])
        live_before = dict(fake_redis.hashes[LIVE_INDEX])
        status_before = dict(fake_redis.hashes[LIVE_STATUS])

        with pytest.raises(DataValidityError) as exc_info:
            await synchronizer.write([snapshot_factory(0, "11:16 AM")])

        assert exc_info.value.field == "index_value"
        assert fake_redis.hashes[LIVE_INDEX] == live_before
        assert fake_redis.hashes[LIVE_STATUS] == status_before
        assert await fake_redis.zcard(INDEX_SERIES) == 1
        stored = await store.latest_market_index()
        assert stored.index_value == pytest.approx(2450.32)

    @pytest.mark.asyncio
    async def test_scenario_c_future_status_time_is_stale(
        self, synchronizer, fake_redis, store, snapshot_factory
    ) -> None:
        """A 3:45 PM snapshot at 11:20 updates the live projection only."""
        report = await synchronizer.write([snapshot_factory(2451.00, "3:45 PM")])

        assert report.stale == 1
        assert report.appended == 0
        assert float(fake_redis.hashes[LIVE_INDEX]["index_value"]) == pytest.approx(2451.0)
        assert fake_redis.hashes[LIVE_INDEX]["status_time"] == "3:45 PM"
        assert await fake_redis.zcard(INDEX_SERIES) == 0
        stored = await store.latest_market_index()
        assert stored.index_value == pytest.approx(2451.0)

    @pytest.mark.asyncio
    async def test_scenario_d_cache_down_store_receives_write(
        self, synchronizer, fake_redis, store, snapshot_factory
    ) -> None:
        fake_redis.fail = True

        report = await synchronizer.write([snapshot_factory(2452.10, "11:18 AM")])

        assert report.cache_degraded is True
        assert report.accepted == 1
        stored = await store.latest_market_index()
        assert stored.index_value == pytest.approx(2452.10)

        snapshot = await synchronizer.read_market_index()
        assert snapshot is not None
        assert snapshot.index_value == pytest.approx(2452.10)
        assert await synchronizer.read_market_status() == MarketStatus.OPEN


class TestIntradaySeries:
    """Properties of the append-only intraday series."""

    @pytest.mark.asyncio
    async def test_repeated_identical_results_do_not_grow_series(
        self, synchronizer, fake_redis, market_clock, snapshot_factory
    ) -> None:
        for minute in range(20, 30):
            market_clock.set(11, minute)
            await synchronizer.write([snapshot_factory(2450.32, "11:15 AM")])

        assert await fake_redis.zcard(INDEX_SERIES) == 1

    @pytest.mark.asyncio
    async def test_blank_status_time_still_deduplicates(
        self, synchronizer, fake_redis, market_clock, snapshot_factory
    ) -> None:
        for minute in (20, 22, 24):
            market_clock.set(11, minute)
            report = await synchronizer.write([snapshot_factory(2450.32, "  ")])

        assert report.deduplicated == 1
        assert await fake_redis.zcard(INDEX_SERIES) == 1

    @pytest.mark.asyncio
    async def test_changed_values_are_appended_in_order(
        self, synchronizer, fake_redis, market_clock, snapshot_factory
    ) -> None:
        for minute, value in ((20, 2450.0), (21, 2451.5), (22, 2449.9)):
            market_clock.set(11, minute)
            await synchronizer.write([snapshot_factory(value, f"11:{minute} AM")])

        members = [json.loads(raw) for raw in await fake_redis.zrange(INDEX_SERIES, 0, -1)]
        assert [member["index_value"] for member in members] == [2450.0, 2451.5, 2449.9]
        assert all("ingested_at" in member for member in members)

    @pytest.mark.asyncio
    async def test_no_entry_has_future_status_time(
        self, synchronizer, fake_redis, snapshot_factory
    ) -> None:
        for value, status_time in ((2450.0, "11:19 AM"), (2451.0, "11:21 AM"), (2452.0, "2:00 PM")):
            await synchronizer.write([snapshot_factory(value, status_time)])

        members = [json.loads(raw) for raw in await fake_redis.zrange(INDEX_SERIES, 0, -1)]
        assert [member["status_time"] for member in members] == ["11:19 AM"]

    @pytest.mark.asyncio
    async def test_series_expires_at_end_of_local_day(
        self, synchronizer, fake_redis, snapshot_factory
    ) -> None:
        await synchronizer.write([snapshot_factory()])
        # 11:20:00 -> 23:59:59.999
        assert await fake_redis.ttl(INDEX_SERIES) == 12 * 3600 + 39 * 60 + 59

    @pytest.mark.asyncio
    async def test_live_status_hash_is_written(self, synchronizer, fake_redis, snapshot_factory) -> None:
        await synchronizer.write([snapshot_factory(status="Market Closed")])
        status = fake_redis.hashes[LIVE_STATUS]
        assert status["status"] == "CLOSED"
        assert status["is_open"] == "False"
        assert status["trading_date"] == "2024-06-10"


class TestPricePath:
    """Behavior of the price path."""

    @pytest.mark.asyncio
    async def test_zero_close_quotes_are_rejected(
        self, synchronizer, fake_redis, store, quote_factory
    ) -> None:
        report = await synchronizer.write(
            [quote_factory("NABIL", 500.0), quote_factory("ADBL", 0.0, previous_close=300)]
        )

        assert report.accepted == 1
        assert report.rejected == 1
        assert "ADBL" not in fake_redis.hashes[LIVE_PRICES]
        assert await store.price("ADBL") is None
        assert all(quote.close_price > 0 for quote in await store.prices())

    @pytest.mark.asyncio
    async def test_all_zero_batch_raises_and_writes_nothing(
        self, synchronizer, fake_redis, store, quote_factory
    ) -> None:
        with pytest.raises(DataValidityError):
            await synchronizer.write([quote_factory("NABIL", 0.0), quote_factory("ADBL", 0.0)])

        assert LIVE_PRICES not in fake_redis.hashes
        assert await store.prices() == []

    @pytest.mark.asyncio
    async def test_one_live_row_per_symbol(self, synchronizer, store, market_clock, quote_factory) -> None:
        for minute, close in ((20, 500.0), (22, 505.0), (24, 503.0)):
            market_clock.set(11, minute)
            await synchronizer.write([quote_factory("NABIL", close), quote_factory("ADBL", close / 2)])

        prices = await store.prices()
        assert sorted(quote.symbol for quote in prices) == ["ADBL", "NABIL"]
        nabil = await store.price("NABIL")
        assert nabil.close_price == pytest.approx(503.0)

    @pytest.mark.asyncio
    async def test_duplicate_symbols_collapse_to_last(self, synchronizer, store, quote_factory) -> None:
        report = await synchronizer.write([quote_factory("NABIL", 500.0), quote_factory("NABIL", 510.0)])

        assert report.accepted == 1
        assert (await store.price("NABIL")).close_price == pytest.approx(510.0)

    @pytest.mark.asyncio
    async def test_price_series_deduplicates(self, synchronizer, fake_redis, quote_factory) -> None:
        await synchronizer.write([quote_factory("NABIL", 500.0)])
        report = await synchronizer.write([quote_factory("NABIL", 500.0)])

        assert report.deduplicated == 1
        assert await fake_redis.zcard("test:intraday:2024-06-10:NABIL") == 1
        assert fake_redis.hashes["test:live:metadata"]["last_price_date"] == "2024-06-10"

    @pytest.mark.asyncio
    async def test_blank_api_update_time_still_deduplicates(
        self, synchronizer, fake_redis, market_clock
    ) -> None:
        record = {
            "symbol": "NABIL",
            "securityId": 131,
            "lastUpdatedPrice": "500.0",
            "previousDayClosePrice": "495.0",
            "totalTradedQuantity": "1,000",
            "lastUpdatedTime": "",
        }
        for minute in (20, 22, 24):
            market_clock.set(11, minute)
            quote = PriceQuote.model_validate(price_from_api(record, date(2024, 6, 10)))
            report = await synchronizer.write([quote])

        assert quote.last_updated_time is None
        assert report.deduplicated == 1
        assert await fake_redis.zcard("test:intraday:2024-06-10:NABIL") == 1

    @pytest.mark.asyncio
    async def test_read_price_prefers_cache_then_store(
        self, synchronizer, fake_redis, quote_factory
    ) -> None:
        await synchronizer.write([quote_factory("NABIL", 500.0)])

        cached = await synchronizer.read_price("nabil")
        assert cached.close_price == pytest.approx(500.0)

        fake_redis.hashes.clear()
        from_store = await synchronizer.read_price("NABIL")
        assert from_store.close_price == pytest.approx(500.0)

    @pytest.mark.asyncio
    async def test_store_error_propagates_after_cache_write(
        self, live_cache, fake_redis, mock_config, market_clock, quote_factory
    ) -> None:
        failing_store = AsyncMock(spec=Store)
        failing_store.upsert_prices.side_effect = StoreError("upsert stock_prices", "database is locked")
        synchronizer = MarketStateSynchronizer(failing_store, live_cache, mock_config, clock=market_clock)

        with pytest.raises(StoreError):
            await synchronizer.write([quote_factory("NABIL", 500.0)])

        assert "NABIL" in fake_redis.hashes[LIVE_PRICES]


class TestFallbackReads:
    """The store is the read path whenever the cache is empty or missing."""

    @pytest.mark.asyncio
    async def test_empty_cache_reads_store(self, store, live_cache, mock_config, snapshot_factory) -> None:
        await store.upsert_market_index(snapshot_factory(2440.0))
        synchronizer = MarketStateSynchronizer(store, live_cache, mock_config)

        snapshot = await synchronizer.read_market_index()

        assert snapshot.index_value == pytest.approx(2440.0)

    @pytest.mark.asyncio
    async def test_store_only_mode(self, store, mock_config, market_clock, snapshot_factory) -> None:
        synchronizer = MarketStateSynchronizer(store, None, mock_config, clock=market_clock)

        report = await synchronizer.write([snapshot_factory(2455.0)])

        assert report.appended == 0
        assert report.cache_degraded is False
        assert (await synchronizer.read_market_index()).index_value == pytest.approx(2455.0)

    @pytest.mark.asyncio
    async def test_cached_snapshot_round_trips(self, synchronizer, snapshot_factory) -> None:
        await synchronizer.write([snapshot_factory(2450.32, "11:15 AM", status="PRE_OPEN")])

        snapshot = await synchronizer.read_market_index()

        assert snapshot.status == MarketStatus.PRE_OPEN
        assert snapshot.status_time == "11:15 AM"
        assert snapshot.transactions == 45_000


class TestAuxiliarySinks:
    """Company and index-history sinks."""

    @pytest.mark.asyncio
    async def test_company_sink_writes_profile_and_dividends(self, store) -> None:
        record = CompanyRecord(
            profile=CompanyProfile(security_id=131, symbol="NABIL", company_name="Nabil Bank"),
            dividends=[Dividend(security_id=131, fiscal_year="2079/80", bonus_share="10%", cash_dividend="5")],
        )

        report = await CompanySink(store).write([record])

        assert report.accepted == 1
        assert (await store.company(131)).company_name == "Nabil Bank"
        dividends = await store.dividends(131)
        assert dividends[0].total_dividend == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_index_history_sink_drops_zero_close(self, store) -> None:
        records = [
            IndexHistoryRecord(business_date="2024-06-09", exchange_index_id=58, closing_index=2440.1),
            IndexHistoryRecord(business_date="2024-06-10", exchange_index_id=58, closing_index=0),
        ]

        report = await IndexHistorySink(store).write(records)

        assert report.accepted == 1
        assert report.rejected == 1
        assert len(await store.index_history(58)) == 1
