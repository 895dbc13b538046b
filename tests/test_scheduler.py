"""Tests for the job scheduler.

Validates the per-job state machine and its guards:
- Single-flight per job (skip, never queue)
- One browser-using job at a time
- Failure accounting, including Scenario E (three timed-out attempts)
- Daily counter rollover and persistence
- Coordinated shutdown
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from playwright.async_api import Page

from nepse_ingest.exceptions import JobNotFoundError, StoreError
from nepse_ingest.extractor import ExtractionStrategy, StrategyChain
from nepse_ingest.scheduler import Scheduler
from nepse_ingest.validator import JobState, PriceQuote, ScheduledJobStatus


def make_scheduler(session, config, clock, store=None) -> Scheduler:
    timers = MagicMock()
    timers.running = False
    return Scheduler(session, config, store=store, scheduler=timers, clock=clock)


class HangingStrategy(ExtractionStrategy[PriceQuote]):
    """Strategy whose extraction never finishes within its timeout."""

    calls = 0

    @property
    def name(self) -> str:
        return "hanging"

    @property
    def source_url(self) -> str:
        return "https://test.example.com/today-price"

    @property
    def timeout_sec(self) -> float:
        return 0.05

    async def extract(self, session, page: Page) -> list[PriceQuote]:
        HangingStrategy.calls += 1
        await asyncio.sleep(10)
        return []


class TestJobLifecycle:
    """State transitions and counters."""

    @pytest.mark.asyncio
    async def test_success_updates_status(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        scheduler.register("index_update", AsyncMock(return_value="Index 2450.32"))

        status = await scheduler.run_job("index_update")

        assert status.status == JobState.SUCCESS
        assert status.success_count == 1
        assert status.today_success_count == 1
        assert status.last_run == market_clock.now
        assert status.last_success == market_clock.now
        assert status.message == "Index 2450.32"

    @pytest.mark.asyncio
    async def test_failure_keeps_last_success(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        outcomes = AsyncMock(side_effect=[None, RuntimeError("boom")])
        scheduler.register("price_update", outcomes)

        await scheduler.run_job("price_update")
        first_success = scheduler.status("price_update").last_success
        market_clock.set(11, 22)
        status = await scheduler.run_job("price_update")

        assert status.status == JobState.FAILED
        assert status.fail_count == 1
        assert status.success_count == 1
        assert status.last_success == first_success
        assert status.last_run == market_clock.now
        assert "boom" in status.message

    @pytest.mark.asyncio
    async def test_scenario_e_three_timeouts_fail_the_job(
        self, mock_session, mock_config, market_clock
    ) -> None:
        """Three timed-out attempts record a failure; other jobs keep running."""
        HangingStrategy.calls = 0
        chain = StrategyChain(
            "today_prices",
            [HangingStrategy(mock_config)],
            mock_session,
            mock_config,
            sleep=AsyncMock(),
        )
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        scheduler.register("price_update", chain.run)
        scheduler.register("index_update", AsyncMock(return_value=None))

        status = await scheduler.run_job("price_update")

        assert HangingStrategy.calls == 3
        assert status.status == JobState.FAILED
        assert status.fail_count == 1
        assert status.today_fail_count == 1
        assert "ExtractionFailed" in status.message
        assert mock_session.close_page.await_count == 3

        other = await scheduler.run_job("index_update")
        assert other.status == JobState.SUCCESS

    @pytest.mark.asyncio
    async def test_job_timeout_watchdog(self, mock_session, mock_config, market_clock) -> None:
        config = mock_config.model_copy(update={"job_timeout_sec": 0.05})
        scheduler = make_scheduler(mock_session, config, market_clock)

        async def stuck() -> None:
            await asyncio.sleep(5)

        scheduler.register("close_update", stuck)
        status = await scheduler.run_job("close_update")

        assert status.status == JobState.FAILED
        assert status.message.startswith("Timed out")
        assert not scheduler.is_running("close_update")

    @pytest.mark.asyncio
    async def test_per_job_timeout_overrides_watchdog(
        self, mock_session, mock_config, market_clock
    ) -> None:
        config = mock_config.model_copy(update={"job_timeout_sec": 0.05})
        scheduler = make_scheduler(mock_session, config, market_clock)

        async def long_batch() -> str:
            await asyncio.sleep(0.2)
            return "Batch done"

        scheduler.register("company_details_full", long_batch, timeout_sec=5)
        scheduler.register("close_update", long_batch)

        batch = await scheduler.run_job("company_details_full")
        regular = await scheduler.run_job("close_update")

        assert batch.status == JobState.SUCCESS
        assert batch.message == "Batch done"
        assert regular.status == JobState.FAILED
        assert regular.message == "Timed out after 0s"

    @pytest.mark.asyncio
    async def test_unknown_job(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        with pytest.raises(JobNotFoundError):
            await scheduler.run_job("missing")
        with pytest.raises(JobNotFoundError):
            await scheduler.trigger("missing")
        with pytest.raises(JobNotFoundError):
            scheduler.status("missing")

    @pytest.mark.asyncio
    async def test_daily_counters_roll_over(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        scheduler.register("index_update", AsyncMock(return_value=None))
        status = scheduler.status("index_update")
        status.stats_date = "2024-06-09"
        status.success_count = 40
        status.today_success_count = 40
        status.today_fail_count = 2

        await scheduler.run_job("index_update")

        assert status.stats_date == "2024-06-10"
        assert status.today_success_count == 1
        assert status.today_fail_count == 0
        assert status.success_count == 41

    @pytest.mark.asyncio
    async def test_same_day_counters_accumulate(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        scheduler.register("index_update", AsyncMock(return_value=None))

        for _ in range(3):
            await scheduler.run_job("index_update")

        assert scheduler.status("index_update").today_success_count == 3


class TestReentrancy:
    """Single-flight per job and the browser mutex."""

    @pytest.mark.asyncio
    async def test_running_job_is_skipped_not_queued(
        self, mock_session, mock_config, market_clock
    ) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        release = asyncio.Event()
        active = 0
        peak = 0
        runs = 0

        async def slow_poll() -> None:
            nonlocal active, peak, runs
            runs += 1
            active += 1
            peak = max(peak, active)
            await release.wait()
            active -= 1

        scheduler.register("index_update", slow_poll)
        first = asyncio.create_task(scheduler.run_job("index_update"))
        await asyncio.sleep(0.01)

        assert scheduler.is_running("index_update")
        assert scheduler.status("index_update").status == JobState.RUNNING
        assert await scheduler.run_job("index_update") is None
        assert await scheduler.trigger("index_update") is None

        release.set()
        status = await first

        assert peak == 1
        assert runs == 1
        assert status.success_count == 1

    @pytest.mark.asyncio
    async def test_browser_jobs_are_serialized(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        using_browser = 0
        peak = 0

        async def scrape() -> None:
            nonlocal using_browser, peak
            using_browser += 1
            peak = max(peak, using_browser)
            await asyncio.sleep(0.02)
            using_browser -= 1

        scheduler.register("index_update", scrape)
        scheduler.register("price_update", scrape)
        scheduler.register("company_details_update", scrape)

        results = await asyncio.gather(
            scheduler.run_job("index_update"),
            scheduler.run_job("price_update"),
            scheduler.run_job("company_details_update"),
        )

        assert peak == 1
        assert all(status.status == JobState.SUCCESS for status in results)

    @pytest.mark.asyncio
    async def test_non_browser_job_runs_while_browser_is_held(
        self, mock_session, mock_config, market_clock
    ) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        release = asyncio.Event()

        async def hold_browser() -> None:
            await release.wait()

        scheduler.register("company_details_full", hold_browser)
        scheduler.register("price_archive", AsyncMock(return_value="archived"), uses_browser=False)

        holder = asyncio.create_task(scheduler.run_job("company_details_full"))
        await asyncio.sleep(0.01)
        archived = await scheduler.run_job("price_archive")

        assert archived.status == JobState.SUCCESS
        assert scheduler.browser_lock.locked()
        release.set()
        await holder

    @pytest.mark.asyncio
    async def test_background_trigger(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        job = AsyncMock(return_value=None)
        scheduler.register("debenture_cleanup", job)

        assert await scheduler.trigger("debenture_cleanup", wait=False) is None
        await asyncio.sleep(0.01)

        job.assert_awaited_once()
        assert scheduler.status("debenture_cleanup").status == JobState.SUCCESS


class TestStartAndPersistence:
    """Timer registration and persisted statuses."""

    @pytest.mark.asyncio
    async def test_start_registers_timed_jobs_only(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        scheduler.register("index_update", AsyncMock(), IntervalTrigger(seconds=20))
        scheduler.register("company_details_full", AsyncMock())

        await scheduler.start()

        timers = scheduler._scheduler
        timers.add_job.assert_called_once()
        kwargs = timers.add_job.call_args.kwargs
        assert kwargs["id"] == "index_update"
        assert kwargs["args"] == ["index_update"]
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        assert kwargs["replace_existing"] is True
        timers.start.assert_called_once()

    @pytest.mark.asyncio
    async def test_statuses_are_persisted(self, mock_session, mock_config, market_clock, store) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock, store=store)
        scheduler.register("index_update", AsyncMock(return_value="ok"))

        await scheduler.run_job("index_update")

        saved = await store.job_statuses()
        assert saved[0].job_name == "index_update"
        assert saved[0].status == JobState.SUCCESS
        assert saved[0].message == "ok"

    @pytest.mark.asyncio
    async def test_interrupted_run_is_loaded_as_failed(
        self, mock_session, mock_config, market_clock, store
    ) -> None:
        await store.save_job_status(
            ScheduledJobStatus(
                job_name="close_update", status=JobState.RUNNING, success_count=7, stats_date="2024-06-10"
            )
        )
        scheduler = make_scheduler(mock_session, mock_config, market_clock, store=store)
        scheduler.register("close_update", AsyncMock())

        await scheduler.start()

        status = scheduler.status("close_update")
        assert status.status == JobState.FAILED
        assert status.success_count == 7

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_fail_job(
        self, mock_session, mock_config, market_clock
    ) -> None:
        broken_store = MagicMock()
        broken_store.save_job_status = AsyncMock(side_effect=StoreError("upsert scheduler_status", "down"))
        scheduler = make_scheduler(mock_session, mock_config, market_clock, store=broken_store)
        scheduler.register("index_update", AsyncMock(return_value=None))

        status = await scheduler.run_job("index_update")

        assert status.status == JobState.SUCCESS

    @pytest.mark.asyncio
    async def test_health_report(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        scheduler._scheduler.get_job.return_value = None
        scheduler.register("index_update", AsyncMock(), IntervalTrigger(seconds=20))
        scheduler.register("debenture_cleanup", AsyncMock())

        health = scheduler.health()

        assert health["running"] is False
        assert health["trading_window"] is True
        assert health["executing"] == []
        assert set(health["jobs"]) == {"index_update", "debenture_cleanup"}
        assert health["jobs"]["debenture_cleanup"]["cadence"] == "manual"
        assert health["jobs"]["index_update"]["status"] == "IDLE"

        market_clock.set(15, 30)
        assert scheduler.health()["trading_window"] is False


class TestShutdown:
    """Coordinated stop: timers, grace period, forced browser release."""

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_job(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        scheduler._scheduler.running = True

        async def short_job() -> None:
            await asyncio.sleep(0.05)

        scheduler.register("index_update", short_job)
        running = asyncio.create_task(scheduler.run_job("index_update"))
        await asyncio.sleep(0.01)

        clean = await scheduler.stop_all()

        assert clean is True
        scheduler._scheduler.shutdown.assert_called_once_with(wait=False)
        mock_session.release.assert_awaited_once()
        assert (await running).status == JobState.SUCCESS

    @pytest.mark.asyncio
    async def test_stop_releases_browser_after_grace(self, mock_session, mock_config, market_clock) -> None:
        config = mock_config.model_copy(update={"shutdown_grace_sec": 0.05})
        scheduler = make_scheduler(mock_session, config, market_clock)
        release = asyncio.Event()

        async def stuck() -> None:
            await release.wait()

        scheduler.register("company_details_full", stuck)
        running = asyncio.create_task(scheduler.run_job("company_details_full"))
        await asyncio.sleep(0.01)

        clean = await scheduler.stop_all()

        assert clean is False
        mock_session.release.assert_awaited_once()
        release.set()
        await running

    @pytest.mark.asyncio
    async def test_release_happens_even_if_timer_shutdown_fails(
        self, mock_session, mock_config, market_clock
    ) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        scheduler._scheduler.running = True
        scheduler._scheduler.shutdown.side_effect = RuntimeError("event loop closed")

        with pytest.raises(RuntimeError):
            await scheduler.stop_all()

        mock_session.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_new_runs_after_stop(self, mock_session, mock_config, market_clock) -> None:
        scheduler = make_scheduler(mock_session, mock_config, market_clock)
        job = AsyncMock()
        scheduler.register("index_update", job)

        await scheduler.stop_all()

        assert await scheduler.run_job("index_update") is None
        job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_with_real_apscheduler(self, mock_session, mock_config, market_clock) -> None:
        scheduler = Scheduler(mock_session, mock_config, clock=market_clock)
        scheduler.register("index_update", AsyncMock(), IntervalTrigger(hours=1))

        await scheduler.start()
        health = scheduler.health()
        assert health["running"] is True
        assert health["jobs"]["index_update"]["next_run"] is not None

        await scheduler.stop_all()
        assert scheduler.health()["running"] is False
        assert isinstance(scheduler._scheduler, AsyncIOScheduler)
