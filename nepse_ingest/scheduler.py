"""Job scheduler: named recurring jobs with status tracking.

Each registered job moves through ``IDLE -> RUNNING -> SUCCESS | FAILED``.
A tick that fires while the same job is still running is skipped, never
queued. Jobs that drive the browser additionally serialize on one process
wide lock, so at most one scraping job uses the shared session at a time.

Cadence timers come from APScheduler's ``AsyncIOScheduler``; the state
machine, counters and the browser lock live here so manual triggers and
scheduled ticks share the same guard.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger

from config.settings import GlobalConfig, get_config
from nepse_ingest.browser import SessionManager
from nepse_ingest.exceptions import JobNotFoundError, NepseIngestError, StoreError
from nepse_ingest.logger import get_logger
from nepse_ingest.market_time import is_trading_window, market_timezone, now_local, today_str
from nepse_ingest.store import Store
from nepse_ingest.validator import JobState, ScheduledJobStatus

log = get_logger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class JobSpec:
    """A registered job.

    ``trigger`` is None for jobs that only run when triggered manually.
    ``timeout_sec`` overrides the configured per-run watchdog.
    """

    name: str
    func: JobFunc
    trigger: BaseTrigger | None = None
    uses_browser: bool = True
    description: str = ""
    timeout_sec: float | None = None


class Scheduler:
    """Owns the job registry, the cadence timers and the browser lock.

    Args:
        session: Shared browser session, force-released on ``stop_all``.
        config: Settings; defaults to the global singleton.
        store: Durable store used to persist job statuses (optional).
        scheduler: APScheduler instance (injected by tests).
        clock: Returns the current exchange-local time.

    Example:
        scheduler = Scheduler(session, config, store)
        register_default_jobs(scheduler, jobs)
        await scheduler.start()
        ...
        await scheduler.stop_all()
    """

    def __init__(
        self,
        session: SessionManager,
        config: GlobalConfig | None = None,
        store: Store | None = None,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self.config = config or get_config()
        self.store = store
        self._scheduler = scheduler or AsyncIOScheduler(timezone=market_timezone(self.config))
        self._clock = clock or (lambda: now_local(self.config))
        self._jobs: dict[str, JobSpec] = {}
        self._statuses: dict[str, ScheduledJobStatus] = {}
        self._running: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._browser_lock = asyncio.Lock()
        self._stopping = False

    @property
    def job_names(self) -> list[str]:
        return sorted(self._jobs)

    @property
    def browser_lock(self) -> asyncio.Lock:
        return self._browser_lock

    def register(
        self,
        name: str,
        func: JobFunc,
        trigger: BaseTrigger | None = None,
        uses_browser: bool = True,
        description: str = "",
        timeout_sec: float | None = None,
    ) -> None:
        """Add a job to the registry; re-registering a name replaces it."""
        self._jobs[name] = JobSpec(name, func, trigger, uses_browser, description, timeout_sec)
        self._statuses.setdefault(
            name, ScheduledJobStatus(job_name=name, stats_date=today_str(self._clock()))
        )
        log.debug("Job registered", job=name, cadence=str(trigger) if trigger else "manual")

    def status(self, name: str) -> ScheduledJobStatus:
        if name not in self._statuses:
            raise JobNotFoundError(name)
        return self._statuses[name]

    def is_running(self, name: str) -> bool:
        return name in self._running

    async def start(self) -> None:
        """Load persisted statuses and start the cadence timers."""
        await self._load_statuses()
        self._stopping = False

        for spec in self._jobs.values():
            if spec.trigger is None:
                continue
            self._scheduler.add_job(
                self.run_job,
                trigger=spec.trigger,
                args=[spec.name],
                id=spec.name,
                name=spec.description or spec.name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
                misfire_grace_time=30,
            )

        if not self._scheduler.running:
            self._scheduler.start()
        log.info(
            "Scheduler started",
            scheduled=[spec.name for spec in self._jobs.values() if spec.trigger is not None],
            manual=[spec.name for spec in self._jobs.values() if spec.trigger is None],
        )

    async def run_job(self, name: str) -> ScheduledJobStatus | None:
        """Run one job now under the single-flight guard.

        Returns:
            The job's status after the run, or None when the run was
            skipped because the job is already running or the scheduler
            is stopping.

        Raises:
            JobNotFoundError: If no job is registered under ``name``.
        """
        spec = self._jobs.get(name)
        if spec is None:
            raise JobNotFoundError(name)
        if self._stopping:
            log.info("Scheduler stopping, run skipped", job=name)
            return None
        if name in self._running:
            log.warning("Job already running, tick skipped", job=name)
            return None

        self._running.add(name)
        status = self._statuses[name]
        job_log = log.bind(job=name)
        try:
            started = self._clock()
            self._roll_over(status, started)
            status.status = JobState.RUNNING
            status.last_run = started
            status.message = "Running"
            await self._persist(status)

            loop = asyncio.get_running_loop()
            began = loop.time()
            try:
                result = await self._invoke(spec)
            except TimeoutError:
                timeout = self.timeout_for(spec)
                self._record_failure(status, f"Timed out after {timeout:.0f}s")
                job_log.error("Job timed out", timeout_sec=timeout)
            except NepseIngestError as exc:
                self._record_failure(status, f"{type(exc).__name__}: {exc.message}")
                job_log.error("Job failed", error_type=type(exc).__name__, error=exc.message)
            except Exception as exc:
                self._record_failure(status, f"{type(exc).__name__}: {exc}")
                job_log.exception("Job crashed")
            else:
                elapsed = loop.time() - began
                message = result if isinstance(result, str) else f"Completed in {elapsed:.1f}s"
                self._record_success(status, message)
                job_log.info("Job succeeded", duration_sec=round(elapsed, 2))
        finally:
            self._running.discard(name)

        await self._persist(status)
        return status

    def timeout_for(self, spec: JobSpec) -> float:
        return spec.timeout_sec if spec.timeout_sec is not None else self.config.job_timeout_sec

    async def _invoke(self, spec: JobSpec) -> Any:
        timeout = self.timeout_for(spec)
        if not spec.uses_browser:
            return await asyncio.wait_for(spec.func(), timeout=timeout)
        async with self._browser_lock:
            return await asyncio.wait_for(spec.func(), timeout=timeout)

    def _roll_over(self, status: ScheduledJobStatus, now: datetime) -> None:
        today = today_str(now)
        if status.stats_date != today:
            if status.stats_date is not None:
                log.info("Daily job counters reset", job=status.job_name, previous=status.stats_date)
            status.today_success_count = 0
            status.today_fail_count = 0
            status.stats_date = today

    def _record_success(self, status: ScheduledJobStatus, message: str) -> None:
        finished = self._clock()
        self._roll_over(status, finished)
        status.status = JobState.SUCCESS
        status.last_success = finished
        status.success_count += 1
        status.today_success_count += 1
        status.message = message

    def _record_failure(self, status: ScheduledJobStatus, message: str) -> None:
        self._roll_over(status, self._clock())
        status.status = JobState.FAILED
        status.fail_count += 1
        status.today_fail_count += 1
        status.message = message[:1024]

    async def _persist(self, status: ScheduledJobStatus) -> None:
        if self.store is None:
            return
        try:
            await self.store.save_job_status(status)
        except StoreError as exc:
            log.warning("Job status not persisted", job=status.job_name, error=exc.message)

    async def _load_statuses(self) -> None:
        if self.store is None:
            return
        try:
            persisted = await self.store.job_statuses()
        except StoreError as exc:
            log.warning("Persisted job statuses unavailable", error=exc.message)
            return

        for saved in persisted:
            if saved.job_name not in self._jobs:
                continue
            # A run interrupted by a crash never reached a terminal state
            if saved.status == JobState.RUNNING:
                saved.status = JobState.FAILED
                saved.message = "Interrupted before completion"
            self._statuses[saved.job_name] = saved
        log.debug("Job statuses loaded", count=len(persisted))

    async def trigger(self, name: str, wait: bool = True) -> ScheduledJobStatus | None:
        """Run a job outside its cadence, under the same guard as scheduled ticks.

        With ``wait=False`` the run is started in the background and None
        is returned immediately.
        """
        if name not in self._jobs:
            raise JobNotFoundError(name)
        log.info("Manual trigger", job=name)
        if wait:
            return await self.run_job(name)

        task = asyncio.create_task(self.run_job(name), name=f"job:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return None

    async def stop_all(self) -> bool:
        """Stop timers, wait for running jobs, then release the browser.

        Returns:
            True when every running job finished within the grace period.
        """
        self._stopping = True
        grace = self.config.shutdown_grace_sec
        finished = True
        try:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
                # Newer APScheduler releases finish the shutdown on the next loop pass
                await asyncio.sleep(0)
            log.info("Cadence timers cancelled", running=sorted(self._running), grace_sec=grace)

            loop = asyncio.get_running_loop()
            deadline = loop.time() + grace
            while self._running and loop.time() < deadline:
                await asyncio.sleep(0.05)

            if self._running:
                finished = False
                log.warning("Jobs still running after grace period", jobs=sorted(self._running))
                for task in list(self._tasks):
                    task.cancel()
        finally:
            await self.session.release()
            log.info("Scheduler stopped", clean=finished)
        return finished

    def health(self) -> dict[str, Any]:
        """Snapshot for operational tooling."""
        jobs: dict[str, Any] = {}
        for name, spec in sorted(self._jobs.items()):
            status = self._statuses[name]
            scheduled = self._scheduler.get_job(name) if spec.trigger is not None else None
            next_run = getattr(scheduled, "next_run_time", None)
            jobs[name] = {
                **status.model_dump(mode="json", exclude={"job_name"}),
                "cadence": str(spec.trigger) if spec.trigger else "manual",
                "next_run": next_run.isoformat() if next_run else None,
            }
        return {
            "running": bool(self._scheduler.running),
            "trading_window": is_trading_window(self._clock(), self.config),
            "executing": sorted(self._running),
            "browser_connected": self.session.is_connected,
            "jobs": jobs,
        }
