"""Sync coordinator orchestrating delivery cycles.

This module provides:
- SyncContext: Mutable sync state (busy flag, cooldown, status line)
- SyncCoordinator: Single guarded entry point for every sync trigger

The coordinator is the "brain" of the sync system:
1. Refuses to start while another cycle is running (the busy flag here,
   the lock file across processes)
2. Fetches the eligible batch, oldest first
3. Delivers each job, then acknowledges it before touching the next one
4. Stops the whole cycle on the first delivery or acknowledgement failure
5. Always clears the busy flag on the way out

Trigger Matrix:
    | Trigger    | Cycle running     | Action                                |
    |------------|-------------------|---------------------------------------|
    | TIMER      | yes               | Skip silently, empty result           |
    | FOCUS      | yes / in cooldown | Skip silently, empty result           |
    | DEEP_LINK  | yes               | Wait (bounded), then run own cycle    |
    | COMMAND    | yes               | Skip, empty result                    |
    | any        | no                | Run cycle                             |
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

from filelock import Timeout

from flowvault.client.api import GatewayError
from flowvault.client.protocol import build_destination_url, parse_destination_url
from flowvault.client.sync.engine import display_title
from flowvault.client.sync.types import DeliveryResult, SyncReport, SyncTrigger
from flowvault.client.telemetry import capture_exception
from flowvault.core.types import JobStatus, SyncPhase

if TYPE_CHECKING:
    from filelock import BaseFileLock

    from flowvault.client.api import Job, JobState
    from flowvault.client.sync.engine import DeliveryEngine
    from flowvault.core.config import BackendConfig

logger = logging.getLogger(__name__)

FOCUS_COOLDOWN_SECONDS = 3.0
DEEP_LINK_WAIT_ATTEMPTS = 30
DEEP_LINK_WAIT_INTERVAL = 0.5

NOT_CONFIGURED = "Backend not configured"
NOT_SIGNED_IN = "Not signed in"
ALREADY_SYNCING = "Sync already in progress"


class JobGateway(Protocol):
    """Backend operations the coordinator needs (the backend gateway)."""

    async def fetch_eligible_jobs(self, limit: int | None = None) -> list[Job]: ...

    async def acknowledge_delivered(
        self, job_id: str, expected_status: str, destination_url: str
    ) -> bool: ...

    async def fetch_job_state(self, job_id: str) -> JobState | None: ...


@dataclass
class SyncContext:
    """Sync state owned by one coordinator.

    Attributes:
        is_syncing: True while a cycle is in flight.
        cooldown_started_at: Clock reading that suppresses focus triggers.
        phase: Current phase for status reporting.
        last_delivered: Number of jobs delivered by the last finished cycle.
    """

    is_syncing: bool = False
    cooldown_started_at: float | None = None
    phase: SyncPhase = SyncPhase.IDLE
    last_delivered: int | None = None

    @property
    def status_text(self) -> str:
        """Short status line for display."""
        if self.phase == SyncPhase.SYNCING:
            return "Syncing..."
        if self.phase == SyncPhase.ERROR:
            return "Error"
        if self.last_delivered is None:
            return "Idle"
        suffix = "" if self.last_delivered == 1 else "s"
        return f"delivered {self.last_delivered} item{suffix}"


class SyncCoordinator:
    """Serialized entry point for delivery cycles.

    Usage:
        coordinator = SyncCoordinator(client, engine, config=client.config)
        coordinator.mark_startup()

        await coordinator.on_timer_tick()
        path = await coordinator.on_deep_link(job_id)
    """

    def __init__(
        self,
        gateway: JobGateway,
        engine: DeliveryEngine,
        config: BackendConfig | None = None,
        context: SyncContext | None = None,
        notifier: Callable[[str], None] | None = None,
        batch_size: int = 10,
        focus_cooldown: float = FOCUS_COOLDOWN_SECONDS,
        wait_attempts: int = DEEP_LINK_WAIT_ATTEMPTS,
        wait_interval: float = DEEP_LINK_WAIT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        lock: BaseFileLock | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            gateway: Backend gateway.
            engine: Delivery engine writing jobs to the vault.
            config: Backend configuration checked before each cycle.
            context: Sync state (a fresh one if omitted).
            notifier: Called with a message when an explicit trigger fails.
            batch_size: Maximum jobs fetched per cycle.
            focus_cooldown: Seconds after startup/deep link that ignore focus.
            wait_attempts: Polls a deep link waits for a running cycle.
            wait_interval: Seconds between those polls.
            clock: Monotonic clock.
            sleep: Async sleep used while waiting.
            lock: Lock file shared with other flowvault processes; a cycle
                only runs while holding it.
        """
        self._gateway = gateway
        self._engine = engine
        self._config = config
        self._context = context or SyncContext()
        self._notifier = notifier
        self._batch_size = batch_size
        self._focus_cooldown = focus_cooldown
        self._wait_attempts = wait_attempts
        self._wait_interval = wait_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = lock

    @property
    def context(self) -> SyncContext:
        """Get the sync state."""
        return self._context

    @property
    def is_syncing(self) -> bool:
        """Check if a cycle is in flight."""
        return self._context.is_syncing

    def mark_startup(self) -> None:
        """Start the focus cooldown (call once when the host starts)."""
        self._context.cooldown_started_at = self._clock()

    def in_cooldown(self) -> bool:
        """Check whether focus triggers are currently suppressed."""
        started = self._context.cooldown_started_at
        return started is not None and self._clock() - started < self._focus_cooldown

    def _acquire_lock(self) -> bool:
        """Take the cross-process lock without waiting."""
        if self._lock is None:
            return True
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            return False
        return True

    def _release_lock(self) -> None:
        if self._lock is not None:
            self._lock.release()

    def _busy(self) -> bool:
        """Check whether a cycle runs here or in another process."""
        if self._context.is_syncing:
            return True
        if not self._acquire_lock():
            return True
        self._release_lock()
        return False

    def _readiness_error(self) -> str | None:
        if self._config is None:
            return None
        if not self._config.is_configured:
            return NOT_CONFIGURED
        if not self._config.is_signed_in:
            return NOT_SIGNED_IN
        return None

    def _notify(self, message: str) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier(message)
        except Exception:
            logger.exception("Failed to show notice")

    async def _deliver_batch(self, report: SyncReport) -> None:
        """Fetch the batch and process it in order, stopping at the first failure."""
        jobs = await self._gateway.fetch_eligible_jobs(limit=self._batch_size)
        report.jobs_found = len(jobs)
        logger.info("Fetched %d eligible job(s)", len(jobs))

        for job in jobs:
            logger.debug("Processing job %s (route %s)", job.id, job.route_id)
            path = await self._engine.deliver_job(job)
            changed = await self._gateway.acknowledge_delivered(
                job.id,
                JobStatus.TRANSCRIBED.value,
                build_destination_url(path),
            )
            if changed:
                logger.info("Delivered job %s to %s", job.id, path)
            else:
                logger.warning(
                    "Job %s was no longer %s when acknowledged; kept %s",
                    job.id,
                    JobStatus.TRANSCRIBED.value,
                    path,
                )
            report.entries.append(
                DeliveryResult(
                    timestamp=datetime.now(timezone.utc),
                    path=path,
                    title=display_title(job, path),
                    job_id=job.id,
                )
            )

    async def run(self, trigger: SyncTrigger = SyncTrigger.COMMAND) -> SyncReport:
        """Run one guarded cycle.

        Never raises: failures are reported through the returned report.
        Jobs acknowledged before a failure stay in the report's entries.

        Args:
            trigger: Source of the request (controls notices).

        Returns:
            Detailed cycle report.
        """
        context = self._context
        if context.is_syncing:
            logger.debug("Sync already running, %s trigger skipped", trigger.name.lower())
            return SyncReport(success=False, error=ALREADY_SYNCING, skipped=True)
        if not self._acquire_lock():
            logger.info("Sync running in another process, %s trigger skipped", trigger.name.lower())
            return SyncReport(success=False, error=ALREADY_SYNCING, skipped=True)
        context.is_syncing = True

        report = SyncReport(success=False)
        try:
            error = self._readiness_error()
            if error:
                logger.info("Sync not started: %s", error)
                if not trigger.is_silent:
                    self._notify(error)
                report.error = error
                return report

            context.phase = SyncPhase.SYNCING
            await self._deliver_batch(report)
            report.success = True
            context.phase = SyncPhase.IDLE
            context.last_delivered = len(report.entries)
            return report
        except Exception as e:
            context.phase = SyncPhase.ERROR
            report.error = str(e) or type(e).__name__
            capture_exception(e, trigger=trigger.name.lower(), jobs_found=report.jobs_found)
            if trigger.is_silent:
                logger.exception("Background sync failed")
            else:
                logger.error("Sync failed: %s", report.error)
                self._notify(f"Sync error: {report.error}")
            return report
        finally:
            context.is_syncing = False
            self._release_lock()

    async def sync_now(self, silent: bool = False) -> list[str]:
        """Run a cycle and return the written paths.

        Args:
            silent: Suppress user-visible notices (background callers).
        """
        trigger = SyncTrigger.TIMER if silent else SyncTrigger.COMMAND
        report = await self.run(trigger)
        return report.paths

    async def sync_with_logs(self) -> SyncReport:
        """Run a cycle and return the detailed report."""
        return await self.run(SyncTrigger.COMMAND)

    async def on_timer_tick(self) -> SyncReport:
        """Handle the startup tick and every poll interval."""
        return await self.run(SyncTrigger.TIMER)

    async def on_window_focus(self) -> SyncReport:
        """Handle the host window/app gaining focus."""
        if self.in_cooldown():
            logger.debug("Focus sync skipped: within cooldown period")
            return SyncReport(success=False, skipped=True)
        return await self.run(SyncTrigger.FOCUS)

    async def wait_until_idle(self) -> bool:
        """Wait (bounded) for an in-flight cycle to finish.

        Returns:
            True if no cycle is running anymore.
        """
        attempts = 0
        while self._busy() and attempts < self._wait_attempts:
            await self._sleep(self._wait_interval)
            attempts += 1
        if attempts:
            logger.debug("Waited %d poll(s) for running sync", attempts)
        return not self._busy()

    async def on_deep_link(self, job_id: str | None = None) -> str | None:
        """Handle a "sync now" deep link.

        Runs a cycle (after waiting for any running one) and picks the file
        to surface: the entry for ``job_id``, else the last written entry.
        With no entries, a job that an earlier cycle already delivered is
        looked up through its recorded destination.

        Args:
            job_id: Optional job whose note should be surfaced.

        Returns:
            Vault-relative path to open, or None.
        """
        self._context.cooldown_started_at = self._clock()
        logger.debug("Deep-link sync starting (job=%s)", job_id)
        await self.wait_until_idle()

        report = await self.run(SyncTrigger.DEEP_LINK)
        if report.entries:
            entry = report.entry_for(job_id) if job_id else None
            path = entry.path if entry else report.entries[-1].path
            return path.lstrip("/")

        if not job_id:
            logger.debug("Deep-link sync: nothing to open")
            return None
        return await self._delivered_path(job_id)

    async def _delivered_path(self, job_id: str) -> str | None:
        """Destination of a job delivered by an earlier cycle."""
        try:
            state = await self._gateway.fetch_job_state(job_id)
        except GatewayError:
            logger.exception("Failed to check delivery state of job %s", job_id)
            return None
        if state is None or state.status != JobStatus.DELIVERED.value or not state.destination_url:
            logger.debug("Job %s not delivered yet", job_id)
            return None
        return parse_destination_url(state.destination_url)
