"""Tests for the sync coordinator."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest
from filelock import FileLock

from fakes import FakeGateway, make_job, make_route
from flowvault.client.api import GatewayError
from flowvault.client.sync.attachments import AttachmentFetcher
from flowvault.client.sync.coordinator import (
    ALREADY_SYNCING,
    NOT_CONFIGURED,
    NOT_SIGNED_IN,
    SyncContext,
    SyncCoordinator,
)
from flowvault.client.sync.engine import DeliveryEngine
from flowvault.client.sync.routes import RouteCache
from flowvault.client.vault import Vault
from flowvault.core.config import BackendConfig
from flowvault.core.types import SyncPhase

T0 = datetime(2025, 3, 4, 9, 0, tzinfo=timezone.utc)
STORAGE_URL = "https://abc.example.co/storage/v1/object/public/uploads/memo.m4a"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def job_at(job_id: str, minutes: int, **kwargs: object) -> object:
    """Job created ``minutes`` after T0."""
    return make_job(job_id, created_at=T0 + timedelta(minutes=minutes), **kwargs)


def make_coordinator(
    gateway: FakeGateway,
    vault: Vault,
    **kwargs: object,
) -> SyncCoordinator:
    """Coordinator over the fake gateway and temporary vault."""
    engine = DeliveryEngine(RouteCache(gateway), vault, AttachmentFetcher(gateway, vault))
    return SyncCoordinator(gateway, engine, **kwargs)  # type: ignore[arg-type]


class TestSyncContext:
    """Tests for the status line."""

    def test_status_text(self) -> None:
        """Should describe the current phase."""
        context = SyncContext()
        assert context.status_text == "Idle"
        context.phase = SyncPhase.SYNCING
        assert context.status_text == "Syncing..."
        context.phase = SyncPhase.IDLE
        context.last_delivered = 1
        assert context.status_text == "delivered 1 item"
        context.last_delivered = 3
        assert context.status_text == "delivered 3 items"
        context.phase = SyncPhase.ERROR
        assert context.status_text == "Error"


class TestCycle:
    """Tests for one delivery cycle."""

    @pytest.mark.asyncio
    async def test_delivers_oldest_first_and_acknowledges(self, vault: Vault, vault_dir: Path) -> None:
        """Should deliver in creation order and ack each job after writing it."""
        gateway = FakeGateway(
            jobs=[job_at("late", 5, final_title="Late"), job_at("early", 1, final_title="Early")],
            routes=[make_route()],
        )
        coordinator = make_coordinator(gateway, vault)

        report = await coordinator.sync_with_logs()

        assert report.success is True
        assert report.jobs_found == 2
        assert [e.job_id for e in report.entries] == ["early", "late"]
        assert [e.title for e in report.entries] == ["Early", "Late"]
        assert report.paths == ["Inbox/Early.md", "Inbox/Late.md"]
        assert [ack[0] for ack in gateway.acks] == ["early", "late"]
        assert gateway.acks[0] == ("early", "transcribed", "obsidian://open?file=Inbox%2FEarly.md")
        assert gateway.jobs["early"].status == "delivered"
        assert coordinator.context.status_text == "delivered 2 items"

    @pytest.mark.asyncio
    async def test_sync_now_returns_paths(self, vault: Vault) -> None:
        """Should expose the same cycle as a bare path list."""
        gateway = FakeGateway(jobs=[make_job(final_title="Hello")], routes=[make_route()])
        coordinator = make_coordinator(gateway, vault)

        assert await coordinator.sync_now() == ["Inbox/Hello.md"]
        assert await coordinator.sync_now() == []

    @pytest.mark.asyncio
    async def test_batch_size(self, vault: Vault) -> None:
        """Should fetch at most one batch per cycle."""
        gateway = FakeGateway(
            jobs=[job_at(f"job-{i}", i, final_title=f"N{i}") for i in range(4)],
            routes=[make_route()],
        )
        coordinator = make_coordinator(gateway, vault, batch_size=3)

        report = await coordinator.sync_with_logs()

        assert report.jobs_found == 3
        assert gateway.jobs["job-3"].status == "transcribed"

    @pytest.mark.asyncio
    async def test_missing_content_aborts_before_write_and_ack(
        self, vault: Vault, vault_dir: Path
    ) -> None:
        """Should stop at a job without content, leaving it and later jobs untouched."""
        gateway = FakeGateway(
            jobs=[
                job_at("bad", 1, content=None),
                job_at("good", 2, final_title="Good"),
            ],
            routes=[make_route()],
        )
        coordinator = make_coordinator(gateway, vault)

        report = await coordinator.sync_with_logs()

        assert report.success is False
        assert "bad" in (report.error or "")
        assert report.entries == []
        assert gateway.acks == []
        assert list(vault_dir.iterdir()) == []
        assert gateway.jobs["good"].status == "transcribed"

    @pytest.mark.asyncio
    async def test_failure_keeps_earlier_acknowledged_jobs(self, vault: Vault) -> None:
        """Should keep jobs acknowledged before the failing one."""
        gateway = FakeGateway(
            jobs=[
                job_at("one", 1, final_title="One"),
                job_at("two", 2, route_id="missing"),
                job_at("three", 3, final_title="Three"),
            ],
            routes=[make_route()],
        )
        coordinator = make_coordinator(gateway, vault)

        report = await coordinator.sync_with_logs()

        assert report.success is False
        assert report.error == "Route missing not found"
        assert report.paths == ["Inbox/One.md"]
        assert [ack[0] for ack in gateway.acks] == ["one"]
        assert gateway.jobs["three"].status == "transcribed"

    @pytest.mark.asyncio
    async def test_ack_failure_aborts_cycle(self, vault: Vault) -> None:
        """Should stop the cycle when an acknowledgement fails."""
        gateway = FakeGateway(
            jobs=[job_at("one", 1, final_title="One"), job_at("two", 2, final_title="Two")],
            routes=[make_route()],
        )
        gateway.fail_ack_for.add("one")
        coordinator = make_coordinator(gateway, vault)

        report = await coordinator.sync_with_logs()

        assert report.success is False
        assert report.entries == []
        assert not (vault.root / "Inbox" / "Two.md").exists()

    @pytest.mark.asyncio
    async def test_precondition_mismatch_still_reports_path(self, vault: Vault) -> None:
        """Should treat a no-op acknowledgement as delivered elsewhere, not an error."""
        gateway = FakeGateway(jobs=[make_job(final_title="Hello")], routes=[make_route()])
        coordinator = make_coordinator(gateway, vault)

        original_ack = gateway.acknowledge_delivered

        async def ack_after_someone_else(job_id: str, expected: str, url: str) -> bool:
            gateway.jobs[job_id].status = "delivered"
            return await original_ack(job_id, expected, url)

        gateway.acknowledge_delivered = ack_after_someone_else  # type: ignore[method-assign]

        report = await coordinator.sync_with_logs()

        assert report.success is True
        assert report.paths == ["Inbox/Hello.md"]
        assert gateway.acks == []

    @pytest.mark.asyncio
    async def test_attachment_failure_still_acknowledged(self, vault: Vault, vault_dir: Path) -> None:
        """Should deliver and ack even when the original cannot be downloaded."""
        gateway = FakeGateway(
            jobs=[make_job(final_title="Memo", original_file_url=STORAGE_URL)],
            routes=[make_route(include_original=True)],
        )
        coordinator = make_coordinator(gateway, vault)

        report = await coordinator.sync_with_logs()

        assert report.success is True
        assert (vault_dir / "Inbox" / "Memo.md").read_text() == "Body text"
        assert [ack[0] for ack in gateway.acks] == ["job-1"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [httpx.InvalidURL("Invalid IDNA hostname"), ValueError("bad label")])
    async def test_malformed_attachment_url_still_delivered(
        self, vault: Vault, vault_dir: Path, error: Exception
    ) -> None:
        """Should deliver the note without its original when the URL cannot be used."""
        gateway = FakeGateway(
            jobs=[
                make_job("job-1", final_title="Memo", original_file_url="https://xn--/memo.m4a"),
                make_job("job-2", final_title="Next", created_at=T0 + timedelta(hours=1)),
            ],
            routes=[make_route(include_original=True)],
        )

        def handler(request: httpx.Request) -> httpx.Response:
            raise error

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        fetcher = AttachmentFetcher(gateway, vault, http=http)
        engine = DeliveryEngine(RouteCache(gateway), vault, fetcher)
        coordinator = SyncCoordinator(gateway, engine)  # type: ignore[arg-type]

        try:
            report = await coordinator.sync_with_logs()
        finally:
            await http.aclose()

        assert report.success is True
        assert (vault_dir / "Inbox" / "Memo.md").read_text() == "Body text"
        assert [ack[0] for ack in gateway.acks] == ["job-1", "job-2"]

    @pytest.mark.asyncio
    async def test_failure_is_reported(self, vault: Vault) -> None:
        """Should hand cycle failures to error tracking with the trigger."""
        gateway = FakeGateway()
        error = GatewayError("backend down", 503)
        gateway.fetch_error = error
        coordinator = make_coordinator(gateway, vault)

        with patch("flowvault.client.sync.coordinator.capture_exception") as mock_capture:
            await coordinator.on_timer_tick()

        mock_capture.assert_called_once_with(error, trigger="timer", jobs_found=0)

    @pytest.mark.asyncio
    async def test_success_is_not_reported(self, vault: Vault) -> None:
        """Should only report failed cycles."""
        gateway = FakeGateway(jobs=[make_job(final_title="Hello")], routes=[make_route()])
        coordinator = make_coordinator(gateway, vault)

        with patch("flowvault.client.sync.coordinator.capture_exception") as mock_capture:
            await coordinator.sync_with_logs()

        mock_capture.assert_not_called()


class TestGuard:
    """Tests for the busy flag."""

    @pytest.mark.asyncio
    async def test_concurrent_trigger_skipped(self, vault: Vault, vault_dir: Path) -> None:
        """Should refuse a second entry without fetching, and deliver once."""
        gateway = FakeGateway(jobs=[make_job(final_title="Hello")], routes=[make_route()])
        gate = asyncio.Event()
        gateway.before_fetch_return = gate.wait
        coordinator = make_coordinator(gateway, vault)

        first = asyncio.create_task(coordinator.sync_with_logs())
        await asyncio.sleep(0)
        assert coordinator.is_syncing is True

        second = await coordinator.sync_with_logs()
        timer = await coordinator.on_timer_tick()
        gate.set()
        report = await first

        assert second.skipped is True
        assert second.entries == []
        assert second.error == ALREADY_SYNCING
        assert timer.skipped is True
        assert gateway.fetch_calls == 1
        assert report.paths == ["Inbox/Hello.md"]
        assert len(gateway.acks) == 1
        assert sorted(p.name for p in (vault_dir / "Inbox").iterdir()) == ["Hello.md"]

    @pytest.mark.asyncio
    async def test_flag_cleared_after_failure(self, vault: Vault) -> None:
        """Should always return to idle, even when the cycle raises."""
        gateway = FakeGateway()
        gateway.fetch_error = GatewayError("backend down", 503)
        coordinator = make_coordinator(gateway, vault)

        report = await coordinator.on_timer_tick()

        assert report.success is False
        assert report.error == "backend down"
        assert coordinator.is_syncing is False
        assert coordinator.context.phase == SyncPhase.ERROR
        assert coordinator.context.status_text == "Error"

        gateway.fetch_error = None
        assert (await coordinator.on_timer_tick()).success is True


class TestLockFile:
    """Tests for the lock shared by separate processes."""

    @pytest.mark.asyncio
    async def test_second_process_skips(self, vault: Vault, vault_dir: Path, tmp_path: Path) -> None:
        """Should let only one of two coordinators run, and write each note once."""
        gateway = FakeGateway(jobs=[make_job(final_title="Hello")], routes=[make_route()])
        gate = asyncio.Event()
        gateway.before_fetch_return = gate.wait
        lock_path = str(tmp_path / "sync.lock")
        watcher = make_coordinator(gateway, vault, lock=FileLock(lock_path))
        command = make_coordinator(gateway, vault, lock=FileLock(lock_path))

        first = asyncio.create_task(watcher.sync_with_logs())
        await asyncio.sleep(0)
        assert watcher.is_syncing is True

        second = await command.sync_with_logs()
        assert second.skipped is True
        assert second.error == ALREADY_SYNCING
        assert command.is_syncing is False

        gate.set()
        report = await first

        assert gateway.fetch_calls == 1
        assert report.paths == ["Inbox/Hello.md"]
        assert len(gateway.acks) == 1
        assert sorted(p.name for p in (vault_dir / "Inbox").iterdir()) == ["Hello.md"]

    @pytest.mark.asyncio
    async def test_lock_released_after_cycle(self, vault: Vault, tmp_path: Path) -> None:
        """Should release the lock after success and after failure."""
        gateway = FakeGateway()
        gateway.fetch_error = GatewayError("backend down", 503)
        lock = FileLock(str(tmp_path / "sync.lock"))
        coordinator = make_coordinator(gateway, vault, lock=lock)

        assert (await coordinator.on_timer_tick()).success is False
        assert lock.is_locked is False

        gateway.fetch_error = None
        other = make_coordinator(gateway, vault, lock=FileLock(str(tmp_path / "sync.lock")))
        assert (await other.on_timer_tick()).success is True
        assert lock.is_locked is False

    @pytest.mark.asyncio
    async def test_deep_link_waits_for_other_process(self, vault: Vault, tmp_path: Path) -> None:
        """Should wait while another process holds the lock, then sync."""
        gateway = FakeGateway(jobs=[make_job(final_title="Hello")], routes=[make_route()])
        lock_path = str(tmp_path / "sync.lock")
        held = FileLock(lock_path)
        held.acquire()
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) == 2:
                held.release()

        coordinator = make_coordinator(
            gateway, vault, lock=FileLock(lock_path), sleep=fake_sleep
        )

        path = await coordinator.on_deep_link("job-1")

        assert sleeps == [0.5, 0.5]
        assert path == "Inbox/Hello.md"


class TestNotices:
    """Tests for user-visible notices."""

    @pytest.mark.asyncio
    async def test_explicit_failure_notifies(self, vault: Vault) -> None:
        """Should show a notice when a command-triggered cycle fails."""
        gateway = FakeGateway()
        gateway.fetch_error = GatewayError("backend down", 503)
        notifier = MagicMock()
        coordinator = make_coordinator(gateway, vault, notifier=notifier)

        await coordinator.sync_now()

        notifier.assert_called_once()
        assert "backend down" in notifier.call_args[0][0]

    @pytest.mark.asyncio
    async def test_background_failure_is_silent(self, vault: Vault) -> None:
        """Should only log when a timer or silent cycle fails."""
        gateway = FakeGateway()
        gateway.fetch_error = GatewayError("backend down", 503)
        notifier = MagicMock()
        coordinator = make_coordinator(gateway, vault, notifier=notifier)

        await coordinator.on_timer_tick()
        await coordinator.sync_now(silent=True)

        notifier.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_configured(self, vault: Vault) -> None:
        """Should not fetch without backend credentials."""
        gateway = FakeGateway()
        notifier = MagicMock()
        config = BackendConfig(url="", anon_key="")
        coordinator = make_coordinator(gateway, vault, config=config, notifier=notifier)

        report = await coordinator.sync_with_logs()
        await coordinator.on_timer_tick()

        assert report.error == NOT_CONFIGURED
        assert gateway.fetch_calls == 0
        notifier.assert_called_once_with(NOT_CONFIGURED)
        assert coordinator.is_syncing is False

    @pytest.mark.asyncio
    async def test_not_signed_in(self, vault: Vault) -> None:
        """Should not fetch without a session."""
        gateway = FakeGateway()
        config = BackendConfig(url="https://x", anon_key="anon")
        coordinator = make_coordinator(gateway, vault, config=config)

        report = await coordinator.sync_with_logs()

        assert report.error == NOT_SIGNED_IN
        assert gateway.fetch_calls == 0


class TestFocus:
    """Tests for the focus trigger and its cooldown."""

    @pytest.mark.asyncio
    async def test_focus_ignored_during_startup_cooldown(self, vault: Vault) -> None:
        """Should skip focus within the cooldown and sync after it."""
        gateway = FakeGateway()
        clock = FakeClock()
        coordinator = make_coordinator(gateway, vault, clock=clock)
        coordinator.mark_startup()

        clock.now += 1.0
        assert (await coordinator.on_window_focus()).skipped is True
        assert gateway.fetch_calls == 0

        clock.now += 2.5
        assert (await coordinator.on_window_focus()).skipped is False
        assert gateway.fetch_calls == 1

    @pytest.mark.asyncio
    async def test_focus_without_cooldown(self, vault: Vault) -> None:
        """Should sync on focus when no cooldown was started."""
        gateway = FakeGateway()
        coordinator = make_coordinator(gateway, vault)

        await coordinator.on_window_focus()

        assert gateway.fetch_calls == 1

    @pytest.mark.asyncio
    async def test_deep_link_starts_cooldown(self, vault: Vault) -> None:
        """Should suppress a focus sync right after a deep link."""
        gateway = FakeGateway()
        clock = FakeClock()
        coordinator = make_coordinator(gateway, vault, clock=clock)

        await coordinator.on_deep_link()
        clock.now += 0.5
        await coordinator.on_window_focus()

        assert gateway.fetch_calls == 1


class TestDeepLink:
    """Tests for the deep-link trigger."""

    @pytest.mark.asyncio
    async def test_opens_target_job(self, vault: Vault) -> None:
        """Should return the path written for the requested job."""
        gateway = FakeGateway(
            jobs=[job_at("a", 1, final_title="A"), job_at("b", 2, final_title="B")],
            routes=[make_route()],
        )
        coordinator = make_coordinator(gateway, vault)

        assert await coordinator.on_deep_link("a") == "Inbox/A.md"

    @pytest.mark.asyncio
    async def test_falls_back_to_last_entry(self, vault: Vault) -> None:
        """Should return the last written path when the target is not in the batch."""
        gateway = FakeGateway(
            jobs=[job_at("a", 1, final_title="A"), job_at("b", 2, final_title="B")],
            routes=[make_route()],
        )
        coordinator = make_coordinator(gateway, vault)

        assert await coordinator.on_deep_link("zzz") == "Inbox/B.md"

    @pytest.mark.asyncio
    async def test_already_delivered_job(self, vault: Vault) -> None:
        """Should read the recorded destination of a job delivered earlier."""
        delivered = make_job(
            "old",
            status="delivered",
            destination_url="obsidian://open?file=%2F%2FHello%20World.md",
        )
        gateway = FakeGateway(jobs=[delivered], routes=[make_route()])
        coordinator = make_coordinator(gateway, vault)

        assert await coordinator.on_deep_link("old") == "Hello World.md"

    @pytest.mark.asyncio
    async def test_nothing_to_open(self, vault: Vault) -> None:
        """Should return None with no entries and no target."""
        coordinator = make_coordinator(FakeGateway(), vault)

        assert await coordinator.on_deep_link() is None
        assert await coordinator.on_deep_link("unknown") is None

    @pytest.mark.asyncio
    async def test_waits_for_running_cycle(self, vault: Vault) -> None:
        """Should poll until the in-flight cycle clears the flag, then sync."""
        gateway = FakeGateway(jobs=[make_job(final_title="Hello")], routes=[make_route()])
        context = SyncContext(is_syncing=True)
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) == 3:
                context.is_syncing = False

        coordinator = make_coordinator(gateway, vault, context=context, sleep=fake_sleep)

        path = await coordinator.on_deep_link("job-1")

        assert sleeps == [0.5, 0.5, 0.5]
        assert path == "Inbox/Hello.md"

    @pytest.mark.asyncio
    async def test_wait_is_bounded(self, vault: Vault) -> None:
        """Should give up after the bounded wait and fall back to the job state."""
        delivered = make_job(
            "old", status="delivered", destination_url="obsidian://open?file=Inbox%2FOld.md"
        )
        gateway = FakeGateway(jobs=[delivered])
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        coordinator = make_coordinator(
            gateway, vault, context=SyncContext(is_syncing=True), sleep=fake_sleep
        )

        path = await coordinator.on_deep_link("old")

        assert len(sleeps) == 30
        assert gateway.fetch_calls == 0
        assert path == "Inbox/Old.md"
