import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeRemote, FakeVersionControl, failing_strategy, write_record
from ipmonitor.detection import DetectionStrategy
from ipmonitor.exceptions import ConfigurationError, PersistenceWriteFailure
from ipmonitor.models import SERVICE_NAME
from ipmonitor.orchestrator import MonitorState


class GatedStrategy:
    """Returns *address*; blocks on ``gate`` while ``blocking`` is set."""

    def __init__(self, address: str):
        self.address = address
        self.gate = asyncio.Event()
        self.blocking = False
        self.calls = 0

    async def fetch(self) -> str:
        self.calls += 1
        if self.blocking:
            await self.gate.wait()
        return self.address

    def strategy(self) -> DetectionStrategy:
        return DetectionStrategy("Gated", 1, self.fetch)


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestCheckAndUpdate:
    @pytest.mark.asyncio
    async def test_ip_change_end_to_end(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        vcs = FakeVersionControl(dirty=True)
        monitor = make_monitor(public="203.0.113.9", remote=FakeRemote("203.0.113.5"), vcs=vcs)

        result = await monitor.run_cycle()

        assert result["updated"] is True
        assert result["old_ip"] == "203.0.113.5"
        assert result["new_ip"] == "203.0.113.9"
        assert result["method"] == "Static"
        assert result["publish"]["success"] is True

        with open(record_path, encoding="utf-8") as fh:
            stored = json.load(fh)
        assert stored["ip"] == "203.0.113.9"
        assert stored["lastUpdateBy"] == SERVICE_NAME

        assert vcs.commits == ["update ip 203.0.113.5 -> 203.0.113.9"]
        assert vcs.pushed == vcs.commits

        snapshot = monitor.health.snapshot()
        assert snapshot.healthy is True
        assert snapshot.last_change.old_address == "203.0.113.5"
        assert snapshot.last_change.new_address == "203.0.113.9"
        assert [e.new_address for e in monitor.notifier.changes] == ["203.0.113.9"]

    @pytest.mark.asyncio
    async def test_no_change(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        vcs = FakeVersionControl()
        monitor = make_monitor(public="203.0.113.9", vcs=vcs)

        result = await monitor.run_cycle()

        assert result["updated"] is False
        assert result["current_ip"] == "203.0.113.9"
        assert vcs.calls == []
        assert monitor.notifier.changes == []
        assert monitor.health.snapshot().total_checks == 1

    @pytest.mark.asyncio
    async def test_remote_drift_triggers_publish(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        vcs = FakeVersionControl(dirty=False)
        monitor = make_monitor(public="203.0.113.9", remote=FakeRemote("203.0.113.5"),
                               vcs=vcs, target_files=[record_path])

        result = await monitor.run_cycle()

        assert result["updated"] is True
        assert "push" in vcs.calls

    @pytest.mark.asyncio
    async def test_remote_unavailable_compares_against_local(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        monitor = make_monitor(public="203.0.113.9", remote=FakeRemote(available=False))

        result = await monitor.run_cycle()

        assert result["updated"] is False
        assert result["degraded"] is True
        assert monitor.health.is_healthy()

    @pytest.mark.asyncio
    async def test_remote_unavailable_still_updates_on_public_change(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        monitor = make_monitor(public="203.0.113.9", remote=FakeRemote(available=False))

        result = await monitor.run_cycle()

        assert result["updated"] is True
        assert result["degraded"] is True

    @pytest.mark.asyncio
    async def test_detection_failure_recorded(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        monitor = make_monitor(strategies=[failing_strategy("A"), failing_strategy("B", 2)])

        result = await monitor.run_cycle()

        assert result["updated"] is False
        assert "All IP detection methods failed" in result["error"]
        snapshot = monitor.health.snapshot()
        assert snapshot.consecutive_failures == 1
        assert snapshot.recent_errors[0]["type"] == "AllMethodsExhausted"

    @pytest.mark.asyncio
    async def test_repeated_failures_make_service_unhealthy(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        monitor = make_monitor(strategies=[failing_strategy("A")])

        for _ in range(5):
            await monitor.run_cycle()

        assert monitor.health.is_healthy() is False
        assert monitor.get_health()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_error_notified_once_when_service_turns_unhealthy(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        monitor = make_monitor(strategies=[failing_strategy("A")])

        for _ in range(4):
            await monitor.run_cycle()
        assert monitor.notifier.errors == []

        for _ in range(3):
            await monitor.run_cycle()

        assert len(monitor.notifier.errors) == 1
        error, context = monitor.notifier.errors[0]
        assert type(error).__name__ == "AllMethodsExhausted"
        assert context == "unhealthy after 5 consecutive failures"

    @pytest.mark.asyncio
    async def test_error_notified_again_after_recovery(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        monitor = make_monitor(strategies=[failing_strategy("A")])
        for _ in range(5):
            await monitor.run_cycle()
        monitor.health.record_check(True)
        for _ in range(5):
            await monitor.run_cycle()
        assert len(monitor.notifier.errors) == 2

    @pytest.mark.asyncio
    async def test_error_notifier_failure_is_ignored(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        monitor = make_monitor(strategies=[failing_strategy("A")])
        monitor.notifier.notify_error = AsyncMock(side_effect=RuntimeError("telegram down"))

        results = [await monitor.run_cycle() for _ in range(5)]

        assert all("error" in r for r in results)
        monitor.notifier.notify_error.assert_awaited_once()
        assert not monitor.guard.busy

    @pytest.mark.asyncio
    async def test_missing_record_is_a_failure(self, make_monitor):
        monitor = make_monitor()
        result = await monitor.run_cycle()
        assert "Failed to read local IP" in result["error"]
        assert monitor.health.snapshot().consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_write_failure_skips_publish(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        vcs = FakeVersionControl()
        monitor = make_monitor(public="203.0.113.9", remote=FakeRemote("203.0.113.5"), vcs=vcs)
        monitor.store.write = MagicMock(side_effect=PersistenceWriteFailure("disk full"))

        result = await monitor.run_cycle()

        assert result == {"updated": False, "error": "disk full"}
        assert vcs.calls == []
        assert monitor.notifier.changes == []
        assert monitor.health.snapshot().consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_publish_failure_still_counts_as_success(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        vcs = FakeVersionControl(dirty=True, fail={"push": -1})
        monitor = make_monitor(public="203.0.113.9", remote=FakeRemote("203.0.113.5"), vcs=vcs)

        result = await monitor.run_cycle()

        assert result["updated"] is True
        assert result["publish"]["success"] is False
        assert result["publish"]["rolled_back"] is True
        assert monitor.health.is_healthy()

    @pytest.mark.asyncio
    async def test_unexpected_error_never_escapes(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        monitor = make_monitor()
        monitor.engine = MagicMock()
        monitor.engine.reconcile.side_effect = RuntimeError("kaboom")

        result = await monitor.run_cycle()

        assert result == {"updated": False, "error": "kaboom"}
        assert not monitor.guard.busy

    @pytest.mark.asyncio
    async def test_notifier_failure_is_ignored(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        monitor = make_monitor(public="203.0.113.9", remote=FakeRemote("203.0.113.5"))
        monitor.notifier.notify_change = AsyncMock(side_effect=RuntimeError("telegram down"))

        result = await monitor.run_cycle()

        assert result["updated"] is True


class TestDebounce:
    @pytest.mark.asyncio
    async def test_overlapping_triggers_run_one_cycle(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        gated = GatedStrategy("203.0.113.9")
        gated.blocking = True
        monitor = make_monitor(strategies=[gated.strategy()])

        first = asyncio.create_task(monitor.run_cycle())
        await settle()
        dropped = await asyncio.gather(*(monitor.trigger() for _ in range(3)))
        gated.gate.set()
        result = await first

        assert dropped == [None, None, None]
        assert result["updated"] is False
        assert gated.calls == 1
        assert monitor.cycles_completed == 1
        assert monitor.guard.dropped == 3

    @pytest.mark.asyncio
    async def test_new_cycle_allowed_after_completion(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        monitor = make_monitor()
        assert await monitor.run_cycle() is not None
        assert await monitor.run_cycle() is not None
        assert monitor.cycles_completed == 2


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_seeds_missing_record(self, make_monitor, record_path):
        monitor = make_monitor(public="203.0.113.5")

        await monitor.start()

        with open(record_path, encoding="utf-8") as fh:
            stored = json.load(fh)
        assert stored["ip"] == "203.0.113.5"
        assert stored["createdBy"] == SERVICE_NAME
        assert monitor.state == MonitorState.RUNNING
        assert monitor.scheduler.callback is not None
        assert monitor.cycles_completed == 1
        assert monitor.notifier.starts == [(3600, True)]

    @pytest.mark.asyncio
    async def test_start_fails_when_detection_unavailable(self, make_monitor):
        monitor = make_monitor(strategies=[failing_strategy("A")])

        with pytest.raises(ConfigurationError):
            await monitor.start()

        assert monitor.state == MonitorState.STOPPED
        assert monitor.scheduler.callback is None
        assert monitor.health.snapshot().consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_git_validation_failure_disables_git(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        vcs = FakeVersionControl()
        vcs.validate = AsyncMock(return_value={"healthy": False, "error": "not a git repository"})
        monitor = make_monitor(vcs=vcs)

        await monitor.start()

        assert monitor.git_enabled is False
        assert monitor.state == MonitorState.RUNNING

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        monitor = make_monitor()
        await monitor.start()
        with pytest.raises(RuntimeError):
            await monitor.start()

    @pytest.mark.asyncio
    async def test_tick_runs_cycle(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        monitor = make_monitor()
        await monitor.start()

        await monitor.scheduler.tick()

        assert monitor.cycles_completed == 2

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_cycle(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        gated = GatedStrategy("203.0.113.9")
        monitor = make_monitor(strategies=[gated.strategy()])
        await monitor.start()

        gated.blocking = True
        tick = asyncio.create_task(monitor.scheduler.tick())
        await settle()
        assert monitor.guard.busy

        stopping = asyncio.create_task(monitor.stop("test"))
        await settle()
        assert not stopping.done()
        assert monitor.state == MonitorState.STOPPING

        gated.gate.set()
        await stopping
        await tick

        assert monitor.state == MonitorState.STOPPED
        assert monitor.scheduler.cancelled is True
        assert monitor.cycles_completed == 2

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        monitor = make_monitor()
        await monitor.start()
        await monitor.stop()
        await monitor.stop()
        assert monitor.state == MonitorState.STOPPED

    @pytest.mark.asyncio
    async def test_tick_after_stop_is_ignored(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        monitor = make_monitor()
        await monitor.start()
        await monitor.stop()
        await monitor.scheduler.tick()
        assert monitor.cycles_completed == 1

    @pytest.mark.asyncio
    async def test_trigger_after_stop_is_ignored(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        vcs = FakeVersionControl()
        monitor = make_monitor(public="203.0.113.5", remote=FakeRemote("203.0.113.9"), vcs=vcs)
        await monitor.start()
        assert monitor.cycles_completed == 1
        vcs.calls.clear()
        vcs.commits.clear()
        await monitor.stop()

        write_record(record_path, "203.0.113.9")
        assert await monitor.trigger() is None

        assert vcs.calls == []
        assert vcs.commits == []
        assert monitor.cycles_completed == 1
        assert monitor.state == MonitorState.STOPPED

    @pytest.mark.asyncio
    async def test_trigger_while_stopping_is_ignored(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        gated = GatedStrategy("203.0.113.9")
        monitor = make_monitor(strategies=[gated.strategy()])
        await monitor.start()

        gated.blocking = True
        tick = asyncio.create_task(monitor.scheduler.tick())
        await settle()
        stopping = asyncio.create_task(monitor.stop("test"))
        await settle()
        assert monitor.state == MonitorState.STOPPING

        assert await monitor.trigger() is None
        assert monitor.guard.dropped == 0

        gated.gate.set()
        await stopping
        await tick
        assert gated.calls == 2
        assert monitor.cycles_completed == 2


class TestReporting:
    @pytest.mark.asyncio
    async def test_get_health(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.5")
        monitor = make_monitor(public="203.0.113.9", remote=FakeRemote("203.0.113.5"))
        await monitor.run_cycle()

        health = monitor.get_health()

        assert health["status"] == "healthy"
        assert health["last_change"]["new_address"] == "203.0.113.9"
        assert health["services"] == {"monitor": False, "git": True}

    @pytest.mark.asyncio
    async def test_get_status(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        monitor = make_monitor()
        await monitor.run_cycle()

        status = await monitor.get_status()

        assert status["current_ip"] == "203.0.113.9"
        assert status["service"]["cycles_completed"] == 1
        assert status["services"]["ip_detection"]["available_methods"] == 1
        assert status["services"]["git"]["healthy"] is True
        assert status["health"]["total_checks"] == 1
        assert status["services"]["notifications"] == {"enabled": False}

    @pytest.mark.asyncio
    async def test_get_status_includes_notifier_stats(self, make_monitor, record_path):
        write_record(record_path, "203.0.113.9")
        monitor = make_monitor()
        monitor.notifier.get_stats = MagicMock(return_value={"queue_length": 0})

        status = await monitor.get_status()

        assert status["services"]["notifications"] == {"queue_length": 0}
