import json
import os
from typing import Any, Dict, List, Optional, Sequence

import pytest

from ipmonitor.config import MonitorSettings
from ipmonitor.detection import DetectionChain, DetectionStrategy
from ipmonitor.exceptions import GitCommandError, RemoteFetchFailure
from ipmonitor.health import HealthStatusTracker
from ipmonitor.models import AddressRecord
from ipmonitor.orchestrator import IpMonitor
from ipmonitor.persistence import PersistenceWorkflow
from ipmonitor.record_store import LocalRecordStore


class FakeVersionControl:
    """In-memory VersionControl with per-step failure injection.

    ``fail`` maps a step name (``pull``, ``status``, ``add``, ``commit``,
    ``push``, ``rollback``) to the number of times it should fail before
    succeeding; ``-1`` fails forever.
    """

    def __init__(self, dirty: bool = True, fail: Optional[Dict[str, int]] = None):
        self.dirty = dirty
        self.fail = dict(fail or {})
        self.calls: List[str] = []
        self.commits: List[str] = []
        self.pushed: List[str] = []
        self.staged: List[List[str]] = []

    def _maybe_fail(self, step: str) -> None:
        self.calls.append(step)
        remaining = self.fail.get(step, 0)
        if remaining == 0:
            return
        if remaining > 0:
            self.fail[step] = remaining - 1
        raise GitCommandError(step, 1, f"simulated {step} failure")

    async def fetch_latest(self) -> None:
        self._maybe_fail("pull")

    async def is_dirty(self) -> bool:
        self._maybe_fail("status")
        return self.dirty

    async def stage(self, files: Sequence[str]) -> None:
        self._maybe_fail("add")
        self.staged.append(list(files))

    async def commit(self, message: str) -> bool:
        self._maybe_fail("commit")
        # A clean tree behaves like "nothing to commit": success, no commit
        if not self.dirty:
            return False
        self.commits.append(message)
        self.dirty = False
        return True

    async def publish(self) -> None:
        self._maybe_fail("push")
        self.pushed.extend(self.commits[len(self.pushed):])

    async def revert_last(self) -> None:
        self._maybe_fail("rollback")
        if self.commits and len(self.commits) > len(self.pushed):
            self.commits.pop()
            self.dirty = True

    async def validate(self) -> Dict[str, Any]:
        return {"healthy": True, "enabled": True}


class FakeRemote:
    """Stand-in for RemoteReferenceClient returning a fixed address."""

    def __init__(self, address: Optional[str] = None, available: bool = True):
        self.address = address
        self.available = available
        self.calls = 0

    async def fetch(self) -> AddressRecord:
        self.calls += 1
        if not self.available:
            raise RemoteFetchFailure("remote unreachable")
        return AddressRecord(address=self.address)

    async def close(self) -> None:
        return None


class RecordingNotifier:
    def __init__(self):
        self.changes = []
        self.starts = []
        self.errors = []

    async def notify_change(self, event) -> bool:
        self.changes.append(event)
        return True

    async def notify_error(self, error, context: str = "") -> bool:
        self.errors.append((error, context))
        return True

    async def notify_start(self, interval_seconds: float, git_enabled: bool) -> bool:
        self.starts.append((interval_seconds, git_enabled))
        return True

    async def close(self) -> None:
        return None


class ManualScheduler:
    """Scheduler that only fires when the test calls ``tick``."""

    def __init__(self):
        self.callback = None
        self.cancelled = False
        self.closed = False

    @property
    def running(self) -> bool:
        return self.callback is not None and not self.cancelled

    def start(self, callback) -> None:
        self.callback = callback

    def cancel(self) -> None:
        self.cancelled = True

    async def wait_closed(self) -> None:
        self.closed = True

    async def tick(self):
        return await self.callback()


def static_strategy(name: str, value: str, priority: int = 1) -> DetectionStrategy:
    async def fetch() -> str:
        return value
    return DetectionStrategy(name, priority, fetch)


def failing_strategy(name: str, priority: int = 1, error: str = "boom") -> DetectionStrategy:
    async def fetch() -> str:
        raise RuntimeError(error)
    return DetectionStrategy(name, priority, fetch)


def write_record(path, address: str, key: str = "ip") -> None:
    os.makedirs(os.path.dirname(str(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump({key: address, "lastUpdated": "2024-01-01T00:00:00.000Z"}, fh)


@pytest.fixture
def record_path(tmp_path):
    return str(tmp_path / "config" / "ip.json")


@pytest.fixture
def settings(tmp_path, record_path):
    return MonitorSettings(
        _env_file=None,
        record_path=record_path,
        remote_url="https://example.invalid/config/ip.json",
        check_interval_seconds=3600,
        health_server_enabled=False,
        git_repo_dir=str(tmp_path),
    )


@pytest.fixture
def make_monitor(settings, record_path):
    """Factory building an IpMonitor around fakes."""

    def _make(public: str = "203.0.113.9", remote: Optional[FakeRemote] = None,
              vcs: Optional[FakeVersionControl] = None, strategies=None,
              target_files: Sequence[str] = (), git_enabled: bool = True):
        detector = DetectionChain(
            strategies or [static_strategy("Static", public)],
            attempts=1, backoff_seconds=0,
        )
        workflow = PersistenceWorkflow(
            vcs or FakeVersionControl(),
            target_files=target_files,
            enabled=git_enabled,
            max_retries=3,
            backoff_seconds=0,
        )
        return IpMonitor(
            settings,
            detector=detector,
            store=LocalRecordStore(record_path),
            remote=remote or FakeRemote(public),
            workflow=workflow,
            health=HealthStatusTracker(threshold=5, max_errors=10),
            scheduler=ManualScheduler(),
            notifier=RecordingNotifier(),
        )

    return _make
