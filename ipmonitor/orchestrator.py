"""Monitor orchestration: the debounced detect -> reconcile -> publish loop.

Lifecycle::

    IDLE -> VALIDATING -> RUNNING -> STOPPING -> STOPPED

:meth:`IpMonitor.start` dry-runs detection and the git working tree,
seeds the local record if it does not exist, runs one cycle immediately
and then hands a tick callback to the scheduler.  Every cycle, whether
from a tick or a manual trigger, passes through a :class:`DebounceGuard`:
a trigger arriving while a cycle is in flight is dropped, not queued.
No exception escapes a cycle; outcomes are recorded in the
:class:`HealthStatusTracker`.

Classes:
    MonitorState: Lifecycle states.
    IpMonitor: The orchestrator.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Dict, Optional

from ipmonitor.config import MonitorSettings
from ipmonitor.detection import DetectionChain
from ipmonitor.exceptions import (
    AllMethodsExhausted,
    ConfigurationError,
    PersistenceWriteFailure,
    RecordReadError,
    RemoteFetchFailure,
)
from ipmonitor.health import HealthStatusTracker
from ipmonitor.notifier import LoggingNotifier, Notifier
from ipmonitor.persistence import PersistenceWorkflow
from ipmonitor.reconciliation import ReconciliationEngine
from ipmonitor.record_store import LocalRecordStore
from ipmonitor.remote import RemoteReferenceClient
from ipmonitor.scheduler import Scheduler
from ipmonitor.utils import DebounceGuard, utc_now_iso

logger = logging.getLogger(__name__)


class MonitorState(Enum):
    """Lifecycle states of :class:`IpMonitor`."""
    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class IpMonitor:
    """Ties detection, reconciliation, persistence and health together.

    All collaborators are injected; see ``main.py`` for the production
    wiring.
    """

    def __init__(self, settings: MonitorSettings, detector: DetectionChain,
                 store: LocalRecordStore, remote: RemoteReferenceClient,
                 workflow: PersistenceWorkflow, health: HealthStatusTracker,
                 scheduler: Scheduler, notifier: Optional[Notifier] = None,
                 engine: Optional[ReconciliationEngine] = None):
        self.settings = settings
        self.detector = detector
        self.store = store
        self.remote = remote
        self.workflow = workflow
        self.health = health
        self.scheduler = scheduler
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.engine = engine or ReconciliationEngine()

        self.state = MonitorState.IDLE
        self.guard = DebounceGuard()
        self.cycles_completed = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_running(self) -> bool:
        return self.state == MonitorState.RUNNING

    @property
    def git_enabled(self) -> bool:
        return self.workflow.enabled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Validate collaborators, run the first cycle and start ticking.

        Raises:
            ConfigurationError: If detection is not operable or the local
                record cannot be seeded.
        """
        if self.state not in (MonitorState.IDLE, MonitorState.STOPPED):
            raise RuntimeError(f"Cannot start monitor in state {self.state.value}")

        logger.info("Starting IP Monitor Service...")
        self.state = MonitorState.VALIDATING
        try:
            await self._validate_services()
        except Exception as e:
            self.state = MonitorState.STOPPED
            await self._record_failure(e)
            logger.error("Failed to start IP Monitor Service: %s", e)
            raise

        await self.run_cycle()

        self.scheduler.start(self._on_tick)
        self.state = MonitorState.RUNNING
        logger.info("IP Monitor Service started successfully!")

        try:
            await self.notifier.notify_start(self.settings.check_interval_seconds, self.git_enabled)
        except Exception as e:
            logger.warning("Start notification failed: %s", e)

    async def _validate_services(self) -> None:
        logger.info("Validating services...")

        detection = await self.detector.validate_service()
        if not detection.get("healthy"):
            raise ConfigurationError(
                f"IP Detection service validation failed: {detection.get('error')}"
            )

        if self.workflow.enabled:
            git_status = await self.workflow.validate()
            if not git_status.get("healthy"):
                logger.warning("Git service validation failed: %s", git_status.get("error"))
                logger.warning("Continuing without Git integration...")
                self.workflow.enabled = False

        if not self.store.exists():
            logger.info("Creating initial IP configuration file...")
            try:
                self.store.write(detection["ip"], created=True)
            except PersistenceWriteFailure as e:
                raise ConfigurationError(f"Failed to create initial config: {e}") from e
            logger.info("Initial IP config created with IP: %s", detection["ip"])

        logger.info("Service validation completed successfully")

    async def stop(self, reason: str = "Manual") -> None:
        """Stop ticking and wait for any in-flight cycle to finish."""
        if self.state in (MonitorState.STOPPING, MonitorState.STOPPED):
            return
        logger.info("Stopping IP Monitor Service: %s", reason)
        self.state = MonitorState.STOPPING

        self.scheduler.cancel()
        await self.scheduler.wait_closed()
        if not self._idle.is_set():
            logger.info("Waiting for in-flight IP check to finish...")
            await self._idle.wait()

        self.state = MonitorState.STOPPED
        logger.info("IP Monitor Service stopped successfully!")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def _on_tick(self) -> None:
        if self.state != MonitorState.RUNNING:
            return
        await self.run_cycle()

    async def run_cycle(self) -> Optional[Dict[str, Any]]:
        """Run one debounced cycle.

        Returns:
            The cycle result, or ``None`` if the monitor is stopping or a
            cycle was already in flight and this trigger was dropped.
        """
        if self.state in (MonitorState.STOPPING, MonitorState.STOPPED):
            logger.info("Monitor is %s, trigger ignored", self.state.value)
            return None
        if not self.guard.try_acquire():
            logger.info("IP check already in progress, trigger dropped")
            return None
        self._idle.clear()
        try:
            result = await self.check_and_update()
            self.cycles_completed += 1
        finally:
            self.guard.release()
            self._idle.set()
        await self._drain_notifications()
        return result

    async def trigger(self) -> Optional[Dict[str, Any]]:
        """Manually request a cycle (health endpoint, CLI)."""
        logger.info("Manual IP check requested")
        return await self.run_cycle()

    async def _record_failure(self, error: BaseException) -> None:
        if not self.health.record_check(False, error):
            return
        try:
            await self.notifier.notify_error(
                error,
                f"unhealthy after {self.health.threshold} consecutive failures",
            )
        except Exception as e:
            logger.warning("Error notification failed: %s", e)

    async def _drain_notifications(self) -> None:
        process_queue = getattr(self.notifier, "process_queue", None)
        if process_queue is None:
            return
        try:
            await process_queue()
        except Exception as e:
            logger.warning("Notification queue processing failed: %s", e)

    # ------------------------------------------------------------------
    # Cycle body
    # ------------------------------------------------------------------

    async def check_and_update(self) -> Dict[str, Any]:
        """Detect, reconcile and, when needed, persist and publish.

        Never raises; failures are recorded in the health tracker and
        reported in the returned dict under ``"error"``.
        """
        start_time = time.monotonic()
        logger.info("Starting IP check cycle...")
        try:
            return await self._cycle(start_time)
        except Exception as e:
            logger.error("IP check failed unexpectedly: %s", e, exc_info=True)
            await self._record_failure(e)
            return {"updated": False, "error": str(e)}

    async def _cycle(self, start_time: float) -> Dict[str, Any]:
        try:
            local_ip = self.store.read_address()
        except RecordReadError as e:
            logger.error("%s", e)
            await self._record_failure(e)
            return {"updated": False, "error": str(e)}
        logger.info("Local IP: %s", local_ip)

        try:
            detected = await self.detector.detect()
        except AllMethodsExhausted as e:
            logger.error("%s", e)
            await self._record_failure(e)
            return {"updated": False, "error": str(e)}
        public_ip = detected.address
        logger.info("Public IP: %s (via %s)", public_ip, detected.method)

        remote_ip: Optional[str]
        try:
            remote_ip = (await self.remote.fetch()).address
            logger.info("Remote IP: %s", remote_ip)
        except RemoteFetchFailure as e:
            logger.warning("Failed to get remote IP, using local for comparison: %s", e)
            remote_ip = None

        decision = self.engine.reconcile(local_ip, public_ip, remote_ip)
        if decision.degraded:
            logger.warning(
                "Remote reference unavailable; drift in the remote copy cannot be "
                "detected until it is reachable again"
            )

        if not decision.needs_update:
            logger.info("No IP update needed")
            self.health.record_check(True)
            return {
                "updated": False,
                "current_ip": public_ip,
                "method": detected.method,
                "degraded": decision.degraded,
                "message": "IP unchanged",
            }

        logger.info("IP change detected: %s -> %s (remote: %s)",
                    decision.old_address, decision.new_address, decision.remote_address)

        try:
            self.store.write(public_ip)
        except PersistenceWriteFailure as e:
            logger.error("%s", e)
            await self._record_failure(e)
            return {"updated": False, "error": str(e)}

        publish = await self.workflow.publish(decision.new_address, decision.old_address)
        if publish.success:
            logger.info("Git publish: %s", publish.message)
        else:
            logger.warning("IP was updated locally but not committed to repository: %s",
                           publish.message)

        event = self.health.record_change(decision.old_address, decision.new_address)
        self.health.record_check(True)

        try:
            await self.notifier.notify_change(event)
        except Exception as e:
            logger.warning("Change notification failed: %s", e)

        duration = time.monotonic() - start_time
        logger.info("IP update completed in %.0fms", duration * 1000)
        return {
            "updated": True,
            "old_ip": decision.old_address,
            "new_ip": decision.new_address,
            "method": detected.method,
            "degraded": decision.degraded,
            "publish": publish.to_dict(),
            "duration": duration,
        }

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_health(self) -> Dict[str, Any]:
        """Compact health view for ``GET /health``."""
        snapshot = self.health.snapshot()
        return {
            "status": "healthy" if snapshot.healthy else "unhealthy",
            "healthy": snapshot.healthy,
            "timestamp": utc_now_iso(),
            "last_check_at": snapshot.last_check_at,
            "last_success_at": snapshot.last_success_at,
            "consecutive_failures": snapshot.consecutive_failures,
            "last_change": snapshot.last_change.to_dict() if snapshot.last_change else None,
            "services": {
                "monitor": self.is_running,
                "git": self.git_enabled,
            },
        }

    async def get_status(self) -> Dict[str, Any]:
        """Detailed view for ``GET /status``."""
        try:
            current_ip: Optional[str] = self.store.read_address()
        except RecordReadError:
            current_ip = None

        git_status = await self.workflow.validate() if self.git_enabled else {"enabled": False}
        notifier_stats = getattr(self.notifier, "get_stats", None)
        return {
            "service": {
                "name": "IP Monitor",
                "state": self.state.value,
                "is_running": self.is_running,
                "healthy": self.health.is_healthy(),
                "check_interval": self.settings.check_interval_seconds,
                "git_enabled": self.git_enabled,
                "cycles_completed": self.cycles_completed,
                "dropped_triggers": self.guard.dropped,
            },
            "current_ip": current_ip,
            "health": self.health.to_dict(),
            "services": {
                "ip_detection": self.detector.get_stats(),
                "git": git_status,
                "notifications": notifier_stats() if notifier_stats else {"enabled": False},
            },
            "timestamp": utc_now_iso(),
        }
