"""
IP Monitor - Main Entry Point

Watches the host's public IP, keeps the local record and its remote
mirror in sync and publishes changes through git.

Usage:
    python main.py              # Run continuously
    python main.py --once       # Run a single check and print the result
    python main.py --status     # Print configuration summary and exit
    python main.py --no-git     # Run without committing/pushing
"""
from dotenv import load_dotenv

# Load environment variables from .env file into os.environ
load_dotenv()

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

import aiohttp
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ipmonitor.config import MonitorSettings, load_settings
from ipmonitor.detection import DetectionChain, default_strategies
from ipmonitor.exceptions import ConfigurationError
from ipmonitor.health import HealthStatusTracker
from ipmonitor.health_endpoint import HealthServer
from ipmonitor.logging_setup import setup_logging
from ipmonitor.notifier import LoggingNotifier, Notifier, TelegramNotifier
from ipmonitor.orchestrator import IpMonitor
from ipmonitor.persistence import PersistenceWorkflow
from ipmonitor.record_store import LocalRecordStore
from ipmonitor.remote import RemoteReferenceClient
from ipmonitor.scheduler import PeriodicScheduler
from ipmonitor.utils import RateLimiter
from ipmonitor.vcs import GitClient

logger = logging.getLogger(__name__)


def build_monitor(settings: MonitorSettings, session: aiohttp.ClientSession) -> IpMonitor:
    """Wire the production components around one shared HTTP session."""
    detector = DetectionChain(
        default_strategies(session, timeout=settings.request_timeout_seconds),
        attempts=settings.detection_attempts,
        backoff_seconds=settings.detection_backoff_seconds,
        timeout=settings.request_timeout_seconds,
        remote_source=settings.remote_url,
    )
    store = LocalRecordStore(settings.record_path, settings.record_key, settings.record_backups)
    remote = RemoteReferenceClient(
        settings.remote_url, settings.record_key,
        timeout=settings.request_timeout_seconds, session=session,
    )
    workflow = PersistenceWorkflow(
        GitClient(settings.git_repo_dir, settings.git_timeout_seconds, settings.git_binary),
        target_files=settings.target_files,
        enabled=settings.git_enabled,
        auto_commit=settings.git_auto_commit,
        max_retries=settings.git_max_retries,
        backoff_seconds=settings.git_backoff_seconds,
        max_message_length=settings.commit_message_max_length,
    )

    notifier: Notifier
    if settings.telegram_enabled:
        notifier = TelegramNotifier(
            settings.telegram_token, settings.telegram_chat_id,
            timeout=settings.telegram_timeout_seconds,
            retry_attempts=settings.telegram_retry_attempts,
            rate_limiter=RateLimiter(
                settings.max_notifications_per_window,
                settings.notification_rate_window_seconds,
            ),
            session=session,
        )
    else:
        logger.info("Telegram not configured; change notifications go to the log only")
        notifier = LoggingNotifier()

    return IpMonitor(
        settings,
        detector=detector,
        store=store,
        remote=remote,
        workflow=workflow,
        health=HealthStatusTracker(settings.health_threshold, settings.max_recent_errors),
        scheduler=PeriodicScheduler(settings.check_interval_seconds),
        notifier=notifier,
    )


def render_result(console: Console, monitor: IpMonitor, result: Optional[Dict[str, Any]]) -> None:
    """Print a single-cycle result and the health snapshot."""
    snapshot = monitor.health.snapshot()
    table = Table(show_header=False, box=None)
    table.add_column("key", style="bold")
    table.add_column("value")

    result = result or {}
    if result.get("updated"):
        table.add_row("Change", f"{result['old_ip']} -> {result['new_ip']}")
        table.add_row("Publish", result["publish"]["message"])
    elif "error" in result:
        table.add_row("Error", f"[red]{result['error']}[/red]")
    else:
        table.add_row("Current IP", str(result.get("current_ip")))
    if result.get("method"):
        table.add_row("Method", result["method"])
    if result.get("degraded"):
        table.add_row("Remote", "[yellow]unavailable (compared against local)[/yellow]")
    table.add_row("Healthy", "[green]yes[/green]" if snapshot.healthy else "[red]no[/red]")
    table.add_row("Consecutive failures", str(snapshot.consecutive_failures))

    console.print(Panel(table, title="IP Monitor"))


def render_settings(console: Console, settings: MonitorSettings) -> None:
    table = Table(title="IP Monitor configuration")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for key, value in settings.summary().items():
        table.add_row(key, str(value))
    console.print(table)


async def shutdown(monitor: IpMonitor, health_server: Optional[HealthServer], reason: str) -> None:
    """Stop accepting manual triggers, then stop the monitor and notifier."""
    if health_server:
        # server_close joins handler threads that may be waiting on this loop
        await asyncio.to_thread(health_server.stop)
    await monitor.stop(reason)
    await monitor.notifier.close()


async def run(args: argparse.Namespace, settings: MonitorSettings) -> int:
    console = Console()
    async with aiohttp.ClientSession() as session:
        monitor = build_monitor(settings, session)

        if args.once:
            result = await monitor.run_cycle()
            render_result(console, monitor, result)
            await monitor.notifier.close()
            return 0 if result is not None and "error" not in result else 1

        health_server: Optional[HealthServer] = None
        if settings.health_server_enabled:
            health_server = HealthServer(monitor, settings.health_host, settings.health_port)
            health_server.start()

        stop_signal = asyncio.Event()
        stop_reason = {"reason": "Manual"}

        def handle_signal(sig: signal.Signals) -> None:
            logger.info("Received %s. Initiating graceful shutdown...", sig.name)
            stop_reason["reason"] = sig.name
            stop_signal.set()

        loop = asyncio.get_running_loop()
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, handle_signal, sig)

        try:
            await monitor.start()
        except ConfigurationError as e:
            logger.error("Startup validation failed: %s", e)
            if health_server:
                health_server.stop()
            return 1

        logger.info("Monitoring interval: %d minutes", round(settings.check_interval_seconds / 60))
        logger.info("Git integration: %s", "Enabled" if monitor.git_enabled else "Disabled")
        logger.info("Application startup completed. Press Ctrl+C to stop.")

        try:
            await stop_signal.wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            stop_reason["reason"] = "KeyboardInterrupt"
        finally:
            await shutdown(monitor, health_server, stop_reason["reason"])
        logger.info("Application shutdown completed gracefully")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Public IP monitor with git publishing")
    parser.add_argument("--once", action="store_true", help="Run a single check and exit")
    parser.add_argument("--status", action="store_true", help="Print configuration and exit")
    parser.add_argument("--no-git", action="store_true", help="Disable git commit/push")
    args = parser.parse_args()

    overrides: Dict[str, Any] = {}
    if args.no_git:
        overrides["git_enabled"] = False

    try:
        settings = load_settings(**overrides)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(settings.log_level, settings.log_file_path if settings.log_file_enabled else None)

    if args.status:
        render_settings(Console(), settings)
        return 0

    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
