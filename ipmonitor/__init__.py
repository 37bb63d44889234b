"""
IP monitor package.

Watches the host's public IP address, keeps a local JSON record and its
remote mirror in sync, and publishes changes through git.

Submodules:
    config: Application settings (``MonitorSettings``) via Pydantic.
    orchestrator: ``IpMonitor`` lifecycle and debounced check cycle.
    detection: ``DetectionChain`` with ordered fallback strategies.
    reconciliation: Pure local/public/remote comparison.
    persistence: ``PersistenceWorkflow`` git publish with retry and rollback.
    vcs: ``VersionControl`` interface and ``GitClient`` subprocess backend.
    record_store: Local JSON address record.
    remote: Read-only client for the remote record mirror.
    health: ``HealthStatusTracker`` state machine.
    health_endpoint: HTTP server exposing ``/health``, ``/status``, ``/metrics``.
    notifier: ``Notifier`` interface and Telegram delivery.
    scheduler: ``PeriodicScheduler`` with cooperative cancellation.
    logging_setup: Compressed rotating file + safe console logging.
    utils: Validation, retry, rate limiting, debounce and JSON helpers.
    exceptions: Error taxonomy.
"""

__version__ = "1.0.0"
