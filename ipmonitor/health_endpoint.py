"""HTTP health endpoint for the IP monitor.

Runs a small threaded HTTP server next to the asyncio loop so uptime
monitors, load balancers and container health checks can poll the
monitor.

Endpoints:
    GET  /          -- Endpoint index.
    GET  /health    -- 200 if healthy, 503 if unhealthy.
    GET  /status    -- Detailed status as JSON.
    GET  /metrics   -- Prometheus text exposition.
    GET  /api/ip    -- Current local record.
    POST /api/check -- Trigger a cycle (409 if one is already running,
                       503 once the monitor is stopping).
"""

import asyncio
import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional, Tuple

from ipmonitor.exceptions import RecordReadError
from ipmonitor.orchestrator import IpMonitor, MonitorState
from ipmonitor.utils import utc_now_iso

logger = logging.getLogger(__name__)

# Upper bound for calls into the event loop from the server thread
LOOP_CALL_TIMEOUT_SECONDS = 120


def format_prometheus_metrics(health: Dict[str, Any], status: Dict[str, Any]) -> str:
    """Render health/status dicts in Prometheus text format."""
    service = status.get("service", {})
    lines: List[str] = []

    def gauge(name: str, help_text: str, value: float, kind: str = "gauge") -> None:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {kind}")
        lines.append(f"{name} {value}")

    gauge("ip_monitor_up", "Whether the IP monitor service is running",
          1 if service.get("is_running") else 0)
    gauge("ip_monitor_uptime_seconds", "Service uptime in seconds",
          int(health.get("uptime_seconds", 0)), "counter")
    gauge("ip_monitor_healthy", "Whether the service is healthy",
          1 if health.get("healthy") else 0)
    gauge("ip_monitor_consecutive_failures", "Consecutive failed checks",
          health.get("consecutive_failures", 0))
    gauge("ip_monitor_checks_total", "Total number of IP checks performed",
          health.get("total_checks", 0), "counter")
    if health.get("last_check_epoch") is not None:
        gauge("ip_monitor_last_check_timestamp_seconds", "Timestamp of last IP check",
              int(health["last_check_epoch"]))
    gauge("ip_monitor_git_enabled", "Whether Git integration is enabled",
          1 if service.get("git_enabled") else 0)
    return "\n".join(lines) + "\n"


class HealthHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the monitor endpoints."""

    # Set by HealthServer before serving
    monitor: Optional[IpMonitor] = None
    loop: Optional[asyncio.AbstractEventLoop] = None

    def _call_in_loop(self, coro: Any) -> Any:
        if self.loop is None:
            coro.close()
            raise RuntimeError("Event loop not attached")
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout=LOOP_CALL_TIMEOUT_SECONDS)

    def _send_json(self, code: int, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload, indent=2, default=str).encode()
        self.send_response(code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        self._send_json(code, {"error": message, "path": self.path, "timestamp": utc_now_iso()})

    def do_GET(self) -> None:  # noqa: N802 -- required by BaseHTTPRequestHandler
        routes = {
            '/': self._handle_index,
            '/health': self._handle_health,
            '/status': self._handle_status,
            '/metrics': self._handle_metrics,
            '/api/ip': self._handle_ip,
        }
        handler = routes.get(self.path.split('?', 1)[0])
        if handler is None:
            self._send_error_json(404, "Endpoint not found")
            return
        handler()

    def do_POST(self) -> None:  # noqa: N802
        if self.path.split('?', 1)[0] == '/api/check':
            self._handle_check()
        else:
            self._send_error_json(404, "Endpoint not found")

    def _handle_index(self) -> None:
        self._send_json(200, {
            "service": "IP Monitor Service",
            "timestamp": utc_now_iso(),
            "endpoints": {
                "health": "/health",
                "status": "/status",
                "metrics": "/metrics",
                "ip": "/api/ip",
                "check": "POST /api/check",
            },
        })

    def _handle_health(self) -> None:
        """Return 200 when healthy and 503 otherwise."""
        try:
            health = self.monitor.get_health()
        except Exception as e:
            logger.error("Health check error: %s", e, exc_info=True)
            self._send_json(503, {"status": "unhealthy", "error": str(e),
                                  "timestamp": utc_now_iso()})
            return
        self._send_json(200 if health["healthy"] else 503, health)

    def _handle_status(self) -> None:
        try:
            status = self._call_in_loop(self.monitor.get_status())
        except Exception as e:
            logger.error("Status check failed: %s", e, exc_info=True)
            self._send_error_json(500, str(e))
            return
        self._send_json(200, status)

    def _handle_metrics(self) -> None:
        try:
            status = self._call_in_loop(self.monitor.get_status())
            health = dict(status["health"])
            health["last_check_epoch"] = self.monitor.health.last_check_epoch()
            text = format_prometheus_metrics(health, status).encode()
        except Exception as e:
            logger.error("Metrics generation failed: %s", e, exc_info=True)
            self._send_error_json(500, str(e))
            return
        self.send_response(200)
        self.send_header('Content-Type', 'text/plain; version=0.0.4')
        self.send_header('Content-Length', str(len(text)))
        self.end_headers()
        self.wfile.write(text)

    def _handle_ip(self) -> None:
        try:
            record = self.monitor.store.read()
        except RecordReadError as e:
            self._send_error_json(500, str(e))
            return
        payload = record.to_dict()
        payload["timestamp"] = utc_now_iso()
        self._send_json(200, payload)

    def _handle_check(self) -> None:
        try:
            result = self._call_in_loop(self.monitor.trigger())
        except Exception as e:
            logger.error("Manual IP check failed: %s", e, exc_info=True)
            self._send_json(500, {"success": False, "error": str(e), "timestamp": utc_now_iso()})
            return
        if result is None:
            if self.monitor.state in (MonitorState.STOPPING, MonitorState.STOPPED):
                self._send_json(503, {"success": False, "error": "Monitor is stopping",
                                      "timestamp": utc_now_iso()})
                return
            self._send_json(409, {"success": False, "error": "IP check already in progress",
                                  "timestamp": utc_now_iso()})
            return
        self._send_json(200, {"success": "error" not in result, "result": result,
                              "timestamp": utc_now_iso()})

    def log_message(self, fmt: str, *args: object) -> None:
        """Route HTTP access logs through Python logging."""
        logger.debug("%s - %s", self.address_string(), fmt % args)


class HealthServer:
    """Owns the HTTP server thread."""

    def __init__(self, monitor: IpMonitor, host: str = '0.0.0.0', port: int = 3000):
        self.monitor = monitor
        self.host = host
        self.port = port
        self._httpd: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        if self._httpd is None:
            return None
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Bind and serve in a daemon thread.

        Args:
            loop: Event loop running the monitor; defaults to the running
                loop.
        """
        handler = type("BoundHealthHandler", (HealthHandler,), {
            "monitor": self.monitor,
            "loop": loop or asyncio.get_running_loop(),
        })
        self._httpd = ThreadingHTTPServer((self.host, self.port), handler)
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="health-endpoint", daemon=True,
        )
        self._thread.start()
        host, port = self.address
        logger.info("Health server started on %s:%d", host, port)
        logger.info("Health check: http://%s:%d/health", host, port)

    def stop(self) -> None:
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._httpd = None
        self._thread = None
        logger.info("Health server stopped")
