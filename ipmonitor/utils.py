"""Shared utility functions for the IP monitor.

Provides the small control primitives every other module leans on:

* Address validation and token cleaning.
* Commit-message sanitising.
* Async retry with exponential backoff.
* A sliding-window :class:`RateLimiter` for notifications.
* A :class:`DebounceGuard` that collapses overlapping triggers.
* Corruption-safe JSON read/write helpers with backup rotation.
"""

import asyncio
import json
import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ipmonitor.exceptions import RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IPV4_RE = re.compile(
    r"^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$"
)
_IPV6_RE = re.compile(r"^(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}$")

# Characters with meaning to a shell or to git's option parser.
_COMMIT_UNSAFE_RE = re.compile(r"[`$(){}\[\]|&;]")

DEFAULT_COMMIT_MESSAGE = "Update IP"


def utc_now_iso() -> str:
    """Return the current UTC time as ISO-8601 with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_valid_ip(value: Any) -> bool:
    """Check whether *value* is a dotted-quad IPv4 or a full 8-group IPv6.

    Compressed IPv6 notation (``::``) is deliberately not accepted.
    """
    if not value or not isinstance(value, str):
        return False
    return bool(_IPV4_RE.match(value) or _IPV6_RE.match(value))


def clean_token(value: Any) -> str:
    """Strip whitespace, surrounding quotes and newlines from a response."""
    if not value or not isinstance(value, str):
        return ""
    token = value.strip()
    token = re.sub(r"^[\"']+|[\"']+$", "", token)
    return token.replace("\n", "").replace("\r", "")


def sanitize_commit_message(message: Any, max_length: int = 100) -> str:
    """Make *message* safe to hand to ``git commit -m``.

    Args:
        message: Raw commit message.
        max_length: Maximum length of the returned message.

    Returns:
        The sanitised message, or ``"Update IP"`` when nothing usable
        remains.
    """
    if not message or not isinstance(message, str):
        return DEFAULT_COMMIT_MESSAGE
    cleaned = _COMMIT_UNSAFE_RE.sub("", message)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    cleaned = cleaned[:max_length].strip()
    return cleaned or DEFAULT_COMMIT_MESSAGE


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 1.0,
    label: str = "operation",
) -> T:
    """Await ``fn()`` up to *attempts* times with exponential backoff.

    The delay before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``.

    Raises:
        RetryExhausted: If every attempt raised.  The last error is
            chained as ``__cause__``.
    """
    attempts = max(1, attempts)
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            if attempt == attempts:
                break
            delay = base_delay * (2 ** (attempt - 1))
            logger.debug(
                "%s attempt %d/%d failed (%s), retrying in %.1fs",
                label, attempt, attempts, e, delay,
            )
            await asyncio.sleep(delay)
    assert last_error is not None
    raise RetryExhausted(attempts, last_error) from last_error


class RateLimiter:
    """Sliding-window limiter: at most *max_calls* per *window_seconds*."""

    def __init__(self, max_calls: int = 5, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: List[float] = []

    def _prune(self, now: float) -> None:
        self._calls = [t for t in self._calls if now - t < self.window_seconds]

    def is_allowed(self) -> bool:
        """Consume one slot if available."""
        now = self._clock()
        self._prune(now)
        if len(self._calls) < self.max_calls:
            self._calls.append(now)
            return True
        return False

    def get_status(self) -> Dict[str, float]:
        now = self._clock()
        self._prune(now)
        return {
            "remaining": max(0, self.max_calls - len(self._calls)),
            "reset_at": self._calls[0] + self.window_seconds if self._calls else now,
        }


class DebounceGuard:
    """Allow at most one run in flight; overlapping triggers are dropped.

    All access happens on the event loop thread, so a plain flag is
    enough.
    """

    def __init__(self) -> None:
        self._busy = False
        self.dropped = 0

    @property
    def busy(self) -> bool:
        return self._busy

    def try_acquire(self) -> bool:
        if self._busy:
            self.dropped += 1
            return False
        self._busy = True
        return True

    def release(self) -> None:
        self._busy = False

    async def run(self, coro_fn: Callable[[], Awaitable[T]]) -> Optional[T]:
        """Run ``coro_fn()`` unless another run is in flight.

        Returns:
            The coroutine's result, or ``None`` when the trigger was
            dropped.
        """
        if not self.try_acquire():
            return None
        try:
            return await coro_fn()
        finally:
            self.release()


def safe_json_read(
    filepath: str, max_backups: int = 3,
) -> Optional[Dict[str, Any]]:
    """Read JSON with fallback to backups if corrupted.

    Tries the primary file first, then checks numbered backup files
    (e.g. ``file.json.backup.1``, ``file.json.backup.2``) in order
    until a valid JSON object is found.

    Args:
        filepath: Path to the primary JSON file.
        max_backups: Maximum number of backup files to check
            (default ``3``).

    Returns:
        Parsed dictionary on success, or ``None`` if all files are
        missing or corrupted.
    """
    paths = [filepath] + [
        f"{filepath}.backup.{i}"
        for i in range(1, max_backups + 1)
    ]
    for path in paths:
        if not os.path.exists(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("Could not read JSON from %s: %s", path, e)
            continue
        if isinstance(data, dict):
            if path != filepath:
                logger.warning("Recovered %s from backup %s", filepath, path)
            return data
    return None


def safe_json_write(
    filepath: str,
    data: Dict[str, Any],
    max_backups: int = 3,
) -> None:
    """Atomic JSON write with corruption protection and backups.

    The write sequence is:
        1. Rotate existing backups (``backup.2`` -> ``backup.3``, etc.).
        2. Copy the current file to ``backup.1``.
        3. Write new data to a temporary file.
        4. Validate the temporary file by re-reading it.
        5. Atomically replace the target with the temporary file.

    Raises:
        OSError: If any filesystem step fails.
        ValueError: If *data* is not JSON serialisable.
    """
    dirpath = os.path.dirname(filepath)
    if dirpath:
        os.makedirs(dirpath, exist_ok=True)

    try:
        payload = json.dumps(data, indent=2)
    except TypeError as e:
        raise ValueError(f"Data is not JSON serialisable: {e}") from e

    if os.path.exists(filepath) and max_backups > 0:
        backup_base = filepath + ".backup"
        for i in range(max_backups - 1, 0, -1):
            old = f"{backup_base}.{i}"
            new = f"{backup_base}.{i + 1}"
            if os.path.exists(old):
                os.replace(old, new)
        with open(filepath, "rb") as src, open(f"{backup_base}.1", "wb") as dst:
            dst.write(src.read())

    temp_file = filepath + ".tmp"
    with open(temp_file, "w", encoding="utf-8") as fh:
        fh.write(payload + "\n")

    # Validate by re-reading before committing
    with open(temp_file, "r", encoding="utf-8") as fh:
        json.load(fh)

    os.replace(temp_file, filepath)
