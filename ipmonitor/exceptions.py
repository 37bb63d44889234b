"""Exception taxonomy for the IP monitor.

Detection and remote-fetch errors are absorbed where they occur and only
surface through the health snapshot.  Persistence and version-control
errors abort the current cycle but never the process.
:class:`ConfigurationError` is the only error that stops the service from
starting.
"""

from typing import Any, Dict, List, Optional


class IpMonitorError(Exception):
    """Base class for all IP monitor errors."""


class ConfigurationError(IpMonitorError):
    """Invalid or missing settings detected at startup."""


class InvalidAddressFormat(IpMonitorError):
    """A strategy or file returned a token that is not an IPv4/IPv6 address."""

    def __init__(self, value: Any, source: str = "unknown") -> None:
        self.value = value
        self.source = source
        super().__init__(f"Invalid IP format received from {source}: {value!r}")


class AllMethodsExhausted(IpMonitorError):
    """Every detection strategy failed.

    Attributes:
        errors: One ``{"method": ..., "error": ...}`` entry per strategy,
            in the order the strategies were tried.
    """

    def __init__(self, errors: List[Dict[str, str]]) -> None:
        self.errors = list(errors)
        summary = "; ".join(f"{e['method']}: {e['error']}" for e in self.errors)
        super().__init__(f"All IP detection methods failed. Errors: {summary}")


class RemoteFetchFailure(IpMonitorError):
    """The remote reference could not be fetched or parsed."""


class RecordReadError(IpMonitorError):
    """The local address record is missing, unreadable or invalid."""


class PersistenceWriteFailure(IpMonitorError):
    """Writing the local address record failed."""


class RetryExhausted(IpMonitorError):
    """An operation still failed after the configured number of attempts."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempts: {last_error}")


class VersionControlStepFailure(IpMonitorError):
    """A version-control step (pull, add, commit, push...) failed."""

    def __init__(self, step: str, cause: Optional[BaseException] = None, message: str = "") -> None:
        self.step = step
        self.cause = cause
        detail = message or (str(cause) if cause else "unknown error")
        super().__init__(f"Git step '{step}' failed: {detail}")


class GitCommandError(VersionControlStepFailure):
    """A git subprocess exited non-zero, timed out or could not be spawned."""

    def __init__(self, step: str, returncode: int, stderr: str) -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(step, message=f"exit code {returncode}: {stderr.strip()}")


class RollbackFailed(IpMonitorError):
    """Reverting the last local commit failed (logged, never escalated)."""
