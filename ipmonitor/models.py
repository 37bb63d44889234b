"""Data structures passed between the monitor components."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from ipmonitor.utils import utc_now_iso

SERVICE_NAME = "ip-monitor-service"


@dataclass
class AddressRecord:
    """Persisted address record (local file or remote mirror).

    Attributes:
        address: The IPv4/IPv6 address.
        last_updated: ISO-8601 timestamp of the last write.
        updated_by: Writer identifier.
    """

    address: str
    last_updated: Optional[str] = None
    updated_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], key: str = "ip") -> "AddressRecord":
        """Build a record from the on-disk JSON layout.

        The address is read from *key*, falling back to ``"ip"``.
        """
        address = data.get(key) or data.get("ip") or ""
        return cls(
            address=str(address).strip(),
            last_updated=data.get("lastUpdated"),
            updated_by=data.get("lastUpdateBy") or data.get("createdBy"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DetectionResult:
    """One validated public address produced by the detection chain."""

    address: str
    method: str
    observed_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReconciliationDecision:
    """Outcome of comparing local, public and remote addresses.

    ``degraded`` is set when the remote reference was unavailable and the
    local address stood in for it.
    """

    needs_update: bool
    local_address: str
    public_address: str
    remote_address: str
    degraded: bool = False

    @property
    def old_address(self) -> str:
        return self.local_address

    @property
    def new_address(self) -> str:
        return self.public_address

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ChangeEvent:
    """Payload delivered to notifiers and kept as ``HealthState.last_change``."""

    old_address: Optional[str]
    new_address: str
    at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PublishResult:
    """Result of the version-control publish workflow.

    ``rolled_back`` is ``None`` when no rollback was attempted, otherwise
    whether the last rollback succeeded.
    """

    success: bool
    message: str
    operations: List[str] = field(default_factory=list)
    rolled_back: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HealthState:
    """Point-in-time copy of the health tracker's state."""

    healthy: bool = True
    last_check_at: Optional[str] = None
    last_success_at: Optional[str] = None
    consecutive_failures: int = 0
    total_checks: int = 0
    last_change: Optional[ChangeEvent] = None
    recent_errors: List[Dict[str, str]] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["last_change"] = self.last_change.to_dict() if self.last_change else None
        return result
