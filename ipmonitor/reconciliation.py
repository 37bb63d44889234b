"""Three-way comparison of local, public and remote addresses.

Pure functions, no I/O.  When the remote reference could not be fetched
the caller passes ``None`` and the local address stands in for it.  In
that degraded mode a stale remote mirror cannot be noticed until the
remote is reachable again; decisions carry ``degraded=True`` so callers
can report it.
"""

from typing import Optional

from ipmonitor.models import ReconciliationDecision


def _norm(value: Optional[str]) -> str:
    return str(value).strip() if value is not None else ""


def addresses_equal(a: Optional[str], b: Optional[str]) -> bool:
    """Exact string match after trimming."""
    return _norm(a) == _norm(b)


def reconcile(local: str, public: str, remote: Optional[str]) -> ReconciliationDecision:
    """Decide whether the record needs updating.

    Args:
        local: Address in the local record.
        public: Freshly detected public address.
        remote: Address in the remote mirror, or ``None`` if unavailable.

    Returns:
        Decision with ``needs_update = local != public or remote != public``.
    """
    degraded = remote is None
    local_n = _norm(local)
    public_n = _norm(public)
    remote_n = local_n if degraded else _norm(remote)

    needs_update = (
        not addresses_equal(local_n, public_n)
        or not addresses_equal(remote_n, public_n)
    )
    return ReconciliationDecision(
        needs_update=needs_update,
        local_address=local_n,
        public_address=public_n,
        remote_address=remote_n,
        degraded=degraded,
    )


class ReconciliationEngine:
    """Injectable wrapper around :func:`reconcile`."""

    def reconcile(self, local: str, public: str, remote: Optional[str]) -> ReconciliationDecision:
        return reconcile(local, public, remote)
