"""Local address record stored as a JSON file.

The file is rewritten in place on every update; unrelated keys already in
the file are preserved.
"""

import logging
import os
from typing import Any, Dict, Optional

from ipmonitor.exceptions import InvalidAddressFormat, PersistenceWriteFailure, RecordReadError
from ipmonitor.models import SERVICE_NAME, AddressRecord
from ipmonitor.utils import is_valid_ip, safe_json_read, safe_json_write, utc_now_iso

logger = logging.getLogger(__name__)


class LocalRecordStore:
    """Reads and writes the persisted :class:`AddressRecord`."""

    def __init__(self, path: str, key: str = "ip", backups: int = 0):
        self.path = path
        self.key = key
        self.backups = backups

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def _read_raw(self) -> Optional[Dict[str, Any]]:
        return safe_json_read(self.path, max_backups=self.backups)

    def read(self) -> AddressRecord:
        """Load the record.

        Raises:
            RecordReadError: If the file is missing, unparsable or holds
                an invalid address.
        """
        data = self._read_raw()
        if data is None:
            raise RecordReadError(f"Failed to read local IP: no readable record at {self.path}")
        record = AddressRecord.from_dict(data, self.key)
        if not is_valid_ip(record.address):
            raise RecordReadError(
                f"Failed to read local IP: invalid or missing IP in {self.path} ({record.address!r})"
            )
        return record

    def read_address(self) -> str:
        return self.read().address

    def write(self, address: str, created: bool = False) -> AddressRecord:
        """Persist *address*, merging with any existing content.

        Args:
            address: New address; must pass validation.
            created: Mark the record as freshly seeded (``createdBy``)
                instead of updated (``lastUpdateBy``).

        Raises:
            PersistenceWriteFailure: If the address is invalid or the
                write fails.
        """
        if not is_valid_ip(address):
            raise PersistenceWriteFailure(str(InvalidAddressFormat(address, "record write")))

        existing = self._read_raw() or {}
        timestamp = utc_now_iso()
        data = dict(existing)
        data[self.key] = address
        data["lastUpdated"] = timestamp
        data["createdBy" if created else "lastUpdateBy"] = SERVICE_NAME

        try:
            safe_json_write(self.path, data, max_backups=self.backups)
        except (OSError, ValueError) as e:
            raise PersistenceWriteFailure(f"Failed to update local config: {e}") from e

        logger.info("Local IP record %s: %s", "created" if created else "updated", address)
        return AddressRecord(address=address, last_updated=timestamp, updated_by=SERVICE_NAME)
