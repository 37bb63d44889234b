"""Read-only client for the remote copy of the address record."""

import json
import logging
from typing import Optional

import aiohttp

from ipmonitor.exceptions import RemoteFetchFailure
from ipmonitor.models import AddressRecord
from ipmonitor.utils import is_valid_ip

logger = logging.getLogger(__name__)

USER_AGENT = "ip-monitor/1.0"


class RemoteReferenceClient:
    """Fetches the remote mirror of the address record over HTTP.

    Any transport error, non-200 status, malformed body or invalid address
    is reported as :class:`RemoteFetchFailure`; callers treat that as
    "remote unavailable".
    """

    def __init__(self, url: str, key: str = "ip", timeout: float = 30.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.url = url
        self.key = key
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def fetch(self) -> AddressRecord:
        """Fetch and validate the remote record.

        Raises:
            RemoteFetchFailure: If the remote is unavailable or invalid.
        """
        logger.info("Fetching remote IP from: %s", self.url)
        headers = {
            "Accept": "application/json",
            "Cache-Control": "no-cache",
            "User-Agent": USER_AGENT,
        }
        try:
            session = await self._get_session()
            async with session.get(
                self.url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status != 200:
                    raise RemoteFetchFailure(f"Remote returned HTTP {response.status}")
                body = await response.text()
        except RemoteFetchFailure:
            raise
        except Exception as e:
            raise RemoteFetchFailure(f"Failed to fetch remote IP: {e}") from e

        try:
            data = json.loads(body)
        except ValueError as e:
            raise RemoteFetchFailure(f"Remote record is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise RemoteFetchFailure("Remote record is not a JSON object")

        record = AddressRecord.from_dict(data, self.key)
        if not is_valid_ip(record.address):
            raise RemoteFetchFailure(f"Invalid remote IP format: {record.address!r}")

        logger.info("Successfully fetched remote IP: %s", record.address)
        return record

    async def close(self) -> None:
        if self._owns_session and self._session:
            await self._session.close()
