"""Public IP detection with ordered fallback strategies.

Each :class:`DetectionStrategy` is an independent external call (a DNS
query or an HTTP echo service).  :class:`DetectionChain` tries them in
priority order with a small bounded retry each and returns the first
syntactically valid address.  If every strategy fails the chain raises
:class:`~ipmonitor.exceptions.AllMethodsExhausted` carrying one error
entry per strategy.

Classes:
    DetectionStrategy: Name, priority and async fetch callable.
    DetectionChain: Priority-ordered cascade producing one result.

Functions:
    default_strategies: Google DNS, IPify, AWS CheckIP, HTTPBin, ICanHazIP.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from ipmonitor.exceptions import AllMethodsExhausted, InvalidAddressFormat, RetryExhausted
from ipmonitor.models import DetectionResult
from ipmonitor.utils import clean_token, is_valid_ip, retry_with_backoff, utc_now_iso

logger = logging.getLogger(__name__)

USER_AGENT = "ip-monitor/1.0"

GOOGLE_DNS_COMMAND = (
    "dig", "-4", "TXT", "+short", "o-o.myaddr.l.google.com", "@ns1.google.com",
)
IPIFY_URL = "https://api.ipify.org?format=text"
AWS_CHECKIP_URL = "https://checkip.amazonaws.com"
HTTPBIN_URL = "https://httpbin.org/ip"
ICANHAZIP_URL = "https://icanhazip.com"


@dataclass
class DetectionStrategy:
    """One way of learning the public address.

    Attributes:
        name: Human-readable label reported as ``DetectionResult.method``.
        priority: Lower values are tried first.
        fetch: Coroutine function returning the raw address token.
    """

    name: str
    priority: int
    fetch: Callable[[], Awaitable[str]]


class DetectionChain:
    """Runs strategies in priority order until one yields a valid address."""

    def __init__(self, strategies: Sequence[DetectionStrategy], attempts: int = 2,
                 backoff_seconds: float = 1.0, timeout: Optional[float] = None,
                 remote_source: Optional[str] = None):
        if not strategies:
            raise ValueError("DetectionChain needs at least one strategy")
        self.strategies: List[DetectionStrategy] = sorted(strategies, key=lambda s: s.priority)
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout
        self.remote_source = remote_source

    async def _attempt(self, strategy: DetectionStrategy) -> str:
        token = clean_token(await strategy.fetch())
        if not is_valid_ip(token):
            raise InvalidAddressFormat(token, strategy.name)
        return token

    async def detect(self) -> DetectionResult:
        """Return the first validated public address.

        Raises:
            AllMethodsExhausted: If every strategy failed.
        """
        errors: List[Dict[str, str]] = []

        for strategy in self.strategies:
            logger.info("Attempting IP detection using %s", strategy.name)
            try:
                address = await retry_with_backoff(
                    lambda s=strategy: self._attempt(s),
                    attempts=self.attempts,
                    base_delay=self.backoff_seconds,
                    label=strategy.name,
                )
            except RetryExhausted as e:
                message = f"{strategy.name} failed: {e.last_error}"
                logger.warning(message)
                errors.append({"method": strategy.name, "error": message})
                continue

            logger.info("Successfully detected IP using %s: %s", strategy.name, address)
            return DetectionResult(address=address, method=strategy.name)

        raise AllMethodsExhausted(errors)

    async def validate_service(self) -> Dict[str, Any]:
        """Dry-run detection; never raises."""
        try:
            result = await self.detect()
        except AllMethodsExhausted as e:
            return {"healthy": False, "error": str(e), "timestamp": utc_now_iso()}
        return {
            "healthy": True,
            "ip": result.address,
            "method": result.method,
            "timestamp": result.observed_at,
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "available_methods": len(self.strategies),
            "methods": [{"name": s.name, "priority": s.priority} for s in self.strategies],
            "timeout": self.timeout,
            "remote_source": self.remote_source,
        }


async def run_dig(command: Sequence[str] = GOOGLE_DNS_COMMAND, timeout: float = 30.0) -> str:
    """Resolve the public address through Google's ``o-o.myaddr`` TXT record."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise RuntimeError(f"Command execution failed: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise RuntimeError(f"Command timed out after {timeout}s") from None

    err = stderr.decode("utf-8", errors="replace").strip()
    if proc.returncode != 0 or err:
        raise RuntimeError(f"Command failed ({proc.returncode}): {err}")
    return stdout.decode("utf-8", errors="replace")


def http_text_strategy(url: str, session: aiohttp.ClientSession,
                       timeout: float) -> Callable[[], Awaitable[str]]:
    """Build a fetcher returning the plain-text body of *url*."""

    async def fetch() -> str:
        async with session.get(
            url,
            headers={"User-Agent": USER_AGENT},
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            if response.status != 200:
                raise RuntimeError(f"HTTP {response.status} from {url}")
            return await response.text()

    return fetch


def http_json_strategy(url: str, field: str, session: aiohttp.ClientSession,
                       timeout: float) -> Callable[[], Awaitable[str]]:
    """Build a fetcher returning ``body[field]`` of a JSON response."""

    async def fetch() -> str:
        async with session.get(
            url,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            if response.status != 200:
                raise RuntimeError(f"HTTP {response.status} from {url}")
            data = json.loads(await response.text())
            value = data.get(field) if isinstance(data, dict) else None
            return value if isinstance(value, str) else ""

    return fetch


def default_strategies(session: aiohttp.ClientSession, timeout: float = 30.0) -> List[DetectionStrategy]:
    """The production strategy set, most reliable first."""
    return [
        DetectionStrategy("Google DNS", 1, lambda: run_dig(timeout=timeout)),
        DetectionStrategy("IPify API", 2, http_text_strategy(IPIFY_URL, session, timeout)),
        DetectionStrategy("AWS CheckIP", 3, http_text_strategy(AWS_CHECKIP_URL, session, timeout)),
        DetectionStrategy("HTTPBin", 4, http_json_strategy(HTTPBIN_URL, "origin", session, timeout)),
        DetectionStrategy("ICanHazIP", 5, http_text_strategy(ICANHAZIP_URL, session, timeout)),
    ]
