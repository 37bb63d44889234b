"""Change notifications.

The monitor only knows the :class:`Notifier` interface and hands it a
:class:`~ipmonitor.models.ChangeEvent`.  :class:`TelegramNotifier` delivers
through the Telegram Bot API with rate limiting and retries;
:class:`LoggingNotifier` is used when Telegram is not configured.
"""

import html
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from ipmonitor.models import ChangeEvent
from ipmonitor.utils import RateLimiter, retry_with_backoff, utc_now_iso

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"

TYPE_EMOJIS = {
    "info": "ℹ️",
    "success": "✅",
    "warning": "⚠️",
    "error": "❌",
    "critical": "🚨",
    "ip_change": "🌐",
}


class Notifier(Protocol):
    """Receives monitor events; delivery problems must not raise."""

    async def notify_change(self, event: ChangeEvent) -> bool: ...

    async def notify_error(self, error: BaseException, context: str = "") -> bool: ...

    async def notify_start(self, interval_seconds: float, git_enabled: bool) -> bool: ...

    async def close(self) -> None: ...


class LoggingNotifier:
    """Notifier that only writes to the log."""

    async def notify_change(self, event: ChangeEvent) -> bool:
        logger.info("IP address changed: %s -> %s", event.old_address, event.new_address)
        return True

    async def notify_error(self, error: BaseException, context: str = "") -> bool:
        logger.error("Service error%s: %s", f" - {context}" if context else "", error)
        return True

    async def notify_start(self, interval_seconds: float, git_enabled: bool) -> bool:
        return True

    async def close(self) -> None:
        return None


@dataclass
class QueuedMessage:
    message: str
    type: str
    priority: str
    queued_at: str = field(default_factory=utc_now_iso)


class TelegramNotifier:
    """Sends HTML messages to one Telegram chat.

    Non-critical messages are subject to the rate limiter and queued when
    over budget; critical messages bypass it and are queued only when
    delivery fails.  :meth:`process_queue` drains the queue.
    """

    def __init__(self, token: str, chat_id: str, timeout: float = 30.0,
                 retry_attempts: int = 3, retry_delay: float = 1.0,
                 rate_limiter: Optional[RateLimiter] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.url = TELEGRAM_API_URL.format(token=token)
        self.chat_id = chat_id
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.rate_limiter = rate_limiter or RateLimiter()
        self.queue: List[QueuedMessage] = []
        self._session = session
        self._owns_session = session is None
        self._processing = False

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    @staticmethod
    def format_message(message: str, type_: str = "info") -> str:
        emoji = TYPE_EMOJIS.get(type_, TYPE_EMOJIS["info"])
        return f"{emoji} <b>{utc_now_iso()}</b>\n{message}"

    async def _post(self, text: str) -> None:
        session = await self._get_session()
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        async with session.post(
            self.url,
            json=payload,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                body = await response.text()
                raise RuntimeError(f"Telegram API returned {response.status}: {body[:200]}")

    async def send(self, message: str, type_: str = "info", priority: str = "normal") -> bool:
        """Deliver *message*; returns ``False`` when rate limited or failed."""
        if priority != "critical" and not self.rate_limiter.is_allowed():
            logger.warning("Notification rate limit exceeded, message queued")
            self.queue.append(QueuedMessage(message, type_, priority))
            return False

        text = self.format_message(message, type_)
        try:
            await retry_with_backoff(
                lambda: self._post(text),
                attempts=self.retry_attempts,
                base_delay=self.retry_delay,
                label="telegram send",
            )
        except Exception as e:
            logger.error("Failed to send Telegram notification: %s", e)
            if priority == "critical":
                self.queue.append(QueuedMessage(message, type_, priority))
            return False

        logger.info("Telegram notification sent: %s", type_)
        return True

    async def notify_change(self, event: ChangeEvent) -> bool:
        message = (
            "<b>IP Address Changed!</b>\n\n"
            f"Old IP: <code>{html.escape(str(event.old_address))}</code>\n"
            f"New IP: <code>{html.escape(event.new_address)}</code>"
        )
        return await self.send(message, "ip_change", "critical")

    async def notify_error(self, error: BaseException, context: str = "") -> bool:
        title = f"Service Error - {html.escape(context)}" if context else "Service Error"
        message = f"<b>{title}</b>\n\nError: <code>{html.escape(str(error))}</code>"
        return await self.send(message, "error", "normal")

    async def notify_start(self, interval_seconds: float, git_enabled: bool) -> bool:
        message = (
            "<b>IP Monitor Service Started</b>\n\n"
            f"📍 Monitoring interval: {round(interval_seconds / 60)} minutes\n"
            f"🔧 Git integration: {'Enabled' if git_enabled else 'Disabled'}"
        )
        return await self.send(message, "success", "normal")

    async def process_queue(self, max_messages: int = 3) -> int:
        """Retry up to *max_messages* queued messages, critical first.

        Returns:
            Number of messages delivered.
        """
        if self._processing or not self.queue:
            return 0
        self._processing = True
        sent = 0
        try:
            ordered = sorted(self.queue, key=lambda m: m.priority != "critical")
            batch = ordered[:max_messages]
            for msg in batch:
                self.queue.remove(msg)
            for msg in batch:
                if await self.send(msg.message, msg.type, msg.priority):
                    sent += 1
        finally:
            self._processing = False
        return sent

    def get_stats(self) -> Dict[str, Any]:
        return {
            "rate_limiter": self.rate_limiter.get_status(),
            "queue_length": len(self.queue),
            "critical_queued": sum(1 for m in self.queue if m.priority == "critical"),
        }

    async def close(self) -> None:
        if self._owns_session and self._session:
            await self._session.close()
