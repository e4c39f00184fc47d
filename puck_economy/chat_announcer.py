"""Fire-and-forget public chat acknowledgments.

Announcements are queued and drained by a background loop, so a caller never
waits on (or fails because of) the chat endpoint. Features:
- Deduplication (suppress identical messages within a time window)
- Rate limiting (max messages/minute to chat)
- Batch delay between sends
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from .config import AnnouncementsConfig
    from .dispatcher import NotificationDispatcher


class ChatAnnouncer:
    """Queued, rate-limited chat messages sent as the primary extension."""

    def __init__(
        self,
        config: AnnouncementsConfig,
        dispatcher: NotificationDispatcher,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._dispatcher = dispatcher
        self._logger = logger

        # Dedup ring buffer: (message_hash, timestamp)
        self._recent: deque[tuple[int, float]] = deque(maxlen=100)
        # Outbound queue: (channel_id, message)
        self._queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue()
        self._flush_task: asyncio.Task | None = None

        self._sent_this_minute = 0
        self._minute_start = datetime.now(timezone.utc).timestamp()

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        """Start the announcement flush loop."""
        self._flush_task = asyncio.create_task(self._flush_loop())

    async def stop(self) -> None:
        """Stop the flush loop."""
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

    # ── Public API ───────────────────────────────────────────

    def announce(
        self,
        channel_id: str,
        template: str,
        variables: dict[str, Any] | None = None,
        dedup_key: str | None = None,
    ) -> bool:
        """Queue a chat message. Returns True if it was queued.

        Without variables the template is sent verbatim. Messages carrying
        distinct ``dedup_key`` values are never deduped against each other.
        """
        if not self._config.enabled or not template:
            return False
        message = template
        if variables is not None:
            try:
                message = template.format(**variables)
            except (KeyError, IndexError) as exc:
                self._logger.warning("Chat template render failed: %s", exc)
                return False

        if self._is_duplicate(channel_id, message, dedup_key):
            self._logger.debug("Deduped announcement: %s", message[:60])
            return False
        self._queue.put_nowait((channel_id, message))
        return True

    # ── Internal ─────────────────────────────────────────────

    def _is_duplicate(self, channel_id: str, message: str, dedup_key: str | None = None) -> bool:
        """Return True if this exact message was sent recently."""
        msg_hash = hash((channel_id, message, dedup_key))
        now = datetime.now(timezone.utc).timestamp()
        window = self._config.dedup_window_seconds
        if any(h == msg_hash and now - t < window for h, t in self._recent):
            return True
        self._recent.append((msg_hash, now))
        return False

    async def _send_one(self, channel_id: str, message: str) -> bool:
        """Send one message subject to the per-minute cap. Never raises."""
        now = datetime.now(timezone.utc).timestamp()
        if now - self._minute_start >= 60:
            self._sent_this_minute = 0
            self._minute_start = now

        if self._sent_this_minute >= self._config.max_per_minute:
            self._logger.warning("Announcement rate limit hit, dropping: %s", message[:60])
            return False

        try:
            await self._dispatcher.send_chat(self._dispatcher.primary, channel_id, message)
        except Exception as exc:
            self._logger.error("Announcement send failed: %s", exc)
            return False
        self._sent_this_minute += 1
        return True

    async def _flush_loop(self) -> None:
        """Drain the announcement queue."""
        while True:
            channel_id, message = await self._queue.get()
            await self._send_one(channel_id, message)
            await asyncio.sleep(self._config.batch_delay_seconds)
