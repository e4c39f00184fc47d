"""Notification dispatcher — signed pushes to Twitch extension PubSub and chat.

Outbound requests carry a short-lived token signed with the sending
extension identity's secret. Broadcasts that must reach every extension
variant installed on a channel go through ``send_dual_broadcast``, which
walks the configured identity table one at a time with a fixed spacing
between sends to stay under the platform's per-channel message rate.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Any, Callable

import aiohttp
import jwt

from .auth import decode_secret
from .errors import ConfigError, DispatchError

if TYPE_CHECKING:
    from .config import ExtensionIdentity, TwitchConfig


BROADCAST = "broadcast"


def whisper_target(opaque_user_id: str) -> str:
    return f"whisper-{opaque_user_id}"


def build_scoped_token(
    secret: str,
    channel_id: str,
    user_id: str | None = None,
    *,
    expires_at: int,
) -> str:
    """Sign an external-role token scoped to one channel.

    No ``iat`` claim is added; expiry is whatever the caller passes.
    """
    claims: dict[str, Any] = {
        "exp": expires_at,
        "role": "external",
        "channel_id": channel_id,
        "pubsub_perms": {"send": ["*"]},
    }
    if user_id:
        claims["user_id"] = user_id
    return jwt.encode(claims, decode_secret(secret), algorithm="HS256")


class ChannelRateLimiter:
    """Per-channel PubSub send budget for each extension client.

    Twitch caps extension PubSub messages per channel per minute. Send times
    are kept per ``(client_id, channel_id)``; pairs with no send inside the
    window are swept out by ``allow`` at most once a window.
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        max_per_minute: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max = max_per_minute
        self._clock = clock
        self._sent: dict[tuple[str, str], deque[float]] = {}
        self._next_sweep = clock() + self.WINDOW_SECONDS

    def __len__(self) -> int:
        return len(self._sent)

    def allow(self, client_id: str, channel_id: str) -> bool:
        """Record a send and return True, or return False when over budget."""
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)

        horizon = now - self.WINDOW_SECONDS
        sent = self._sent.setdefault((client_id, channel_id), deque())
        while sent and sent[0] <= horizon:
            sent.popleft()
        if len(sent) >= self._max:
            return False
        sent.append(now)
        return True

    def _sweep(self, now: float) -> None:
        horizon = now - self.WINDOW_SECONDS
        idle = [key for key, sent in self._sent.items() if not sent or sent[-1] <= horizon]
        for key in idle:
            del self._sent[key]
        self._next_sweep = now + self.WINDOW_SECONDS


class NotificationDispatcher:
    """Delivers state-change payloads to extension frontends."""

    def __init__(self, config: TwitchConfig, logger: logging.Logger) -> None:
        self._config = config
        self._logger = logger
        self._session: aiohttp.ClientSession | None = None
        self._limiter = ChannelRateLimiter(config.pubsub_max_per_minute)

    async def start(self) -> None:
        """Create the HTTP session."""
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._config.http_timeout_seconds),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    @property
    def identities(self) -> list[ExtensionIdentity]:
        return list(self._config.extensions)

    @property
    def primary(self) -> ExtensionIdentity:
        if not self._config.extensions:
            raise ConfigError("No extension identity configured")
        return self._config.extensions[0]

    def _token_for(self, identity: ExtensionIdentity, channel_id: str) -> str:
        return build_scoped_token(
            identity.secret,
            channel_id,
            identity.owner_id,
            expires_at=int(time.time()) + self._config.token_ttl_seconds,
        )

    # ══════════════════════════════════════════════════════════
    #  PubSub
    # ══════════════════════════════════════════════════════════

    async def send_targeted(
        self,
        identity: ExtensionIdentity,
        channel_id: str,
        targets: list[str],
        payload: Any,
    ) -> None:
        """Send payload to ``["broadcast"]`` or ``["whisper-<id>", ...]``."""
        if not self._limiter.allow(identity.client_id, channel_id):
            self._logger.warning(
                "PubSub rate limit reached for %s on channel %s", identity.label, channel_id,
            )
            raise DispatchError("PubSub rate limit reached", code="RateLimited")

        body = {
            "target": targets,
            "broadcaster_id": channel_id,
            "is_global_broadcast": False,
            "message": json.dumps(payload),
        }
        await self._post(identity, channel_id, self._config.pubsub_url, body)
        self._logger.debug("PubSub %s → %s %s", identity.label, channel_id, targets)

    async def whisper(self, channel_id: str, opaque_user_id: str, payload: Any) -> None:
        """Send payload to a single viewer under the primary identity."""
        await self.send_targeted(
            self.primary, channel_id, [whisper_target(opaque_user_id)], payload,
        )

    async def send_dual_broadcast(self, channel_id: str, payload: Any) -> list[str]:
        """Broadcast under every configured identity, spaced apart.

        Sends are strictly sequential. A failed send is logged and does not
        stop the remaining identities. Returns the labels that failed.
        """
        identities = self.identities
        if not identities:
            raise ConfigError("No extension identity configured")

        failed: list[str] = []
        for index, identity in enumerate(identities):
            if index:
                await asyncio.sleep(self._config.broadcast_spacing_seconds)
            try:
                await self.send_targeted(identity, channel_id, [BROADCAST], payload)
            except DispatchError as exc:
                self._logger.warning(
                    "Broadcast via %s to %s failed: %s", identity.label, channel_id, exc,
                )
                failed.append(identity.label)
        return failed

    # ══════════════════════════════════════════════════════════
    #  Chat
    # ══════════════════════════════════════════════════════════

    async def send_chat(
        self, identity: ExtensionIdentity, channel_id: str, text: str,
    ) -> None:
        """Post a public chat message as the extension."""
        body = {
            "text": text,
            "extension_id": identity.client_id,
            "extension_version": identity.version,
        }
        await self._post(
            identity, channel_id, self._config.chat_url, body,
            params={"broadcaster_id": channel_id},
        )

    # ══════════════════════════════════════════════════════════
    #  Internal Helpers
    # ══════════════════════════════════════════════════════════

    async def _post(
        self,
        identity: ExtensionIdentity,
        channel_id: str,
        url: str,
        body: dict,
        params: dict | None = None,
    ) -> None:
        if not self._session:
            raise DispatchError("Dispatcher not started")
        headers = {
            "Authorization": f"Bearer {self._token_for(identity, channel_id)}",
            "Client-Id": identity.client_id,
            "Content-Type": "application/json",
        }
        try:
            async with self._session.post(
                url, json=body, headers=headers, params=params,
            ) as resp:
                if resp.status >= 300:
                    detail = await resp.text()
                    raise DispatchError(f"{url} returned {resp.status}: {detail[:200]}")
        except asyncio.TimeoutError as exc:
            raise DispatchError(f"{url} timed out") from exc
        except aiohttp.ClientError as exc:
            raise DispatchError(f"{url} failed: {exc}") from exc
