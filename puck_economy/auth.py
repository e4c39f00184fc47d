"""Credential verification for the two caller classes.

* Extension frontends present a short-lived HS256 token signed by Twitch
  with the extension's shared secret. Any configured identity's secret may
  have signed it (primary first, then the rest), so a secret can be rotated
  or a second extension variant served without downtime.
* Privileged backend callers present a trust hash: an md5 hex digest this
  service issued once after validating a Twitch OAuth token, stored under
  the caller's scope (channel / user id) and compared on every request.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aiohttp
import jwt

from .database import key_segment
from .errors import AuthError, ConfigError
from .utils import now_iso

if TYPE_CHECKING:
    from .config import TwitchConfig
    from .database import TreeDatabase


TRUST_TOKENS_PATH = "trustTokens"


def trust_token_path(scope: str) -> str:
    return f"{TRUST_TOKENS_PATH}/{key_segment(scope, 'scope')}"


def decode_secret(secret: str) -> bytes:
    """Decode a base64 extension secret into raw key bytes."""
    try:
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigError("Extension secret is not valid base64") from exc


def compute_trust_hash(scope: str, platform_token: str, salt: str) -> str:
    return hashlib.md5(f"{scope}{platform_token}{salt}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TrustToken:
    scope: str
    hash: str
    last_validated: str
    login: str = ""
    user_id: str = ""

    def to_json(self) -> dict:
        return {
            "hash": self.hash,
            "lastValidated": self.last_validated,
            "login": self.login,
            "user_id": self.user_id,
        }


class CredentialVerifier:
    """Verifies extension tokens and issues/verifies trust hashes."""

    def __init__(
        self,
        config: TwitchConfig,
        database: TreeDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        """Create the HTTP session used for platform token validation."""
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._config.http_timeout_seconds),
        )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    # ══════════════════════════════════════════════════════════
    #  Extension tokens
    # ══════════════════════════════════════════════════════════

    def verify_extension_token(self, token: str | None) -> dict[str, Any]:
        """Return the token's claims, trying each configured secret in order."""
        if not token:
            raise AuthError("Missing extension token", code="MissingToken")
        secrets = [ident.secret for ident in self._config.extensions if ident.secret]
        if not secrets:
            raise ConfigError("No extension signing key configured")

        for secret in secrets:
            try:
                return jwt.decode(token, decode_secret(secret), algorithms=["HS256"])
            except jwt.InvalidTokenError:
                continue
        raise AuthError("Invalid extension token", code="InvalidToken")

    # ══════════════════════════════════════════════════════════
    #  Trust hashes
    # ══════════════════════════════════════════════════════════

    async def verify_trust_hash(self, provided: str | None, scope: str) -> bool:
        """True if provided matches the stored hash for scope (case-insensitive)."""
        if not provided or not scope:
            return False
        stored = await self._db.read(f"{trust_token_path(scope)}/hash")
        if not isinstance(stored, str) or not stored:
            return False
        return hmac.compare_digest(
            stored.lower().encode("utf-8"), provided.strip().lower().encode("utf-8"),
        )

    async def require_trust_hash(self, provided: str | None, scope: str) -> None:
        if not await self.verify_trust_hash(provided, scope):
            raise AuthError("Invalid trust hash", code="InvalidHash")

    async def issue_trust_hash(
        self, platform_token: str | None, scope: str | None = None,
    ) -> TrustToken:
        """Validate a Twitch OAuth token and persist a trust hash for its scope.

        The scope defaults to the validated user id, which for a broadcaster
        is also their channel id.
        """
        if not platform_token:
            raise AuthError("Missing platform token", code="MissingToken")
        identity = await self._validate_platform_token(platform_token)
        user_id = str(identity.get("user_id", ""))
        scope = scope or user_id
        if not scope:
            raise AuthError("Platform token carries no user id", code="InvalidToken")

        token = TrustToken(
            scope=scope,
            hash=compute_trust_hash(scope, platform_token, self._config.salt),
            last_validated=now_iso(),
            login=str(identity.get("login", "")),
            user_id=user_id,
        )
        await self._db.write(
            trust_token_path(scope),
            {
                "hash": token.hash,
                "lastValidated": token.last_validated,
                "login": token.login,
            },
        )
        self._logger.info("Issued trust hash for scope %s (%s)", scope, token.login)
        return token

    async def _validate_platform_token(self, platform_token: str) -> dict:
        if not self._session:
            raise ConfigError("Credential verifier not started")
        headers = {"Authorization": f"OAuth {platform_token}"}
        try:
            async with self._session.get(self._config.validate_url, headers=headers) as resp:
                if resp.status == 401:
                    raise AuthError("Platform rejected the token", code="InvalidToken")
                if resp.status >= 300:
                    raise ConfigError(f"Platform validation returned {resp.status}")
                return await resp.json()
        except asyncio.TimeoutError as exc:
            self._logger.error("Platform token validation timed out")
            raise ConfigError("Platform token validation timed out") from exc
        except aiohttp.ClientError as exc:
            self._logger.error("Platform token validation failed: %s", exc)
            raise ConfigError(f"Platform token validation failed: {exc}") from exc
