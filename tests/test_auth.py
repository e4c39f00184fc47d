"""Tests for CredentialVerifier — extension tokens and trust hashes."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import time
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from puck_economy.auth import CredentialVerifier, compute_trust_hash
from puck_economy.config import EconomyConfig, TwitchConfig
from puck_economy.database import TreeDatabase
from puck_economy.errors import AuthError, ConfigError

CH = "C1"


def _mock_response(status: int = 200, json_data: dict | None = None) -> AsyncMock:
    resp = AsyncMock()
    resp.status = status
    resp.json = AsyncMock(return_value=json_data or {})
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


@pytest.fixture
def verifier(sample_config: EconomyConfig, database: TreeDatabase) -> CredentialVerifier:
    return CredentialVerifier(sample_config.twitch, database, logging.getLogger("test.auth"))


# ═══════════════════════════════════════════════════════════════
#  Extension tokens
# ═══════════════════════════════════════════════════════════════


class TestExtensionToken:

    def test_primary_key_accepted(self, verifier: CredentialVerifier, extension_token: Callable):
        claims = verifier.verify_extension_token(extension_token(CH))
        assert claims["channel_id"] == CH
        assert claims["opaque_user_id"] == "U-opaque"

    def test_secondary_key_accepted(
        self, verifier: CredentialVerifier, sample_config: EconomyConfig, extension_token: Callable,
    ):
        secondary = sample_config.twitch.extensions[1].secret
        claims = verifier.verify_extension_token(extension_token(CH, secret=secondary))
        assert claims["channel_id"] == CH

    def test_unknown_key_rejected(self, verifier: CredentialVerifier, extension_token: Callable):
        stranger = base64.b64encode(b"someone-else").decode()
        with pytest.raises(AuthError) as exc_info:
            verifier.verify_extension_token(extension_token(CH, secret=stranger))
        assert exc_info.value.code == "InvalidToken"

    def test_expired_token_rejected(self, verifier: CredentialVerifier, extension_token: Callable):
        token = extension_token(CH, exp=int(time.time()) - 10)
        with pytest.raises(AuthError):
            verifier.verify_extension_token(token)

    def test_garbage_rejected(self, verifier: CredentialVerifier):
        with pytest.raises(AuthError):
            verifier.verify_extension_token("not-a-jwt")

    @pytest.mark.parametrize("token", [None, ""])
    def test_missing_token(self, verifier: CredentialVerifier, token):
        with pytest.raises(AuthError) as exc_info:
            verifier.verify_extension_token(token)
        assert exc_info.value.code == "MissingToken"

    def test_no_key_configured(self, database: TreeDatabase, extension_token: Callable):
        bare = CredentialVerifier(TwitchConfig(), database, logging.getLogger("test"))
        with pytest.raises(ConfigError):
            bare.verify_extension_token(extension_token(CH))

    def test_verification_is_pure(
        self, verifier: CredentialVerifier, extension_token: Callable,
    ):
        token = extension_token(CH)
        assert verifier.verify_extension_token(token) == verifier.verify_extension_token(token)


# ═══════════════════════════════════════════════════════════════
#  Trust hashes
# ═══════════════════════════════════════════════════════════════


class TestTrustHash:

    def test_compute_trust_hash_is_md5(self):
        expected = hashlib.md5(b"C1tokensalt").hexdigest()
        assert compute_trust_hash("C1", "token", "salt") == expected

    @pytest.mark.asyncio
    async def test_verify_case_insensitive(
        self, verifier: CredentialVerifier, database: TreeDatabase,
    ):
        digest = compute_trust_hash(CH, "tok", "test-salt")
        await database.write(f"trustTokens/{CH}", {"hash": digest})
        assert await verifier.verify_trust_hash(digest, CH) is True
        assert await verifier.verify_trust_hash(digest.upper(), CH) is True

    @pytest.mark.asyncio
    async def test_verify_mismatch(self, verifier: CredentialVerifier, database: TreeDatabase):
        await database.write(f"trustTokens/{CH}", {"hash": "abc123"})
        assert await verifier.verify_trust_hash("abc124", CH) is False
        assert await verifier.verify_trust_hash("", CH) is False

    @pytest.mark.asyncio
    async def test_verify_unknown_scope(self, verifier: CredentialVerifier):
        assert await verifier.verify_trust_hash("abc123", "nobody") is False

    @pytest.mark.asyncio
    async def test_require_raises(self, verifier: CredentialVerifier):
        with pytest.raises(AuthError):
            await verifier.require_trust_hash("abc123", CH)

    @pytest.mark.asyncio
    async def test_issue_persists_hash(
        self, verifier: CredentialVerifier, database: TreeDatabase,
    ):
        session = MagicMock()
        session.get = MagicMock(return_value=_mock_response(
            200, {"client_id": "cid", "login": "streamer", "user_id": CH, "expires_in": 3600},
        ))
        verifier._session = session

        token = await verifier.issue_trust_hash("oauth-token")

        assert token.hash == compute_trust_hash(CH, "oauth-token", "test-salt")
        assert token.login == "streamer"
        assert token.to_json()["user_id"] == CH
        stored = await database.read(f"trustTokens/{CH}")
        assert stored["hash"] == token.hash
        assert stored["lastValidated"] == token.last_validated
        assert await verifier.verify_trust_hash(token.hash, CH) is True

        call = session.get.call_args
        assert call[1]["headers"]["Authorization"] == "OAuth oauth-token"

    @pytest.mark.asyncio
    async def test_issue_rejected_by_platform(
        self, verifier: CredentialVerifier, database: TreeDatabase,
    ):
        session = MagicMock()
        session.get = MagicMock(return_value=_mock_response(401))
        verifier._session = session

        with pytest.raises(AuthError):
            await verifier.issue_trust_hash("bad-token")
        assert await database.read("trustTokens") is None

    @pytest.mark.asyncio
    async def test_issue_timeout_is_config_error(self, verifier: CredentialVerifier):
        session = MagicMock()
        session.get = MagicMock(side_effect=asyncio.TimeoutError())
        verifier._session = session

        with pytest.raises(ConfigError):
            await verifier.issue_trust_hash("oauth-token")

    @pytest.mark.asyncio
    async def test_issue_transport_error_is_config_error(self, verifier: CredentialVerifier):
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        verifier._session = session

        with pytest.raises(ConfigError):
            await verifier.issue_trust_hash("oauth-token")

    @pytest.mark.asyncio
    async def test_issue_missing_token(self, verifier: CredentialVerifier):
        with pytest.raises(AuthError):
            await verifier.issue_trust_hash(None)
