"""Shared test fixtures for puck-economy."""

from __future__ import annotations

import base64
import logging
import time
from pathlib import Path
from typing import Any, AsyncGenerator, Callable
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
import pytest_asyncio

from puck_economy.chat_announcer import ChatAnnouncer
from puck_economy.config import EconomyConfig
from puck_economy.database import TreeDatabase
from puck_economy.game_state import GameStateStore
from puck_economy.ledger import PlayerLedger
from puck_economy.transaction_engine import TransactionEngine

PRIMARY_SECRET = base64.b64encode(b"primary-extension-secret-key").decode()
SECONDARY_SECRET = base64.b64encode(b"bits-extension-secret-key").decode()
CH = "C1"


# ── Minimal config dict matching EconomyConfig schema ────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "server": {"host": "127.0.0.1", "port": 0},
        "database": {"path": "economy.db", "timeout_seconds": 5},
        "game": {"default_puck_count": 100, "default_points": 0},
        "twitch": {
            "salt": "test-salt",
            "http_timeout_seconds": 2,
            "broadcast_spacing_seconds": 0.05,
            "extensions": [
                {
                    "label": "primary",
                    "client_id": "primary-client",
                    "secret": PRIMARY_SECRET,
                    "version": "1.2.0",
                    "owner_id": "owner-1",
                },
                {
                    "label": "bits",
                    "client_id": "bits-client",
                    "secret": SECONDARY_SECRET,
                    "version": "0.9.0",
                    "owner_id": "owner-1",
                },
            ],
        },
        "announcements": {"enabled": True, "batch_delay_seconds": 0.0},
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict, tmp_db_path: str) -> EconomyConfig:
    """Return a parsed EconomyConfig pointing at a temp database."""
    cfg = EconomyConfig(**sample_config_dict)
    cfg.database.path = tmp_db_path
    return cfg


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_economy.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[TreeDatabase, None]:
    """Provide an initialized store backed by a temp file."""
    db = TreeDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


# ── Tokens ──────────────────────────────────────────────────

@pytest.fixture
def extension_token() -> Callable[..., str]:
    """Factory for extension tokens signed like Twitch signs them."""

    def _make(channel_id: str = CH, secret: str = PRIMARY_SECRET, **claims: Any) -> str:
        payload = {
            "exp": int(time.time()) + 300,
            "opaque_user_id": "U-opaque",
            "channel_id": channel_id,
            "role": "viewer",
            **claims,
        }
        return jwt.encode(payload, base64.b64decode(secret), algorithm="HS256")

    return _make


# ── HTTP mocks ──────────────────────────────────────────────

def mock_response(status: int = 200, json_data: Any = None, text: str = "") -> AsyncMock:
    resp = AsyncMock()
    resp.status = status
    resp.json = AsyncMock(return_value=json_data)
    resp.text = AsyncMock(return_value=text)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


@pytest.fixture
def post_calls() -> list[tuple[float, str, dict]]:
    """(monotonic time, url, kwargs) for every POST made via recording_session."""
    return []


@pytest.fixture
def recording_session(post_calls: list) -> MagicMock:
    """A stand-in aiohttp session whose POSTs succeed and are recorded."""
    session = MagicMock()
    session.status_code = 200

    def _post(url: str, **kwargs: Any) -> AsyncMock:
        post_calls.append((time.monotonic(), url, kwargs))
        return mock_response(session.status_code)

    session.post = MagicMock(side_effect=_post)
    session.close = AsyncMock()
    return session


@pytest.fixture
def mock_dispatcher(sample_config: EconomyConfig) -> MagicMock:
    """NotificationDispatcher double with async send methods."""
    dispatcher = MagicMock()
    dispatcher.primary = sample_config.twitch.extensions[0]
    dispatcher.whisper = AsyncMock()
    dispatcher.send_targeted = AsyncMock()
    dispatcher.send_dual_broadcast = AsyncMock(return_value=[])
    dispatcher.send_chat = AsyncMock()
    return dispatcher


# ── Components ──────────────────────────────────────────────

@pytest.fixture
def ledger(sample_config: EconomyConfig, database: TreeDatabase) -> PlayerLedger:
    return PlayerLedger(sample_config.game, database, logging.getLogger("test.ledger"))


@pytest.fixture
def game_state(sample_config: EconomyConfig, database: TreeDatabase) -> GameStateStore:
    return GameStateStore(sample_config.game, database, logging.getLogger("test.game"))


@pytest.fixture
def announcer(sample_config: EconomyConfig, mock_dispatcher: MagicMock) -> ChatAnnouncer:
    return ChatAnnouncer(
        sample_config.announcements, mock_dispatcher, logging.getLogger("test.chat"),
    )


@pytest.fixture
def engine(
    sample_config: EconomyConfig,
    database: TreeDatabase,
    ledger: PlayerLedger,
    game_state: GameStateStore,
    mock_dispatcher: MagicMock,
    announcer: ChatAnnouncer,
) -> TransactionEngine:
    return TransactionEngine(
        config=sample_config.game,
        database=database,
        ledger=ledger,
        game_state=game_state,
        dispatcher=mock_dispatcher,
        announcer=announcer,
        logger=logging.getLogger("test.engine"),
    )
