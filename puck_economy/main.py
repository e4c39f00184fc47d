"""Service orchestrator — EconomyApp.

Startup sequence: config → store init → domain components → HTTP sessions →
chat announcer → web server. Shutdown runs the same steps in reverse.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from aiohttp import web

from . import __version__
from .auth import CredentialVerifier
from .chat_announcer import ChatAnnouncer
from .config import EconomyConfig, load_config
from .database import TreeDatabase
from .dispatcher import NotificationDispatcher
from .game_state import GameStateStore
from .http_api import EconomyApi
from .ledger import PlayerLedger
from .metrics import EconomyMetrics
from .transaction_engine import TransactionEngine


class EconomyApp:
    """Top-level application orchestrator."""

    def __init__(
        self, config_path: str | None = None, config: EconomyConfig | None = None,
    ) -> None:
        self.config_path = Path(config_path) if config_path else None
        self.logger = logging.getLogger("economy")

        self.config: EconomyConfig | None = config
        self.db: TreeDatabase | None = None
        self.verifier: CredentialVerifier | None = None
        self.ledger: PlayerLedger | None = None
        self.game_state: GameStateStore | None = None
        self.dispatcher: NotificationDispatcher | None = None
        self.announcer: ChatAnnouncer | None = None
        self.engine: TransactionEngine | None = None
        self.metrics = EconomyMetrics()
        self.web_app: web.Application | None = None

        self._runner: web.AppRunner | None = None
        self._stop_event = asyncio.Event()

    async def setup(self) -> web.Application:
        """Build every component and return the aiohttp application."""
        if self.config is None:
            if self.config_path is None:
                raise ValueError("EconomyApp needs a config or a config path")
            self.config = load_config(str(self.config_path))
        cfg = self.config
        if not cfg.twitch.extensions:
            self.logger.warning("No extension identities configured; token checks will fail")
        if not cfg.twitch.salt:
            self.logger.warning("twitch.salt is empty; trust hashes are unsalted")

        self.db = TreeDatabase(cfg.database.path, self.logger, cfg.database.timeout_seconds)
        await self.db.initialize()
        self.logger.info("Store initialized: %s", cfg.database.path)

        self.verifier = CredentialVerifier(cfg.twitch, self.db, self.logger)
        self.ledger = PlayerLedger(cfg.game, self.db, self.logger)
        self.game_state = GameStateStore(cfg.game, self.db, self.logger)
        self.dispatcher = NotificationDispatcher(cfg.twitch, self.logger)
        self.announcer = ChatAnnouncer(cfg.announcements, self.dispatcher, self.logger)
        self.engine = TransactionEngine(
            config=cfg.game,
            database=self.db,
            ledger=self.ledger,
            game_state=self.game_state,
            dispatcher=self.dispatcher,
            announcer=self.announcer,
            logger=self.logger,
        )

        await self.verifier.start()
        await self.dispatcher.start()
        await self.announcer.start()

        api = EconomyApi(
            config=cfg.server,
            verifier=self.verifier,
            ledger=self.ledger,
            engine=self.engine,
            game_state=self.game_state,
            metrics=self.metrics,
            logger=self.logger,
        )
        self.web_app = api.build_application()
        return self.web_app

    async def start(self) -> None:
        """Start the service and serve until stop() is called."""
        self.logger.info("Starting puck-economy %s...", __version__)
        app = await self.setup()

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.server.host, self.config.server.port)
        await site.start()
        self.logger.info(
            "Listening on %s:%d", self.config.server.host, self.config.server.port,
        )
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Graceful shutdown."""
        self._stop_event.set()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        if self.announcer:
            await self.announcer.stop()
        if self.dispatcher:
            await self.dispatcher.stop()
        if self.verifier:
            await self.verifier.stop()
        self.logger.info("puck-economy stopped")
