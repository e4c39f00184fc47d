"""HTTP surface — aiohttp.web routes for the extension and game backends.

Every route answers OPTIONS with an open CORS preflight before any
credential check. Credentials are resolved here, at the boundary, so the
ledger and dispatcher only ever see authorised, schema-validated requests.
Failures map to status codes by ``ErrorKind``.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from aiohttp import web

from .database import key_segment
from .errors import AuthError, EconomyError, ValidationError
from .ledger import PurchaseResult
from .schemas import (
    DeleteLaunchesRequest,
    LevelStartedRequest,
    TransactionReceipt,
    UnlockRequest,
    parse_launches,
    parse_model,
    parse_update_users,
)
from .transaction_engine import RewardResult
from .utils import strip_auth_scheme

if TYPE_CHECKING:
    from .auth import CredentialVerifier
    from .config import ServerConfig
    from .game_state import GameStateStore
    from .ledger import PlayerLedger
    from .metrics import EconomyMetrics
    from .transaction_engine import TransactionEngine

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

EXTENSION_TOKEN_HEADER = "x-extension-jwt"


def _require_query(request: web.Request, *names: str) -> list[str]:
    values = []
    for name in names:
        value = request.query.get(name, "")
        if not value.strip():
            raise ValidationError(f"Missing query parameter: {name}")
        values.append(key_segment(value, name))
    return values


async def _read_json(request: web.Request, default: Any = None) -> Any:
    if not request.body_exists:
        if default is not None:
            return default
        raise ValidationError("Missing request body")
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Request body is not valid JSON") from exc


class EconomyApi:
    """Route handlers bound to the service components."""

    def __init__(
        self,
        config: ServerConfig,
        verifier: CredentialVerifier,
        ledger: PlayerLedger,
        engine: TransactionEngine,
        game_state: GameStateStore,
        metrics: EconomyMetrics,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._verifier = verifier
        self._ledger = ledger
        self._engine = engine
        self._game_state = game_state
        self._metrics = metrics
        self._logger = logger

    def build_application(self) -> web.Application:
        app = web.Application(middlewares=[self._error_middleware])
        app.on_response_prepare.append(self._add_cors_headers)

        routes: list[tuple[str, str, Handler]] = [
            ("POST", "/queueLaunch", self.queue_launch),
            ("POST", "/wildUserAppears", self.wild_user_appears),
            ("GET", "/verifyToken", self.verify_token),
            ("POST", "/deleteLaunches", self.delete_launches),
            ("GET", "/getLaunches", self.get_launches),
            ("POST", "/updateUsers", self.update_users),
            ("POST", "/purchasePointsUpdate", self.purchase_points_update),
            ("POST", "/logTransaction", self.log_transaction),
            ("POST", "/levelStarted", self.level_started),
            ("GET", "/getUsageData", self.get_usage_data),
            ("POST", "/unlockTwitchConTrail", self.unlock_twitchcon_trail),
            ("GET", "/storeItems", self.store_items),
        ]
        for method, path, handler in routes:
            app.router.add_route(method, path, handler)
            app.router.add_route("OPTIONS", path, self.preflight)
        app.router.add_get("/health", self.health)
        app.router.add_get("/metrics", self.metrics)
        return app

    # ══════════════════════════════════════════════════════════
    #  Middleware & CORS
    # ══════════════════════════════════════════════════════════

    @web.middleware
    async def _error_middleware(
        self, request: web.Request, handler: Handler,
    ) -> web.StreamResponse:
        match_info = request.match_info
        if request.method != "OPTIONS" and match_info.http_exception is None:
            # Only registered routes are counted.
            self._metrics.requests[match_info.route.resource.canonical] += 1
        try:
            return await handler(request)
        except EconomyError as exc:
            self._metrics.errors[exc.kind.value] += 1
            if exc.http_status >= 500:
                self._logger.error("%s %s failed: %s", request.method, request.path, exc)
            else:
                self._logger.info("%s %s rejected: %s", request.method, request.path, exc)
            return web.json_response(exc.to_dict(), status=exc.http_status)
        except web.HTTPException:
            raise
        except Exception:
            self._metrics.errors["unexpected"] += 1
            self._logger.exception("Unhandled error in %s %s", request.method, request.path)
            return web.json_response(
                {"error": "InternalError", "message": "Internal server error"}, status=500,
            )

    async def _add_cors_headers(
        self, request: web.Request, response: web.StreamResponse,
    ) -> None:
        response.headers["Access-Control-Allow-Origin"] = self._config.cors_origin

    async def preflight(self, request: web.Request) -> web.Response:
        return web.Response(
            status=204,
            headers={
                "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
                "Access-Control-Allow-Headers": (
                    "Authorization, Content-Type, x-extension-jwt"
                ),
                "Access-Control-Max-Age": "86400",
            },
        )

    # ══════════════════════════════════════════════════════════
    #  Credential helpers
    # ══════════════════════════════════════════════════════════

    def _require_extension(self, request: web.Request, channel_id: str) -> dict:
        token = request.headers.get(EXTENSION_TOKEN_HEADER) or strip_auth_scheme(
            request.headers.get("Authorization"),
        )
        claims = self._verifier.verify_extension_token(token)
        if str(claims.get("channel_id", "")) != channel_id:
            raise AuthError("Token is not valid for this channel", code="InvalidToken")
        return claims

    async def _require_trust(self, request: web.Request, channel_id: str) -> None:
        provided = strip_auth_scheme(request.headers.get("Authorization"))
        await self._verifier.require_trust_hash(provided, channel_id)

    # ══════════════════════════════════════════════════════════
    #  Extension routes
    # ══════════════════════════════════════════════════════════

    async def queue_launch(self, request: web.Request) -> web.Response:
        channel_id, player_id = _require_query(request, "channelId", "playerId")
        self._require_extension(request, channel_id)
        launches = parse_launches(await _read_json(request))
        queued = await self._game_state.queue_launches(channel_id, player_id, launches)
        self._metrics.launches_queued_total += len(queued)
        return web.Response(status=200)

    async def wild_user_appears(self, request: web.Request) -> web.Response:
        channel_id, player_id = _require_query(request, "channelId", "playerId")
        claims = self._require_extension(request, channel_id)
        opaque_user_id = (
            request.query.get("opaqueUserId") or claims.get("opaque_user_id") or ""
        )
        player = await self._ledger.get_or_init(channel_id, player_id, opaque_user_id)
        return web.json_response(player.to_json())

    async def purchase_points_update(self, request: web.Request) -> web.Response:
        channel_id, player_id, item_id = _require_query(
            request, "channelId", "playerId", "storeItemId",
        )
        self._require_extension(request, channel_id)
        outcome = await self._engine.purchase(channel_id, player_id, item_id)
        self._metrics.purchases[outcome.result.value] += 1
        if outcome.result is PurchaseResult.SUCCESS:
            return web.json_response(outcome.new_points)
        return web.json_response(
            {
                "error": outcome.result.value,
                "message": outcome.message,
                "points": outcome.new_points,
            },
            status=outcome.http_status,
        )

    async def log_transaction(self, request: web.Request) -> web.Response:
        channel_id, player_id = _require_query(request, "channelId", "playerId")
        self._require_extension(request, channel_id)
        receipt = parse_model(TransactionReceipt, await _read_json(request))
        outcome = await self._engine.log_transaction(channel_id, player_id, receipt)
        self._metrics.rewards[outcome.result.value] += 1
        if outcome.result is RewardResult.SUCCESS:
            return web.json_response(
                {"upgradeId": outcome.upgrade_id, "upgrade": outcome.upgrade},
            )
        return web.json_response(
            {"error": outcome.result.value, "message": outcome.message},
            status=outcome.http_status,
        )

    async def store_items(self, request: web.Request) -> web.Response:
        (channel_id,) = _require_query(request, "channelId")
        self._require_extension(request, channel_id)
        return web.json_response(await self._game_state.list_store_items(channel_id))

    # ══════════════════════════════════════════════════════════
    #  Privileged routes
    # ══════════════════════════════════════════════════════════

    async def verify_token(self, request: web.Request) -> web.Response:
        platform_token = strip_auth_scheme(request.headers.get("Authorization"))
        trust = await self._verifier.issue_trust_hash(platform_token)
        return web.json_response(trust.to_json())

    async def delete_launches(self, request: web.Request) -> web.Response:
        (channel_id,) = _require_query(request, "channelId")
        await self._require_trust(request, channel_id)
        body = parse_model(DeleteLaunchesRequest, await _read_json(request))
        deleted = await self._game_state.delete_launches(
            channel_id, delete_all=body.delete_all, launch_ids=body.launch_ids,
        )
        return web.json_response({"deleted": deleted})

    async def get_launches(self, request: web.Request) -> web.Response:
        (channel_id,) = _require_query(request, "channelId")
        await self._require_trust(request, channel_id)
        return web.json_response(await self._game_state.list_launches(channel_id))

    async def update_users(self, request: web.Request) -> web.Response:
        (channel_id,) = _require_query(request, "channelId")
        await self._require_trust(request, channel_id)
        updates = parse_update_users(await _read_json(request))
        outcome = await self._engine.update_users(channel_id, updates)
        self._metrics.broadcasts_failed_total += len(outcome.failed_broadcasts)
        return web.json_response(
            {"updated": outcome.updated, "failedBroadcasts": outcome.failed_broadcasts},
        )

    async def level_started(self, request: web.Request) -> web.Response:
        (channel_id,) = _require_query(request, "channelId")
        await self._require_trust(request, channel_id)
        body = parse_model(LevelStartedRequest, await _read_json(request))
        key = await self._game_state.record_level_start(
            channel_id, body.level, body.player_id,
        )
        return web.json_response({"id": key})

    async def get_usage_data(self, request: web.Request) -> web.Response:
        (channel_id,) = _require_query(request, "channelId")
        await self._require_trust(request, channel_id)
        return web.json_response(await self._game_state.get_usage(channel_id))

    async def unlock_twitchcon_trail(self, request: web.Request) -> web.Response:
        (channel_id,) = _require_query(request, "channelId")
        await self._require_trust(request, channel_id)
        body = parse_model(UnlockRequest, await _read_json(request, default={}))
        item_id = await self._game_state.unlock_exclusive_item(channel_id, body.item_id)
        return web.json_response({"unlocked": item_id})

    # ══════════════════════════════════════════════════════════
    #  Service routes
    # ══════════════════════════════════════════════════════════

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"status": "ok", "uptime_seconds": round(self._metrics.uptime_seconds, 1)},
        )

    async def metrics(self, request: web.Request) -> web.Response:
        return web.Response(text=self._metrics.render(), content_type="text/plain")
