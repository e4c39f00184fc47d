"""Player ledger — per-channel, per-player balances and owned items.

Every call re-reads the store; balances are never cached in process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .database import channel_path, key_segment
from .errors import ValidationError
from .utils import now_iso

if TYPE_CHECKING:
    from .config import GameConfig
    from .database import TreeDatabase


BALANCE_FIELDS = ("points", "puckCount")


class PurchaseResult(Enum):
    SUCCESS = "success"
    INVALID_ITEM = "invalid_item"
    UNKNOWN_PLAYER = "unknown_player"
    ALREADY_OWNED = "already_owned"
    INSUFFICIENT_FUNDS = "insufficient_funds"


def players_path(channel_id: str) -> str:
    return channel_path(channel_id, "players")


def player_path(channel_id: str, player_id: str) -> str:
    return f"{players_path(channel_id)}/{key_segment(player_id, 'playerId')}"


def _is_balance(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@dataclass(frozen=True)
class PlayerView:
    channel_id: str
    player_id: str
    points: int
    puck_count: int
    opaque_user_id: str = ""
    last_seen: str | None = None
    items_purchased: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_node(cls, channel_id: str, player_id: str, node: dict) -> PlayerView:
        items = node.get("itemsPurchased") or {}
        return cls(
            channel_id=channel_id,
            player_id=player_id,
            points=int(node.get("points", 0)),
            puck_count=int(node.get("puckCount", 0)),
            opaque_user_id=node.get("opaqueUserId", ""),
            last_seen=node.get("lastSeen"),
            items_purchased=frozenset(k for k, v in items.items() if v),
        )

    def to_json(self) -> dict:
        return {"puckCount": self.puck_count, "points": self.points}


class PlayerLedger:
    """Reads and guarded writes of player state."""

    def __init__(
        self,
        config: GameConfig,
        database: TreeDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger

    async def get_player(self, channel_id: str, player_id: str) -> PlayerView | None:
        node = await self._db.read(player_path(channel_id, player_id))
        if not isinstance(node, dict):
            return None
        return PlayerView.from_node(channel_id, player_id, node)

    async def get_or_init(
        self, channel_id: str, player_id: str, opaque_user_id: str = "",
    ) -> PlayerView:
        """Create the player with default balances on first sighting.

        Repeat calls refresh ``lastSeen`` (and the opaque id if given) and
        leave balances alone.
        """
        seen_at = now_iso()
        created = []

        def _arrive(current: Any) -> dict:
            if not isinstance(current, dict):
                created.append(True)
                current = {}
            updated = dict(current)
            updated.setdefault("points", self._config.default_points)
            updated.setdefault("puckCount", self._config.default_puck_count)
            if opaque_user_id:
                updated["opaqueUserId"] = opaque_user_id
            updated["lastSeen"] = seen_at
            return updated

        result = await self._db.transaction(player_path(channel_id, player_id), _arrive)
        if created:
            self._logger.info("New player %s in channel %s", player_id, channel_id)
        return PlayerView.from_node(channel_id, player_id, result.snapshot)

    async def apply_delta(
        self, channel_id: str, player_id: str, changes: dict[str, Any],
    ) -> None:
        """Overwrite the provided balances; absent fields stay untouched."""
        unknown = set(changes) - set(BALANCE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown balance field(s): {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            if not _is_balance(value):
                raise ValidationError(f"{name} must be a non-negative integer")
        if not changes:
            return

        base = player_path(channel_id, player_id)
        await self._db.update({f"{base}/{name}": value for name, value in changes.items()})
        self._logger.debug("Updated %s/%s: %s", channel_id, player_id, changes)

    async def record_purchase(
        self, channel_id: str, player_id: str, item_id: str, new_points: int,
    ) -> None:
        """Write the new point total and owned item as one unit."""
        if not _is_balance(new_points):
            raise ValidationError("points must be a non-negative integer")
        key_segment(item_id, "storeItemId")
        base = player_path(channel_id, player_id)
        await self._db.update({
            f"{base}/points": new_points,
            f"{base}/itemsPurchased/{item_id}": True,
        })

    async def commit_purchase(
        self, channel_id: str, player_id: str, item_id: str, cost: int,
    ) -> tuple[PurchaseResult, PlayerView | None]:
        """Check ownership and affordability, then debit, under one store lock.

        Concurrent duplicate purchases serialize on the player node, so only
        one of them can observe the item as unowned.
        """
        key_segment(item_id, "storeItemId")
        verdict = [PurchaseResult.UNKNOWN_PLAYER]

        def _purchase(current: Any) -> dict | None:
            if not isinstance(current, dict):
                verdict[0] = PurchaseResult.UNKNOWN_PLAYER
                return None
            owned = current.get("itemsPurchased") or {}
            if owned.get(item_id):
                verdict[0] = PurchaseResult.ALREADY_OWNED
                return None
            points = current.get("points", 0)
            if points < cost:
                verdict[0] = PurchaseResult.INSUFFICIENT_FUNDS
                return None
            updated = dict(current)
            updated["points"] = points - cost
            updated["itemsPurchased"] = {**owned, item_id: True}
            verdict[0] = PurchaseResult.SUCCESS
            return updated

        result = await self._db.transaction(player_path(channel_id, player_id), _purchase)
        if not isinstance(result.snapshot, dict):
            return verdict[0], None
        return verdict[0], PlayerView.from_node(channel_id, player_id, result.snapshot)
