"""Transaction engine — store purchases, Bits rewards and admin balance updates.

Purchase flow: item validated → ownership checked → affordability checked →
committed. The last three gates run inside a single store transaction on the
player node (see ``PlayerLedger.commit_purchase``).

Reward flow: a Bits receipt's SKU maps to an upgrade (pucks for the buyer
or for everyone). The upgrade and the audit record are written together;
the chat acknowledgment afterwards is best-effort.

Notification failures never undo a committed economic change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .database import channel_path, key_segment
from .errors import ConfigError, DispatchError
from .game_state import is_visible_to
from .ledger import PurchaseResult
from .utils import generate_push_id, now_iso

if TYPE_CHECKING:
    from .chat_announcer import ChatAnnouncer
    from .config import GameConfig, RewardConfig
    from .database import TreeDatabase
    from .dispatcher import NotificationDispatcher
    from .game_state import GameStateStore
    from .ledger import PlayerLedger, PlayerView
    from .schemas import BalanceUpdate, TransactionReceipt


_PURCHASE_STATUS = {
    PurchaseResult.SUCCESS: 200,
    PurchaseResult.INVALID_ITEM: 400,
    PurchaseResult.UNKNOWN_PLAYER: 400,
    PurchaseResult.INSUFFICIENT_FUNDS: 400,
    PurchaseResult.ALREADY_OWNED: 409,
}


@dataclass(frozen=True)
class PurchaseOutcome:
    result: PurchaseResult
    message: str
    item_id: str
    new_points: int | None = None

    @property
    def http_status(self) -> int:
        return _PURCHASE_STATUS[self.result]


class RewardResult(Enum):
    SUCCESS = "success"
    UNKNOWN_SKU = "unknown_sku"
    DUPLICATE_TRANSACTION = "duplicate_transaction"


_REWARD_STATUS = {
    RewardResult.SUCCESS: 200,
    RewardResult.UNKNOWN_SKU: 400,
    RewardResult.DUPLICATE_TRANSACTION: 409,
}


@dataclass(frozen=True)
class RewardOutcome:
    result: RewardResult
    message: str
    upgrade_id: str | None = None
    upgrade: dict | None = None

    @property
    def http_status(self) -> int:
        return _REWARD_STATUS[self.result]


@dataclass(frozen=True)
class UpdateOutcome:
    updated: list[str]
    failed_broadcasts: list[str] = field(default_factory=list)


class TransactionEngine:
    """Purchase, reward and admin-update state machines."""

    def __init__(
        self,
        config: GameConfig,
        database: TreeDatabase,
        ledger: PlayerLedger,
        game_state: GameStateStore,
        dispatcher: NotificationDispatcher,
        announcer: ChatAnnouncer,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._ledger = ledger
        self._game_state = game_state
        self._dispatcher = dispatcher
        self._announcer = announcer
        self._logger = logger

    # ══════════════════════════════════════════════════════════
    #  Store purchases
    # ══════════════════════════════════════════════════════════

    async def purchase(
        self, channel_id: str, player_id: str, item_id: str,
    ) -> PurchaseOutcome:
        item = await self._game_state.get_store_item(item_id)
        cost = item.get("cost") if item else None
        if (
            not is_visible_to(item, channel_id)
            or not isinstance(cost, int)
            or isinstance(cost, bool)
            or cost <= 0
        ):
            return PurchaseOutcome(
                PurchaseResult.INVALID_ITEM, f"Unknown store item: {item_id}", item_id,
            )

        result, player = await self._ledger.commit_purchase(
            channel_id, player_id, item_id, cost,
        )
        if result is PurchaseResult.UNKNOWN_PLAYER:
            return PurchaseOutcome(result, f"Unknown player: {player_id}", item_id)
        if result is PurchaseResult.ALREADY_OWNED:
            return PurchaseOutcome(
                result, f"{item_id} already purchased", item_id, player.points,
            )
        if result is PurchaseResult.INSUFFICIENT_FUNDS:
            return PurchaseOutcome(
                result,
                f"Insufficient points. You have {player.points:,} but need {cost:,}.",
                item_id,
                player.points,
            )

        self._logger.info(
            "%s bought %s for %d in %s (now %d)",
            player_id, item_id, cost, channel_id, player.points,
        )
        await self._notify_player(player)
        return PurchaseOutcome(result, "Purchase complete", item_id, player.points)

    async def _notify_player(self, player: PlayerView) -> None:
        payload = {
            "type": "playerUpdated",
            "playerId": player.player_id,
            "points": player.points,
            "puckCount": player.puck_count,
            "itemsPurchased": sorted(player.items_purchased),
        }
        target = player.opaque_user_id or player.player_id
        try:
            await self._dispatcher.whisper(player.channel_id, target, payload)
        except (DispatchError, ConfigError) as exc:
            self._logger.warning(
                "Purchase whisper to %s failed: %s", player.player_id, exc,
            )

    # ══════════════════════════════════════════════════════════
    #  Bits rewards
    # ══════════════════════════════════════════════════════════

    def resolve_reward(self, sku: str) -> RewardConfig | None:
        return self._config.rewards.get(sku)

    async def log_transaction(
        self, channel_id: str, player_id: str, receipt: TransactionReceipt,
    ) -> RewardOutcome:
        """Turn a Bits receipt into an upgrade plus an audit record."""
        player_key = key_segment(player_id, "playerId")
        transaction_id = key_segment(receipt.transaction_id, "transactionId")
        sku = receipt.product.sku
        reward = self.resolve_reward(sku)
        if reward is None:
            self._logger.warning(
                "Unknown SKU %r in transaction %s from %s",
                sku, receipt.transaction_id, player_id,
            )
            return RewardOutcome(RewardResult.UNKNOWN_SKU, f"Unknown sku: {sku}")

        display_name = receipt.display_name or player_id
        variables = {"display_name": display_name, "puck_count": reward.puck_count}
        try:
            message = reward.message.format(**variables)
        except (KeyError, IndexError):
            message = reward.message

        upgrade = {
            "puckCount": reward.puck_count,
            "source": player_id,
            "target": player_id if reward.target == "self" else "all",
            "message": message,
            "transactionId": receipt.transaction_id,
        }
        record = {
            "sku": sku,
            "cost": receipt.product.cost.model_dump(),
            "displayName": display_name,
            "time": now_iso(),
            "transactionId": receipt.transaction_id,
        }
        upgrade_id = generate_push_id()
        base = channel_path(channel_id)
        receipt_path = f"{base}/receipts/{transaction_id}"
        applied = await self._db.update(
            {
                f"{base}/upgrades/{upgrade_id}": upgrade,
                f"{base}/transactions/{player_key}/{generate_push_id()}": record,
                receipt_path: {"playerId": player_id, "upgradeId": upgrade_id},
            },
            require_absent=receipt_path,
        )
        if not applied:
            self._logger.info(
                "Ignoring repeated transaction %s from %s", receipt.transaction_id, player_id,
            )
            return RewardOutcome(
                RewardResult.DUPLICATE_TRANSACTION,
                f"Transaction {receipt.transaction_id} already recorded",
            )

        self._logger.info(
            "%s redeemed %s in %s: %d pucks → %s",
            player_id, sku, channel_id, reward.puck_count, upgrade["target"],
        )
        self._announcer.announce(channel_id, message, dedup_key=transaction_id)
        return RewardOutcome(RewardResult.SUCCESS, message, upgrade_id, upgrade)

    # ══════════════════════════════════════════════════════════
    #  Admin balance updates
    # ══════════════════════════════════════════════════════════

    async def update_users(
        self, channel_id: str, updates: dict[str, BalanceUpdate],
    ) -> UpdateOutcome:
        """Apply absolute balances per player, then broadcast them."""
        changed: dict[str, dict[str, int]] = {}
        for player_id, update in updates.items():
            changes = update.changes()
            await self._ledger.apply_delta(channel_id, player_id, changes)
            changed[player_id] = changes

        payload = {"type": "playersUpdated", "players": changed}
        try:
            failed = await self._dispatcher.send_dual_broadcast(channel_id, payload)
        except ConfigError as exc:
            self._logger.error("Cannot broadcast player updates: %s", exc)
            failed = ["*"]
        if failed:
            self._logger.warning(
                "Player update broadcast for %s failed via %s", channel_id, ", ".join(failed),
            )
        return UpdateOutcome(updated=list(changed), failed_broadcasts=failed)
