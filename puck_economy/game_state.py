"""Per-channel game queues and store catalogue access.

Covers the launch queue the game client consumes, level-start telemetry,
and which store items a channel may see and buy.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, Any

from .database import channel_path, key_segment
from .errors import ConflictError
from .ledger import players_path
from .utils import generate_push_id, now_iso

if TYPE_CHECKING:
    from .config import GameConfig
    from .database import TreeDatabase
    from .schemas import LaunchItem


STORE_ITEMS_PATH = "storeItems"


def launches_path(channel_id: str) -> str:
    return channel_path(channel_id, "launches")


def level_starts_path(channel_id: str) -> str:
    return channel_path(channel_id, "usage", "levelStarts")


def store_item_path(item_id: str) -> str:
    return f"{STORE_ITEMS_PATH}/{key_segment(item_id, 'storeItemId')}"


def is_visible_to(item: Any, channel_id: str) -> bool:
    """Items without ``exclusiveTo`` are global; others belong to one channel."""
    if not isinstance(item, dict):
        return False
    exclusive = item.get("exclusiveTo")
    return not exclusive or str(exclusive) == channel_id


class GameStateStore:
    """Launch queue, usage telemetry and store item visibility."""

    def __init__(
        self,
        config: GameConfig,
        database: TreeDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger

    # ══════════════════════════════════════════════════════════
    #  Launch queue
    # ══════════════════════════════════════════════════════════

    async def queue_launches(
        self, channel_id: str, player_id: str, launches: list[LaunchItem],
    ) -> list[str]:
        """Append launches in order, skipping any with ``pucks <= 0``.

        Returns the generated keys of the persisted launches.
        """
        base = launches_path(channel_id)
        batch: dict[str, dict] = {}
        skipped = 0
        for launch in launches:
            if not launch.is_positive:
                skipped += 1
                continue
            batch[f"{base}/{generate_push_id()}"] = launch.to_record(player_id)

        if skipped:
            self._logger.info(
                "Skipped %d launch(es) with no pucks for %s in %s",
                skipped, player_id, channel_id,
            )
        if batch:
            await self._db.update(batch)
        return [path.rsplit("/", 1)[1] for path in batch]

    async def list_launches(self, channel_id: str) -> dict[str, dict]:
        queue = await self._db.read(launches_path(channel_id)) or {}
        return {key: queue[key] for key in sorted(queue)}

    async def delete_launches(
        self,
        channel_id: str,
        delete_all: bool = False,
        launch_ids: list[str] | None = None,
    ) -> int:
        """Remove consumed launches. Returns how many keys were targeted."""
        base = launches_path(channel_id)
        if delete_all:
            queue = await self._db.read(base) or {}
            await self._db.delete(base)
            return len(queue)
        ids = launch_ids or []
        if ids:
            await self._db.update({
                f"{base}/{key_segment(launch_id, 'launchId')}": None for launch_id in ids
            })
        return len(ids)

    # ══════════════════════════════════════════════════════════
    #  Usage telemetry
    # ══════════════════════════════════════════════════════════

    async def record_level_start(
        self, channel_id: str, level: int | str, player_id: str | None = None,
    ) -> str:
        record: dict[str, Any] = {"level": level, "time": now_iso()}
        if player_id:
            record["playerId"] = player_id
        return await self._db.push(level_starts_path(channel_id), record)

    async def get_usage(self, channel_id: str) -> dict:
        """Summarise level starts and known players for a channel."""
        starts = await self._db.read(level_starts_path(channel_id)) or {}
        players = await self._db.read(players_path(channel_id)) or {}
        by_level = Counter(str(entry.get("level")) for entry in starts.values())
        last = max((entry.get("time", "") for entry in starts.values()), default=None)
        return {
            "levelStarts": len(starts),
            "byLevel": dict(sorted(by_level.items())),
            "lastLevelStart": last,
            "players": len(players),
        }

    # ══════════════════════════════════════════════════════════
    #  Store items
    # ══════════════════════════════════════════════════════════

    async def get_store_item(self, item_id: str) -> dict | None:
        item = await self._db.read(store_item_path(item_id))
        return item if isinstance(item, dict) else None

    async def list_store_items(self, channel_id: str) -> dict[str, dict]:
        items = await self._db.read(STORE_ITEMS_PATH) or {}
        return {
            item_id: item for item_id, item in sorted(items.items())
            if is_visible_to(item, channel_id)
        }

    async def unlock_exclusive_item(
        self, channel_id: str, item_id: str | None = None,
    ) -> str:
        """Make an exclusive item visible and purchasable in channel_id."""
        item_id = item_id or self._config.exclusive_item_id
        if await self.get_store_item(item_id) is None:
            raise ConflictError(f"Unknown store item: {item_id}", code="InvalidItem")
        await self._db.write(f"{store_item_path(item_id)}/exclusiveTo", channel_id)
        self._logger.info("Unlocked %s for channel %s", item_id, channel_id)
        return item_id
