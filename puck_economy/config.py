"""Configuration system for puck-economy.

All settings are pydantic models with sensible defaults, loaded from a YAML
file with ``${VAR}`` / ``${VAR:-default}`` environment expansion so secrets
can live outside the file.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════
#  Service
# ═══════════════════════════════════════════════════════════════

class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8081
    cors_origin: str = "*"


class DatabaseConfig(BaseModel):
    path: str = "economy.db"
    timeout_seconds: float = Field(default=10.0, gt=0)


# ═══════════════════════════════════════════════════════════════
#  Game rules
# ═══════════════════════════════════════════════════════════════

class RewardConfig(BaseModel):
    """Puck grant produced by a Bits product SKU."""
    puck_count: int = Field(gt=0)
    target: Literal["self", "all"] = "self"
    message: str = ""


def _default_rewards() -> dict[str, RewardConfig]:
    return {
        "get-100": RewardConfig(
            puck_count=100,
            target="self",
            message="{display_name} just grabbed {puck_count} pucks!",
        ),
        "give-10-to-everyone": RewardConfig(
            puck_count=10,
            target="all",
            message="{display_name} gave {puck_count} pucks to everyone!",
        ),
        "give-100-to-everyone": RewardConfig(
            puck_count=100,
            target="all",
            message="{display_name} gave {puck_count} pucks to everyone!",
        ),
    }


class GameConfig(BaseModel):
    default_puck_count: int = Field(default=100, ge=0)
    default_points: int = Field(default=0, ge=0)
    exclusive_item_id: str = "twitchcon-trail"
    rewards: dict[str, RewardConfig] = Field(
        default_factory=_default_rewards,
        description="Bits product SKU → puck grant",
    )


# ═══════════════════════════════════════════════════════════════
#  Twitch platform
# ═══════════════════════════════════════════════════════════════

class ExtensionIdentity(BaseModel):
    """One extension frontend: its client id and base64 shared secret."""
    label: str = "primary"
    client_id: str
    secret: str
    version: str = "0.0.1"
    owner_id: str | None = None


class TwitchConfig(BaseModel):
    validate_url: str = "https://id.twitch.tv/oauth2/validate"
    pubsub_url: str = "https://api.twitch.tv/helix/extensions/pubsub"
    chat_url: str = "https://api.twitch.tv/helix/extensions/chat"
    salt: str = ""
    http_timeout_seconds: float = Field(default=10.0, gt=0)
    token_ttl_seconds: int = Field(default=60, gt=0)
    broadcast_spacing_seconds: float = Field(default=1.0, ge=0)
    pubsub_max_per_minute: int = Field(default=100, gt=0)
    # Order matters: the first identity is primary for token checks and whispers.
    extensions: list[ExtensionIdentity] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  Chat announcements
# ═══════════════════════════════════════════════════════════════

class AnnouncementsConfig(BaseModel):
    enabled: bool = True
    max_per_minute: int = 10
    batch_delay_seconds: float = 0.5
    dedup_window_seconds: float = 30.0


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class EconomyConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    game: GameConfig = Field(default_factory=GameConfig)
    twitch: TwitchConfig = Field(default_factory=TwitchConfig)
    announcements: AnnouncementsConfig = Field(default_factory=AnnouncementsConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> EconomyConfig:
    """Load and validate YAML config file into EconomyConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return EconomyConfig(**raw)
