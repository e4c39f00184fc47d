"""Request body schemas, validated at the HTTP boundary.

Wire names are camelCase (they come from the extension frontend and the game
client); attributes are snake_case via aliases.
"""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    where = ".".join(str(p) for p in err.get("loc", ())) or "body"
    return f"{where}: {err.get('msg', 'invalid value')}"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ═══════════════════════════════════════════════════════════════
#  Launch queue
# ═══════════════════════════════════════════════════════════════

class LaunchItem(_WireModel):
    """Opaque launch event; only ``id`` is required."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Union[StrictInt, str]
    pucks: Optional[Union[StrictInt, float]] = None

    @property
    def is_positive(self) -> bool:
        return self.pucks is None or self.pucks > 0

    def to_record(self, player_id: str) -> dict:
        record = self.model_dump(exclude_none=True)
        record["playerId"] = player_id
        return record


def parse_launches(body: Any) -> list[LaunchItem]:
    if not isinstance(body, list):
        raise ValidationError("Expected an array of launches")
    items = []
    for index, raw in enumerate(body):
        if not isinstance(raw, dict) or "id" not in raw:
            raise ValidationError(f"Launch {index} is missing an id")
        try:
            items.append(LaunchItem.model_validate(raw))
        except PydanticValidationError as exc:
            raise ValidationError(f"Launch {index}: {_first_error(exc)}") from exc
    return items


class DeleteLaunchesRequest(_WireModel):
    delete_all: bool = Field(default=False, alias="deleteAll")
    launch_ids: list[str] = Field(default_factory=list, alias="launchids")

    @model_validator(mode="after")
    def _something_to_delete(self) -> DeleteLaunchesRequest:
        if not self.delete_all and not self.launch_ids:
            raise ValueError("Provide deleteAll or launchids")
        return self


# ═══════════════════════════════════════════════════════════════
#  Player balances
# ═══════════════════════════════════════════════════════════════

class BalanceUpdate(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    points: Optional[StrictInt] = Field(default=None, ge=0)
    puck_count: Optional[StrictInt] = Field(default=None, ge=0, alias="puckCount")

    def changes(self) -> dict[str, int]:
        """Only the fields the caller supplied, under their wire names."""
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_update_users(body: Any) -> dict[str, BalanceUpdate]:
    if not isinstance(body, dict) or not body:
        raise ValidationError("Expected a mapping of playerId to balances")
    updates = {}
    for player_id, raw in body.items():
        if not isinstance(raw, dict):
            raise ValidationError(f"Balances for {player_id} must be an object")
        try:
            updates[str(player_id)] = BalanceUpdate.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(f"{player_id}: {_first_error(exc)}") from exc
    return updates


# ═══════════════════════════════════════════════════════════════
#  Bits transactions
# ═══════════════════════════════════════════════════════════════

class ProductCost(_WireModel):
    amount: int = 0
    type: str = "bits"


class Product(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    sku: str = Field(min_length=1)
    display_name: str = Field(default="", alias="displayName")
    cost: ProductCost = Field(default_factory=ProductCost)


class TransactionReceipt(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    transaction_id: str = Field(alias="transactionId", min_length=1)
    product: Product
    display_name: str = Field(default="", alias="displayName")
    user_id: str = Field(default="", alias="userId")


# ═══════════════════════════════════════════════════════════════
#  Usage & unlocks
# ═══════════════════════════════════════════════════════════════

class LevelStartedRequest(_WireModel):
    level: Union[StrictInt, str]
    player_id: Optional[str] = Field(default=None, alias="playerId")


class UnlockRequest(_WireModel):
    item_id: Optional[str] = Field(default=None, alias="itemId")


def parse_model(model: type[BaseModel], body: Any) -> Any:
    """Validate a JSON body against model, raising our ValidationError."""
    if not isinstance(body, dict):
        raise ValidationError("Expected a JSON object")
    try:
        return model.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc)) from exc
