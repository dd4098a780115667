"""Read-only view of current entity state used by guardrail rules.

The snapshot is assembled by the caller (from whatever data layer feeds the
dashboard) and is assumed to be eventually consistent: it is not
transactional with the mutation call.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from .actions import BaseAction
from .domain import EntityStatus, EntityType
from .errors import ValidationError
from .utils import entity_key, safe_decimal_conversion


class EntitySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str
    name: Optional[str] = None
    status: EntityStatus = EntityStatus.ENABLED
    spend: Decimal = Field(Decimal("0"), ge=0, description="Spend over the reporting window")
    budget: Optional[Decimal] = Field(None, ge=0)
    ai_score: Optional[float] = Field(None, ge=0, le=100)

    # Reporting exports write "N/A" for entities without data in the window
    @field_validator("spend", "budget", mode="before")
    @classmethod
    def _money(cls, v, info: ValidationInfo):
        default = Decimal("0") if info.field_name == "spend" else None
        try:
            return safe_decimal_conversion(v, info.field_name, default)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @property
    def key(self) -> Tuple[str, str]:
        return entity_key(self.entity_type, self.entity_id)


class GuardrailSnapshot(BaseModel):
    """Everything a guardrail rule may look at besides the action and config.

    `staged_actions` are actions already waiting in the queue (pending or
    confirmed); rules such as "do not pause the last active campaign" count
    them as if they had executed.
    """

    model_config = ConfigDict(frozen=True)

    entities: Tuple[EntitySnapshot, ...] = ()
    staged_actions: Tuple[BaseAction, ...] = ()

    def get(self, entity_type: EntityType | str, entity_id: str) -> Optional[EntitySnapshot]:
        key = entity_key(entity_type, entity_id)
        for e in self.entities:
            if e.key == key:
                return e
        return None

    def of_type(self, entity_type: EntityType) -> List[EntitySnapshot]:
        return [e for e in self.entities if e.entity_type == entity_type]

    def with_staged(self, actions: Iterable[BaseAction]) -> "GuardrailSnapshot":
        return GuardrailSnapshot(entities=self.entities, staged_actions=tuple(actions))


class SnapshotProvider(Protocol):
    def snapshot(self, account_id: Optional[str] = None) -> GuardrailSnapshot: ...


class StaticSnapshotProvider:
    """In-memory provider; callers push fresh entity state with `update`."""

    def __init__(self, entities: Iterable[EntitySnapshot] = ()):
        self._entities: Dict[Tuple[str, str], EntitySnapshot] = {e.key: e for e in entities}

    def update(self, *entities: EntitySnapshot) -> None:
        for e in entities:
            self._entities[e.key] = e

    def snapshot(self, account_id: Optional[str] = None) -> GuardrailSnapshot:
        ordered = sorted(self._entities.values(), key=lambda e: e.key)
        return GuardrailSnapshot(entities=tuple(ordered))
