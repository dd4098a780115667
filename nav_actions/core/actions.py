from __future__ import annotations
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, field_validator, model_validator

from .domain import ActionSource, ActionType, EntityStatus, EntityType, MatchType, RiskLevel
from .utils import entity_key, new_id

ACTION_LABELS: Dict[ActionType, str] = {
    ActionType.PAUSE_ENTITY: "Pause Entity",
    ActionType.ENABLE_ENTITY: "Enable Entity",
    ActionType.UPDATE_BUDGET: "Update Budget",
    ActionType.UPDATE_BID: "Update Bid",
    ActionType.UPDATE_MATCH_TYPE: "Update Match Type",
    ActionType.ADD_NEGATIVES: "Add Negative Keywords",
}

# Risk before any guardrail looks at the numbers; rules can only raise it
BASELINE_RISK: Dict[ActionType, RiskLevel] = {
    ActionType.PAUSE_ENTITY: RiskLevel.medium,
    ActionType.ENABLE_ENTITY: RiskLevel.low,
    ActionType.UPDATE_BUDGET: RiskLevel.medium,
    ActionType.UPDATE_BID: RiskLevel.medium,
    ActionType.UPDATE_MATCH_TYPE: RiskLevel.medium,
    ActionType.ADD_NEGATIVES: RiskLevel.low,
}


def action_label(action_type: ActionType | str) -> str:
    return ACTION_LABELS[ActionType(action_type)]


class BaseAction(BaseModel):
    """A proposed mutation of one field on one entity. Immutable."""

    model_config = ConfigDict(frozen=True)

    # Field name sent to the mutation service
    mutation_field: ClassVar[str] = ""
    allowed_entity_types: ClassVar[Tuple[EntityType, ...]] = tuple(EntityType)

    id: str = Field(default_factory=lambda: new_id("act"))
    action_type: ActionType
    entity_type: EntityType
    entity_id: str = Field(..., min_length=1)
    entity_name: str = ""
    reason: Optional[str] = None
    account_id: Optional[str] = None
    ad_group_id: Optional[str] = Field(None, description="Parent ad group, required by the platform for keywords")
    source: ActionSource = ActionSource.user
    reverts_entry_id: Optional[int] = Field(None, description="Audit entry this action compensates, for rollbacks")

    @field_validator("action_type")
    @classmethod
    def _matches_variant(cls, v: ActionType) -> ActionType:
        expected = cls.model_fields["action_type"].default
        if isinstance(expected, ActionType) and v != expected:
            raise ValueError(f"{cls.__name__} requires action_type '{expected.value}', got '{v.value}'")
        return v

    @model_validator(mode="after")
    def _check_entity_type(self):
        if self.entity_type not in self.allowed_entity_types:
            allowed = ", ".join(t.value for t in self.allowed_entity_types)
            raise ValueError(
                f"{self.action_type.value} cannot target {self.entity_type.value} (allowed: {allowed})"
            )
        return self

    @property
    def entity(self) -> Tuple[str, str]:
        return entity_key(self.entity_type, self.entity_id)

    @property
    def label(self) -> str:
        return action_label(self.action_type)

    @property
    def baseline_risk(self) -> RiskLevel:
        return BASELINE_RISK[self.action_type]

    def describe(self) -> str:
        return f"{self.label} on {self.entity_name or self.entity_id}"

    def json_values(self) -> Tuple[Any, Any]:
        """(current_value, new_value) in their JSON form, as stored in the audit log."""
        dumped = self.model_dump(mode="json", include={"current_value", "new_value"})
        return dumped.get("current_value"), dumped.get("new_value")


class PauseEntityAction(BaseAction):
    mutation_field: ClassVar[str] = "status"

    action_type: ActionType = ActionType.PAUSE_ENTITY
    current_value: EntityStatus = EntityStatus.ENABLED
    new_value: EntityStatus = EntityStatus.PAUSED

    @field_validator("new_value")
    @classmethod
    def _pauses(cls, v: EntityStatus) -> EntityStatus:
        if v != EntityStatus.PAUSED:
            raise ValueError("pause_entity must set status PAUSED")
        return v


class EnableEntityAction(BaseAction):
    mutation_field: ClassVar[str] = "status"

    action_type: ActionType = ActionType.ENABLE_ENTITY
    current_value: EntityStatus = EntityStatus.PAUSED
    new_value: EntityStatus = EntityStatus.ENABLED

    @field_validator("new_value")
    @classmethod
    def _enables(cls, v: EntityStatus) -> EntityStatus:
        if v != EntityStatus.ENABLED:
            raise ValueError("enable_entity must set status ENABLED")
        return v


class UpdateBudgetAction(BaseAction):
    mutation_field: ClassVar[str] = "budget"
    allowed_entity_types: ClassVar[Tuple[EntityType, ...]] = (EntityType.campaign,)

    action_type: ActionType = ActionType.UPDATE_BUDGET
    current_value: Decimal = Field(..., ge=0)
    new_value: Decimal = Field(..., ge=0)


class UpdateBidAction(BaseAction):
    mutation_field: ClassVar[str] = "cpc_bid"
    allowed_entity_types: ClassVar[Tuple[EntityType, ...]] = (EntityType.ad_group, EntityType.keyword)

    action_type: ActionType = ActionType.UPDATE_BID
    current_value: Decimal = Field(..., ge=0)
    new_value: Decimal = Field(..., ge=0)


class UpdateMatchTypeAction(BaseAction):
    mutation_field: ClassVar[str] = "match_type"
    allowed_entity_types: ClassVar[Tuple[EntityType, ...]] = (EntityType.keyword,)

    action_type: ActionType = ActionType.UPDATE_MATCH_TYPE
    current_value: MatchType
    new_value: MatchType


class AddNegativesAction(BaseAction):
    mutation_field: ClassVar[str] = "negative_keywords"
    allowed_entity_types: ClassVar[Tuple[EntityType, ...]] = (EntityType.campaign, EntityType.ad_group)

    action_type: ActionType = ActionType.ADD_NEGATIVES
    current_value: Tuple[str, ...] = ()
    new_value: Tuple[str, ...] = Field(..., min_length=1)


ACTION_CLASSES: Dict[ActionType, type] = {
    ActionType.PAUSE_ENTITY: PauseEntityAction,
    ActionType.ENABLE_ENTITY: EnableEntityAction,
    ActionType.UPDATE_BUDGET: UpdateBudgetAction,
    ActionType.UPDATE_BID: UpdateBidAction,
    ActionType.UPDATE_MATCH_TYPE: UpdateMatchTypeAction,
    ActionType.ADD_NEGATIVES: AddNegativesAction,
}


def _action_tag(value: Any) -> Optional[str]:
    raw = value.get("action_type") if isinstance(value, dict) else getattr(value, "action_type", None)
    try:
        return ActionType(raw).value
    except ValueError:
        return None


Action = Annotated[
    Union[
        Annotated[PauseEntityAction, Tag(ActionType.PAUSE_ENTITY.value)],
        Annotated[EnableEntityAction, Tag(ActionType.ENABLE_ENTITY.value)],
        Annotated[UpdateBudgetAction, Tag(ActionType.UPDATE_BUDGET.value)],
        Annotated[UpdateBidAction, Tag(ActionType.UPDATE_BID.value)],
        Annotated[UpdateMatchTypeAction, Tag(ActionType.UPDATE_MATCH_TYPE.value)],
        Annotated[AddNegativesAction, Tag(ActionType.ADD_NEGATIVES.value)],
    ],
    Discriminator(_action_tag),
]

_action_adapter: TypeAdapter = TypeAdapter(Action)


def parse_action(data: Union[BaseAction, Dict[str, Any]]) -> BaseAction:
    """Build the typed action variant for a plain mapping (e.g. a JSON body)."""
    if isinstance(data, BaseAction):
        return data
    return _action_adapter.validate_python(data)


def action_json_schema() -> Dict[str, Any]:
    return _action_adapter.json_schema()
