"""Tests for typed action payloads."""

from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from nav_actions.core.actions import (
    ACTION_CLASSES,
    AddNegativesAction,
    PauseEntityAction,
    UpdateBudgetAction,
    UpdateMatchTypeAction,
    action_json_schema,
    action_label,
    parse_action,
)
from nav_actions.core.domain import ActionSource, ActionType, EntityStatus, MatchType, RiskLevel


class TestParseAction:
    """parse_action picks the variant from action_type."""

    def test_pause_defaults(self):
        action = parse_action({"action_type": "pause_entity", "entity_type": "campaign", "entity_id": "X123"})
        assert isinstance(action, PauseEntityAction)
        assert action.current_value == EntityStatus.ENABLED
        assert action.new_value == EntityStatus.PAUSED
        assert action.source == ActionSource.user
        assert action.id.startswith("act-")

    def test_budget_values_are_decimal(self):
        action = parse_action(
            {
                "action_type": "update_budget",
                "entity_type": "campaign",
                "entity_id": "C1",
                "current_value": "100.50",
                "new_value": 150,
            }
        )
        assert isinstance(action, UpdateBudgetAction)
        assert action.current_value == Decimal("100.50")
        assert action.json_values() == ("100.50", "150")

    def test_every_action_type_has_a_class(self):
        assert set(ACTION_CLASSES) == set(ActionType)

    def test_unknown_action_type_rejected(self):
        with pytest.raises(PydanticValidationError):
            parse_action({"action_type": "delete_entity", "entity_type": "campaign", "entity_id": "C1"})

    def test_existing_action_returned_as_is(self):
        action = PauseEntityAction(entity_type="campaign", entity_id="C1")
        assert parse_action(action) is action


class TestActionValidation:
    def test_budget_only_targets_campaigns(self):
        with pytest.raises(PydanticValidationError, match="cannot target keyword"):
            UpdateBudgetAction(entity_type="keyword", entity_id="K1", current_value=1, new_value=2)

    def test_negative_budget_rejected(self):
        with pytest.raises(PydanticValidationError):
            UpdateBudgetAction(entity_type="campaign", entity_id="C1", current_value=10, new_value=-1)

    def test_pause_must_pause(self):
        with pytest.raises(PydanticValidationError):
            PauseEntityAction(entity_type="campaign", entity_id="C1", new_value=EntityStatus.ENABLED)

    def test_action_type_must_match_variant(self):
        with pytest.raises(PydanticValidationError):
            PauseEntityAction(action_type="enable_entity", entity_type="campaign", entity_id="C1")

    def test_empty_entity_id_rejected(self):
        with pytest.raises(PydanticValidationError):
            PauseEntityAction(entity_type="campaign", entity_id="")

    def test_negatives_need_at_least_one_keyword(self):
        with pytest.raises(PydanticValidationError):
            AddNegativesAction(entity_type="campaign", entity_id="C1", new_value=())

    def test_actions_are_frozen(self):
        action = PauseEntityAction(entity_type="campaign", entity_id="C1")
        with pytest.raises(PydanticValidationError):
            action.entity_id = "C2"


class TestActionMetadata:
    def test_labels_and_risk(self):
        assert action_label("pause_entity") == "Pause Entity"
        action = UpdateMatchTypeAction(
            entity_type="keyword", entity_id="K1", current_value=MatchType.EXACT, new_value=MatchType.BROAD
        )
        assert action.baseline_risk == RiskLevel.medium
        assert action.mutation_field == "match_type"

    def test_describe_prefers_name(self):
        action = PauseEntityAction(entity_type="campaign", entity_id="C1", entity_name="Brand")
        assert action.describe() == "Pause Entity on Brand"
        assert action.entity == ("campaign", "C1")

    def test_json_schema_has_every_variant(self):
        schema = action_json_schema()
        variants = schema.get("oneOf") or schema.get("anyOf") or []
        assert len(variants) == len(ActionType)
