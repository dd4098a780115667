from __future__ import annotations
from decimal import Decimal
from typing import Dict, List, Set, Tuple

import pytest

from nav_actions.core.audit import AuditLog
from nav_actions.core.config import GuardrailConfigStore
from nav_actions.core.domain import EntityStatus, EntityType
from nav_actions.core.pipeline import MutationRequest, MutationResult
from nav_actions.core.snapshot import EntitySnapshot, StaticSnapshotProvider
from nav_actions.session import ActionSession


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeMutationService:
    """Records requests and applies them to an in-memory field store."""

    def __init__(self) -> None:
        self.requests: List[MutationRequest] = []
        self.fields: Dict[Tuple[str, str, str], object] = {}
        self.reject: Set[str] = set()
        self.raise_for: Dict[str, BaseException] = {}

    def mutate(self, request: MutationRequest) -> MutationResult:
        self.requests.append(request)
        if request.entity_id in self.raise_for:
            raise self.raise_for[request.entity_id]
        if request.entity_id in self.reject:
            return MutationResult.failure("rejected", "Platform rejected the change")
        self.fields[(request.entity_type.value, request.entity_id, request.field)] = request.value
        return MutationResult.ok()

    def value(self, entity_type: str, entity_id: str, field: str):
        return self.fields.get((entity_type, entity_id, field))


def campaign(entity_id: str, **kwargs) -> EntitySnapshot:
    kwargs.setdefault("name", f"Campaign {entity_id}")
    return EntitySnapshot(entity_type=EntityType.campaign, entity_id=entity_id, **kwargs)


def pause(entity_id: str, entity_type: str = "campaign", **kwargs) -> dict:
    return {"action_type": "pause_entity", "entity_type": entity_type, "entity_id": entity_id, **kwargs}


def budget(entity_id: str, current, new, **kwargs) -> dict:
    return {
        "action_type": "update_budget",
        "entity_type": "campaign",
        "entity_id": entity_id,
        "current_value": str(current),
        "new_value": str(new),
        **kwargs,
    }


@pytest.fixture
def audit_log():
    return AuditLog("sqlite:///:memory:")


@pytest.fixture
def mutation_service():
    return FakeMutationService()


@pytest.fixture
def snapshot_provider():
    return StaticSnapshotProvider(
        [
            campaign("C1", spend=Decimal("500"), ai_score=40),
            campaign("C2", spend=Decimal("1200"), ai_score=90),
            campaign("C3", status=EntityStatus.PAUSED),
        ]
    )


@pytest.fixture
def session(audit_log, mutation_service, snapshot_provider):
    return ActionSession(
        audit_log=audit_log,
        mutation_service=mutation_service,
        snapshot_provider=snapshot_provider,
        config_store=GuardrailConfigStore(),
    )
