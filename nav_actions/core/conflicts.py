"""Per-entity conflict resolution for staged actions.

Last intent wins: a new action for an entity that already has a staged
(pending or confirmed) entry replaces it instead of stacking a second,
possibly contradictory, mutation. Entries that already started executing
are left alone and the new action simply queues behind them.
"""

from __future__ import annotations
import logging
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from .actions import BaseAction
from .domain import RiskLevel
from .queue import QueueEntry, QueueState

logger = logging.getLogger(__name__)


class ConflictDecision(str, Enum):
    enqueue = "enqueue"
    replace = "replace"
    reject = "reject"


class Reconciliation(BaseModel):
    decision: ConflictDecision
    superseded_id: Optional[str] = None


class ConflictSuperseded(BaseModel):
    """Informational notice: staged entries replaced by newer intent."""

    entity_type: str
    entity_id: str
    superseded_ids: List[str] = Field(default_factory=list)
    replacement_id: Optional[str] = None


def reconcile(new_action: BaseAction, existing_entries: Sequence[QueueEntry]) -> Reconciliation:
    """Decide how `new_action` enters a queue holding `existing_entries`.

    The newest staged entry on the same entity is replaced, whatever it
    holds. Only the same action (by id) queued a second time is rejected.
    """
    same_entity = [e for e in existing_entries if e.entity == new_action.entity]
    if any(e.action.id == new_action.id for e in same_entity):
        return Reconciliation(decision=ConflictDecision.reject)
    for entry in reversed(same_entity):
        if entry.is_staged:
            return Reconciliation(decision=ConflictDecision.replace, superseded_id=entry.id)
    return Reconciliation(decision=ConflictDecision.enqueue)


def dedupe_actions(actions: Sequence[BaseAction]) -> Tuple[List[BaseAction], List[BaseAction]]:
    """Collapse a batch to one action per entity, keeping the last one.

    Returns (kept, superseded). `kept` preserves the position of each
    entity's first appearance so batch order stays recognisable.
    """
    last: dict = {}
    order: List[Tuple[str, str]] = []
    superseded: List[BaseAction] = []
    for action in actions:
        key = action.entity
        if key in last:
            superseded.append(last[key])
        else:
            order.append(key)
        last[key] = action
    return [last[k] for k in order], superseded


class StageResult(BaseModel):
    entry: QueueEntry
    reconciliation: Reconciliation
    superseded: Optional[ConflictSuperseded] = None


class ConflictResolver:
    """Runs reconciliation and the resulting queue writes under the queue lock."""

    def __init__(self, queue: QueueState):
        self.queue = queue

    def stage(self, action: BaseAction, *, risk_level: Optional[RiskLevel] = None) -> StageResult:
        """Reconcile and queue `action`, superseding staged intent on its entity."""
        with self.queue.lock:
            existing = self.queue.for_entity(action.entity_type, action.entity_id)
            decision = reconcile(action, existing)
            if decision.decision == ConflictDecision.reject:
                current = next(e for e in existing if e.action.id == action.id)
                logger.info("Action %s already queued as %s", action.id, current.id)
                return StageResult(entry=current, reconciliation=decision)

            entry = self.queue.add(action, risk_level=risk_level)
            notice = None
            if decision.decision == ConflictDecision.replace:
                self.queue.cancel(decision.superseded_id, superseded_by=entry.id)
                notice = ConflictSuperseded(
                    entity_type=action.entity_type.value,
                    entity_id=action.entity_id,
                    superseded_ids=[decision.superseded_id],
                    replacement_id=entry.id,
                )
                logger.info("Entry %s superseded by %s (%s)", decision.superseded_id, entry.id, action.describe())
            return StageResult(entry=entry, reconciliation=decision, superseded=notice)
