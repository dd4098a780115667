"""Undo/redo over committed audit entries.

Undo never rewrites history: it builds a compensating action from the audit
entry's before/after pair and submits it like any other action, so it is
guardrail-checked, queued and audited (source 'rollback'). Redo replays the
original forward change the same way.
"""

from __future__ import annotations
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set

import anyio
from pydantic import ValidationError as PydanticValidationError

from .actions import BaseAction, action_label, parse_action
from .audit import AuditLog, AuditLogEntry
from .domain import ActionSource, ActionType
from .errors import EntryNotFoundError, ExecutionFailure, IrreversibleAction

logger = logging.getLogger(__name__)

# Compensating action type per action type; None means no inverse exists
# (negative keywords cannot be removed through the mutation service).
INVERSE_ACTIONS: Dict[ActionType, Optional[ActionType]] = {
    ActionType.PAUSE_ENTITY: ActionType.ENABLE_ENTITY,
    ActionType.ENABLE_ENTITY: ActionType.PAUSE_ENTITY,
    ActionType.UPDATE_BUDGET: ActionType.UPDATE_BUDGET,
    ActionType.UPDATE_BID: ActionType.UPDATE_BID,
    ActionType.UPDATE_MATCH_TYPE: ActionType.UPDATE_MATCH_TYPE,
    ActionType.ADD_NEGATIVES: None,
}

_missing = set(ActionType) - set(INVERSE_ACTIONS)
if _missing:
    raise RuntimeError(f"INVERSE_ACTIONS has no entry for: {sorted(t.value for t in _missing)}")

Submit = Callable[[BaseAction], Awaitable[AuditLogEntry]]


def _drop(stack: Deque[AuditLogEntry], entry_id: int) -> None:
    for item in list(stack):
        if item.id == entry_id:
            stack.remove(item)
            return


def _build(entry: AuditLogEntry, action_type: ActionType, current: Any, new: Any, **extra: Any) -> BaseAction:
    return parse_action(
        {
            "action_type": action_type.value,
            "entity_type": entry.entity_type.value,
            "entity_id": entry.entity_id,
            "entity_name": entry.entity_name,
            "account_id": entry.account_id,
            "ad_group_id": entry.ad_group_id,
            "current_value": current,
            "new_value": new,
            **extra,
        }
    )


def compensating_action(entry: AuditLogEntry) -> BaseAction:
    """The action that restores `entry.before_value`.

    Raises IrreversibleAction when no inverse exists or the recorded values
    cannot form a valid inverse (e.g. a pause of an already paused entity).
    """
    inverse = INVERSE_ACTIONS[entry.action_type]
    if inverse is None or not entry.succeeded or entry.before_value is None:
        raise IrreversibleAction(entry.id, entry.action_type)
    try:
        return _build(
            entry,
            inverse,
            entry.after_value,
            entry.before_value,
            source=ActionSource.rollback.value,
            reverts_entry_id=entry.id,
            reason=f"Undo of {action_label(entry.action_type)} (audit #{entry.id})",
        )
    except PydanticValidationError as e:
        raise IrreversibleAction(entry.id, entry.action_type) from e


def replay_action(entry: AuditLogEntry) -> BaseAction:
    """The original forward change of `entry`, for redo."""
    return _build(
        entry,
        entry.action_type,
        entry.before_value,
        entry.after_value,
        source=entry.source.value,
        reason=f"Redo of {action_label(entry.action_type)} (audit #{entry.id})",
    )


class UndoRedoController:
    """Bounded undo/redo stacks of committed audit entries.

    `submit` stages, confirms and executes an action and returns its audit
    entry; it raises ValidationBlocked if guardrails block the action.
    """

    def __init__(self, audit_log: AuditLog, submit: Submit, *, max_depth: int = 1):
        self.audit_log = audit_log
        self._submit = submit
        self.max_depth = max(1, int(max_depth))
        self._undo: Deque[AuditLogEntry] = deque(maxlen=self.max_depth)
        self._redo: Deque[AuditLogEntry] = deque(maxlen=self.max_depth)
        # Action ids submitted by undo/redo; their commits are not new history
        self._replaying: Set[str] = set()
        self._lock = anyio.Lock()

    # ---------- History bookkeeping ----------
    def record_commit(self, entry: AuditLogEntry) -> None:
        if not entry.succeeded or entry.action_id in self._replaying:
            return
        self._undo.append(entry)

    def clear_redo(self) -> None:
        if self._redo:
            logger.debug("Clearing %d redo entr(y/ies)", len(self._redo))
        self._redo.clear()

    @property
    def can_undo(self) -> bool:
        return bool(self._undo) and self.can_undo_entry(self._undo[-1])

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @staticmethod
    def can_undo_entry(entry: AuditLogEntry) -> bool:
        try:
            compensating_action(entry)
        except IrreversibleAction:
            return False
        return True

    @property
    def last_action(self) -> Optional[str]:
        """Human description of what undo would revert."""
        if not self._undo:
            return None
        entry = self._undo[-1]
        return f"{action_label(entry.action_type)} on {entry.entity_name or entry.entity_id}"

    def history(self) -> Dict[str, Any]:
        return {
            "undo": [e.id for e in self._undo],
            "redo": [e.id for e in self._redo],
            "can_undo": self.can_undo,
            "can_redo": self.can_redo,
            "last_action": self.last_action,
        }

    # ---------- Operations ----------
    async def _run(self, action: BaseAction) -> AuditLogEntry:
        self._replaying.add(action.id)
        try:
            audit = await self._submit(action)
        finally:
            self._replaying.discard(action.id)
        if not audit.succeeded:
            raise ExecutionFailure(audit.error_message or "Mutation failed", audit_entry=audit)
        return audit

    async def undo(self) -> AuditLogEntry:
        """Revert the most recent committed action.

        On any failure (blocked, irreversible, execution) the stacks are
        left as they were.
        """
        async with self._lock:
            if not self._undo:
                raise EntryNotFoundError("Undo history entry", "latest")
            # Re-read from the durable log; the stack only holds references
            original = self.audit_log.find(self._undo[-1].id)
            action = compensating_action(original)
            logger.info("Undoing audit #%d with %s", original.id, action.describe())
            audit = await self._run(action)
            _drop(self._undo, original.id)
            self._redo.append(original)
            return audit

    async def redo(self) -> AuditLogEntry:
        async with self._lock:
            if not self._redo:
                raise EntryNotFoundError("Redo history entry", "latest")
            original = self._redo[-1]
            action = replay_action(original)
            logger.info("Redoing audit #%d with %s", original.id, action.describe())
            audit = await self._run(action)
            _drop(self._redo, original.id)
            self._undo.append(audit)
            return audit
