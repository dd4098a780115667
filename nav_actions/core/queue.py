"""Session-scoped queue of staged actions.

All reads and writes go through one re-entrant lock. Callers receive copies
of entries, so nothing outside this module can move an entry between states
without going through a checked transition.
"""

from __future__ import annotations
import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, SerializeAsAny

from .actions import BaseAction
from .domain import EntityType, RiskLevel
from .errors import EntryNotFoundError, QueueStateError
from .utils import entity_key, new_id, utcnow

logger = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    executing = "executing"
    committed = "committed"
    failed = "failed"
    cancelled = "cancelled"


STAGED = frozenset({QueueStatus.pending, QueueStatus.confirmed})
FINISHED = frozenset({QueueStatus.committed, QueueStatus.failed, QueueStatus.cancelled})


class QueueEntry(BaseModel):
    id: str = Field(default_factory=lambda: new_id("q"))
    action: SerializeAsAny[BaseAction]
    status: QueueStatus = QueueStatus.pending
    queued_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    superseded_by: Optional[str] = None
    # Guardrail risk computed when the entry was queued
    risk_level: Optional[RiskLevel] = None
    audit_entry_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def entity(self) -> Tuple[str, str]:
        return self.action.entity

    @property
    def is_staged(self) -> bool:
        return self.status in STAGED


class QueueState:
    """Ordered staged actions for one session, keyed by entry id."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._entries: Dict[str, QueueEntry] = {}

    def _get(self, entry_id: str) -> QueueEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise EntryNotFoundError("Queue entry", entry_id)

    def _resolve(self, entry: QueueEntry, status: QueueStatus) -> None:
        entry.status = status
        entry.resolved_at = utcnow()

    # ---------- Reads ----------
    def get(self, entry_id: str) -> QueueEntry:
        with self.lock:
            return self._get(entry_id).model_copy()

    def list(self) -> List[QueueEntry]:
        with self.lock:
            return [e.model_copy() for e in self._entries.values()]

    def for_entity(self, entity_type: EntityType | str, entity_id: str) -> List[QueueEntry]:
        key = entity_key(entity_type, entity_id)
        with self.lock:
            return [e.model_copy() for e in self._entries.values() if e.entity == key]

    def staged_actions(self) -> List[BaseAction]:
        with self.lock:
            return [e.action for e in self._entries.values() if e.is_staged]

    def pending_actions(self) -> List[BaseAction]:
        with self.lock:
            return [e.action for e in self._entries.values() if e.status == QueueStatus.pending]

    def size_by_status(self) -> Dict[QueueStatus, int]:
        counts = {status: 0 for status in QueueStatus}
        with self.lock:
            for e in self._entries.values():
                counts[e.status] += 1
        return counts

    @property
    def pending_count(self) -> int:
        """Entries still waiting to run (pending or confirmed)."""
        with self.lock:
            return sum(1 for e in self._entries.values() if e.is_staged)

    # ---------- User transitions ----------
    def add(self, action: BaseAction, *, risk_level: Optional[RiskLevel] = None) -> QueueEntry:
        """Stage an action as `pending`. Guardrails are the caller's job."""
        entry = QueueEntry(action=action, risk_level=risk_level)
        with self.lock:
            self._entries[entry.id] = entry
        logger.info("Queued %s (%s)", action.describe(), entry.id)
        return entry.model_copy()

    def confirm(self, entry_id: str) -> QueueEntry:
        with self.lock:
            entry = self._get(entry_id)
            if entry.status != QueueStatus.pending:
                raise QueueStateError(entry_id, entry.status, "confirm")
            entry.status = QueueStatus.confirmed
            return entry.model_copy()

    def cancel(self, entry_id: str, *, superseded_by: Optional[str] = None) -> QueueEntry:
        with self.lock:
            entry = self._get(entry_id)
            if entry.status not in STAGED:
                raise QueueStateError(entry_id, entry.status, "cancel")
            entry.superseded_by = superseded_by
            self._resolve(entry, QueueStatus.cancelled)
            return entry.model_copy()

    def confirm_all(self) -> List[str]:
        with self.lock:
            ids = [e.id for e in self._entries.values() if e.status == QueueStatus.pending]
            for entry_id in ids:
                self._entries[entry_id].status = QueueStatus.confirmed
        return ids

    def cancel_all(self) -> List[str]:
        with self.lock:
            ids = [e.id for e in self._entries.values() if e.is_staged]
            for entry_id in ids:
                self._resolve(self._entries[entry_id], QueueStatus.cancelled)
        return ids

    def clear_finished(self) -> int:
        """Drop committed, failed and cancelled entries from the session view."""
        with self.lock:
            done = [e.id for e in self._entries.values() if e.status in FINISHED]
            for entry_id in done:
                del self._entries[entry_id]
        return len(done)

    # ---------- Pipeline transitions ----------
    def executing_for(self, key: Tuple[str, str]) -> Optional[QueueEntry]:
        with self.lock:
            for e in self._entries.values():
                if e.entity == key and e.status == QueueStatus.executing:
                    return e.model_copy()
        return None

    def mark_executing(self, entry_id: str) -> QueueEntry:
        """Atomic check-and-set: at most one executing entry per entity."""
        with self.lock:
            entry = self._get(entry_id)
            if entry.status != QueueStatus.confirmed:
                raise QueueStateError(entry_id, entry.status, "execute")
            busy = self.executing_for(entry.entity)
            if busy is not None:
                raise QueueStateError(
                    entry_id, entry.status, f"execute while {busy.id} is executing on the same entity"
                )
            entry.status = QueueStatus.executing
            return entry.model_copy()

    def mark_committed(self, entry_id: str, audit_entry_id: int) -> QueueEntry:
        with self.lock:
            entry = self._get(entry_id)
            if entry.status != QueueStatus.executing:
                raise QueueStateError(entry_id, entry.status, "commit")
            entry.audit_entry_id = audit_entry_id
            self._resolve(entry, QueueStatus.committed)
            return entry.model_copy()

    def mark_failed(self, entry_id: str, audit_entry_id: Optional[int], error: str) -> QueueEntry:
        with self.lock:
            entry = self._get(entry_id)
            if entry.status != QueueStatus.executing:
                raise QueueStateError(entry_id, entry.status, "fail")
            entry.audit_entry_id = audit_entry_id
            entry.error = error
            self._resolve(entry, QueueStatus.failed)
            return entry.model_copy()
