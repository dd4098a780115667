"""Session controller: the API a dashboard (or the HTTP service) talks to.

One ActionSession owns one queue and one undo history. Proposals are pure
guardrail checks; queueing re-checks and stages under the queue lock, so a
result computed for one queue state is never applied to another.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from pydantic import BaseModel, Field

from nav_actions.core.actions import BaseAction, parse_action
from nav_actions.core.audit import AuditLog, AuditLogEntry, AuditPage, AuditQuery
from nav_actions.core.config import GuardrailConfig, GuardrailConfigStore
from nav_actions.core.conflicts import ConflictDecision, ConflictResolver, ConflictSuperseded, dedupe_actions
from nav_actions.core.errors import ValidationBlocked
from nav_actions.core.pipeline import EntityMutationService, ExecutionPipeline
from nav_actions.core.queue import QueueEntry, QueueState, QueueStatus
from nav_actions.core.rules import GuardrailResult, evaluate
from nav_actions.core.snapshot import GuardrailSnapshot, SnapshotProvider, StaticSnapshotProvider
from nav_actions.core.undo import UndoRedoController
from nav_actions.settings import NavActionsSettings

logger = logging.getLogger(__name__)

ActionInput = Union[BaseAction, Dict[str, Any]]


class QueueOutcome(BaseModel):
    result: GuardrailResult
    entries: List[QueueEntry] = Field(default_factory=list)
    superseded: List[ConflictSuperseded] = Field(default_factory=list)
    # Entries that already held the submitted action; nothing new was queued
    duplicates: List[str] = Field(default_factory=list)
    # Batch members dropped because a later action targeted the same entity
    collapsed_action_ids: List[str] = Field(default_factory=list)


class ActionSession:
    def __init__(
        self,
        *,
        audit_log: AuditLog,
        mutation_service: EntityMutationService,
        snapshot_provider: Optional[SnapshotProvider] = None,
        config_store: Optional[GuardrailConfigStore] = None,
        account_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        ruleset_path: Optional[str] = None,
        undo_depth: int = 1,
        max_concurrency: int = 8,
    ):
        self.audit_log = audit_log
        self.snapshot_provider = snapshot_provider or StaticSnapshotProvider()
        self.config_store = config_store or GuardrailConfigStore()
        self.account_id = account_id
        self.ruleset_path = ruleset_path

        self.queue = QueueState()
        self.resolver = ConflictResolver(self.queue)
        self.pipeline = ExecutionPipeline(
            self.queue, audit_log, mutation_service, actor_id=actor_id, max_concurrency=max_concurrency
        )
        self.history = UndoRedoController(audit_log, self._submit_now, max_depth=undo_depth)
        self.pipeline.add_listener(lambda entry, audit: self.history.record_commit(audit))

    @classmethod
    def from_settings(
        cls,
        settings: NavActionsSettings,
        *,
        mutation_service: Optional[EntityMutationService] = None,
        snapshot_provider: Optional[SnapshotProvider] = None,
    ) -> "ActionSession":
        if mutation_service is None:
            from nav_actions.mutation_client import HttpMutationService

            mutation_service = HttpMutationService(settings.mutation_base_url, timeout=settings.mutation_timeout)
        return cls(
            audit_log=AuditLog(settings.audit_db_url),
            mutation_service=mutation_service,
            snapshot_provider=snapshot_provider,
            config_store=GuardrailConfigStore(settings.guardrail_config_path),
            account_id=settings.account_id,
            actor_id=settings.actor_id,
            ruleset_path=settings.ruleset_path,
            undo_depth=settings.undo_depth,
            max_concurrency=settings.max_concurrency,
        )

    # ---------- Guardrails ----------
    def guardrail_config(self) -> GuardrailConfig:
        return self.config_store.get(self.account_id)

    def update_guardrail_config(self, **changes: Any) -> GuardrailConfig:
        return self.config_store.update(self.account_id, **changes)

    def _snapshot(self, targets: Iterable[Tuple[str, str]] = ()) -> GuardrailSnapshot:
        # Staged intent on the targeted entities is about to be superseded
        skip: Set[Tuple[str, str]] = set(targets)
        staged = [a for a in self.queue.staged_actions() if a.entity not in skip]
        return self.snapshot_provider.snapshot(self.account_id).with_staged(staged)

    def _evaluate(self, actions: Union[BaseAction, Sequence[BaseAction]]) -> GuardrailResult:
        targets = [actions.entity] if isinstance(actions, BaseAction) else [a.entity for a in actions]
        return evaluate(actions, self._snapshot(targets), self.guardrail_config(), ruleset_path=self.ruleset_path)

    def propose_action(self, action: ActionInput) -> GuardrailResult:
        """Guardrail check only; nothing is queued."""
        return self._evaluate(parse_action(action))

    def propose_bulk(self, actions: Sequence[ActionInput]) -> GuardrailResult:
        return self._evaluate([parse_action(a) for a in actions])

    # ---------- Queueing ----------
    def confirm_and_queue(self, action: ActionInput) -> QueueOutcome:
        """Re-check guardrails and stage the action as a pending entry.

        Raises ValidationBlocked if any blocking guardrail fires.
        """
        action = parse_action(action)
        with self.queue.lock:
            result = self._evaluate(action)
            if not result.allowed:
                logger.warning("Blocked %s: %s", action.describe(), ", ".join(result.block_codes))
                raise ValidationBlocked(result)
            staged = self.resolver.stage(action, risk_level=result.risk_level)
        self.history.clear_redo()

        outcome = QueueOutcome(result=result, entries=[staged.entry])
        if staged.superseded is not None:
            outcome.superseded.append(staged.superseded)
        if staged.reconciliation.decision == ConflictDecision.reject:
            outcome.duplicates.append(staged.entry.id)
        return outcome

    def confirm_and_queue_bulk(self, actions: Sequence[ActionInput]) -> QueueOutcome:
        """All-or-nothing: a blocked batch queues nothing."""
        parsed = [parse_action(a) for a in actions]
        kept, collapsed = dedupe_actions(parsed)
        with self.queue.lock:
            result = self._evaluate(kept)
            if not result.allowed:
                logger.warning("Blocked bulk of %d action(s): %s", len(kept), ", ".join(result.block_codes))
                raise ValidationBlocked(result)
            staged = [self.resolver.stage(a, risk_level=result.risk_level) for a in kept]
        self.history.clear_redo()

        outcome = QueueOutcome(result=result, collapsed_action_ids=[a.id for a in collapsed])
        for s in staged:
            outcome.entries.append(s.entry)
            if s.superseded is not None:
                outcome.superseded.append(s.superseded)
            elif s.reconciliation.decision == ConflictDecision.reject:
                outcome.duplicates.append(s.entry.id)
        logger.info("Queued bulk of %d action(s) (%d collapsed)", len(kept), len(collapsed))
        return outcome

    def queue_snapshot(self) -> List[QueueEntry]:
        return self.queue.list()

    def confirm(self, entry_id: str) -> QueueEntry:
        return self.queue.confirm(entry_id)

    def cancel(self, entry_id: str) -> QueueEntry:
        return self.queue.cancel(entry_id)

    def confirm_all(self) -> List[str]:
        return self.queue.confirm_all()

    def cancel_all(self) -> List[str]:
        return self.queue.cancel_all()

    def clear_finished(self) -> int:
        return self.queue.clear_finished()

    # ---------- Execution ----------
    async def execute(self, entry_id: str) -> AuditLogEntry:
        return await self.pipeline.execute(entry_id)

    async def execute_confirmed(self) -> List[AuditLogEntry]:
        return await self.pipeline.execute_confirmed()

    async def _submit_now(self, action: BaseAction) -> AuditLogEntry:
        """Guardrail-check, stage, confirm and execute in one go (undo/redo)."""
        with self.queue.lock:
            result = self._evaluate(action)
            if not result.allowed:
                logger.warning("Blocked %s: %s", action.describe(), ", ".join(result.block_codes))
                raise ValidationBlocked(result)
            entry = self.resolver.stage(action, risk_level=result.risk_level).entry
            if entry.status == QueueStatus.pending:
                self.queue.confirm(entry.id)
        return await self.pipeline.execute(entry.id)

    # ---------- Audit ----------
    def audit_query(self, filters: Optional[Union[AuditQuery, Dict[str, Any]]] = None, **kwargs: Any) -> AuditPage:
        return self.audit_log.query(filters, **kwargs)

    def audit_entry(self, entry_id: int) -> AuditLogEntry:
        return self.audit_log.find(entry_id)

    # ---------- Undo / redo ----------
    async def undo(self) -> AuditLogEntry:
        return await self.history.undo()

    async def redo(self) -> AuditLogEntry:
        return await self.history.redo()

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo

    @property
    def last_action(self) -> Optional[str]:
        return self.history.last_action

    def can_undo_entry(self, entry_id: int) -> bool:
        return self.history.can_undo_entry(self.audit_log.find(entry_id))
