"""Execution pipeline: confirmed queue entries -> mutation service -> audit log.

Per entity, executions are strictly serialized (FIFO on an anyio lock), so
two mutations of the same field can never be in flight at once. Distinct
entities run concurrently up to `max_concurrency`. A failing mutation is a
normal outcome: it is audited, the entry is marked failed, and the caller
gets the failed audit entry back instead of an exception.
"""

from __future__ import annotations
import inspect
import logging
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

import anyio
import anyio.to_thread
from pydantic import BaseModel

from .actions import BaseAction
from .audit import AuditLog, AuditLogEntry, AuditStatus, NewAuditEntry
from .domain import EntityType
from .errors import EntryNotFoundError, QueueStateError, to_core_error
from .queue import QueueEntry, QueueState, QueueStatus

logger = logging.getLogger(__name__)


class MutationRequest(BaseModel):
    """What the platform needs to apply one action."""

    action_id: str
    entity_type: EntityType
    entity_id: str
    field: str
    value: Any = None
    account_id: Optional[str] = None
    ad_group_id: Optional[str] = None

    @classmethod
    def for_action(cls, action: BaseAction) -> "MutationRequest":
        _, new = action.json_values()
        return cls(
            action_id=action.id,
            entity_type=action.entity_type,
            entity_id=action.entity_id,
            field=action.mutation_field,
            value=new,
            account_id=action.account_id,
            ad_group_id=action.ad_group_id,
        )


class MutationResult(BaseModel):
    success: bool
    code: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls) -> "MutationResult":
        return cls(success=True)

    @classmethod
    def failure(cls, code: str, message: str) -> "MutationResult":
        return cls(success=False, code=code, message=message)


class EntityMutationService(Protocol):
    """Applies a single-field change on the ad platform.

    `mutate` may be a plain or an async function. Plain functions run on a
    worker thread.
    """

    def mutate(self, request: MutationRequest) -> MutationResult:
        ...


OutcomeListener = Callable[[QueueEntry, AuditLogEntry], None]


@dataclass
class _EntityLock:
    lock: anyio.Lock = field(default_factory=anyio.Lock)
    users: int = 0


class ExecutionPipeline:
    def __init__(
        self,
        queue: QueueState,
        audit_log: AuditLog,
        service: EntityMutationService,
        *,
        actor_id: Optional[str] = None,
        max_concurrency: int = 8,
    ):
        self.queue = queue
        self.audit_log = audit_log
        self.service = service
        self.actor_id = actor_id
        self.max_concurrency = max(1, int(max_concurrency))
        # Only entities with an execution running or waiting hold a lock
        self._entity_locks: Dict[Tuple[str, str], _EntityLock] = {}
        self._listeners: List[OutcomeListener] = []

    def add_listener(self, listener: OutcomeListener) -> None:
        """Called after every finished execution, success or failure."""
        self._listeners.append(listener)

    @contextmanager
    def _entity_lock(self, key: Tuple[str, str]) -> Iterator[anyio.Lock]:
        with self.queue.lock:
            slot = self._entity_locks.get(key)
            if slot is None:
                slot = self._entity_locks[key] = _EntityLock()
            slot.users += 1
        try:
            yield slot.lock
        finally:
            with self.queue.lock:
                slot.users -= 1
                if slot.users == 0:
                    del self._entity_locks[key]

    async def _call_service(self, action: BaseAction) -> MutationResult:
        request = MutationRequest.for_action(action)
        try:
            if inspect.iscoroutinefunction(self.service.mutate):
                result = await self.service.mutate(request)
            else:
                result = await anyio.to_thread.run_sync(self.service.mutate, request)
        except Exception as e:
            err = to_core_error(e, default_category="mutation")
            logger.warning("Mutation of %s/%s raised: %s", action.entity_type.value, action.entity_id, err)
            return MutationResult.failure(err.code or "unhandled_exception", err.message)
        if result is None:
            return MutationResult.failure("no_response", "Mutation service returned no result")
        if not isinstance(result, MutationResult):
            return MutationResult.failure(
                "invalid_response", f"Mutation service returned {type(result).__name__}, not a MutationResult"
            )
        return result

    def _audit_entry(self, action: BaseAction, result: MutationResult) -> NewAuditEntry:
        current, new = action.json_values()
        error_message = None
        if not result.success:
            error_message = result.message or "Mutation failed"
            if result.code:
                error_message = f"[{result.code}] {error_message}"
        return NewAuditEntry(
            action_id=action.id,
            action_type=action.action_type,
            entity_type=action.entity_type,
            entity_id=action.entity_id,
            entity_name=action.entity_name,
            ad_group_id=action.ad_group_id,
            before_value=current,
            after_value=new,
            status=AuditStatus.success if result.success else AuditStatus.failed,
            error_message=error_message,
            source=action.source,
            actor_id=self.actor_id,
            account_id=action.account_id,
            reverts_entry_id=action.reverts_entry_id,
        )

    async def _complete(self, entry: QueueEntry) -> Tuple[QueueEntry, AuditLogEntry]:
        """Mutate, audit and resolve an entry already marked executing."""
        action = entry.action
        result = await self._call_service(action)
        try:
            audit = await anyio.to_thread.run_sync(self.audit_log.record, self._audit_entry(action, result))
        except Exception as e:
            # Without an audit row the change cannot be committed or undone
            self.queue.mark_failed(entry.id, None, f"Audit write failed: {e}")
            raise

        if audit.succeeded:
            return self.queue.mark_committed(entry.id, audit.id), audit
        logger.warning("Execution of %s failed: %s", entry.id, audit.error_message)
        return self.queue.mark_failed(entry.id, audit.id, audit.error_message or "Mutation failed"), audit

    def _notify(self, entry: QueueEntry, audit: AuditLogEntry) -> None:
        for listener in self._listeners:
            try:
                listener(entry, audit)
            except Exception:
                logger.exception("Outcome listener %r failed for %s", listener, entry.id)

    async def execute(self, entry_id: str) -> AuditLogEntry:
        """Run one confirmed entry and return its audit entry.

        Raises QueueStateError if the entry is not confirmed (checked again
        after waiting for the entity lock, since it may have been cancelled
        in the meantime). Once the entry is executing it runs to completion,
        even if the caller is cancelled.
        """
        entry = self.queue.get(entry_id)
        if entry.status != QueueStatus.confirmed:
            raise QueueStateError(entry_id, entry.status, "execute")

        with self._entity_lock(entry.entity) as lock:
            async with lock:
                running = self.queue.mark_executing(entry_id)
                logger.info("Executing %s (%s)", running.action.describe(), entry_id)
                with anyio.CancelScope(shield=True):
                    finished, audit = await self._complete(running)

        self._notify(finished, audit)
        return audit

    async def execute_many(self, entry_ids: Sequence[str]) -> List[AuditLogEntry]:
        """Execute several entries. Same-entity entries run in the given
        order; distinct entities run concurrently. Entries that are no
        longer confirmed are skipped."""
        groups: "OrderedDict[Tuple[str, str], List[str]]" = OrderedDict()
        for entry_id in entry_ids:
            try:
                entry = self.queue.get(entry_id)
            except EntryNotFoundError:
                logger.warning("Skipping unknown queue entry %s", entry_id)
                continue
            groups.setdefault(entry.entity, []).append(entry_id)

        results: Dict[str, AuditLogEntry] = {}
        limiter = anyio.CapacityLimiter(self.max_concurrency)

        async def run_group(ids: List[str]) -> None:
            for entry_id in ids:
                async with limiter:
                    try:
                        results[entry_id] = await self.execute(entry_id)
                    except QueueStateError as e:
                        logger.info("Skipping %s: %s", entry_id, e.message)

        async with anyio.create_task_group() as tg:
            for ids in groups.values():
                tg.start_soon(run_group, ids)

        return [results[entry_id] for entry_id in entry_ids if entry_id in results]

    async def execute_confirmed(self) -> List[AuditLogEntry]:
        ids = [e.id for e in self.queue.list() if e.status == QueueStatus.confirmed]
        return await self.execute_many(ids)
