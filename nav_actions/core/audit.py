"""Append-only audit trail of executed (or attempted) actions.

One row per execution attempt, success or failure. Rows are never updated
or deleted: a rollback is a new row with source 'rollback' that points at
the row it reverts. The before/after pair stored here is the only input to
undo, so the table must live in durable storage.
"""

from __future__ import annotations
import json
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .domain import ActionSource, ActionType, EntityType
from .errors import CoreError, EntryNotFoundError, ErrorCode
from .utils import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()

MAX_PAGE_SIZE = 500


class AuditStatus(str, Enum):
    success = "success"
    failed = "failed"


class AuditRecord(Base):
    """ORM row. APPEND-ONLY: updates and deletes are rejected at flush time."""

    __tablename__ = "action_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action_id = Column(String(64), nullable=True)
    action_type = Column(String(40), nullable=False, index=True)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(64), nullable=False, index=True)
    entity_name = Column(String(255), nullable=False, default="")
    ad_group_id = Column(String(64), nullable=True)
    before_value_json = Column(Text, nullable=True)
    after_value_json = Column(Text, nullable=True)
    status = Column(String(10), nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    source = Column(String(10), nullable=False, default=ActionSource.user.value)
    actor_id = Column(String(64), nullable=True)
    account_id = Column(String(64), nullable=True, index=True)
    reverts_entry_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class NewAuditEntry(BaseModel):
    """Data for one execution attempt, before it has an id."""

    action_id: Optional[str] = None
    action_type: ActionType
    entity_type: EntityType
    entity_id: str
    entity_name: str = ""
    ad_group_id: Optional[str] = None
    before_value: Any = None
    after_value: Any = None
    status: AuditStatus
    error_message: Optional[str] = None
    source: ActionSource = ActionSource.user
    actor_id: Optional[str] = None
    account_id: Optional[str] = None
    reverts_entry_id: Optional[int] = None


class AuditLogEntry(NewAuditEntry):
    model_config = ConfigDict(frozen=True)

    id: int
    created_at: datetime

    @property
    def succeeded(self) -> bool:
        return self.status == AuditStatus.success

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditLogEntry":
        created_at = record.created_at
        # SQLite drops tzinfo on the way back out
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return cls(
            id=record.id,
            action_id=record.action_id,
            action_type=record.action_type,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            entity_name=record.entity_name or "",
            ad_group_id=record.ad_group_id,
            before_value=json.loads(record.before_value_json) if record.before_value_json else None,
            after_value=json.loads(record.after_value_json) if record.after_value_json else None,
            status=record.status,
            error_message=record.error_message,
            source=record.source,
            actor_id=record.actor_id,
            account_id=record.account_id,
            reverts_entry_id=record.reverts_entry_id,
            created_at=created_at,
        )


class AuditQuery(BaseModel):
    entity_id: Optional[str] = None
    entity_type: Optional[EntityType] = None
    account_id: Optional[str] = None
    status: Optional[AuditStatus] = None
    source: Optional[ActionSource] = None
    action_type: Optional[ActionType] = None
    offset: int = Field(0, ge=0)
    limit: int = Field(50, ge=1, le=MAX_PAGE_SIZE)


class AuditPage(BaseModel):
    items: List[AuditLogEntry] = Field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 50

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


def create_audit_engine(url: str, *, echo: bool = False) -> Engine:
    """Engine for the audit store. SQLite connections are shared across the
    worker threads the pipeline records from."""
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(url, echo=echo, pool_pre_ping=True)


def _reject_mutation(session: Session, flush_context, instances) -> None:
    for obj in list(session.dirty) + list(session.deleted):
        if isinstance(obj, AuditRecord):
            raise CoreError(
                "Audit log entries are append-only",
                ErrorCode.INVALID_INPUT_DATA,
                context={"audit_entry_id": obj.id},
            )


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


class AuditLog:
    """Durable, append-only audit store backed by SQLAlchemy."""

    def __init__(self, engine: Union[Engine, str]):
        self.engine = create_audit_engine(engine) if isinstance(engine, str) else engine
        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        event.listen(self._sessions, "before_flush", _reject_mutation)
        # SQLite in-memory stores share one connection across worker threads
        self._lock = threading.Lock()

    def record(self, entry: Union[NewAuditEntry, Dict[str, Any]]) -> AuditLogEntry:
        """Append one entry. Commits immediately so the audit is never lost."""
        data = entry if isinstance(entry, NewAuditEntry) else NewAuditEntry.model_validate(entry)
        row = AuditRecord(
            action_id=data.action_id,
            action_type=data.action_type.value,
            entity_type=data.entity_type.value,
            entity_id=data.entity_id,
            entity_name=data.entity_name,
            ad_group_id=data.ad_group_id,
            before_value_json=_dump(data.before_value),
            after_value_json=_dump(data.after_value),
            status=data.status.value,
            error_message=data.error_message,
            source=data.source.value,
            actor_id=data.actor_id,
            account_id=data.account_id,
            reverts_entry_id=data.reverts_entry_id,
            created_at=utcnow(),
        )
        with self._lock, self._sessions() as session:
            session.add(row)
            session.commit()
            recorded = AuditLogEntry.from_record(row)
        logger.info(
            "Audit #%d: %s %s/%s -> %s",
            recorded.id,
            recorded.action_type.value,
            recorded.entity_type.value,
            recorded.entity_id,
            recorded.status.value,
        )
        return recorded

    def find(self, entry_id: int) -> AuditLogEntry:
        with self._lock, self._sessions() as session:
            row = session.get(AuditRecord, entry_id)
            if row is None:
                raise EntryNotFoundError("Audit entry", entry_id)
            return AuditLogEntry.from_record(row)

    def query(self, filters: Optional[Union[AuditQuery, Dict[str, Any]]] = None, **kwargs: Any) -> AuditPage:
        """Filter and page through the log, newest first."""
        if filters is None:
            filters = AuditQuery(**kwargs)
        elif isinstance(filters, dict):
            filters = AuditQuery(**{**filters, **kwargs})

        with self._lock, self._sessions() as session:
            q = session.query(AuditRecord)
            if filters.entity_id:
                q = q.filter(AuditRecord.entity_id == filters.entity_id)
            if filters.entity_type:
                q = q.filter(AuditRecord.entity_type == filters.entity_type.value)
            if filters.account_id:
                q = q.filter(AuditRecord.account_id == filters.account_id)
            if filters.status:
                q = q.filter(AuditRecord.status == filters.status.value)
            if filters.source:
                q = q.filter(AuditRecord.source == filters.source.value)
            if filters.action_type:
                q = q.filter(AuditRecord.action_type == filters.action_type.value)

            total = q.count()
            rows = (
                q.order_by(AuditRecord.created_at.desc(), AuditRecord.id.desc())
                .offset(filters.offset)
                .limit(filters.limit)
                .all()
            )
            items = [AuditLogEntry.from_record(r) for r in rows]

        return AuditPage(items=items, total=total, offset=filters.offset, limit=filters.limit)

    def count(self) -> int:
        with self._lock, self._sessions() as session:
            return session.query(AuditRecord).count()
