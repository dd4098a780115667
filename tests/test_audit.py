"""Tests for the durable audit log."""

import pytest

from nav_actions.core.audit import AuditLog, AuditRecord, AuditStatus, NewAuditEntry
from nav_actions.core.domain import ActionSource
from nav_actions.core.errors import CoreError, EntryNotFoundError


def entry(entity_id="C1", status=AuditStatus.success, **kwargs):
    data = dict(
        action_type="pause_entity",
        entity_type="campaign",
        entity_id=entity_id,
        entity_name=f"Campaign {entity_id}",
        before_value="ENABLED",
        after_value="PAUSED",
        status=status,
        account_id="123",
    )
    data.update(kwargs)
    return NewAuditEntry(**data)


class TestRecord:
    def test_record_assigns_id_and_timestamp(self, audit_log):
        recorded = audit_log.record(entry())
        assert recorded.id >= 1
        assert recorded.created_at.tzinfo is not None
        assert recorded.before_value == "ENABLED"
        assert recorded.after_value == "PAUSED"

    def test_find_round_trips_json_values(self, audit_log):
        recorded = audit_log.record(
            entry(action_type="add_negatives", before_value=[], after_value=["free", "cheap"])
        )
        found = audit_log.find(recorded.id)
        assert found.after_value == ["free", "cheap"]
        assert found.source == ActionSource.user

    def test_find_unknown_raises(self, audit_log):
        with pytest.raises(EntryNotFoundError):
            audit_log.find(999)

    def test_file_backed_log_survives_reopen(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'audit.db'}"
        recorded = AuditLog(url).record(entry())
        assert AuditLog(url).find(recorded.id).entity_id == "C1"


class TestQuery:
    def test_newest_first_with_paging(self, audit_log):
        ids = [audit_log.record(entry(f"C{i}")).id for i in range(5)]
        page = audit_log.query(limit=2)
        assert page.total == 5
        assert [e.id for e in page.items] == ids[::-1][:2]
        assert page.has_more

        last = audit_log.query(offset=4, limit=2)
        assert [e.id for e in last.items] == [ids[0]]
        assert not last.has_more

    def test_filters(self, audit_log):
        audit_log.record(entry("C1"))
        audit_log.record(entry("C2", status=AuditStatus.failed, error_message="rejected"))
        audit_log.record(entry("C1", source="rollback", reverts_entry_id=1))

        assert audit_log.query(entity_id="C1").total == 2
        assert audit_log.query(status="failed").items[0].error_message == "rejected"
        assert audit_log.query({"source": "rollback"}).items[0].reverts_entry_id == 1
        assert audit_log.query(account_id="other").total == 0

    def test_limit_is_capped(self, audit_log):
        with pytest.raises(ValueError):
            audit_log.query(limit=501)


def test_rows_cannot_be_updated(audit_log):
    recorded = audit_log.record(entry())
    with audit_log._sessions() as session:
        row = session.get(AuditRecord, recorded.id)
        row.status = "failed"
        with pytest.raises(CoreError, match="append-only"):
            session.commit()
