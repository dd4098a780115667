"""Tests for per-entity conflict resolution."""

from conftest import budget, pause
from nav_actions.core.actions import parse_action
from nav_actions.core.conflicts import ConflictDecision, ConflictResolver, dedupe_actions, reconcile
from nav_actions.core.domain import RiskLevel
from nav_actions.core.queue import QueueState, QueueStatus


def test_second_pending_action_supersedes_first():
    queue = QueueState()
    resolver = ConflictResolver(queue)
    first = resolver.stage(parse_action(budget("C1", 100, 120)))
    second = resolver.stage(parse_action(budget("C1", 100, 90)))

    assert second.reconciliation.decision == ConflictDecision.replace
    assert second.superseded.superseded_ids == [first.entry.id]

    staged = [e for e in queue.for_entity("campaign", "C1") if e.is_staged]
    assert [e.id for e in staged] == [second.entry.id]
    assert staged[0].action.new_value == 90

    old = queue.get(first.entry.id)
    assert old.status == QueueStatus.cancelled
    assert old.superseded_by == second.entry.id


def test_identical_intent_replaces_earlier_entry():
    queue = QueueState()
    resolver = ConflictResolver(queue)
    first = resolver.stage(parse_action(pause("C1")))
    again = resolver.stage(parse_action(pause("C1")))

    assert again.reconciliation.decision == ConflictDecision.replace
    assert again.entry.id != first.entry.id
    old = queue.get(first.entry.id)
    assert old.status == QueueStatus.cancelled
    assert old.superseded_by == again.entry.id
    assert [e.id for e in queue.list() if e.is_staged] == [again.entry.id]


def test_same_action_staged_twice_is_a_no_op():
    queue = QueueState()
    resolver = ConflictResolver(queue)
    action = parse_action(pause("C1"))
    first = resolver.stage(action)
    again = resolver.stage(action)

    assert again.reconciliation.decision == ConflictDecision.reject
    assert again.entry.id == first.entry.id
    assert queue.get(first.entry.id).status == QueueStatus.pending
    assert len(queue.list()) == 1


def test_stage_keeps_risk_level():
    queue = QueueState()
    staged = ConflictResolver(queue).stage(parse_action(pause("C1")), risk_level=RiskLevel.high)
    assert queue.get(staged.entry.id).risk_level == RiskLevel.high


def test_executing_entry_is_not_replaced():
    queue = QueueState()
    entry = queue.add(parse_action(budget("C1", 100, 120)))
    queue.confirm(entry.id)
    queue.mark_executing(entry.id)

    decision = reconcile(parse_action(budget("C1", 120, 90)), queue.list())
    assert decision.decision == ConflictDecision.enqueue


def test_other_entities_do_not_conflict():
    queue = QueueState()
    queue.add(parse_action(pause("C1")))
    decision = reconcile(parse_action(pause("C2")), queue.list())
    assert decision.decision == ConflictDecision.enqueue


def test_dedupe_keeps_last_intent_in_first_position():
    a1 = parse_action(budget("C1", 100, 110))
    b = parse_action(pause("C2"))
    a2 = parse_action(budget("C1", 100, 130))
    kept, superseded = dedupe_actions([a1, b, a2])
    assert kept == [a2, b]
    assert superseded == [a1]
