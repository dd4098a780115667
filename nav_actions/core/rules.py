"""Guardrail rule set.

Rules are plain functions registered under a stable code. A YAML ruleset
decides which of them run, in what order, with what severity, and supplies
the jinja2 message templates shown to the user. Evaluation is pure: the
ruleset is read once per path and cached, and rules only look at the action,
the snapshot and the config they are handed.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Literal, Optional, Sequence, Union

import jinja2
import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .actions import BaseAction
from .config import GuardrailConfig
from .conflicts import dedupe_actions
from .domain import ActionType, EntityStatus, EntityType, MatchType, RiskLevel, Severity
from .snapshot import GuardrailSnapshot
from .utils import max_severity, percent_change

DEFAULT_RULESET = Path(__file__).parent.parent / "domains" / "paid_search" / "guardrails" / "default.yaml"

OutcomeKind = Literal["block", "warn", "notice"]


class GuardrailWarning(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    severity: Severity = Severity.medium


class GuardrailResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool = True
    risk_level: RiskLevel = RiskLevel.low
    warnings: List[GuardrailWarning] = Field(default_factory=list)
    block_reasons: List[GuardrailWarning] = Field(default_factory=list)

    @model_validator(mode="after")
    def _blocked_means_not_allowed(self):
        if self.block_reasons and self.allowed:
            raise ValueError("a result with block reasons cannot be allowed")
        return self

    @property
    def block_codes(self) -> List[str]:
        return [r.code for r in self.block_reasons]

    @property
    def warning_codes(self) -> List[str]:
        return [w.code for w in self.warnings]

    @property
    def needs_confirmation(self) -> bool:
        return self.allowed and bool(self.warnings)


@dataclass(frozen=True)
class RuleOutcome:
    kind: OutcomeKind
    context: Dict[str, Any] = field(default_factory=dict)


SingleRule = Callable[[BaseAction, GuardrailSnapshot, GuardrailConfig], Iterable[RuleOutcome]]
BulkRule = Callable[[Sequence[BaseAction], GuardrailSnapshot, GuardrailConfig], Iterable[RuleOutcome]]

SINGLE_RULES: Dict[str, SingleRule] = {}
BULK_RULES: Dict[str, BulkRule] = {}


def single_rule(code: str):
    def register(fn: SingleRule) -> SingleRule:
        SINGLE_RULES[code] = fn
        return fn

    return register


def bulk_rule(code: str):
    def register(fn: BulkRule) -> BulkRule:
        BULK_RULES[code] = fn
        return fn

    return register


# ---------- Ruleset loading ----------
class RuleSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    code: str
    enabled: bool = True
    severity: Severity = Severity.medium
    messages: Dict[str, str] = Field(default_factory=dict)


class Ruleset(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: int = 1
    single: List[RuleSpec] = Field(default_factory=list)
    bulk: List[RuleSpec] = Field(default_factory=list)


_jinja_env = jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=False)


def _validate_ruleset(raw: Any) -> Ruleset:
    """Structural validation + template syntax checks at load time."""
    if not isinstance(raw, dict):
        raise ValueError("Ruleset file must parse to a mapping")
    ruleset = Ruleset.model_validate(raw)
    for section, registry in (("single", SINGLE_RULES), ("bulk", BULK_RULES)):
        seen = set()
        for spec in getattr(ruleset, section):
            if spec.code not in registry:
                raise ValueError(f"Unknown {section} rule '{spec.code}'")
            if spec.code in seen:
                raise ValueError(f"Rule '{spec.code}' listed twice in '{section}'")
            seen.add(spec.code)
            for kind, tpl in spec.messages.items():
                if kind not in ("block", "warn"):
                    raise ValueError(f"Rule {spec.code} has unknown message kind '{kind}'")
                # Syntax check only (no rendering)
                _jinja_env.parse(tpl)
    return ruleset


@lru_cache(maxsize=32)
def _load_ruleset_cached(ruleset_path: str) -> Ruleset:
    with open(ruleset_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return _validate_ruleset(raw)


def load_ruleset(ruleset_path: Optional[Union[str, Path]] = None) -> Ruleset:
    return _load_ruleset_cached(str(ruleset_path or DEFAULT_RULESET))


def clear_ruleset_cache() -> None:
    _load_ruleset_cached.cache_clear()
    _template.cache_clear()


@lru_cache(maxsize=256)
def _template(template_str: str) -> jinja2.Template:
    return _jinja_env.from_string(template_str)


def _render(template_str: str, ctx: Dict[str, Any]) -> str:
    def pct(x):
        try:
            return f"{float(x):.0f}%"
        except (TypeError, ValueError):
            return "n/a"

    def usd(x):
        try:
            return f"${float(x):,.2f}"
        except (TypeError, ValueError):
            return "n/a"

    return _template(template_str).render(pct=pct, usd=usd, **ctx).strip()


# ---------- Result assembly ----------
class _Collector:
    def __init__(self, floor: RiskLevel):
        self.floor = floor
        self.severities: List[Severity] = []
        self.warnings: List[GuardrailWarning] = []
        self.block_reasons: List[GuardrailWarning] = []

    def _append(self, bucket: List[GuardrailWarning], item: GuardrailWarning) -> None:
        if item not in bucket:
            bucket.append(item)

    def add(self, spec: RuleSpec, outcome: RuleOutcome, base_ctx: Dict[str, Any]) -> None:
        self.severities.append(spec.severity)
        if outcome.kind == "notice":
            return
        template = spec.messages.get(outcome.kind)
        ctx = {**base_ctx, **outcome.context}
        message = _render(template, ctx) if template else spec.code
        item = GuardrailWarning(code=spec.code, message=message, severity=spec.severity)
        self._append(self.block_reasons if outcome.kind == "block" else self.warnings, item)

    def merge(self, result: GuardrailResult) -> None:
        self.severities.append(result.risk_level)
        for w in result.warnings:
            self._append(self.warnings, w)
        for r in result.block_reasons:
            self._append(self.block_reasons, r)

    def result(self) -> GuardrailResult:
        return GuardrailResult(
            allowed=not self.block_reasons,
            risk_level=max_severity(self.severities, floor=self.floor),
            warnings=list(self.warnings),
            block_reasons=list(self.block_reasons),
        )


def _action_ctx(action: BaseAction) -> Dict[str, Any]:
    current, new = action.json_values()
    return {
        "label": action.label,
        "entity_type": action.entity_type.value,
        "entity_id": action.entity_id,
        "entity_name": action.entity_name or action.entity_id,
        "current_value": current,
        "new_value": new,
    }


def _evaluate_single(
    action: BaseAction, snapshot: GuardrailSnapshot, config: GuardrailConfig, ruleset: Ruleset
) -> GuardrailResult:
    collector = _Collector(floor=action.baseline_risk)
    base_ctx = _action_ctx(action)
    # Every rule runs, even after a block, so all reasons surface together
    for spec in ruleset.single:
        if not spec.enabled:
            continue
        for outcome in SINGLE_RULES[spec.code](action, snapshot, config):
            collector.add(spec, outcome, base_ctx)
    return collector.result()


def _evaluate_bulk(
    actions: Sequence[BaseAction], snapshot: GuardrailSnapshot, config: GuardrailConfig, ruleset: Ruleset
) -> GuardrailResult:
    # Aggregates count de-duplicated intent, not raw submissions
    kept, _ = dedupe_actions(actions)
    collector = _Collector(floor=max_severity(a.baseline_risk for a in kept))
    base_ctx = {"count": len(kept)}
    for spec in ruleset.bulk:
        if not spec.enabled:
            continue
        for outcome in BULK_RULES[spec.code](kept, snapshot, config):
            collector.add(spec, outcome, base_ctx)
    for action in kept:
        collector.merge(_evaluate_single(action, snapshot, config, ruleset))
    return collector.result()


def evaluate(
    actions: Union[BaseAction, Sequence[BaseAction]],
    snapshot: GuardrailSnapshot,
    config: GuardrailConfig,
    *,
    ruleset_path: Optional[Union[str, Path]] = None,
) -> GuardrailResult:
    """Evaluate one action or a batch against the guardrails.

    Disabled guardrails short-circuit here rather than at call sites so that
    every caller goes through the same path.
    """
    if not config.enabled:
        return GuardrailResult(allowed=True)
    ruleset = load_ruleset(ruleset_path)
    if isinstance(actions, BaseAction):
        return _evaluate_single(actions, snapshot, config, ruleset)
    return _evaluate_bulk(list(actions), snapshot, config, ruleset)


# ---------- Single-action rules ----------
def _is_campaign_pause(action: BaseAction) -> bool:
    return action.action_type == ActionType.PAUSE_ENTITY and action.entity_type == EntityType.campaign


def _active_campaign_ids(snapshot: GuardrailSnapshot) -> List[str]:
    return [c.entity_id for c in snapshot.of_type(EntityType.campaign) if c.status == EntityStatus.ENABLED]


def _staged_campaign_pauses(snapshot: GuardrailSnapshot) -> set:
    return {a.entity_id for a in snapshot.staged_actions if _is_campaign_pause(a)}


@single_rule("BLOCKED_ACTION_TYPE")
def rule_blocked_action_type(action, snapshot, config) -> Iterator[RuleOutcome]:
    if action.action_type in config.blocked_action_types:
        yield RuleOutcome("block")


@single_rule("LAST_ACTIVE_CAMPAIGN")
def rule_last_active_campaign(action, snapshot, config) -> Iterator[RuleOutcome]:
    if not _is_campaign_pause(action):
        return
    active = _active_campaign_ids(snapshot)
    pausing = _staged_campaign_pauses(snapshot) | {action.entity_id}
    remaining = [cid for cid in active if cid not in pausing]
    if active and not remaining:
        yield RuleOutcome("warn" if config.allow_pause_all_campaigns else "block")


@single_rule("HIGH_PERFORMER_PAUSE")
def rule_high_performer_pause(action, snapshot, config) -> Iterator[RuleOutcome]:
    if action.action_type != ActionType.PAUSE_ENTITY or not config.warn_on_high_performer_pause:
        return
    entity = snapshot.get(action.entity_type, action.entity_id)
    if entity is not None and entity.ai_score is not None and entity.ai_score >= config.high_performer_threshold:
        yield RuleOutcome("warn", {"score": entity.ai_score, "threshold": config.high_performer_threshold})


@single_rule("HIGH_SPEND_PAUSE")
def rule_high_spend_pause(action, snapshot, config) -> Iterator[RuleOutcome]:
    if action.action_type != ActionType.PAUSE_ENTITY or config.high_spend_pause_threshold is None:
        return
    entity = snapshot.get(action.entity_type, action.entity_id)
    if entity is not None and entity.spend >= config.high_spend_pause_threshold:
        yield RuleOutcome("warn", {"spend": entity.spend, "threshold": config.high_spend_pause_threshold})


@single_rule("ZERO_BUDGET")
def rule_zero_budget(action, snapshot, config) -> Iterator[RuleOutcome]:
    if action.action_type == ActionType.UPDATE_BUDGET and action.new_value == 0:
        yield RuleOutcome("warn" if config.allow_zero_budget else "block")


def _budget_change(action: BaseAction) -> Optional[Decimal]:
    if action.action_type != ActionType.UPDATE_BUDGET:
        return None
    return percent_change(action.current_value, action.new_value)


@single_rule("BUDGET_CHANGE_LARGE")
def rule_budget_change_large(action, snapshot, config) -> Iterator[RuleOutcome]:
    change = _budget_change(action)
    if change is not None and change >= config.budget_change_threshold_percent:
        direction = "increase" if action.new_value > action.current_value else "decrease"
        yield RuleOutcome("warn", {"change_percent": change, "direction": direction})


@single_rule("BUDGET_CHANGE_NOTICE")
def rule_budget_change_notice(action, snapshot, config) -> Iterator[RuleOutcome]:
    change = _budget_change(action)
    if change is not None and config.budget_change_notice_percent <= change < config.budget_change_threshold_percent:
        yield RuleOutcome("notice", {"change_percent": change})


@single_rule("BUDGET_DELTA_LIMIT")
def rule_budget_delta_limit(action, snapshot, config) -> Iterator[RuleOutcome]:
    if action.action_type != ActionType.UPDATE_BUDGET or config.max_budget_delta is None:
        return
    delta = abs(action.new_value - action.current_value)
    if delta > config.max_budget_delta:
        yield RuleOutcome("block", {"delta": delta, "limit": config.max_budget_delta})


@single_rule("BID_CEILING")
def rule_bid_ceiling(action, snapshot, config) -> Iterator[RuleOutcome]:
    if action.action_type != ActionType.UPDATE_BID or config.max_cpc_bid is None:
        return
    if action.new_value > config.max_cpc_bid:
        yield RuleOutcome("block", {"limit": config.max_cpc_bid})


@single_rule("BROAD_MATCH_EXPANSION")
def rule_broad_match_expansion(action, snapshot, config) -> Iterator[RuleOutcome]:
    if action.action_type != ActionType.UPDATE_MATCH_TYPE or not config.warn_on_broad_match:
        return
    if action.new_value == MatchType.BROAD and action.current_value != MatchType.BROAD:
        yield RuleOutcome("warn")


# ---------- Aggregate (bulk) rules ----------
def _pauses(actions: Sequence[BaseAction]) -> List[BaseAction]:
    return [a for a in actions if a.action_type == ActionType.PAUSE_ENTITY]


def _spend_at_risk(actions: Sequence[BaseAction], snapshot: GuardrailSnapshot) -> Decimal:
    total = Decimal("0")
    for a in _pauses(actions):
        entity = snapshot.get(a.entity_type, a.entity_id)
        if entity is not None:
            total += entity.spend
    return total


@bulk_rule("BULK_SIZE_EXCEEDED")
def rule_bulk_size(actions, snapshot, config) -> Iterator[RuleOutcome]:
    if len(actions) > config.max_bulk_action_count:
        yield RuleOutcome("block", {"limit": config.max_bulk_action_count})


@bulk_rule("BULK_PAUSE_ALL_CAMPAIGNS")
def rule_bulk_pause_all_campaigns(actions, snapshot, config) -> Iterator[RuleOutcome]:
    pausing_now = {a.entity_id for a in actions if _is_campaign_pause(a)}
    if not pausing_now:
        return
    active = _active_campaign_ids(snapshot)
    pausing = pausing_now | _staged_campaign_pauses(snapshot)
    remaining = [cid for cid in active if cid not in pausing]
    if active and not remaining:
        kind = "warn" if config.allow_pause_all_campaigns else "block"
        yield RuleOutcome(kind, {"pause_count": len(pausing_now)})


@bulk_rule("BULK_PAUSE_COUNT")
def rule_bulk_pause_count(actions, snapshot, config) -> Iterator[RuleOutcome]:
    count = len(_pauses(actions))
    if count > config.bulk_pause_warning_count:
        yield RuleOutcome("warn", {"pause_count": count, "limit": config.bulk_pause_warning_count})


@bulk_rule("BULK_HIGH_PERFORMERS")
def rule_bulk_high_performers(actions, snapshot, config) -> Iterator[RuleOutcome]:
    if not config.warn_on_high_performer_pause:
        return
    count = 0
    for a in _pauses(actions):
        entity = snapshot.get(a.entity_type, a.entity_id)
        if entity is not None and entity.ai_score is not None and entity.ai_score >= config.high_performer_threshold:
            count += 1
    if count:
        yield RuleOutcome("warn", {"high_performer_count": count})


@bulk_rule("SPEND_AT_RISK_LIMIT")
def rule_spend_at_risk_limit(actions, snapshot, config) -> Iterator[RuleOutcome]:
    if config.max_spend_at_risk is None:
        return
    spend = _spend_at_risk(actions, snapshot)
    if spend > config.max_spend_at_risk:
        yield RuleOutcome("block", {"spend": spend, "limit": config.max_spend_at_risk})


@bulk_rule("SPEND_AT_RISK")
def rule_spend_at_risk(actions, snapshot, config) -> Iterator[RuleOutcome]:
    if config.spend_at_risk_warning is None:
        return
    spend = _spend_at_risk(actions, snapshot)
    if spend >= config.spend_at_risk_warning:
        yield RuleOutcome("warn", {"spend": spend, "threshold": config.spend_at_risk_warning})
