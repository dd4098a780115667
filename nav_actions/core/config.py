from __future__ import annotations
import logging
import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from .domain import ActionType
from .errors import ErrorCode, ValidationError, wrap_exception

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT = "default"


class GuardrailConfig(BaseModel):
    """Account-scoped guardrail thresholds.

    Optional limits are off when None. Money values are in the account
    currency.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    allow_pause_all_campaigns: bool = False
    allow_zero_budget: bool = False
    budget_change_threshold_percent: Decimal = Field(Decimal("50"), gt=0)
    budget_change_notice_percent: Decimal = Field(Decimal("25"), gt=0)
    max_budget_delta: Optional[Decimal] = Field(None, gt=0)
    max_cpc_bid: Optional[Decimal] = Field(None, gt=0)
    warn_on_high_performer_pause: bool = True
    high_performer_threshold: float = Field(80, ge=0, le=100)
    high_spend_pause_threshold: Optional[Decimal] = Field(None, gt=0)
    warn_on_broad_match: bool = True
    max_bulk_action_count: int = Field(25, ge=1)
    bulk_pause_warning_count: int = Field(10, ge=1)
    max_spend_at_risk: Optional[Decimal] = Field(None, gt=0)
    spend_at_risk_warning: Optional[Decimal] = Field(None, gt=0)
    blocked_action_types: List[ActionType] = Field(default_factory=list)

    @model_validator(mode="after")
    def _thresholds_ordered(self):
        if self.budget_change_notice_percent > self.budget_change_threshold_percent:
            raise ValueError("budget_change_notice_percent must not exceed budget_change_threshold_percent")
        if (
            self.max_spend_at_risk is not None
            and self.spend_at_risk_warning is not None
            and self.spend_at_risk_warning > self.max_spend_at_risk
        ):
            raise ValueError("spend_at_risk_warning must not exceed max_spend_at_risk")
        return self


def _validate_config(data: Dict[str, Any], *, source: str) -> GuardrailConfig:
    try:
        return GuardrailConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid guardrail config from {source}",
            context={"errors": e.errors(include_url=False, include_context=False)},
            original_error=e,
        )


class GuardrailConfigStore:
    """Read/write GuardrailConfig keyed by account.

    With a `path` the store is backed by a YAML file of the shape
    ``{accounts: {<account_id>: {<field>: <value>, ...}}}``. Only overrides
    are written; missing fields fall back to the defaults.
    """

    def __init__(self, path: Optional[str | Path] = None, defaults: Optional[GuardrailConfig] = None):
        self.path = Path(path) if path else None
        self.defaults = defaults or GuardrailConfig()
        self._lock = threading.Lock()
        self._overrides: Dict[str, Dict[str, Any]] = {}
        if self.path is not None and self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise wrap_exception(
                    e,
                    f"Guardrail config {self.path} is not valid YAML",
                    ErrorCode.INVALID_INPUT_DATA,
                    context={"path": str(self.path)},
                )
        accounts = raw.get("accounts", {}) if isinstance(raw, dict) else None
        if not isinstance(accounts, dict):
            raise ValidationError("'accounts' must be a mapping", context={"path": str(self.path)})
        for account_id, overrides in accounts.items():
            # Validate eagerly so a bad file fails at startup, not mid-session
            self._merge(overrides or {}, source=f"{self.path}:{account_id}")
            self._overrides[str(account_id)] = dict(overrides or {})
        logger.info("Loaded guardrail config for %d account(s) from %s", len(accounts), self.path)

    def _merge(self, overrides: Dict[str, Any], *, source: str) -> GuardrailConfig:
        base = self.defaults.model_dump()
        base.update(overrides)
        return _validate_config(base, source=source)

    def _layered(self, key: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        # defaults < "default" account overrides < account overrides < extra
        layers = dict(self._overrides.get(DEFAULT_ACCOUNT, {}))
        if key != DEFAULT_ACCOUNT:
            layers.update(self._overrides.get(key, {}))
        layers.update(extra or {})
        return layers

    def get(self, account_id: Optional[str] = None) -> GuardrailConfig:
        key = account_id or DEFAULT_ACCOUNT
        with self._lock:
            return self._merge(self._layered(key), source=key)

    def update(self, account_id: Optional[str] = None, **changes: Any) -> GuardrailConfig:
        """Apply a settings change for one account and persist it."""
        key = account_id or DEFAULT_ACCOUNT
        with self._lock:
            config = self._merge(self._layered(key, changes), source=key)
            overrides = dict(self._overrides.get(key, {}))
            overrides.update(changes)
            # Store the validated (JSON-safe) form of the changed fields
            dumped = config.model_dump(mode="json")
            self._overrides[key] = {k: dumped[k] for k in overrides}
            self._save()
        logger.info("Guardrail config updated for %s: %s", key, sorted(changes))
        return config

    def reset(self, account_id: Optional[str] = None) -> GuardrailConfig:
        key = account_id or DEFAULT_ACCOUNT
        with self._lock:
            self._overrides.pop(key, None)
            self._save()
        return self.get(account_id)

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"accounts": self._overrides}, f, sort_keys=True)
