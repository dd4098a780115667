"""Core models, guardrails and execution for nav_actions."""

from .errors import (
    CoreError,
    ValidationError,
    ValidationBlocked,
    QueueStateError,
    EntryNotFoundError,
    ExecutionFailure,
    IrreversibleAction,
    ErrorCode,
    wrap_exception,
    to_core_error,
)
from .utils import (
    safe_decimal_conversion,
    percent_change,
    max_severity,
    entity_key,
    new_id,
)

__all__ = [
    # Error classes
    "CoreError",
    "ValidationError",
    "ValidationBlocked",
    "QueueStateError",
    "EntryNotFoundError",
    "ExecutionFailure",
    "IrreversibleAction",
    "ErrorCode",
    "wrap_exception",
    "to_core_error",
    # Utility functions
    "safe_decimal_conversion",
    "percent_change",
    "max_severity",
    "entity_key",
    "new_id",
]
