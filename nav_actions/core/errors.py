from __future__ import annotations
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Type
from enum import Enum

import requests

from .domain import Severity

if TYPE_CHECKING:  # pragma: no cover
    from .audit import AuditLogEntry
    from .rules import GuardrailResult


class ErrorCode(str, Enum):
    INVALID_INPUT_DATA = "invalid_input_data"
    INVALID_FIELD_VALUE = "invalid_field_value"
    VALIDATION_BLOCKED = "validation_blocked"
    QUEUE_STATE = "queue_state"
    NOT_FOUND = "not_found"
    EXECUTION_FAILURE = "execution_failure"
    IRREVERSIBLE_ACTION = "irreversible_action"
    UNKNOWN_ERROR = "unknown_error"


class CoreError(Exception):
    """Structured error used across the action engine.

    Attributes:
        message: Human-readable message
        error_code: ErrorCode enum value
        severity: Severity enum value
        context: Optional structured context payload safe to log/serialize
        original_error: Optional wrapped exception
        code: Optional short machine code (e.g. "timeout", "unreachable")
        category: Optional category the code belongs to
    """

    def __init__(
        self,
        message: str = "",
        error_code: Optional[ErrorCode] = None,
        severity: Severity = Severity.medium,
        *,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
        code: Optional[str] = None,
        category: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code if error_code is not None else ErrorCode.UNKNOWN_ERROR
        self.severity = severity
        self.context = context or {}
        self.original_error = original_error
        self.code = code
        self.category = category

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "error_code": self.error_code.name,
            "severity": self.severity.value
            if hasattr(self.severity, "value")
            else str(self.severity),
            "message": self.message,
            "context": self.context,
        }
        if self.original_error is not None:
            data["original_error"] = type(self.original_error).__name__
        if self.code is not None:
            data["code"] = self.code
        if self.category is not None:
            data["category"] = self.category
        return data

    def __str__(self) -> str:  # pragma: no cover - convenience
        base = f"[{self.error_code.name}] {self.message}"
        if self.original_error is not None:
            return f"{base} (Original: {self.original_error})"
        return base


class ValidationError(CoreError):
    def __init__(
        self,
        message: str,
        *,
        field_name: Optional[str] = None,
        field_value: Any = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
        error_code: Optional[ErrorCode] = None,
    ) -> None:
        ctx = context.copy() if context else {}
        if field_name is not None:
            ctx["field_name"] = field_name
        if field_value is not None:
            ctx["field_value"] = field_value
        super().__init__(
            message=message,
            error_code=error_code or ErrorCode.INVALID_FIELD_VALUE,
            severity=Severity.medium,
            context=ctx,
            original_error=original_error,
        )


class ValidationBlocked(CoreError):
    """A blocking guardrail fired; the action never reaches the queue."""

    def __init__(self, result: "GuardrailResult", *, context: Optional[Dict[str, Any]] = None) -> None:
        ctx = context.copy() if context else {}
        ctx["block_reasons"] = [r.model_dump(mode="json") for r in result.block_reasons]
        first = result.block_reasons[0].message if result.block_reasons else "Blocked by guardrails"
        super().__init__(
            message=first,
            error_code=ErrorCode.VALIDATION_BLOCKED,
            severity=Severity.high,
            context=ctx,
        )
        self.result = result

    @property
    def block_reasons(self) -> List[Any]:
        return list(self.result.block_reasons)


class QueueStateError(CoreError):
    def __init__(self, entry_id: str, status: Any, operation: str) -> None:
        status_value = getattr(status, "value", status)
        super().__init__(
            message=f"Cannot {operation} entry {entry_id} in status '{status_value}'",
            error_code=ErrorCode.QUEUE_STATE,
            severity=Severity.medium,
            context={"entry_id": entry_id, "status": status_value, "operation": operation},
        )
        self.entry_id = entry_id
        self.status = status
        self.operation = operation


class EntryNotFoundError(CoreError):
    def __init__(self, kind: str, entry_id: Any) -> None:
        super().__init__(
            message=f"{kind} '{entry_id}' not found",
            error_code=ErrorCode.NOT_FOUND,
            severity=Severity.low,
            context={"kind": kind, "id": entry_id},
        )


class ExecutionFailure(CoreError):
    """The mutation service rejected the change or could not be reached.

    The failure is already recorded in the audit log when this is raised.
    """

    def __init__(
        self,
        message: str,
        *,
        audit_entry: Optional["AuditLogEntry"] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = context.copy() if context else {}
        if audit_entry is not None:
            ctx["audit_entry_id"] = audit_entry.id
            ctx["entity_id"] = audit_entry.entity_id
        super().__init__(
            message=message,
            error_code=ErrorCode.EXECUTION_FAILURE,
            severity=Severity.high,
            context=ctx,
            code=code,
            category="mutation",
        )
        self.audit_entry = audit_entry


class IrreversibleAction(CoreError):
    def __init__(self, audit_entry_id: Any, action_type: Any) -> None:
        action_value = getattr(action_type, "value", action_type)
        super().__init__(
            message=f"No compensating action is defined for '{action_value}'",
            error_code=ErrorCode.IRREVERSIBLE_ACTION,
            severity=Severity.medium,
            context={"audit_entry_id": audit_entry_id, "action_type": action_value},
        )


# Mapping of transport exceptions to stable codes. Order matters: Timeout
# subclasses are checked before the generic RequestException.
_TRANSPORT_EXCEPTION_MAP: Dict[Type[BaseException], Dict[str, str]] = {
    requests.Timeout: {"code": "timeout", "category": "transport"},
    requests.ConnectionError: {"code": "unreachable", "category": "transport"},
    requests.HTTPError: {"code": "http_error", "category": "transport"},
    requests.RequestException: {"code": "request_failed", "category": "transport"},
    TimeoutError: {"code": "timeout", "category": "transport"},
    ConnectionError: {"code": "unreachable", "category": "transport"},
}


def to_core_error(exc: BaseException, *, default_category: str = "unknown") -> CoreError:
    """Convert an arbitrary exception to a CoreError with best-effort mapping.

    CoreErrors pass through unchanged; known transport exceptions are mapped
    to stable codes; anything else becomes 'unhandled_exception'.
    """
    if isinstance(exc, CoreError):
        return exc
    for etype, meta in _TRANSPORT_EXCEPTION_MAP.items():
        if isinstance(exc, etype):
            return CoreError(
                message=str(exc) or type(exc).__name__,
                error_code=ErrorCode.EXECUTION_FAILURE,
                severity=Severity.high,
                original_error=exc,
                code=meta["code"],
                category=meta["category"],
            )
    return CoreError(
        message=str(exc) or type(exc).__name__,
        error_code=ErrorCode.UNKNOWN_ERROR,
        severity=Severity.high,
        original_error=exc,
        code="unhandled_exception",
        category=default_category,
    )


def wrap_exception(
    exception: BaseException,
    message: str,
    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
    severity: Severity = Severity.medium,
    context: Optional[Dict[str, Any]] = None,
) -> CoreError:
    """Wrap an external exception in a CoreError with additional context."""
    return CoreError(
        message,
        error_code,
        severity,
        context=context,
        original_error=exception,
    )
