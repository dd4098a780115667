"""Core utilities for the action engine.

This module provides helpers shared by actions, guardrail rules and the
pipeline:
- Decimal conversion of loosely typed money values
- Percentage change between two amounts
- Identifier generation
- Severity folding
"""

from __future__ import annotations
import decimal
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional, Tuple

from .domain import EntityType, Severity, severity_rank
from .errors import ValidationError


def safe_decimal_conversion(
    value: Any, field_name: str, default: Optional[Decimal] = None
) -> Optional[Decimal]:
    """Convert a value to Decimal.

    None and "N/A" return `default`. Floats are converted through str() so
    that 12.3 becomes Decimal("12.3") rather than its binary expansion.

    Raises:
        ValidationError: If conversion fails for any other value
    """
    if value is None or value == "N/A":
        return default

    try:
        return Decimal(str(value))
    except (ValueError, TypeError, decimal.InvalidOperation) as e:
        raise ValidationError(
            f"Cannot convert '{field_name}' to decimal: {value}",
            field_name=field_name,
            field_value=value,
            original_error=e,
        )


def percent_change(current: Decimal, new: Decimal) -> Optional[Decimal]:
    """Absolute percentage change from `current` to `new`.

    Returns None when `current` is zero (change is undefined).

    Examples:
        >>> percent_change(Decimal("100"), Decimal("150"))
        Decimal('50')
    """
    if current == 0:
        return None
    return abs((new - current) / current) * 100


def max_severity(severities: Iterable[Severity], floor: Severity = Severity.low) -> Severity:
    """Return the highest severity in `severities`, never below `floor`."""
    best = Severity(floor)
    for s in severities:
        if severity_rank(s) > severity_rank(best):
            best = Severity(s)
    return best


def entity_key(entity_type: EntityType | str, entity_id: str) -> Tuple[str, str]:
    return (EntityType(entity_type).value, str(entity_id))


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
