"""Tests for core utilities."""

from decimal import Decimal

import pytest

from nav_actions.core import ValidationError, entity_key, max_severity, new_id, percent_change, safe_decimal_conversion
from nav_actions.core.domain import Severity


class TestSafeDecimalConversion:
    def test_converts_strings_and_floats(self):
        assert safe_decimal_conversion("12.50", "budget") == Decimal("12.50")
        assert safe_decimal_conversion(12.3, "budget") == Decimal("12.3")

    def test_missing_values_use_default(self):
        assert safe_decimal_conversion(None, "budget") is None
        assert safe_decimal_conversion("N/A", "budget", Decimal("0")) == Decimal("0")

    def test_invalid_raises(self):
        with pytest.raises(ValidationError) as exc:
            safe_decimal_conversion("abc", "budget")
        assert exc.value.context["field_name"] == "budget"


class TestPercentChange:
    def test_increase_and_decrease(self):
        assert percent_change(Decimal("100"), Decimal("150")) == Decimal("50")
        assert percent_change(Decimal("100"), Decimal("40")) == Decimal("60")

    def test_from_zero_is_undefined(self):
        assert percent_change(Decimal("0"), Decimal("10")) is None


def test_max_severity_respects_floor():
    assert max_severity([], floor=Severity.medium) == Severity.medium
    assert max_severity([Severity.low, Severity.high]) == Severity.high


def test_entity_key_normalizes_types():
    assert entity_key("campaign", 123) == ("campaign", "123")


def test_new_id_prefix_and_uniqueness():
    ids = {new_id("q") for _ in range(100)}
    assert len(ids) == 100
    assert all(i.startswith("q-") for i in ids)
