"""
Condition evaluator tests.
"""

import math

import pytest

from alertflow.rules.conditions import evaluate, to_number


class TestToNumber:
    """Test tolerant numeric coercion."""

    @pytest.mark.parametrize("value,expected", [(5, 5.0), (2.5, 2.5), ("151", 151.0), (" 3.5 ", 3.5)])
    def test_accepts_numbers_and_numeric_strings(self, value, expected):
        """Should coerce numbers and numeric strings."""
        assert to_number(value) == expected

    @pytest.mark.parametrize("value", [None, True, False, "abc", "", math.nan, [1], {}])
    def test_rejects_invalid_values(self, value):
        """Should return None for values that are not numbers."""
        assert to_number(value) is None


class TestEvaluate:
    """Test operator semantics."""

    def test_above_is_strict(self):
        """Should require the value to exceed the threshold."""
        assert evaluate(151, "above", 150) is True
        assert evaluate(150, "above", 150) is False

    def test_below_is_strict(self):
        """Should require the value to be under the threshold."""
        assert evaluate(149, "below", 150) is True
        assert evaluate(150, "below", 150) is False

    def test_equals_uses_tolerance(self):
        """Should treat values within 0.001 as equal."""
        assert evaluate(100.0005, "equals", 100) is True
        assert evaluate(100.002, "equals", 100) is False

    def test_change_uses_absolute_value(self):
        """Should fire on moves larger than the threshold in either direction."""
        assert evaluate(-6, "change", 5) is True
        assert evaluate(6, "change", 5) is True
        assert evaluate(4, "change", 5) is False

    def test_increase(self):
        """Should fire when the value rises above the threshold."""
        assert evaluate(6, "increase", 5) is True
        assert evaluate(5, "increase", 5) is False

    def test_decrease_compares_against_negated_threshold(self):
        """Should fire when the value falls below minus the threshold."""
        assert evaluate(-6, "decrease", 5) is True
        assert evaluate(-5, "decrease", 5) is False
        assert evaluate(3, "decrease", 5) is False

    def test_between_is_inclusive(self):
        """Should include both bounds."""
        assert evaluate(10, "between", 10, 20) is True
        assert evaluate(20, "between", 10, 20) is True
        assert evaluate(15, "between", 10, 20) is True
        assert evaluate(21, "between", 10, 20) is False

    def test_between_without_upper_bound(self):
        """Should be False when the secondary threshold is missing."""
        assert evaluate(15, "between", 10) is False

    def test_numeric_strings(self):
        """Should accept numeric strings for value and threshold."""
        assert evaluate("151", "above", "150") is True

    @pytest.mark.parametrize("value", [None, "n/a", math.nan, True])
    def test_invalid_value_is_false(self, value):
        """Should return False instead of raising for invalid input."""
        assert evaluate(value, "above", 0) is False

    def test_unknown_operator_is_false(self):
        """Should return False for an unknown operator."""
        assert evaluate(10, "sideways", 5) is False
