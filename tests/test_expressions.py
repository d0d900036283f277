"""Tests for scenario predicates."""

import pytest

from generators.expressions import Predicate
from realtime.errors import InvariantViolation

VALUES = {
    "heart_rate": 185.0,
    "core_temperature": 39.1,
    "air_quality": 22.0,
    "acceleration": 1.2,
    "elapsed_minutes": 12.0,
    "progress": 0.4,
}


class TestPredicate:
    @pytest.mark.parametrize(
        "source,expected",
        [
            ("core_temperature >= 39.0", True),
            ("air_quality > 25", False),
            ("air_quality <= 25 or core_temperature >= 40", True),
            ("air_quality <= 25 and core_temperature >= 40", False),
            ("not progress < 0.5", False),
            ("0.2 < progress <= 0.5", True),
            ("(core_temperature >= 39) + (heart_rate >= 190) + (air_quality <= 25) >= 2", True),
            ("heart_rate - 100 > 80", True),
            ("-acceleration < 0", True),
            ("elapsed_minutes / 2 == 6", True),
            ("True", True),
        ],
    )
    def test_evaluation(self, source, expected):
        assert Predicate(source)(VALUES) is expected

    def test_division_by_zero_is_false(self):
        assert Predicate("heart_rate / (progress - 0.4) > 1")(VALUES) is False

    @pytest.mark.parametrize(
        "source",
        [
            "",
            "heart_rate >=",
            "__import__('os').system('true')",
            "oxygen < 5",
            "heart_rate ** 2 > 1",
            "heart_rate in (1, 2)",
            "'hot' == 'hot'",
            "[heart_rate][0] > 1",
            "heart_rate if progress else 0",
        ],
    )
    def test_rejected(self, source):
        with pytest.raises(InvariantViolation):
            Predicate(source)

    def test_repr(self):
        assert "core_temperature" in repr(Predicate(" core_temperature > 38 "))
