"""
Tests for approval_engines.conditions -- restricted rule conditions.

Expressions are walked node by node; anything outside the allowed grammar
is rejected at validation time.  A missing field makes its comparison false.
"""

import pytest

from approval_engines.conditions import (
    RestrictedConditionEvaluator,
    evaluate_condition,
    validate_condition,
)


class TestValidation:
    @pytest.mark.parametrize(
        "expression",
        [
            "entity.amount > 1000",
            "entity.leave_type in ['ANNUAL', 'SICK']",
            "entity.days >= 3 and not entity.is_emergency",
            "abs(entity.delta) <= 0.5",
            "len(entity.attachments) > 0",
            "entity.increase_pct * 100 > 10 or entity.grade == 'E7'",
            "-entity.balance < 0",
            "entity.manager_override is None",
        ],
    )
    def test_allowed_expressions(self, expression):
        assert validate_condition(expression) == []

    @pytest.mark.parametrize(
        "expression, fragment",
        [
            ("__import__('os')", "Disallowed function call"),
            ("open('/etc/passwd')", "Disallowed function call"),
            ("entity.amount.real > 0", "Disallowed attribute access"),
            ("payload.amount > 0", "Disallowed attribute access"),
            ("employee > 0", "Disallowed name"),
            ("entity['amount'] > 0", "Disallowed AST node type"),
            ("[x for x in entity.items]", "Disallowed AST node type"),
            ("lambda: 1", "Disallowed AST node type"),
            ("entity.amount ** 2 > 4", "Disallowed binary operator"),
            ("abs(entity.a, entity.b)", "Disallowed function call"),
        ],
    )
    def test_rejected_expressions(self, expression, fragment):
        errors = validate_condition(expression)
        assert errors
        assert any(fragment in e.message for e in errors)

    def test_syntax_error(self):
        errors = validate_condition("entity.amount >")
        assert errors and "Syntax error" in errors[0].message

    def test_empty_expression(self):
        assert validate_condition("   ")

    def test_error_string_names_expression(self):
        (error,) = validate_condition("employee > 0")
        assert "'employee > 0'" in str(error)


class TestEvaluation:
    def test_threshold(self):
        assert evaluate_condition("entity.amount > 1000", {"amount": 1500}) is True
        assert evaluate_condition("entity.amount > 1000", {"amount": 500}) is False

    def test_membership(self):
        expr = "entity.leave_type in ['ANNUAL', 'SICK']"
        assert evaluate_condition(expr, {"leave_type": "SICK"}) is True
        assert evaluate_condition(expr, {"leave_type": "UNPAID"}) is False

    def test_missing_field_is_false(self):
        assert evaluate_condition("entity.amount > 1000", {}) is False
        assert evaluate_condition("entity.amount <= 1000", {}) is False

    def test_missing_field_in_arithmetic_is_false(self):
        assert evaluate_condition("entity.amount * 2 > 10", {}) is False

    def test_type_mismatch_is_false(self):
        assert evaluate_condition("entity.amount > 1000", {"amount": "lots"}) is False
        assert evaluate_condition("-entity.amount < 0", {"amount": "abc"}) is False

    def test_boolean_logic(self):
        expr = "entity.days > 2 and not entity.is_emergency"
        assert evaluate_condition(expr, {"days": 5, "is_emergency": False}) is True
        assert evaluate_condition(expr, {"days": 5, "is_emergency": True}) is False
        assert evaluate_condition("entity.a or entity.b", {"a": False, "b": True}) is True

    def test_chained_comparison(self):
        assert evaluate_condition("1 < entity.days < 10", {"days": 5}) is True
        assert evaluate_condition("1 < entity.days < 10", {"days": 12}) is False

    def test_functions(self):
        assert evaluate_condition("abs(entity.delta) < 1", {"delta": -0.5}) is True
        assert evaluate_condition("len(entity.items) == 2", {"items": [1, 2]}) is True

    def test_division_by_zero_is_false(self):
        assert evaluate_condition("entity.a / entity.b > 1", {"a": 1, "b": 0}) is False

    def test_invalid_expression_raises(self):
        with pytest.raises(ValueError):
            evaluate_condition("__import__('os')", {})


class TestRestrictedConditionEvaluator:
    def test_all_conditions_must_hold(self):
        evaluator = RestrictedConditionEvaluator()
        failed = evaluator.failed_conditions(
            ["entity.days > 2", "entity.leave_type == 'ANNUAL'"],
            {"days": 5, "leave_type": "SICK"},
        )
        assert failed == ["entity.leave_type == 'ANNUAL'"]

    def test_no_conditions_always_apply(self):
        assert RestrictedConditionEvaluator().failed_conditions([], {}) == []

    def test_invalid_condition_counts_as_failed(self, captured_logs):
        failed = RestrictedConditionEvaluator().failed_conditions(["open('x')"], {})
        assert failed == ["open('x')"]
        assert any(r["message"] == "condition_evaluation_error" for r in captured_logs())

    def test_validate_collects_errors(self):
        errors = RestrictedConditionEvaluator().validate(["entity.a > 1", "foo.bar"])
        assert len(errors) == 1
        assert "foo.bar" in errors[0]
