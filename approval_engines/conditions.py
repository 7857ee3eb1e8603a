"""
approval_engines.conditions -- Restricted-AST rule condition engine.

Responsibility:
    Validate and evaluate the conditions attached to a workflow rule, e.g.
    ``entity.amount > 1000`` or ``entity.leave_type in ['ANNUAL', 'SICK']``.
    A rule applies to an entity only when every one of its conditions holds.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain/ types.

Allowed:
  - Comparisons: <, <=, >, >=, ==, !=, is, is not, in, not in
  - Logical: and, or, not
  - Arithmetic: +, -, *, / and unary minus
  - Field access: entity.field_name (one level)
  - Literals: numbers, strings, booleans, None, lists and tuples of them
  - Functions: abs(), len()

Rejected:
  - imports, arbitrary function calls, deep attribute chains, subscripts,
    lambda, comprehensions, arbitrary names

Invariants enforced:
    - Expressions are parsed and walked node by node; nothing is passed to
      ``eval`` or ``compile``.
    - A field missing from the entity context makes every comparison that
      touches it false, so an incomplete entity never silently qualifies
      for a threshold rule.

Failure modes:
    - ``validate`` returns human-readable errors; callers raise
      ``InvalidRuleError`` at rule save time.
    - An expression that somehow fails validation at evaluation time is
      reported as a failed condition, never raised.
"""

from __future__ import annotations

import ast
import operator
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from approval_kernel.logging_config import get_logger

logger = get_logger("engines.conditions")

# Functions allowed in condition expressions
ALLOWED_FUNCTIONS: dict[str, Callable[[Any], Any]] = {"abs": abs, "len": len}

# The single context root: the entity being submitted for approval
CONTEXT_ROOT = "entity"

ALLOWED_NAMES: frozenset[str] = frozenset({"True", "False", "None", CONTEXT_ROOT})

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}


class _Missing:
    """Marker for a field absent from the entity context."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


@dataclass(frozen=True)
class ConditionError:
    """A validation error found in a condition expression."""

    expression: str
    message: str
    node_type: str = ""

    def __str__(self) -> str:
        return f"{self.expression!r}: {self.message}"


# =========================================================================
# Validation
# =========================================================================


def validate_condition(expression: str) -> list[ConditionError]:
    """Validate one condition against the restricted AST.

    Returns a list of errors. Empty list means the expression is valid.
    """
    if not isinstance(expression, str) or not expression.strip():
        return [ConditionError(str(expression), "Condition must be a non-empty string")]

    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        return [ConditionError(expression, f"Syntax error: {e.msg}")]

    errors: list[ConditionError] = []
    _validate_node(tree.body, expression, errors)
    return errors


def _validate_node(node: ast.AST, expression: str, errors: list[ConditionError]) -> None:
    """Recursively validate an AST node."""

    def reject(message: str, node_type: str = "") -> None:
        errors.append(ConditionError(expression, message, node_type or type(node).__name__))

    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _validate_node(value, expression, errors)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.Not, ast.USub)):
            reject(f"Disallowed unary operator: {type(node.op).__name__}")
        _validate_node(node.operand, expression, errors)

    elif isinstance(node, ast.Compare):
        _validate_node(node.left, expression, errors)
        for comparator in node.comparators:
            _validate_node(comparator, expression, errors)
        for op in node.ops:
            if type(op) not in _COMPARE_OPS:
                reject(f"Disallowed comparison: {type(op).__name__}")

    elif isinstance(node, ast.BinOp):
        if type(node.op) in _BIN_OPS:
            _validate_node(node.left, expression, errors)
            _validate_node(node.right, expression, errors)
        else:
            reject(f"Disallowed binary operator: {type(node.op).__name__}")

    elif isinstance(node, ast.Call):
        if (
            isinstance(node.func, ast.Name)
            and node.func.id in ALLOWED_FUNCTIONS
            and len(node.args) == 1
            and not node.keywords
        ):
            _validate_node(node.args[0], expression, errors)
        else:
            reject(f"Disallowed function call: {_get_name(node.func)}", "Call")

    elif isinstance(node, ast.Attribute):
        if not (isinstance(node.value, ast.Name) and node.value.id == CONTEXT_ROOT):
            reject(
                f"Disallowed attribute access: {_get_name(node)}. "
                f"Only {CONTEXT_ROOT}.field_name is allowed."
            )

    elif isinstance(node, ast.Name):
        if node.id not in ALLOWED_NAMES:
            reject(f"Disallowed name: {node.id}")

    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (int, float, str, bool, type(None))):
            reject(f"Disallowed constant type: {type(node.value).__name__}")

    elif isinstance(node, (ast.List, ast.Tuple)):
        for elt in node.elts:
            _validate_node(elt, expression, errors)

    else:
        reject(f"Disallowed AST node type: {type(node).__name__}")


def _get_name(node: ast.AST) -> str:
    """Extract a human-readable name from an AST node."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_get_name(node.value)}.{node.attr}"
    return type(node).__name__


# =========================================================================
# Evaluation
# =========================================================================


def evaluate_condition(expression: str, entity: dict[str, Any]) -> bool:
    """Evaluate one validated condition against an entity context.

    Raises:
        ValueError: If the expression does not pass validation.
    """
    errors = validate_condition(expression)
    if errors:
        raise ValueError("; ".join(str(e) for e in errors))
    tree = ast.parse(expression.strip(), mode="eval")
    return bool(_eval(tree.body, entity))


def _eval(node: ast.AST, entity: dict[str, Any]) -> Any:
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = _eval(value, entity)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = _eval(value, entity)
            if result:
                return result
        return result

    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, entity)
        if isinstance(node.op, ast.Not):
            return not operand
        if operand is MISSING:
            return MISSING
        try:
            return -operand
        except TypeError:
            return MISSING

    if isinstance(node, ast.Compare):
        left = _eval(node.left, entity)
        for op, comparator in zip(node.ops, node.comparators):
            right = _eval(comparator, entity)
            if left is MISSING or right is MISSING:
                return False
            try:
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
            except TypeError:
                return False
            left = right
        return True

    if isinstance(node, ast.BinOp):
        left = _eval(node.left, entity)
        right = _eval(node.right, entity)
        if left is MISSING or right is MISSING:
            return MISSING
        try:
            return _BIN_OPS[type(node.op)](left, right)
        except (TypeError, ZeroDivisionError):
            return MISSING

    if isinstance(node, ast.Call):
        arg = _eval(node.args[0], entity)
        if arg is MISSING:
            return MISSING
        try:
            return ALLOWED_FUNCTIONS[node.func.id](arg)
        except TypeError:
            return MISSING

    if isinstance(node, ast.Attribute):
        return entity.get(node.attr, MISSING) if isinstance(entity, dict) else MISSING

    if isinstance(node, ast.Name):
        return {"True": True, "False": False, "None": None}.get(node.id, MISSING)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.List):
        return [_eval(elt, entity) for elt in node.elts]

    if isinstance(node, ast.Tuple):
        return tuple(_eval(elt, entity) for elt in node.elts)

    raise ValueError(f"Unsupported node: {type(node).__name__}")


class RestrictedConditionEvaluator:
    """``ConditionEvaluator`` backed by the restricted AST."""

    def validate(self, conditions: Sequence[str]) -> list[str]:
        errors: list[str] = []
        for expression in conditions:
            errors.extend(str(e) for e in validate_condition(expression))
        return errors

    def failed_conditions(
        self,
        conditions: Sequence[str],
        context: dict[str, Any],
    ) -> list[str]:
        failed: list[str] = []
        for expression in conditions:
            try:
                holds = evaluate_condition(expression, context)
            except ValueError as exc:
                logger.warning(
                    "condition_evaluation_error",
                    extra={"expression": expression, "error": str(exc)},
                )
                holds = False
            if not holds:
                failed.append(expression)
        return failed
