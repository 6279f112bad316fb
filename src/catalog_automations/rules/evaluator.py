"""Condition evaluation for automations."""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

import structlog

from ..core.models import Condition
from .paths import MISSING, navigate_path, stringify


logger = structlog.get_logger()


@dataclass
class EvaluationContext:
    """Context for condition evaluation: the current record plus trigger data."""
    record: Optional[dict[str, Any]] = None
    data: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        merged = dict(self.data)
        if self.record is not None:
            merged["record"] = self.record
        return merged


@dataclass
class ConditionValidation:
    """Result of validating a condition's shape."""
    valid: bool
    error: Optional[str] = None


ContextLike = Union[EvaluationContext, Mapping[str, Any]]


# ==================== Operator semantics ====================

def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def is_equal(a: Any, b: Any) -> bool:
    """Loose equality: numeric/string coercion, case-insensitive text, deep containers."""
    if a is MISSING:
        a = None
    if b is MISSING:
        b = None

    if a is None or b is None:
        return a is None and b is None

    if isinstance(a, bool) or isinstance(b, bool):
        return stringify(a).lower() == stringify(b).lower()

    if isinstance(a, (int, float)) and isinstance(b, str):
        return _to_number(b) == float(a)
    if isinstance(a, str) and isinstance(b, (int, float)):
        return _to_number(a) == float(b)

    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()

    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(is_equal(x, y) for x, y in zip(a, b))

    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(is_equal(a[k], b[k]) for k in a)

    if a == b:
        return True
    return stringify(a) == stringify(b)


def _contains(value: Any, target: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return any(is_equal(item, target) for item in value)
    if isinstance(value, str) and target is not MISSING:
        return stringify(target).lower() in value.lower()
    return False


def _starts_with(value: Any, target: Any) -> bool:
    if isinstance(value, str) and target is not MISSING:
        return value.lower().startswith(stringify(target).lower())
    return False


def _ends_with(value: Any, target: Any) -> bool:
    if isinstance(value, str) and target is not MISSING:
        return value.lower().endswith(stringify(target).lower())
    return False


def _matches(value: Any, target: Any) -> bool:
    if isinstance(value, str) and isinstance(target, str):
        try:
            return re.search(target, value, re.IGNORECASE) is not None
        except re.error as e:
            logger.warning("invalid_condition_pattern", pattern=target, error=str(e))
            return False
    return False


def _compare(value: Any, target: Any, op: Callable[[Any, Any], bool]) -> bool:
    a = _to_number(value)
    b = _to_number(target)
    if a is not None and b is not None:
        return op(a, b)
    # Lexical fallback covers ISO date strings
    if isinstance(value, str) and isinstance(target, str):
        return op(value, target)
    return False


def _greater_than(value: Any, target: Any) -> bool:
    return _compare(value, target, lambda a, b: a > b)


def _less_than(value: Any, target: Any) -> bool:
    return _compare(value, target, lambda a, b: a < b)


def is_empty(value: Any) -> bool:
    if value is MISSING or value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _is_in(value: Any, target: Any) -> bool:
    if not isinstance(target, (list, tuple)):
        return False
    return any(is_equal(value, item) for item in target)


class ConditionEvaluator:
    """
    Evaluates automation conditions against a record-bearing context.

    A list of conditions is folded left to right: each condition's ``logic``
    ("and" by default) combines its result with the running result. There is
    no precedence and no nesting.

    Field paths resolve in two attempts (see ``resolve_field``) so that
    ``record.status`` and ``status`` address the same value.
    """

    OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
        "equals": is_equal,
        "not_equals": lambda a, b: not is_equal(a, b),
        "contains": _contains,
        "not_contains": lambda a, b: not _contains(a, b),
        "starts_with": _starts_with,
        "ends_with": _ends_with,
        "matches": _matches,
        "greater_than": _greater_than,
        "less_than": _less_than,
        "greater_than_or_equals": lambda a, b: _greater_than(a, b) or is_equal(a, b),
        "less_than_or_equals": lambda a, b: _less_than(a, b) or is_equal(a, b),
        "is_empty": lambda a, _: is_empty(a),
        "is_not_empty": lambda a, _: not is_empty(a),
        "in": _is_in,
        "not_in": lambda a, b: not _is_in(a, b),
    }

    VALUELESS_OPERATORS = frozenset({"is_empty", "is_not_empty"})
    LIST_OPERATORS = frozenset({"in", "not_in"})

    def evaluate(self, condition: Condition, context: ContextLike) -> bool:
        """Evaluate one condition."""
        data = self._context_data(context)
        value = self.resolve_field(data, condition.field)
        target = condition.value if condition.has_value else MISSING

        op_func = self.OPERATORS.get(condition.operator)
        if op_func is None:
            logger.warning("unknown_condition_operator", operator=condition.operator)
            return False

        return op_func(value, target)

    def evaluate_all(self, conditions: list[Condition], context: ContextLike) -> bool:
        """Left-fold a condition list. An empty list passes."""
        if not conditions:
            return True

        data = self._context_data(context)
        result = self.evaluate(conditions[0], data)

        for condition in conditions[1:]:
            current = self.evaluate(condition, data)
            if condition.logic == "or":
                result = result or current
            else:
                result = result and current

        return result

    def filter_records(
        self,
        records: list[dict[str, Any]],
        conditions: list[Condition],
    ) -> list[dict[str, Any]]:
        """Records for which ``conditions`` hold, each evaluated as {record}."""
        if not conditions:
            return list(records)
        return [
            record for record in records
            if self.evaluate_all(conditions, {"record": record})
        ]

    def validate(self, condition: Condition) -> ConditionValidation:
        """Check a condition's shape without evaluating it."""
        if not condition.field:
            return ConditionValidation(False, "Field is required")

        if condition.operator not in self.OPERATORS:
            return ConditionValidation(False, f"Invalid operator: {condition.operator}")

        if condition.operator not in self.VALUELESS_OPERATORS and not condition.has_value:
            return ConditionValidation(
                False, f"Operator {condition.operator} requires a value"
            )

        if condition.operator in self.LIST_OPERATORS and not isinstance(condition.value, list):
            return ConditionValidation(
                False, f"Operator {condition.operator} requires an array value"
            )

        return ConditionValidation(True)

    @staticmethod
    def resolve_field(data: dict[str, Any], field_path: str) -> Any:
        """
        Resolve a condition field against the context.

        1. Walk the literal path from the context root.
        2. If that yields nothing:
           - a ``record.``-prefixed path is retried without the prefix
             against ``data["record"]``;
           - any other path is retried whole against ``data["record"]``.

        Returns MISSING when neither attempt resolves.
        """
        if not field_path:
            return MISSING

        parts = field_path.split(".")
        value = navigate_path(data, parts)
        if value is not MISSING:
            return value

        record = data.get("record")
        if record is None:
            return MISSING

        if parts[0] == "record":
            return navigate_path(record, parts[1:])
        return navigate_path(record, parts)

    @staticmethod
    def _context_data(context: ContextLike) -> dict[str, Any]:
        if isinstance(context, EvaluationContext):
            return context.as_dict()
        return dict(context or {})
