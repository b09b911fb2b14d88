"""
Shared condition evaluator — used by conversation conditionals and scripted filters.

Covers three layers:
- conversation tests (equals / !equals / exists / !exists) over rendered strings
- comparators (is / is_not / greater_than / …) over string or numeric coercions
- entity, operation and filter evaluation for data-driven branching

Attribute lookups go through an async resolver supplied by the caller, so
the same code serves in-memory vars and persisted user attributes.
"""
from __future__ import annotations

import math
import operator as op
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from models.schemas import (
    CalculationEntity, DirectToFlowCondition, Filter, Operation, OperationEntity,
)

logger = structlog.get_logger()

AttributeResolver = Callable[[str], Awaitable[Any]]


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'vars.age'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


# ──────────────────────────────────────────────────────────────
#  Conversation tests
# ──────────────────────────────────────────────────────────────

TESTS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda left, right: left == right,
    "!equals": lambda left, right: left != right,
    "exists": lambda left, right: bool(left),
    "!exists": lambda left, right: not left,
}


def passes_test(test: str, left: Any, right: Any) -> bool:
    fn = TESTS.get(test)
    if fn is None:
        return False
    return fn(left, right)


# ──────────────────────────────────────────────────────────────
#  Coercion
# ──────────────────────────────────────────────────────────────

def to_number(value: Any) -> float:
    """Numeric coercion; anything unparseable becomes NaN."""
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp() * 1000
    text = str(value).strip()
    if text == "":
        return 0.0
    try:
        return float(text)
    except ValueError:
        return math.nan


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if math.isnan(value):
            return None
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError:
        return None


def _as_int(value: Any) -> int:
    n = to_number(value)
    return 0 if math.isnan(n) or math.isinf(n) else int(n)


# ──────────────────────────────────────────────────────────────
#  Comparators
# ──────────────────────────────────────────────────────────────

_NUMERIC = {
    "greater_than": op.gt,
    "smaller_than": op.lt,
    "greater_or_equal": op.ge,
    "smaller_or_equal": op.le,
}


def compare(comparator: str, first: Any, second: Any) -> bool:
    if comparator == "is":
        return to_string(first) == to_string(second)
    if comparator == "is_not":
        return to_string(first) != to_string(second)
    fn = _NUMERIC.get(comparator)
    if fn is None:
        return False
    # NaN compares False against everything
    return fn(to_number(first), to_number(second))


# ──────────────────────────────────────────────────────────────
#  Entities and operations
# ──────────────────────────────────────────────────────────────

async def evaluate_entity(entity: Optional[OperationEntity], resolve: AttributeResolver) -> Any:
    """Resolve a typed value: text | number | date | keyword | attribute."""
    if entity is None:
        return None
    kind = (entity.type or "").lower()
    if kind == "text":
        return entity.text_value
    if kind == "number":
        n = to_number(entity.number_value)
        if math.isnan(n):
            return None
        return int(n) if n.is_integer() else n
    if kind == "date":
        return to_datetime(entity.date_value)
    if kind == "keyword":
        if (entity.keyword or "").lower() == "currenttime":
            return datetime.now(timezone.utc)
        return None
    if kind == "attribute" and entity.attribute is not None:
        return await resolve(entity.attribute.name)
    return None


def _shift(value: Any, amount: Any, unit: str, sign: int) -> Optional[datetime]:
    base = to_datetime(value)
    if base is None:
        return None
    n = to_number(amount)
    if math.isnan(n):
        return None
    return base + sign * timedelta(**{unit: n})


def _divide(a: Any, b: Any) -> Optional[float]:
    x, y = to_number(a), to_number(b)
    if y == 0 or math.isnan(x) or math.isnan(y):
        return None
    return x / y


OPERATIONS: dict[str, Callable[[Any, Any], Any]] = {
    "and": lambda a, b: _as_int(a) & _as_int(b),
    "or": lambda a, b: _as_int(a) | _as_int(b),
    "add": lambda a, b: to_number(a) + to_number(b),
    "subtract": lambda a, b: to_number(a) - to_number(b),
    "multiply": lambda a, b: to_number(a) * to_number(b),
    "divide": _divide,
    "adddays": lambda a, b: _shift(a, b, "days", 1),
    "subtractdays": lambda a, b: _shift(a, b, "days", -1),
    "addhours": lambda a, b: _shift(a, b, "hours", 1),
    "subtracthours": lambda a, b: _shift(a, b, "hours", -1),
    "addminutes": lambda a, b: _shift(a, b, "minutes", 1),
    "subtractminutes": lambda a, b: _shift(a, b, "minutes", -1),
}


async def evaluate_operation(operation: Optional[Operation], resolve: AttributeResolver) -> Any:
    if operation is None:
        return None
    fn = OPERATIONS.get((operation.operand or "").lower())
    if fn is None:
        logger.debug("unknown_operand", operand=operation.operand)
        return None
    first = await evaluate_entity(operation.first_entity, resolve)
    second = await evaluate_entity(operation.second_entity, resolve)
    if first is None or second is None:
        return None
    result = fn(first, second)
    if isinstance(result, float):
        if math.isnan(result):
            return None
        if result.is_integer():
            return int(result)
    return result


async def evaluate_calculation(calc: Optional[CalculationEntity], resolve: AttributeResolver) -> Any:
    if calc is None:
        return None
    kind = (calc.type or "").lower()
    if kind == "simplevalue":
        return await evaluate_entity(calc.value_entity, resolve)
    if kind == "operation":
        return await evaluate_operation(calc.operation, resolve)
    return None


# ──────────────────────────────────────────────────────────────
#  Filters
# ──────────────────────────────────────────────────────────────

async def filter_is_met(f: Filter, resolve: AttributeResolver) -> bool:
    kind = (f.filter_by or "").lower()
    if kind == "attribute":
        name = f.filter_item.name if f.filter_item else ""
        value = await resolve(name)
        return compare(f.filter_operation, value, f.filter_value)
    if kind == "calculation":
        first = await evaluate_calculation(f.first_calculation, resolve)
        second = await evaluate_calculation(f.second_calculation, resolve)
        if first is None or second is None:
            return False
        return compare(f.calculation_comparator, first, second)
    return False


async def filters_pass(
    filters: list[Filter],
    logical_operator: str,
    resolve: AttributeResolver,
) -> bool:
    """AND: every filter must hold. OR: any filter may hold. Empty → True."""
    if not filters:
        return True
    if (logical_operator or "and").lower() == "or":
        for f in filters:
            if await filter_is_met(f, resolve):
                return True
        return False
    for f in filters:
        if not await filter_is_met(f, resolve):
            return False
    return True


async def evaluate_direct_to_flow(
    conditions: list[DirectToFlowCondition],
    resolve: AttributeResolver,
) -> Any:
    """Return the group picked by the first condition whose filters hold."""
    for cond in conditions:
        if await filters_pass(cond.filters, cond.logical_operator, resolve):
            groups = cond.selected_item_groups
            if not groups:
                return None
            if cond.allow_random:
                return random.choice(groups)
            return groups[0]
    return None
