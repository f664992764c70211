"""Condition evaluator for heuristic patterns.

Conditions are stored as JSON-safe strings such as ``name.startsWith('use')``
or ``func.type === 'function'``. They are never executed: each string is
parsed into a (field, operator, literal) triple and applied by a small closed
set of matchers. Anything outside that grammar evaluates to false.

Supported shapes::

    field.startsWith('lit')
    field.endsWith('lit')
    field.includes('lit')      # substring on strings, membership on lists
    field.matches('regex')     # case-insensitive search
    field === 'lit'
"""

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

from ..errors import ConditionEvaluationWarning, ErrorCode

logger = logging.getLogger("codelabel.heuristics.conditions")


class Operator(Enum):
    """Matchers a condition may use."""

    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    INCLUDES = "includes"
    MATCHES = "matches"
    EQUALS = "==="


class Combinator(Enum):
    """How a pattern's conditions are combined."""

    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class Condition:
    """A parsed condition expression."""

    field: str
    operator: Operator
    literal: str
    expression: str


# Collections whose `includes` matches when any element contains the literal
SUBSTRING_COLLECTIONS = frozenset({"chunk.imports"})

_FIELD = r"[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*"
_CALL_RE = re.compile(
    rf"^\s*(?P<field>{_FIELD})\.(?P<op>startsWith|endsWith|includes|matches)"
    r"\(\s*(?P<q>['\"])(?P<lit>.*?)(?P=q)\s*\)\s*$"
)
_EQUALS_RE = re.compile(rf"^\s*(?P<field>{_FIELD})\s*===\s*(?P<q>['\"])(?P<lit>.*?)(?P=q)\s*$")


def parse_condition(expression: Any) -> Condition:
    """Parse a condition string.

    Raises:
        ConditionEvaluationWarning: If the expression is not a string or is
            outside the grammar.
    """
    # Lists and dicts from a bad document are unhashable; reject before the cache
    if not isinstance(expression, str):
        raise ConditionEvaluationWarning(
            code=ErrorCode.CONDITION_UNPARSEABLE,
            message="Condition must be a string",
            details={"expression": repr(expression)},
        )
    return _parse_expression(expression)


@lru_cache(maxsize=1024)
def _parse_expression(expression: str) -> Condition:
    match = _CALL_RE.match(expression)
    if match:
        return Condition(
            field=match.group("field"),
            operator=Operator(match.group("op")),
            literal=match.group("lit"),
            expression=expression,
        )

    match = _EQUALS_RE.match(expression)
    if match:
        return Condition(
            field=match.group("field"),
            operator=Operator.EQUALS,
            literal=match.group("lit"),
            expression=expression,
        )

    raise ConditionEvaluationWarning(
        code=ErrorCode.CONDITION_UNPARSEABLE,
        message="Unsupported condition expression",
        details={"expression": expression},
    )


@lru_cache(maxsize=256)
def _compile_literal(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


def resolve_field(context: Mapping[str, Any], field: str) -> Any:
    """Walk a dotted field path through nested mappings.

    Raises:
        ConditionEvaluationWarning: If any segment is absent or None.
    """
    value: Any = context
    for part in field.split("."):
        if not isinstance(value, Mapping) or value.get(part) is None:
            raise ConditionEvaluationWarning(
                code=ErrorCode.CONDITION_FIELD_MISSING,
                message=f"Context has no field '{field}'",
                details={"field": field},
            )
        value = value[part]
    return value


def _apply(condition: Condition, value: Any) -> bool:
    op = condition.operator
    literal = condition.literal

    if isinstance(value, str):
        if op is Operator.STARTS_WITH:
            return value.startswith(literal)
        if op is Operator.ENDS_WITH:
            return value.endswith(literal)
        if op is Operator.INCLUDES:
            return literal in value
        if op is Operator.EQUALS:
            return value == literal
        try:
            return _compile_literal(literal).search(value) is not None
        except re.error as e:
            raise ConditionEvaluationWarning(
                code=ErrorCode.CONDITION_UNPARSEABLE,
                message="Invalid regular expression",
                details={"expression": condition.expression},
                cause=e,
            ) from e

    if isinstance(value, (list, tuple, set, frozenset)) and op is Operator.INCLUDES:
        if condition.field in SUBSTRING_COLLECTIONS:
            return any(isinstance(item, str) and literal in item for item in value)
        return literal in value

    raise ConditionEvaluationWarning(
        code=ErrorCode.CONDITION_FIELD_MISSING,
        message=f"Field '{condition.field}' has unsupported type for {op.value}",
        details={"field": condition.field, "type": type(value).__name__},
    )


def evaluate(expression: str, context: Mapping[str, Any]) -> bool:
    """Evaluate one condition against a context. Never raises.

    Expressions that cannot be parsed, or whose field is missing from the
    context, evaluate to False and are logged.
    """
    try:
        condition = parse_condition(expression)
        return _apply(condition, resolve_field(context, condition.field))
    except ConditionEvaluationWarning as w:
        logger.warning(
            "Condition evaluated as false: %s",
            w,
            extra={"expression": str(expression), "error_code": w.code.value},
        )
        return False


def infer_combinator(conditions: Sequence[str]) -> Combinator:
    """Derive the AND/OR policy from the shape of a condition list.

    Two-condition lists that pair a name prefix with a function type (the
    hook test), or that require both the ``web`` and ``src`` path segments,
    are AND-combined. Everything else is OR-combined.
    """
    if len(conditions) != 2:
        return Combinator.OR

    try:
        parsed = [parse_condition(c) for c in conditions]
    except ConditionEvaluationWarning:
        return Combinator.OR

    has_name_prefix = any(
        c.field == "name" and c.operator is Operator.STARTS_WITH for c in parsed
    )
    has_func_type = any(c.field == "func.type" for c in parsed)
    if has_name_prefix and has_func_type:
        return Combinator.AND

    segments = {
        c.literal for c in parsed if c.field == "pathParts" and c.operator is Operator.INCLUDES
    }
    if segments == {"web", "src"}:
        return Combinator.AND

    return Combinator.OR


def matching_conditions(
    conditions: Sequence[str],
    context: Mapping[str, Any],
    policy: Combinator | None = None,
) -> tuple[str, ...] | None:
    """Conditions that held, or None when the list as a whole does not match."""
    if not conditions:
        return None

    if policy is None:
        policy = infer_combinator(conditions)

    held = tuple(c for c in conditions if evaluate(c, context))

    if policy is Combinator.AND:
        return held if len(held) == len(conditions) else None
    return held if held else None


def evaluate_conditions(
    conditions: Sequence[str],
    context: Mapping[str, Any],
    policy: Combinator | None = None,
) -> bool:
    """Combine a pattern's conditions with AND or OR semantics."""
    return matching_conditions(conditions, context, policy) is not None
