"""
Parsing of raw rule operands into typed ``RuleValue``s.

Segment builders submit every operand as free text (or whatever JSON scalar
the client sent). Operands are parsed exactly once, when the rule is saved;
evaluation only ever sees typed values.
"""

import math
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from crm_segments.schemas.rule_values import (
    ArrayValue,
    BoolValue,
    DateValue,
    NumberValue,
    RuleDataType,
    RuleOperator,
    RuleValue,
    StringValue,
    as_utc,
)
from crm_segments.services.segmentation.errors import MalformedValueError
from crm_segments.services.segmentation.fields import operand_kind

_TRUE_WORDS = {"true", "yes", "1"}
_FALSE_WORDS = {"false", "no", "0"}

_rule_value_adapter = TypeAdapter(RuleValue)
_datetime_adapter = TypeAdapter(datetime)


def canonical_number(value: float) -> str:
    """Stable text form of a number, used for IN / NOT_IN candidate lists."""
    value = float(value)
    if value == 0:
        value = 0.0  # -0.0 and 0.0 are the same candidate
    return repr(value)


def parse_number(raw: Any) -> float:
    if isinstance(raw, bool):
        raise MalformedValueError(f"Expected a number, got boolean {raw!r}")
    if isinstance(raw, (int, float)):
        number = float(raw)
    elif isinstance(raw, str):
        try:
            number = float(raw.strip())
        except ValueError:
            raise MalformedValueError(f"'{raw}' is not a number") from None
    else:
        raise MalformedValueError(f"Expected a number, got {type(raw).__name__}")
    if not math.isfinite(number):
        raise MalformedValueError(f"'{raw}' is not a finite number")
    return number


def parse_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        word = raw.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise MalformedValueError(f"'{raw}' is not a boolean (use true or false)")


def parse_date(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return as_utc(raw)
    if isinstance(raw, date):
        return as_utc(datetime(raw.year, raw.month, raw.day))
    if isinstance(raw, str) and raw.strip():
        text = raw.strip()
        try:
            return as_utc(_datetime_adapter.validate_python(text))
        except PydanticValidationError:
            pass
        try:
            return parse_date(date.fromisoformat(text))
        except ValueError:
            raise MalformedValueError(f"'{raw}' is not an ISO-8601 date") from None
    raise MalformedValueError(f"Expected a date, got {type(raw).__name__}")


def parse_string(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return str(raw)
    raise MalformedValueError(f"Expected text, got {type(raw).__name__}")


def parse_candidates(raw: Any, data_type: RuleDataType) -> tuple[str, ...]:
    """Parse an IN / NOT_IN candidate list; ``"a, b"`` and ``["a", "b"]`` both work."""
    if isinstance(raw, str):
        items = [part.strip() for part in raw.split(",")]
    elif isinstance(raw, (list, tuple, set, frozenset)):
        items = [item.strip() if isinstance(item, str) else item for item in raw]
    else:
        raise MalformedValueError(f"Expected a list of values, got {type(raw).__name__}")

    items = [item for item in items if item is not None and item != ""]
    if not items:
        raise MalformedValueError("Candidate list must contain at least one value")

    if data_type == RuleDataType.NUMBER:
        return tuple(canonical_number(parse_number(item)) for item in items)
    return tuple(parse_string(item) for item in items)


def coerce_rule_value(raw: Any, data_type: RuleDataType, operator: RuleOperator) -> RuleValue:
    """
    Turn an authored operand into the ``RuleValue`` its rule needs.

    Already-typed values (model instances or ``{"kind": ..., "value": ...}``
    dicts) are passed through unchanged; the validator decides whether their
    kind fits the rule.

    Raises:
        MalformedValueError: the operand cannot be read as the required type
    """
    if isinstance(raw, BaseModel):
        return _rule_value_adapter.validate_python(raw.model_dump())
    if isinstance(raw, dict) and "kind" in raw:
        try:
            return _rule_value_adapter.validate_python(raw)
        except PydanticValidationError as e:
            raise MalformedValueError(f"Invalid typed value: {e.errors()[0]['msg']}") from None
    if raw is None:
        raise MalformedValueError("A value is required")

    kind = operand_kind(data_type, operator)
    if kind == RuleDataType.ARRAY:
        return ArrayValue(value=parse_candidates(raw, data_type))
    if kind == RuleDataType.NUMBER:
        return NumberValue(value=parse_number(raw))
    if kind == RuleDataType.BOOLEAN:
        return BoolValue(value=parse_boolean(raw))
    if kind == RuleDataType.DATE:
        return DateValue(value=parse_date(raw))
    return StringValue(value=parse_string(raw))
