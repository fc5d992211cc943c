"""
Evaluates a single segment rule against a single customer record.

Missing field values never satisfy a positive comparison (EQUALS, CONTAINS,
IN, GREATER_THAN, LESS_THAN) and always satisfy the negated ones
(NOT_EQUALS, NOT_CONTAINS, NOT_IN). For present values the negated operator
is exactly the opposite of its positive form.
"""

from datetime import datetime
from typing import Any

from crm_segments.schemas.customer import CustomerRecord
from crm_segments.schemas.rule_values import RuleDataType, RuleOperator, as_utc
from crm_segments.schemas.segment import SegmentRule
from crm_segments.services.segmentation.errors import TypeCoercionFailedError
from crm_segments.services.segmentation.fields import (
    ALLOWED_OPERATORS,
    FIELD_DEFINITIONS,
    operand_kind,
)

NEGATED_OPERATORS = {
    RuleOperator.NOT_EQUALS: RuleOperator.EQUALS,
    RuleOperator.NOT_CONTAINS: RuleOperator.CONTAINS,
    RuleOperator.NOT_IN: RuleOperator.IN,
}


def evaluate_rule(rule: SegmentRule, record: CustomerRecord) -> bool:
    """
    Return whether ``record`` satisfies ``rule``.

    Raises:
        TypeCoercionFailedError: the stored rule cannot be interpreted under
            its declared data type (unknown field, mismatched type, illegal
            operator or wrong operand kind)
    """
    definition = FIELD_DEFINITIONS.get(rule.field)
    if definition is None:
        raise TypeCoercionFailedError(rule.field, "unknown field")
    if definition.data_type != rule.data_type:
        raise TypeCoercionFailedError(
            rule.field, f"declared {rule.data_type.value} but field is {definition.data_type.value}"
        )
    if rule.operator not in ALLOWED_OPERATORS[rule.data_type]:
        raise TypeCoercionFailedError(rule.field, f"{rule.operator.value} is not defined for {rule.data_type.value}")
    expected = operand_kind(rule.data_type, rule.operator)
    if rule.value.kind != expected.value:
        raise TypeCoercionFailedError(rule.field, f"operand is {rule.value.kind}, expected {expected.value}")

    actual = definition.read(record)
    if actual is None:
        return rule.operator in NEGATED_OPERATORS

    positive = NEGATED_OPERATORS.get(rule.operator)
    if positive is not None:
        return not _compare(rule.field, positive, rule.data_type, actual, rule.value.value)
    return _compare(rule.field, rule.operator, rule.data_type, actual, rule.value.value)


def _compare(field: str, operator: RuleOperator, data_type: RuleDataType, actual: Any, operand: Any) -> bool:
    if data_type == RuleDataType.DATE:
        actual = _as_instant(field, actual)
    elif data_type == RuleDataType.NUMBER:
        actual = float(actual)

    if operator == RuleOperator.EQUALS:
        return actual == operand
    if operator == RuleOperator.GREATER_THAN:
        return actual > operand
    if operator == RuleOperator.LESS_THAN:
        return actual < operand
    if operator == RuleOperator.CONTAINS:
        # Substring for text, element membership for arrays
        return operand in actual
    if operator == RuleOperator.IN:
        if data_type == RuleDataType.ARRAY:
            return not frozenset(actual).isdisjoint(operand)
        if data_type == RuleDataType.NUMBER:
            return actual in _number_candidates(field, operand)
        return actual in operand
    raise TypeCoercionFailedError(field, f"unsupported operator {operator.value}")


def _number_candidates(field: str, operand: Any) -> set:
    # Candidates are compared as numbers; typed operands may hold "15000"
    # rather than the canonical "15000.0"
    try:
        return {float(candidate) for candidate in operand}
    except (TypeError, ValueError):
        raise TypeCoercionFailedError(field, f"candidate list {operand!r} is not numeric") from None


def _as_instant(field: str, value: Any) -> datetime:
    if not isinstance(value, datetime):
        raise TypeCoercionFailedError(field, f"expected a timestamp, got {type(value).__name__}")
    return as_utc(value)
