"""
Segment rule validation.

Every rule is checked before it is stored or evaluated:

1. the field must be a known customer field
2. the declared data type must be the field's data type
3. the operator must be legal for that data type
4. the operand must be the right kind of value (and, for fields with a
   fixed set of options, one of those options)

All functions here are pure.
"""

from typing import Optional

from crm_segments.schemas.rule_values import RuleDataType, RuleOperator
from crm_segments.schemas.segment import (
    SegmentCriteria,
    SegmentCriteriaInput,
    SegmentRule,
    SegmentRuleInput,
)
from crm_segments.services.segmentation.errors import (
    CriteriaValidationError,
    EmptyCriteriaError,
    FieldTypeMismatchError,
    IncompatibleOperatorError,
    MalformedValueError,
    RuleValidationError,
    UnknownFieldError,
)
from crm_segments.services.segmentation.fields import (
    ALLOWED_OPERATORS,
    FIELD_DEFINITIONS,
    operand_kind,
)
from crm_segments.services.segmentation.values import coerce_rule_value, parse_number

# Operators whose operand is compared as a whole value (not a substring)
_OPTION_CHECKED = {
    RuleOperator.EQUALS,
    RuleOperator.NOT_EQUALS,
    RuleOperator.IN,
    RuleOperator.NOT_IN,
}


def _check_definition(field: str, operator: RuleOperator, data_type: RuleDataType, index: Optional[int]):
    definition = FIELD_DEFINITIONS.get(field)
    if definition is None:
        raise UnknownFieldError(field, rule_index=index)
    if definition.data_type != data_type:
        raise FieldTypeMismatchError(field, data_type.value, definition.data_type.value, rule_index=index)
    if operator not in ALLOWED_OPERATORS[data_type]:
        raise IncompatibleOperatorError(field, operator.value, data_type.value, rule_index=index)
    return definition


def validate_rule(rule: SegmentRule, index: Optional[int] = None) -> None:
    """
    Check one rule.

    Raises:
        RuleValidationError: the first problem found with the rule
    """
    definition = _check_definition(rule.field, rule.operator, rule.data_type, index)

    expected = operand_kind(rule.data_type, rule.operator)
    if rule.value.kind != expected.value:
        raise MalformedValueError(
            f"{rule.operator.value} on '{rule.field}' needs a {expected.value} value, got {rule.value.kind}",
            field=rule.field,
            rule_index=index,
        )

    if expected == RuleDataType.ARRAY:
        candidates = rule.value.value
        if not candidates:
            raise MalformedValueError("Candidate list must contain at least one value", field=rule.field, rule_index=index)
        if rule.data_type == RuleDataType.NUMBER:
            for candidate in candidates:
                try:
                    parse_number(candidate)
                except MalformedValueError as e:
                    raise MalformedValueError(str(e), field=rule.field, rule_index=index) from None

    if definition.options and rule.operator in _OPTION_CHECKED:
        operands = rule.value.value if expected == RuleDataType.ARRAY else (rule.value.value,)
        unknown = [v for v in operands if v not in definition.options]
        if unknown:
            raise MalformedValueError(
                f"{', '.join(repr(v) for v in unknown)} not a valid {definition.display_name}; "
                f"expected one of {', '.join(definition.options)}",
                field=rule.field,
                rule_index=index,
            )


def validate_criteria(criteria: SegmentCriteria) -> list[RuleValidationError]:
    """Return every validation error in the criteria; an empty list means valid."""
    if not criteria.rules:
        return [EmptyCriteriaError()]

    errors: list[RuleValidationError] = []
    for index, rule in enumerate(criteria.rules):
        try:
            validate_rule(rule, index)
        except RuleValidationError as e:
            errors.append(e)
    return errors


def ensure_valid_criteria(criteria: SegmentCriteria) -> SegmentCriteria:
    """
    Raises:
        CriteriaValidationError: the criteria has at least one invalid rule
    """
    errors = validate_criteria(criteria)
    if errors:
        raise CriteriaValidationError(errors)
    return criteria


def compile_rule(rule_input: SegmentRuleInput, index: Optional[int] = None) -> SegmentRule:
    """Parse an authored rule's operand and validate the resulting rule."""
    _check_definition(rule_input.field, rule_input.operator, rule_input.data_type, index)
    try:
        value = coerce_rule_value(rule_input.value, rule_input.data_type, rule_input.operator)
    except MalformedValueError as e:
        e.field = rule_input.field
        raise e.at(index)

    rule = SegmentRule(
        field=rule_input.field,
        operator=rule_input.operator,
        value=value,
        data_type=rule_input.data_type,
    )
    validate_rule(rule, index)
    return rule


def compile_criteria(criteria_input: SegmentCriteriaInput) -> SegmentCriteria:
    """
    Compile authored criteria into typed, validated criteria.

    Raises:
        CriteriaValidationError: with one entry per offending rule
    """
    if not criteria_input.rules:
        raise CriteriaValidationError([EmptyCriteriaError()])

    rules: list[SegmentRule] = []
    errors: list[RuleValidationError] = []
    for index, rule_input in enumerate(criteria_input.rules):
        try:
            rules.append(compile_rule(rule_input, index))
        except RuleValidationError as e:
            errors.append(e)

    if errors:
        raise CriteriaValidationError(errors)
    return SegmentCriteria(rules=tuple(rules), logic=criteria_input.logic)
