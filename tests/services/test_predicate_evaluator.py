"""
Tests for single-rule evaluation against customer records.
"""

import random
from datetime import datetime, timezone

import pytest

from crm_segments.schemas.customer import CustomerRecord
from crm_segments.schemas.rule_values import (
    ArrayValue,
    BoolValue,
    NumberValue,
    RuleDataType,
    RuleOperator,
    StringValue,
)
from crm_segments.schemas.segment import SegmentCriteriaInput, SegmentRule, SegmentRuleInput
from crm_segments.services.segmentation.errors import TypeCoercionFailedError
from crm_segments.services.segmentation.evaluator import evaluate_rule
from crm_segments.services.segmentation.fields import ALLOWED_OPERATORS, FIELD_DEFINITIONS
from crm_segments.services.segmentation.validator import compile_criteria, compile_rule

from tests.factories import BlankCustomerFactory, CustomerRecordFactory


def make_rule(field, operator, value, data_type):
    return compile_rule(SegmentRuleInput(field=field, operator=operator, value=value, data_type=data_type))


def rule_input(field, operator, value, data_type):
    return SegmentRuleInput(field=field, operator=operator, value=value, data_type=data_type)


class TestScenarios:
    def test_stage_equals(self):
        rule = make_rule("currentStage", "EQUALS", "ACTIVE", "STRING")
        assert evaluate_rule(rule, CustomerRecord(id=1, current_stage="ACTIVE")) is True
        assert evaluate_rule(rule, CustomerRecord(id=2, current_stage="CHURNED")) is False

    def test_value_and_risk_flag(self):
        high_value = make_rule("lifetimeValue", "GREATER_THAN", "10000", "NUMBER")
        not_at_risk = make_rule("isAtRisk", "EQUALS", "false", "BOOLEAN")

        safe = CustomerRecord(id=1, lifetime_value=15000, is_at_risk=False)
        risky = CustomerRecord(id=2, lifetime_value=15000, is_at_risk=True)

        assert evaluate_rule(high_value, safe) and evaluate_rule(not_at_risk, safe)
        assert evaluate_rule(high_value, risky) and not evaluate_rule(not_at_risk, risky)

    def test_tags_contains(self):
        rule = make_rule("tags", "CONTAINS", "vip", "ARRAY")
        assert evaluate_rule(rule, CustomerRecord(id=1, tags=["vip", "b2b"])) is True
        assert evaluate_rule(rule, CustomerRecord(id=2, tags=["b2b"])) is False


class TestOperators:
    def test_number_comparisons(self):
        record = CustomerRecord(id=1, risk_score=50)
        assert evaluate_rule(make_rule("riskScore", "GREATER_THAN", "49.5", "NUMBER"), record)
        assert not evaluate_rule(make_rule("riskScore", "GREATER_THAN", "50", "NUMBER"), record)
        assert evaluate_rule(make_rule("riskScore", "LESS_THAN", "50.01", "NUMBER"), record)
        assert evaluate_rule(make_rule("riskScore", "EQUALS", "50.0", "NUMBER"), record)

    def test_number_in_uses_numeric_equality(self):
        rule = make_rule("daysAsCustomer", "IN", "30, 60, 90", "NUMBER")
        assert evaluate_rule(rule, CustomerRecord(id=1, days_as_customer=60))
        assert not evaluate_rule(rule, CustomerRecord(id=2, days_as_customer=61))

    def test_number_in_accepts_typed_non_canonical_candidates(self):
        criteria = compile_criteria(
            SegmentCriteriaInput(
                rules=[
                    rule_input("lifetimeValue", "IN", {"kind": "ARRAY", "value": ["15000"]}, "NUMBER"),
                    rule_input("lifetimeValue", "NOT_IN", {"kind": "ARRAY", "value": ["15000"]}, "NUMBER"),
                ],
            )
        )
        record = CustomerRecord(id=1, lifetime_value=15000)
        assert evaluate_rule(criteria.rules[0], record) is True
        assert evaluate_rule(criteria.rules[1], record) is False

    def test_date_comparisons_are_instant_based(self):
        cutoff = make_rule("lastActivityDate", "LESS_THAN", "2024-01-01T00:00:00+00:00", "DATE")
        # 23:30 at -02:00 is already 2024-01-01T01:30Z
        late = CustomerRecord(id=1, last_activity_date="2023-12-31T23:30:00-02:00")
        early = CustomerRecord(id=2, last_activity_date=datetime(2023, 12, 31, 22, 0, tzinfo=timezone.utc))
        assert not evaluate_rule(cutoff, late)
        assert evaluate_rule(cutoff, early)

    def test_string_contains_is_substring(self):
        rule = make_rule("currentStage", "CONTAINS", "RISK", "STRING")
        assert evaluate_rule(rule, CustomerRecord(id=1, current_stage="AT_RISK"))
        assert not evaluate_rule(rule, CustomerRecord(id=2, current_stage="ACTIVE"))

    def test_string_in(self):
        rule = make_rule("healthScore", "IN", "POOR, CRITICAL", "STRING")
        assert evaluate_rule(rule, CustomerRecord(id=1, health_score="CRITICAL"))
        assert not evaluate_rule(rule, CustomerRecord(id=2, health_score="GOOD"))

    def test_array_in_matches_any_shared_tag(self):
        rule = make_rule("tags", "IN", ["enterprise", "vip"], "ARRAY")
        assert evaluate_rule(rule, CustomerRecord(id=1, tags=["beta", "vip"]))
        assert not evaluate_rule(rule, CustomerRecord(id=2, tags=["beta"]))
        assert not evaluate_rule(rule, CustomerRecord(id=3, tags=[]))

    def test_not_contains_on_tags(self):
        rule = make_rule("tags", "NOT_CONTAINS", "vip", "ARRAY")
        assert evaluate_rule(rule, CustomerRecord(id=1, tags=["b2b"]))
        assert not evaluate_rule(rule, CustomerRecord(id=2, tags=["vip"]))


class TestAbsentFields:
    @pytest.mark.parametrize(
        "field,operator,value,data_type,expected",
        [
            ("currentStage", "EQUALS", "ACTIVE", "STRING", False),
            ("currentStage", "NOT_EQUALS", "ACTIVE", "STRING", True),
            ("currentStage", "CONTAINS", "ACT", "STRING", False),
            ("currentStage", "NOT_CONTAINS", "ACT", "STRING", True),
            ("currentStage", "IN", "ACTIVE", "STRING", False),
            ("currentStage", "NOT_IN", "ACTIVE", "STRING", True),
            ("lifetimeValue", "GREATER_THAN", "0", "NUMBER", False),
            ("lifetimeValue", "LESS_THAN", "0", "NUMBER", False),
            ("lastActivityDate", "GREATER_THAN", "2000-01-01", "DATE", False),
            ("isAtRisk", "EQUALS", "false", "BOOLEAN", False),
            ("isAtRisk", "NOT_EQUALS", "true", "BOOLEAN", True),
            ("tags", "CONTAINS", "vip", "ARRAY", False),
            ("tags", "NOT_IN", "vip", "ARRAY", True),
        ],
    )
    def test_absent_value_policy(self, field, operator, value, data_type, expected):
        rule = make_rule(field, operator, value, data_type)
        assert evaluate_rule(rule, BlankCustomerFactory()) is expected


class TestCorruptRules:
    """Rules that bypassed validation fail per rule instead of crashing."""

    def test_wrong_operand_kind(self):
        rule = SegmentRule(
            field="lifetimeValue",
            operator=RuleOperator.GREATER_THAN,
            value=StringValue(value="lots"),
            data_type=RuleDataType.NUMBER,
        )
        with pytest.raises(TypeCoercionFailedError) as exc_info:
            evaluate_rule(rule, CustomerRecord(id=1, lifetime_value=5))
        assert exc_info.value.field == "lifetimeValue"

    def test_unknown_field(self):
        rule = SegmentRule(
            field="shoeSize",
            operator=RuleOperator.EQUALS,
            value=NumberValue(value=42),
            data_type=RuleDataType.NUMBER,
        )
        with pytest.raises(TypeCoercionFailedError):
            evaluate_rule(rule, CustomerRecord(id=1))

    def test_operator_not_defined_for_type(self):
        rule = SegmentRule(
            field="isAtRisk",
            operator=RuleOperator.GREATER_THAN,
            value=BoolValue(value=True),
            data_type=RuleDataType.BOOLEAN,
        )
        with pytest.raises(TypeCoercionFailedError):
            evaluate_rule(rule, CustomerRecord(id=1, is_at_risk=True))

    def test_checks_apply_even_when_value_is_absent(self):
        rule = SegmentRule(
            field="tags",
            operator=RuleOperator.IN,
            value=StringValue(value="vip"),
            data_type=RuleDataType.ARRAY,
        )
        with pytest.raises(TypeCoercionFailedError):
            evaluate_rule(rule, CustomerRecord(id=1))


class TestNegationProperties:
    """Seeded random sweeps over records and operands."""

    OPERANDS = {
        RuleDataType.STRING: ["ACTIVE", "AT_RISK", "GOOD", "BUSINESS", "HIGH"],
        RuleDataType.NUMBER: ["0", "50", "10000", "25000.5"],
        RuleDataType.DATE: ["2024-01-01", "2024-06-30T12:00:00Z"],
        RuleDataType.BOOLEAN: ["true", "false"],
        RuleDataType.ARRAY: ["vip", "b2b", "beta"],
    }
    PAIRS = [
        (RuleOperator.EQUALS, RuleOperator.NOT_EQUALS),
        (RuleOperator.CONTAINS, RuleOperator.NOT_CONTAINS),
        (RuleOperator.IN, RuleOperator.NOT_IN),
    ]

    def _operand(self, rng, name, data_type):
        options = FIELD_DEFINITIONS[name].options
        return rng.choice(options) if options else rng.choice(self.OPERANDS[data_type])

    def test_negated_operators_are_exact_complements_for_present_values(self):
        rng = random.Random(7)
        records = [CustomerRecordFactory(id=i) for i in range(1, 41)]

        for name, definition in FIELD_DEFINITIONS.items():
            allowed = ALLOWED_OPERATORS[definition.data_type]
            for positive, negative in self.PAIRS:
                if positive not in allowed:
                    continue
                for _ in range(5):
                    value = self._operand(rng, name, definition.data_type)
                    pos = make_rule(name, positive, value, definition.data_type)
                    neg = make_rule(name, negative, value, definition.data_type)
                    for record in records:
                        if definition.read(record) is None:
                            continue
                        assert evaluate_rule(pos, record) != evaluate_rule(neg, record), (name, positive, value)

    def test_equals_is_reflexive(self):
        """A record always equals its own value for every present field."""
        records = [CustomerRecordFactory(id=i) for i in range(1, 21)]
        for record in records:
            for name in ("currentStage", "healthScore", "lifetimeValue", "riskScore", "isAtRisk", "lastActivityDate"):
                definition = FIELD_DEFINITIONS[name]
                actual = definition.read(record)
                if actual is None:
                    continue
                raw = actual.isoformat() if isinstance(actual, datetime) else actual
                rule = make_rule(name, "EQUALS", raw, definition.data_type)
                assert evaluate_rule(rule, record), (name, actual)
