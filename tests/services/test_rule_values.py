"""
Tests for rule operand parsing.

Operands arrive as free text or JSON scalars and are parsed once, when a
rule is saved.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from crm_segments.schemas.rule_values import (
    ArrayValue,
    BoolValue,
    DateValue,
    NumberValue,
    RuleDataType,
    RuleOperator,
    StringValue,
)
from crm_segments.services.segmentation.errors import MalformedValueError
from crm_segments.services.segmentation.values import (
    canonical_number,
    coerce_rule_value,
    parse_boolean,
    parse_candidates,
    parse_date,
    parse_number,
)


class TestParseNumber:
    @pytest.mark.parametrize("raw,expected", [("10000", 10000.0), (" 12.5 ", 12.5), (7, 7.0), (-3.25, -3.25)])
    def test_accepts_numeric_text_and_numbers(self, raw, expected):
        assert parse_number(raw) == expected

    @pytest.mark.parametrize("raw", ["abc", "", "nan", "inf", True, None, [1]])
    def test_rejects_non_numbers(self, raw):
        with pytest.raises(MalformedValueError):
            parse_number(raw)


class TestParseBoolean:
    @pytest.mark.parametrize("raw", [True, "true", "TRUE", " yes ", "1"])
    def test_truthy_words(self, raw):
        assert parse_boolean(raw) is True

    @pytest.mark.parametrize("raw", [False, "false", "No", "0"])
    def test_falsy_words(self, raw):
        assert parse_boolean(raw) is False

    @pytest.mark.parametrize("raw", ["maybe", "", 2, None])
    def test_rejects_anything_else(self, raw):
        with pytest.raises(MalformedValueError):
            parse_boolean(raw)


class TestParseDate:
    def test_plain_date_is_midnight_utc(self):
        assert parse_date("2024-03-01") == datetime(2024, 3, 1, tzinfo=timezone.utc)

    def test_offset_is_normalised_to_utc(self):
        parsed = parse_date("2024-03-01T12:00:00+02:00")
        assert parsed == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert parsed.tzinfo == timezone.utc

    def test_naive_timestamp_is_treated_as_utc(self):
        assert parse_date("2024-03-01T08:30:00") == datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("raw", ["yesterday", "", "2024-13-45", 42])
    def test_rejects_invalid_dates(self, raw):
        with pytest.raises(MalformedValueError):
            parse_date(raw)


class TestCandidates:
    def test_comma_separated_text(self):
        assert parse_candidates("ACTIVE, AT_RISK ,", RuleDataType.STRING) == ("ACTIVE", "AT_RISK")

    def test_list_input(self):
        assert parse_candidates(["vip", " b2b "], RuleDataType.ARRAY) == ("vip", "b2b")

    def test_numbers_are_canonicalised(self):
        assert parse_candidates("1, 2.50, -0", RuleDataType.NUMBER) == ("1.0", "2.5", "0.0")

    def test_empty_list_rejected(self):
        with pytest.raises(MalformedValueError):
            parse_candidates(" , ", RuleDataType.STRING)

    def test_non_numeric_candidate_rejected(self):
        with pytest.raises(MalformedValueError):
            parse_candidates("1, two", RuleDataType.NUMBER)

    def test_canonical_number_is_stable(self):
        assert canonical_number(10) == canonical_number(10.0) == "10.0"
        assert canonical_number(-0.0) == canonical_number(0) == "0.0"


class TestCoerceRuleValue:
    def test_kind_follows_data_type(self):
        assert coerce_rule_value("ACTIVE", RuleDataType.STRING, RuleOperator.EQUALS) == StringValue(value="ACTIVE")
        assert coerce_rule_value("10000", RuleDataType.NUMBER, RuleOperator.GREATER_THAN) == NumberValue(value=10000)
        assert coerce_rule_value("false", RuleDataType.BOOLEAN, RuleOperator.EQUALS) == BoolValue(value=False)
        assert isinstance(coerce_rule_value("2024-01-01", RuleDataType.DATE, RuleOperator.LESS_THAN), DateValue)

    def test_in_takes_a_candidate_list(self):
        value = coerce_rule_value("ACTIVE,ONBOARDING", RuleDataType.STRING, RuleOperator.IN)
        assert value == ArrayValue(value=("ACTIVE", "ONBOARDING"))

    def test_array_contains_takes_a_single_element(self):
        assert coerce_rule_value("vip", RuleDataType.ARRAY, RuleOperator.CONTAINS) == StringValue(value="vip")

    def test_typed_values_pass_through(self):
        value = coerce_rule_value({"kind": "NUMBER", "value": 5}, RuleDataType.STRING, RuleOperator.EQUALS)
        assert value == NumberValue(value=5)

    def test_missing_value_rejected(self):
        with pytest.raises(MalformedValueError):
            coerce_rule_value(None, RuleDataType.STRING, RuleOperator.EQUALS)

    def test_bad_typed_value_rejected(self):
        with pytest.raises(MalformedValueError):
            coerce_rule_value({"kind": "NUMBER", "value": "lots"}, RuleDataType.NUMBER, RuleOperator.EQUALS)


class TestValueModels:
    def test_values_are_immutable(self):
        value = StringValue(value="vip")
        with pytest.raises(ValidationError):
            value.value = "b2b"

    def test_number_must_be_finite(self):
        with pytest.raises(ValidationError):
            NumberValue(value=float("inf"))

    def test_date_value_normalises_to_utc(self):
        assert DateValue(value=datetime(2024, 1, 1)).value.tzinfo == timezone.utc
