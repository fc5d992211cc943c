"""
Typed rule operands.

A rule operand is one of five frozen value types, discriminated by ``kind``.
The kind names match the rule data types so a stored operand can be checked
against its rule without extra lookups.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, FiniteFloat, field_validator


class RuleDataType(str, Enum):
    STRING = "STRING"
    NUMBER = "NUMBER"
    DATE = "DATE"
    BOOLEAN = "BOOLEAN"
    ARRAY = "ARRAY"


class RuleOperator(str, Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    IN = "IN"
    NOT_IN = "NOT_IN"


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so instants compare consistently."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _FrozenValue(BaseModel):
    model_config = ConfigDict(frozen=True)


class StringValue(_FrozenValue):
    kind: Literal["STRING"] = "STRING"
    value: str


class NumberValue(_FrozenValue):
    kind: Literal["NUMBER"] = "NUMBER"
    value: FiniteFloat


class BoolValue(_FrozenValue):
    kind: Literal["BOOLEAN"] = "BOOLEAN"
    value: bool


class DateValue(_FrozenValue):
    kind: Literal["DATE"] = "DATE"
    value: datetime

    @field_validator("value")
    @classmethod
    def normalise_timezone(cls, v: datetime) -> datetime:
        return as_utc(v)


class ArrayValue(_FrozenValue):
    kind: Literal["ARRAY"] = "ARRAY"
    value: tuple[str, ...]


RuleValue = Annotated[
    Union[StringValue, NumberValue, BoolValue, DateValue, ArrayValue],
    Field(discriminator="kind"),
]
