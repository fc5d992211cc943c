"""
Queryable customer fields and the operators each data type supports.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Type

from crm_segments.schemas.customer import (
    CustomerHealthScore,
    CustomerLifecycleStage,
    CustomerRecord,
    CustomerType,
    EngagementLevel,
)
from crm_segments.schemas.rule_values import RuleDataType, RuleOperator


@dataclass(frozen=True)
class FieldDefinition:
    """Definition of a customer field that can be used in segment rules."""

    name: str
    display_name: str
    data_type: RuleDataType
    attribute: str
    enum: Optional[Type[Enum]] = None

    @property
    def options(self) -> Tuple[str, ...]:
        if self.enum is None:
            return ()
        return tuple(member.value for member in self.enum)

    def read(self, record: CustomerRecord) -> Any:
        """Return the record's value for this field, unwrapping enums."""
        value = getattr(record, self.attribute)
        if isinstance(value, Enum):
            return value.value
        return value


def _field(name, display_name, data_type, attribute, enum=None):
    return name, FieldDefinition(name, display_name, data_type, attribute, enum)


FIELD_DEFINITIONS: Dict[str, FieldDefinition] = dict(
    [
        _field("currentStage", "Current Stage", RuleDataType.STRING, "current_stage", CustomerLifecycleStage),
        _field("healthScore", "Health Score", RuleDataType.STRING, "health_score", CustomerHealthScore),
        _field("engagementLevel", "Engagement Level", RuleDataType.STRING, "engagement_level", EngagementLevel),
        _field("lifetimeValue", "Lifetime Value", RuleDataType.NUMBER, "lifetime_value"),
        _field("daysAsCustomer", "Days as Customer", RuleDataType.NUMBER, "days_as_customer"),
        _field("riskScore", "Risk Score", RuleDataType.NUMBER, "risk_score"),
        _field("churnProbability", "Churn Probability", RuleDataType.NUMBER, "churn_probability"),
        _field("isHighValue", "High Value Customer", RuleDataType.BOOLEAN, "is_high_value"),
        _field("isAtRisk", "At Risk", RuleDataType.BOOLEAN, "is_at_risk"),
        _field("requiresAttention", "Requires Attention", RuleDataType.BOOLEAN, "requires_attention"),
        _field("tags", "Tags", RuleDataType.ARRAY, "tags"),
        _field("customerType", "Customer Type", RuleDataType.STRING, "customer_type", CustomerType),
        _field("lastActivityDate", "Last Activity Date", RuleDataType.DATE, "last_activity_date"),
    ]
)


ALLOWED_OPERATORS: Dict[RuleDataType, FrozenSet[RuleOperator]] = {
    RuleDataType.STRING: frozenset(
        {
            RuleOperator.EQUALS,
            RuleOperator.NOT_EQUALS,
            RuleOperator.CONTAINS,
            RuleOperator.NOT_CONTAINS,
            RuleOperator.IN,
            RuleOperator.NOT_IN,
        }
    ),
    RuleDataType.NUMBER: frozenset(
        {
            RuleOperator.EQUALS,
            RuleOperator.NOT_EQUALS,
            RuleOperator.GREATER_THAN,
            RuleOperator.LESS_THAN,
            RuleOperator.IN,
            RuleOperator.NOT_IN,
        }
    ),
    RuleDataType.DATE: frozenset(
        {
            RuleOperator.EQUALS,
            RuleOperator.NOT_EQUALS,
            RuleOperator.GREATER_THAN,
            RuleOperator.LESS_THAN,
        }
    ),
    RuleDataType.BOOLEAN: frozenset({RuleOperator.EQUALS, RuleOperator.NOT_EQUALS}),
    RuleDataType.ARRAY: frozenset(
        {
            RuleOperator.CONTAINS,
            RuleOperator.NOT_CONTAINS,
            RuleOperator.IN,
            RuleOperator.NOT_IN,
        }
    ),
}

# Declaration order of RuleOperator, for stable listings
_OPERATOR_ORDER = list(RuleOperator)


def operators_for(data_type: RuleDataType) -> list[RuleOperator]:
    allowed = ALLOWED_OPERATORS[data_type]
    return [op for op in _OPERATOR_ORDER if op in allowed]


def operand_kind(data_type: RuleDataType, operator: RuleOperator) -> RuleDataType:
    """
    The ``RuleValue`` kind a rule's operand must carry.

    IN / NOT_IN always take a candidate list. CONTAINS / NOT_CONTAINS on an
    array field take the single element to look for. Everything else takes a
    value of the rule's own data type.
    """
    if operator in (RuleOperator.IN, RuleOperator.NOT_IN):
        return RuleDataType.ARRAY
    if data_type == RuleDataType.ARRAY:
        return RuleDataType.STRING
    return data_type
