"""
Segment Schemas

Criteria come in two shapes: ``SegmentCriteriaInput`` as authored (operands
are raw text or JSON scalars) and ``SegmentCriteria`` once compiled (operands
are typed ``RuleValue``s). Only compiled criteria are stored or evaluated.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from crm_segments.schemas.customer import CustomerRecord
from crm_segments.schemas.rule_values import RuleDataType, RuleOperator, RuleValue


class SegmentLogic(str, Enum):
    AND = "AND"
    OR = "OR"


class EvaluationStatus(str, Enum):
    PENDING = "pending"
    OK = "ok"
    FAILED = "failed"


class SegmentRule(BaseModel):
    """Single typed comparison against one customer field."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., description="Customer field name (e.g. 'lifetimeValue')")
    operator: RuleOperator
    value: RuleValue
    data_type: RuleDataType


class SegmentCriteria(BaseModel):
    """Ordered rules folded together with AND/OR logic."""

    model_config = ConfigDict(frozen=True)

    rules: tuple[SegmentRule, ...] = ()
    logic: SegmentLogic = SegmentLogic.AND

    @property
    def referenced_fields(self) -> frozenset[str]:
        return frozenset(rule.field for rule in self.rules)


# Authoring shapes


class SegmentRuleInput(BaseModel):
    """Rule as entered in a segment builder; ``value`` is parsed on save."""

    field: str
    operator: RuleOperator
    value: Any = None
    data_type: RuleDataType


class SegmentCriteriaInput(BaseModel):
    rules: list[SegmentRuleInput] = Field(default_factory=list)
    logic: SegmentLogic = SegmentLogic.AND


class SegmentBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: bool = True
    is_auto_updated: bool = True


class SegmentCreate(SegmentBase):
    criteria: SegmentCriteriaInput


class SegmentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    criteria: Optional[SegmentCriteriaInput] = None
    is_active: Optional[bool] = None
    is_auto_updated: Optional[bool] = None


class SegmentResponse(SegmentBase):
    id: int
    criteria: SegmentCriteria

    # Written only by the evaluation publish path
    customer_count: int = 0
    updated_at: Optional[datetime] = None
    last_evaluation_status: EvaluationStatus = EvaluationStatus.PENDING
    last_evaluation_error: Optional[str] = None

    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SegmentListResponse(BaseModel):
    items: list[SegmentResponse]
    total: int
    active: int
    auto_updated: int = 0
    total_customers: int = 0  # summed across segments, a customer in two counts twice
    largest_segment: int = 0


# Validation / evaluation


class RuleErrorDetail(BaseModel):
    code: str
    rule_index: Optional[int] = None
    field: Optional[str] = None
    message: str


class CriteriaValidationResponse(BaseModel):
    valid: bool
    errors: list[RuleErrorDetail] = Field(default_factory=list)


class EvaluationWarningDetail(BaseModel):
    rule_index: int
    field: str
    message: str
    affected_customers: int


class SegmentPreviewRequest(BaseModel):
    criteria: SegmentCriteriaInput
    sample_size: Optional[int] = Field(None, ge=1, le=500)


class SegmentPreviewResponse(BaseModel):
    count: int
    evaluated: int
    sample_customer_ids: list[int]
    warnings: list[EvaluationWarningDetail] = Field(default_factory=list)


class CustomerEvaluationRequest(BaseModel):
    criteria: SegmentCriteriaInput
    customer: CustomerRecord
    previous_membership: bool = False


class CustomerEvaluationResponse(BaseModel):
    new_membership: bool
    changed: bool
    entered: bool
    left: bool


class FieldDefinitionResponse(BaseModel):
    name: str
    label: str
    data_type: RuleDataType
    operators: list[RuleOperator]
    options: list[str] = Field(default_factory=list)
