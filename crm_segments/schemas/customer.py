"""
Customer lifecycle projection consumed by the segmentation engine.
"""

from datetime import datetime
from enum import Enum
from typing import AbstractSet, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from crm_segments.schemas.rule_values import as_utc


class CustomerLifecycleStage(str, Enum):
    LEAD = "LEAD"
    PROSPECT = "PROSPECT"
    ONBOARDING = "ONBOARDING"
    ACTIVE = "ACTIVE"
    AT_RISK = "AT_RISK"
    CHURNED = "CHURNED"
    WON_BACK = "WON_BACK"


class CustomerHealthScore(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    CRITICAL = "CRITICAL"


class EngagementLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INACTIVE = "INACTIVE"


class CustomerType(str, Enum):
    BUSINESS = "BUSINESS"
    INDIVIDUAL = "INDIVIDUAL"


class CustomerRecord(BaseModel):
    """
    Read-only view of one customer's segmentable attributes.

    Every attribute except ``id`` may be missing; ``None`` means the value is
    logically undefined for this customer.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int

    current_stage: Optional[CustomerLifecycleStage] = None
    health_score: Optional[CustomerHealthScore] = None
    engagement_level: Optional[EngagementLevel] = None
    customer_type: Optional[CustomerType] = None

    lifetime_value: Optional[float] = None
    days_as_customer: Optional[float] = None
    risk_score: Optional[float] = None  # 0-100
    churn_probability: Optional[float] = None  # 0-100

    is_high_value: Optional[bool] = None
    is_at_risk: Optional[bool] = None
    requires_attention: Optional[bool] = None

    tags: Optional[frozenset[str]] = None
    last_activity_date: Optional[datetime] = None

    @field_validator("last_activity_date")
    @classmethod
    def normalise_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None


class CustomerChangedEvent(BaseModel):
    """A customer record changed; ``changed_fields`` uses segment field names.

    An empty ``changed_fields`` set means the change is not itemised
    (creation, deletion, bulk import) and may affect any segment.
    """

    model_config = ConfigDict(frozen=True)

    customer_id: int
    changed_fields: frozenset[str] = frozenset()

    def affects(self, fields: AbstractSet[str]) -> bool:
        if not self.changed_fields:
            return True
        return not self.changed_fields.isdisjoint(fields)
