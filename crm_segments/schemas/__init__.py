from crm_segments.schemas.customer import (
    CustomerChangedEvent,
    CustomerRecord,
)
from crm_segments.schemas.rule_values import (
    RuleDataType,
    RuleOperator,
    RuleValue,
)
from crm_segments.schemas.segment import (
    SegmentCriteria,
    SegmentCriteriaInput,
    SegmentLogic,
    SegmentResponse,
    SegmentRule,
)
