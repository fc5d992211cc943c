from crm_segments.models.customer import CustomerLifecycle
from crm_segments.models.segment import CustomerSegment, SegmentMember

__all__ = [
    "CustomerLifecycle",
    "CustomerSegment",
    "SegmentMember",
]
