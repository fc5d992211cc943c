"""
Segmentation Services

Rule validation, predicate evaluation and membership computation for
customer segments.
"""

from crm_segments.services.segmentation.engine import (
    IncrementalResult,
    MembershipResult,
    SegmentEngine,
)
from crm_segments.services.segmentation.validator import compile_criteria, validate_criteria

__all__ = [
    "SegmentEngine",
    "MembershipResult",
    "IncrementalResult",
    "compile_criteria",
    "validate_criteria",
]
