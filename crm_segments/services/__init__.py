# Services module
from crm_segments.services.segmentation import SegmentEngine

__all__ = [
    "SegmentEngine",
]
