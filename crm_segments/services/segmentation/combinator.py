"""Folds rule results into a single membership decision."""

from typing import Iterable

from crm_segments.schemas.segment import SegmentLogic


def combine(logic: SegmentLogic, results: Iterable[bool]) -> bool:
    """
    Combine rule results with AND/OR logic.

    ``results`` is consumed lazily: AND stops at the first False and OR at
    the first True, so passing a generator skips evaluating the rest.
    """
    if logic == SegmentLogic.OR:
        return any(results)
    return all(results)
