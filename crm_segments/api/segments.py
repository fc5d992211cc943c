"""
Segment API Endpoints

Includes:
- Criteria validation and dry-run preview
- Single-customer evaluation for rule builders
- CRUD for segments; criteria edits are handed to the auto-updater
- On-demand recompute
- Field registry for rule builders

Domain errors propagate to the RFC 7807 handlers in ``crm_segments.exceptions``.
"""

import logging

from fastapi import APIRouter, Response, status

from crm_segments.api.deps import AutoUpdater, Customers, Engine, Segments
from crm_segments.config import settings
from crm_segments.schemas.segment import (
    CriteriaValidationResponse,
    CustomerEvaluationRequest,
    CustomerEvaluationResponse,
    EvaluationWarningDetail,
    FieldDefinitionResponse,
    RuleErrorDetail,
    SegmentCreate,
    SegmentCriteriaInput,
    SegmentListResponse,
    SegmentPreviewRequest,
    SegmentPreviewResponse,
    SegmentResponse,
    SegmentUpdate,
)
from crm_segments.services.segmentation.errors import CriteriaValidationError
from crm_segments.services.segmentation.fields import FIELD_DEFINITIONS, operators_for
from crm_segments.services.segmentation.validator import compile_criteria

logger = logging.getLogger(__name__)

router = APIRouter()


def _warning_details(warnings) -> list[EvaluationWarningDetail]:
    return [
        EvaluationWarningDetail(
            rule_index=w.rule_index,
            field=w.field,
            message=w.message,
            affected_customers=w.affected_customers,
        )
        for w in warnings
    ]


# =============================================================================
# EVALUATION
# =============================================================================


@router.post("/validate", response_model=CriteriaValidationResponse)
async def validate_criteria(criteria: SegmentCriteriaInput):
    """Check criteria without saving it; invalid criteria is not an HTTP error here."""
    try:
        compile_criteria(criteria)
    except CriteriaValidationError as e:
        return CriteriaValidationResponse(
            valid=False,
            errors=[RuleErrorDetail(**error) for error in e.to_list()],
        )
    return CriteriaValidationResponse(valid=True)


@router.post("/preview", response_model=SegmentPreviewResponse)
async def preview_segment(request: SegmentPreviewRequest, engine: Engine, customers: Customers):
    """Evaluate criteria against every customer without publishing anything."""
    criteria = compile_criteria(request.criteria)
    result = await engine.evaluate_batch(criteria, customers.iter_customers(engine.chunk_size))

    sample_size = request.sample_size or settings.SEGMENT_PREVIEW_SAMPLE_SIZE
    return SegmentPreviewResponse(
        count=result.count,
        evaluated=result.evaluated,
        sample_customer_ids=sorted(result.matched_ids)[:sample_size],
        warnings=_warning_details(result.warnings),
    )


@router.post("/evaluate-customer", response_model=CustomerEvaluationResponse)
async def evaluate_customer(request: CustomerEvaluationRequest, engine: Engine):
    """Evaluate one customer record (supplied in the request) against criteria."""
    criteria = compile_criteria(request.criteria)
    outcome = engine.evaluate_incremental(criteria, request.customer, request.previous_membership)
    return CustomerEvaluationResponse(
        new_membership=outcome.new_membership,
        changed=outcome.changed,
        entered=outcome.entered,
        left=outcome.left,
    )


@router.get("/fields", response_model=list[FieldDefinitionResponse])
async def get_available_fields():
    """Get available fields, their operators and enum options for segment rules."""
    return [
        FieldDefinitionResponse(
            name=definition.name,
            label=definition.display_name,
            data_type=definition.data_type,
            operators=operators_for(definition.data_type),
            options=list(definition.options),
        )
        for definition in FIELD_DEFINITIONS.values()
    ]


# =============================================================================
# SEGMENTS
# =============================================================================


@router.get("/", response_model=SegmentListResponse)
async def list_segments(segments: Segments):
    """List segments with summary counts."""
    items = await segments.list_segments()
    return SegmentListResponse(
        items=items,
        total=len(items),
        active=sum(1 for s in items if s.is_active),
        auto_updated=sum(1 for s in items if s.is_auto_updated),
        total_customers=sum(s.customer_count for s in items),
        largest_segment=max((s.customer_count for s in items), default=0),
    )


@router.post("/", response_model=SegmentResponse, status_code=status.HTTP_201_CREATED)
async def create_segment(data: SegmentCreate, segments: Segments, updater: AutoUpdater):
    """Create a segment. Membership is computed in the background."""
    criteria = compile_criteria(data.criteria)
    segment = await segments.create_segment(
        name=data.name,
        criteria=criteria,
        description=data.description,
        is_active=data.is_active,
        is_auto_updated=data.is_auto_updated,
    )
    updater.track(segment)
    return segment


@router.get("/{segment_id}", response_model=SegmentResponse)
async def get_segment(segment_id: int, segments: Segments):
    """Get a specific segment."""
    return await segments.get_segment(segment_id)


@router.patch("/{segment_id}", response_model=SegmentResponse)
async def update_segment(segment_id: int, data: SegmentUpdate, segments: Segments, updater: AutoUpdater):
    """Update a segment; new criteria supersede any evaluation in flight."""
    update_data = data.model_dump(exclude_unset=True)
    criteria = compile_criteria(data.criteria) if data.criteria is not None else None

    changes = {key: value for key, value in update_data.items() if key in ("name", "is_active", "is_auto_updated")}
    if "description" in update_data:
        changes["description"] = update_data["description"]

    segment = await segments.update_segment(segment_id, criteria=criteria, **changes)
    updater.track(segment)
    return segment


@router.post("/{segment_id}/recompute", response_model=SegmentResponse)
async def recompute_segment(segment_id: int, segments: Segments, updater: AutoUpdater):
    """Recompute membership now and return the segment with its new count."""
    error = await updater.recompute(segment_id)
    if error:
        logger.warning(f"Recompute of segment {segment_id} failed: {error}")
    return await segments.get_segment(segment_id)


@router.delete("/{segment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_segment(segment_id: int, segments: Segments, updater: AutoUpdater):
    """Delete a segment and its membership."""
    updater.untrack(segment_id)
    await segments.delete_segment(segment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
