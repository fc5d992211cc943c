"""
Segment Engine

Computes segment membership from typed criteria:

- Batch evaluation over a streamed customer population, in bounded chunks
- Incremental evaluation of a single changed customer
- Per-rule fault isolation: a stored rule that can no longer be interpreted
  counts as a non-match and is reported as a warning instead of failing the
  whole pass

Both modes share ``matches()``, so a customer's batch result is always the
same as its incremental result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import (
    AsyncIterable,
    AsyncIterator,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Tuple,
    Union,
)

from crm_segments.config import settings
from crm_segments.schemas.customer import CustomerRecord
from crm_segments.schemas.segment import SegmentCriteria, SegmentRule
from crm_segments.services.segmentation.combinator import combine
from crm_segments.services.segmentation.errors import (
    CriteriaValidationError,
    EmptyCriteriaError,
    EvaluationCancelled,
    RuleValidationError,
    TypeCoercionFailedError,
)
from crm_segments.services.segmentation.evaluator import evaluate_rule
from crm_segments.services.segmentation.validator import validate_criteria

logger = logging.getLogger(__name__)

CustomerSource = Union[Iterable[CustomerRecord], AsyncIterable[CustomerRecord]]


@dataclass(frozen=True)
class EvaluationWarning:
    """A rule that was skipped (treated as False) during a pass."""

    rule_index: int
    field: str
    message: str
    affected_customers: int = 1


@dataclass(frozen=True)
class MembershipResult:
    """Result of a batch evaluation pass."""

    matched_ids: FrozenSet[int]
    count: int
    epoch: int
    evaluated: int
    warnings: Tuple[EvaluationWarning, ...] = ()


@dataclass(frozen=True)
class IncrementalResult:
    """Membership of one customer after a change."""

    new_membership: bool
    changed: bool
    warnings: Tuple[EvaluationWarning, ...] = ()

    @property
    def entered(self) -> bool:
        return self.changed and self.new_membership

    @property
    def left(self) -> bool:
        return self.changed and not self.new_membership


class WarningCollector:
    """Aggregates skipped-rule warnings for one pass, logging each rule once."""

    def __init__(self) -> None:
        self._first: Dict[int, TypeCoercionFailedError] = {}
        self._counts: Dict[int, int] = {}

    def record(self, index: int, error: TypeCoercionFailedError) -> None:
        if index not in self._first:
            self._first[index] = error
            self._counts[index] = 0
            logger.warning(f"Skipping segment rule {index}: {error}")
        self._counts[index] += 1

    def results(self) -> Tuple[EvaluationWarning, ...]:
        return tuple(
            EvaluationWarning(
                rule_index=index,
                field=error.field,
                message=str(error),
                affected_customers=self._counts[index],
            )
            for index, error in sorted(self._first.items())
        )


async def _iterate(source: CustomerSource) -> AsyncIterator[CustomerRecord]:
    if hasattr(source, "__aiter__"):
        async for record in source:
            yield record
    else:
        for record in source:
            yield record


async def _chunked(source: CustomerSource, size: int) -> AsyncIterator[List[CustomerRecord]]:
    chunk: List[CustomerRecord] = []
    async for record in _iterate(source):
        chunk.append(record)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def _require_rules(criteria: SegmentCriteria) -> None:
    if not criteria.rules:
        raise CriteriaValidationError([EmptyCriteriaError()])


class SegmentEngine:
    """
    Membership computer for customer segments.

    Criteria are expected to have been validated when they were saved; the
    engine only rejects criteria with no rules. Rules that fail at
    evaluation time are skipped and reported, never fatal.
    """

    def __init__(self, chunk_size: Optional[int] = None):
        self.chunk_size = chunk_size or settings.SEGMENT_BATCH_CHUNK_SIZE

    def validate_criteria(self, criteria: SegmentCriteria) -> List[RuleValidationError]:
        """Return every validation error in ``criteria`` (empty when valid)."""
        return validate_criteria(criteria)

    def matches(
        self,
        criteria: SegmentCriteria,
        record: CustomerRecord,
        warnings: Optional[WarningCollector] = None,
    ) -> bool:
        """Evaluate the criteria's rules in declared order, short-circuiting."""

        def results():
            for index, rule in enumerate(criteria.rules):
                yield self._evaluate(index, rule, record, warnings)

        return combine(criteria.logic, results())

    def _evaluate(
        self,
        index: int,
        rule: SegmentRule,
        record: CustomerRecord,
        warnings: Optional[WarningCollector],
    ) -> bool:
        try:
            return evaluate_rule(rule, record)
        except TypeCoercionFailedError as e:
            if warnings is None:
                logger.warning(f"Skipping segment rule {index} for customer {record.id}: {e}")
            else:
                warnings.record(index, e)
            return False

    async def evaluate_batch(
        self,
        criteria: SegmentCriteria,
        customers: CustomerSource,
        *,
        epoch: int = 0,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> MembershipResult:
        """
        Evaluate every customer from ``customers`` against ``criteria``.

        The source is consumed in chunks of ``chunk_size``; the engine yields
        to the event loop and checks ``is_cancelled`` between chunks.

        Raises:
            CriteriaValidationError: criteria has no rules
            EvaluationCancelled: ``is_cancelled`` returned True
        """
        _require_rules(criteria)
        warnings = WarningCollector()
        matched: set[int] = set()
        evaluated = 0

        async for chunk in _chunked(customers, self.chunk_size):
            if is_cancelled is not None and is_cancelled():
                raise EvaluationCancelled(f"Evaluation for epoch {epoch} cancelled after {evaluated} customers")
            for record in chunk:
                if self.matches(criteria, record, warnings):
                    matched.add(record.id)
            evaluated += len(chunk)
            await asyncio.sleep(0)

        if is_cancelled is not None and is_cancelled():
            raise EvaluationCancelled(f"Evaluation for epoch {epoch} cancelled after {evaluated} customers")

        logger.debug(f"Batch evaluation (epoch {epoch}): {len(matched)}/{evaluated} customers matched")
        return MembershipResult(
            matched_ids=frozenset(matched),
            count=len(matched),
            epoch=epoch,
            evaluated=evaluated,
            warnings=warnings.results(),
        )

    def evaluate_incremental(
        self,
        criteria: SegmentCriteria,
        record: Optional[CustomerRecord],
        previous_membership: bool,
    ) -> IncrementalResult:
        """
        Re-evaluate one changed customer.

        ``record`` is None when the customer no longer exists, which always
        means the customer is not a member.

        Raises:
            CriteriaValidationError: criteria has no rules
        """
        _require_rules(criteria)
        warnings = WarningCollector()
        new_membership = record is not None and self.matches(criteria, record, warnings)
        return IncrementalResult(
            new_membership=new_membership,
            changed=new_membership != previous_membership,
            warnings=warnings.results(),
        )
