"""
Customer and segment stores used by the segmentation engine.

The engine depends only on the ``CustomerRepository`` and
``SegmentRepository`` protocols. The SQLAlchemy implementations below back
the HTTP API; any other store can be plugged into ``SegmentAutoUpdater`` as
long as it follows the same contracts:

- ``iter_customers`` streams records in ascending id order and never holds
  more than one page in memory
- ``publish_membership`` and ``apply_membership_changes`` are atomic: either
  the whole membership update and the new count are stored, or nothing is
- both skip the write when the segment's stored criteria differ from the
  criteria the result was computed under
- driver failures surface as ``RepositoryError`` with ``transient`` set for
  errors worth retrying
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Collection, Dict, List, Optional, Protocol, Set

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_segments.models.customer import CustomerLifecycle
from crm_segments.models.segment import CustomerSegment, SegmentMember
from crm_segments.schemas.customer import CustomerRecord
from crm_segments.schemas.segment import EvaluationStatus, SegmentCriteria, SegmentResponse
from crm_segments.services.segmentation.engine import MembershipResult
from crm_segments.services.segmentation.errors import (
    DuplicateSegmentError,
    RepositoryError,
    SegmentNotFoundError,
)

logger = logging.getLogger(__name__)

# Keeps IN (...) clauses under SQLite's bound-parameter limit
_ID_BATCH = 500

_UNSET = object()


class CustomerRepository(Protocol):
    def iter_customers(self, chunk_size: int = 500) -> AsyncIterator[CustomerRecord]:
        """Stream every customer, ``chunk_size`` rows per round trip."""
        ...

    async def get_customers(self, customer_ids: Collection[int]) -> Dict[int, CustomerRecord]:
        """Fetch customers by id; ids that no longer exist are omitted."""
        ...


class SegmentRepository(Protocol):
    async def get_segment(self, segment_id: int) -> SegmentResponse:
        ...

    async def list_auto_updated(self) -> List[SegmentResponse]:
        ...

    async def get_member_ids(self, segment_id: int, customer_ids: Collection[int]) -> Set[int]:
        """Which of ``customer_ids`` are currently published members."""
        ...

    async def publish_membership(self, segment_id: int, result: MembershipResult, criteria: SegmentCriteria) -> bool:
        """
        Replace the segment's members and count with a batch result.

        Returns False, writing nothing, when the stored criteria are no
        longer ``criteria``.
        """
        ...

    async def apply_membership_changes(
        self,
        segment_id: int,
        entered: Collection[int],
        left: Collection[int],
        epoch: int,
        criteria: SegmentCriteria,
    ) -> Optional[int]:
        """Apply incremental membership changes; returns the new count, or None when the criteria changed."""
        ...

    async def mark_evaluation_failed(self, segment_id: int, error: str) -> None:
        """Flag the last evaluation as failed, leaving the count untouched."""
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _batches(ids: Collection[int]):
    ids = list(ids)
    for start in range(0, len(ids), _ID_BATCH):
        yield ids[start:start + _ID_BATCH]


@contextmanager
def _translate_errors(action: str):
    """Re-raise driver errors as RepositoryError, flagging retryable ones."""
    try:
        yield
    except SQLAlchemyError as e:
        transient = isinstance(e, (OperationalError, InterfaceError, PoolTimeoutError)) or bool(
            getattr(e, "connection_invalidated", False)
        )
        logger.error(f"Database error while trying to {action}: {type(e).__name__}")
        raise RepositoryError(f"Could not {action}: {type(e).__name__}", transient=transient) from e


def _same_criteria(segment: CustomerSegment, criteria: SegmentCriteria) -> bool:
    return segment.criteria == criteria.model_dump(mode="json")


def _to_record(row: CustomerLifecycle) -> CustomerRecord:
    try:
        return CustomerRecord.model_validate(row)
    except PydanticValidationError as e:
        raise RepositoryError(f"Customer {row.id} has invalid lifecycle data: {e.errors()[0]['msg']}") from e


class SqlCustomerRepository:
    """Reads ``CustomerRecord``s from the ``customer_lifecycles`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def iter_customers(self, chunk_size: int = 500) -> AsyncIterator[CustomerRecord]:
        # Keyset pagination: each page is its own short read, so no cursor
        # or transaction stays open while the caller evaluates
        last_id = 0
        while True:
            with _translate_errors("read customers"):
                async with self.session_factory() as session:
                    result = await session.execute(
                        select(CustomerLifecycle)
                        .where(CustomerLifecycle.id > last_id)
                        .order_by(CustomerLifecycle.id)
                        .limit(chunk_size)
                    )
                    rows = result.scalars().all()

            for row in rows:
                yield _to_record(row)

            if len(rows) < chunk_size:
                return
            last_id = rows[-1].id

    async def get_customers(self, customer_ids: Collection[int]) -> Dict[int, CustomerRecord]:
        records: Dict[int, CustomerRecord] = {}
        with _translate_errors("read customers"):
            async with self.session_factory() as session:
                for batch in _batches(customer_ids):
                    result = await session.execute(
                        select(CustomerLifecycle).where(CustomerLifecycle.id.in_(batch))
                    )
                    for row in result.scalars():
                        records[row.id] = _to_record(row)
        return records


class SqlSegmentRepository:
    """Segment definitions and published membership, stored with SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _load(self, session: AsyncSession, segment_id: int) -> CustomerSegment:
        segment = await session.get(CustomerSegment, segment_id)
        if segment is None:
            raise SegmentNotFoundError(segment_id)
        return segment

    # =========================================================================
    # DEFINITIONS
    # =========================================================================

    async def get_segment(self, segment_id: int) -> SegmentResponse:
        with _translate_errors(f"load segment {segment_id}"):
            async with self.session_factory() as session:
                return SegmentResponse.model_validate(await self._load(session, segment_id))

    async def list_segments(self) -> List[SegmentResponse]:
        with _translate_errors("list segments"):
            async with self.session_factory() as session:
                result = await session.execute(select(CustomerSegment).order_by(CustomerSegment.id))
                return [SegmentResponse.model_validate(s) for s in result.scalars()]

    async def list_auto_updated(self) -> List[SegmentResponse]:
        with _translate_errors("list auto-updated segments"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(CustomerSegment)
                    .where(CustomerSegment.is_active.is_(True), CustomerSegment.is_auto_updated.is_(True))
                    .order_by(CustomerSegment.id)
                )
                return [SegmentResponse.model_validate(s) for s in result.scalars()]

    async def create_segment(
        self,
        name: str,
        criteria: SegmentCriteria,
        description: Optional[str] = None,
        is_active: bool = True,
        is_auto_updated: bool = True,
    ) -> SegmentResponse:
        with _translate_errors("create segment"):
            async with self.session_factory() as session:
                await self._ensure_unique_name(session, name)
                segment = CustomerSegment(
                    name=name,
                    description=description,
                    criteria=criteria.model_dump(mode="json"),
                    is_active=is_active,
                    is_auto_updated=is_auto_updated,
                    customer_count=0,
                    last_evaluation_status=EvaluationStatus.PENDING.value,
                )
                session.add(segment)
                await self._commit_named(session, name)
                await session.refresh(segment)
                logger.info(f"Created segment {segment.id} '{name}'")
                return SegmentResponse.model_validate(segment)

    async def update_segment(
        self,
        segment_id: int,
        name: Optional[str] = None,
        description=_UNSET,
        criteria: Optional[SegmentCriteria] = None,
        is_active: Optional[bool] = None,
        is_auto_updated: Optional[bool] = None,
    ) -> SegmentResponse:
        """Update a segment's definition. Counts are left to the publish path."""
        with _translate_errors(f"update segment {segment_id}"):
            async with self.session_factory() as session:
                segment = await self._load(session, segment_id)
                if name is not None and name != segment.name:
                    await self._ensure_unique_name(session, name)
                    segment.name = name
                if description is not _UNSET:
                    segment.description = description
                if criteria is not None:
                    segment.criteria = criteria.model_dump(mode="json")
                    segment.last_evaluation_status = EvaluationStatus.PENDING.value
                    segment.last_evaluation_error = None
                if is_active is not None:
                    segment.is_active = is_active
                if is_auto_updated is not None:
                    segment.is_auto_updated = is_auto_updated
                await self._commit_named(session, segment.name)
                await session.refresh(segment)
                return SegmentResponse.model_validate(segment)

    async def delete_segment(self, segment_id: int) -> None:
        with _translate_errors(f"delete segment {segment_id}"):
            async with self.session_factory() as session:
                segment = await self._load(session, segment_id)
                await session.execute(delete(SegmentMember).where(SegmentMember.segment_id == segment_id))
                await session.delete(segment)
                await session.commit()
                logger.info(f"Deleted segment {segment_id}")

    async def _ensure_unique_name(self, session: AsyncSession, name: str) -> None:
        existing = await session.execute(select(CustomerSegment.id).where(CustomerSegment.name == name))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateSegmentError(name)

    async def _commit_named(self, session: AsyncSession, name: str) -> None:
        # A concurrent writer can take the name between the check and the commit
        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            raise DuplicateSegmentError(name) from e

    # =========================================================================
    # MEMBERSHIP
    # =========================================================================

    async def get_member_ids(self, segment_id: int, customer_ids: Collection[int]) -> Set[int]:
        members: Set[int] = set()
        with _translate_errors(f"read members of segment {segment_id}"):
            async with self.session_factory() as session:
                for batch in _batches(customer_ids):
                    result = await session.execute(
                        select(SegmentMember.customer_id).where(
                            SegmentMember.segment_id == segment_id,
                            SegmentMember.customer_id.in_(batch),
                        )
                    )
                    members.update(result.scalars())
        return members

    async def list_member_ids(self, segment_id: int, limit: Optional[int] = None) -> List[int]:
        with _translate_errors(f"read members of segment {segment_id}"):
            async with self.session_factory() as session:
                query = (
                    select(SegmentMember.customer_id)
                    .where(SegmentMember.segment_id == segment_id)
                    .order_by(SegmentMember.customer_id)
                )
                if limit:
                    query = query.limit(limit)
                result = await session.execute(query)
                return list(result.scalars())

    async def publish_membership(self, segment_id: int, result: MembershipResult, criteria: SegmentCriteria) -> bool:
        with _translate_errors(f"publish membership of segment {segment_id}"):
            async with self.session_factory() as session:
                async with session.begin():
                    segment = await self._load(session, segment_id)
                    if not _same_criteria(segment, criteria):
                        logger.info(f"Segment {segment_id} criteria changed, not publishing epoch {result.epoch}")
                        return False
                    current = set(
                        (
                            await session.execute(
                                select(SegmentMember.customer_id).where(SegmentMember.segment_id == segment_id)
                            )
                        ).scalars()
                    )
                    await self._insert_members(session, segment_id, result.matched_ids - current)
                    await self._delete_members(session, segment_id, current - result.matched_ids)

                    segment.customer_count = result.count
                    segment.updated_at = _utcnow()
                    segment.last_evaluation_status = EvaluationStatus.OK.value
                    segment.last_evaluation_error = None
                    segment.last_evaluated_epoch = result.epoch

        logger.info(f"Published segment {segment_id}: {result.count} customers (epoch {result.epoch})")
        return True

    async def apply_membership_changes(
        self,
        segment_id: int,
        entered: Collection[int],
        left: Collection[int],
        epoch: int,
        criteria: SegmentCriteria,
    ) -> Optional[int]:
        with _translate_errors(f"update membership of segment {segment_id}"):
            async with self.session_factory() as session:
                async with session.begin():
                    segment = await self._load(session, segment_id)
                    if not _same_criteria(segment, criteria):
                        logger.info(f"Segment {segment_id} criteria changed, not applying epoch {epoch}")
                        return None
                    already = set()
                    for batch in _batches(entered):
                        existing = await session.execute(
                            select(SegmentMember.customer_id).where(
                                SegmentMember.segment_id == segment_id,
                                SegmentMember.customer_id.in_(batch),
                            )
                        )
                        already.update(existing.scalars())
                    await self._insert_members(session, segment_id, set(entered) - already)
                    await self._delete_members(session, segment_id, left)

                    count = (
                        await session.execute(
                            select(func.count()).select_from(SegmentMember).where(SegmentMember.segment_id == segment_id)
                        )
                    ).scalar_one()
                    segment.customer_count = count
                    segment.updated_at = _utcnow()
                    segment.last_evaluated_epoch = epoch

        logger.debug(f"Segment {segment_id}: +{len(entered)} -{len(left)} -> {count}")
        return count

    async def mark_evaluation_failed(self, segment_id: int, error: str) -> None:
        with _translate_errors(f"record failure of segment {segment_id}"):
            async with self.session_factory() as session:
                segment = await self._load(session, segment_id)
                segment.last_evaluation_status = EvaluationStatus.FAILED.value
                segment.last_evaluation_error = error[:2000]
                await session.commit()

    async def _insert_members(self, session: AsyncSession, segment_id: int, customer_ids: Collection[int]) -> None:
        if not customer_ids:
            return
        now = _utcnow()
        await session.execute(
            insert(SegmentMember),
            [{"segment_id": segment_id, "customer_id": cid, "entered_at": now} for cid in sorted(customer_ids)],
        )

    async def _delete_members(self, session: AsyncSession, segment_id: int, customer_ids: Collection[int]) -> None:
        for batch in _batches(customer_ids):
            await session.execute(
                delete(SegmentMember).where(
                    SegmentMember.segment_id == segment_id,
                    SegmentMember.customer_id.in_(batch),
                )
            )
