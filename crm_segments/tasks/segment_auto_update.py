"""Segment Auto-Update - keeps published segment membership current.

Each tracked segment gets at most one worker task at a time. Work arrives
three ways:

- criteria edits bump the segment's epoch and request a batch pass; a pass
  started under an older epoch aborts between chunks and is never published
- customer change events are routed to segments that reference a changed
  field and coalesced over a short debounce window into one incremental pass
- the reconciliation job re-runs a full batch pass periodically, at most once
  per ``SEGMENT_MIN_BATCH_INTERVAL_SECONDS`` per segment unless forced

Transient repository failures are retried with exponential backoff. Anything
else (or an exhausted retry budget) marks the segment's last evaluation as
failed and leaves the published count untouched.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from crm_segments.config import settings
from crm_segments.schemas.customer import CustomerChangedEvent
from crm_segments.schemas.segment import SegmentCriteria, SegmentResponse
from crm_segments.services.segmentation.engine import MembershipResult, SegmentEngine
from crm_segments.services.segmentation.errors import (
    CriteriaValidationError,
    EvaluationCancelled,
    RepositoryError,
    SegmentNotFoundError,
)
from crm_segments.services.segmentation.repositories import CustomerRepository, SegmentRepository
from crm_segments.services.segmentation.validator import ensure_valid_criteria

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None

RECONCILE_JOB_ID = "segment_reconcile"


class SegmentStatus(str, Enum):
    IDLE = "IDLE"
    EVALUATING = "EVALUATING"


@dataclass(eq=False)
class _SegmentState:
    segment_id: int
    criteria: SegmentCriteria
    epoch: int = 0
    status: SegmentStatus = SegmentStatus.IDLE
    task: Optional[asyncio.Task] = None
    pending_ids: Set[int] = field(default_factory=set)
    batch_requested: bool = False
    debounce: Optional[asyncio.TimerHandle] = None
    last_batch_at: Optional[float] = None
    last_error: Optional[str] = None
    removed: bool = False

    def is_stale(self, epoch: int) -> bool:
        return self.removed or self.epoch != epoch


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, RepositoryError) and error.transient


class SegmentAutoUpdater:
    """Coordinates background membership updates for auto-updated segments."""

    def __init__(
        self,
        engine: SegmentEngine,
        customers: CustomerRepository,
        segments: SegmentRepository,
        *,
        debounce_seconds: Optional[float] = None,
        min_batch_interval: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        retry_backoff_max: Optional[float] = None,
    ):
        self.engine = engine
        self.customers = customers
        self.segments = segments

        def pick(value, default):
            return default if value is None else value

        self.debounce_seconds = pick(debounce_seconds, settings.SEGMENT_DEBOUNCE_SECONDS)
        self.min_batch_interval = pick(min_batch_interval, settings.SEGMENT_MIN_BATCH_INTERVAL_SECONDS)
        self.retry_attempts = pick(retry_attempts, settings.SEGMENT_RETRY_ATTEMPTS)
        self.retry_backoff = pick(retry_backoff, settings.SEGMENT_RETRY_BACKOFF_SECONDS)
        self.retry_backoff_max = pick(retry_backoff_max, settings.SEGMENT_RETRY_BACKOFF_MAX_SECONDS)

        self._states: Dict[int, _SegmentState] = {}
        # One-off recomputes of untracked segments, one at a time per segment
        self._recompute_locks: Dict[int, asyncio.Lock] = {}
        self._closed = False

    # =========================================================================
    # INSPECTION
    # =========================================================================

    @property
    def tracked_ids(self) -> List[int]:
        return sorted(self._states)

    def is_tracked(self, segment_id: int) -> bool:
        return segment_id in self._states

    def status_of(self, segment_id: int) -> SegmentStatus:
        state = self._states.get(segment_id)
        return state.status if state else SegmentStatus.IDLE

    def epoch_of(self, segment_id: int) -> Optional[int]:
        state = self._states.get(segment_id)
        return state.epoch if state else None

    def last_error_of(self, segment_id: int) -> Optional[str]:
        state = self._states.get(segment_id)
        return state.last_error if state else None

    # =========================================================================
    # TRACKING
    # =========================================================================

    async def load(self) -> int:
        """Track every active auto-updated segment and queue a first pass."""
        segments = await self.segments.list_auto_updated()
        self._sync(segments)
        for segment_id in list(self._states):
            self.request_reconcile(segment_id)
        logger.info(f"Segment auto-update tracking {len(self._states)} segments")
        return len(self._states)

    def track(self, segment: SegmentResponse) -> None:
        """Start (or keep) managing a segment; inactive segments are untracked."""
        if not (segment.is_active and segment.is_auto_updated):
            self.untrack(segment.id)
            return

        state = self._states.get(segment.id)
        if state is None:
            self._states[segment.id] = _SegmentState(segment_id=segment.id, criteria=segment.criteria)
            logger.debug(f"Tracking segment {segment.id}")
            self.request_reconcile(segment.id, force=True)
        elif state.criteria != segment.criteria:
            self.update_criteria(segment.id, segment.criteria)

    def untrack(self, segment_id: int) -> None:
        """Stop managing a segment; in-flight work is cancelled, never published."""
        state = self._states.pop(segment_id, None)
        if state is None:
            return
        state.removed = True
        state.pending_ids.clear()
        state.batch_requested = False
        if state.debounce is not None:
            state.debounce.cancel()
            state.debounce = None
        # A worker untracking its own segment just stops at the top of its loop
        if state.task is not None and not state.task.done() and state.task is not asyncio.current_task():
            state.task.cancel()
        logger.debug(f"Stopped tracking segment {segment_id}")

    def _sync(self, segments: List[SegmentResponse]) -> None:
        seen = set()
        for segment in segments:
            seen.add(segment.id)
            self.track(segment)
        for segment_id in set(self._states) - seen:
            self.untrack(segment_id)

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def update_criteria(self, segment_id: int, criteria: SegmentCriteria) -> int:
        """
        Switch a tracked segment to new criteria and return the new epoch.

        Raises:
            CriteriaValidationError: criteria is not valid
            SegmentNotFoundError: segment is not tracked
        """
        ensure_valid_criteria(criteria)
        state = self._states.get(segment_id)
        if state is None:
            raise SegmentNotFoundError(segment_id)

        state.criteria = criteria
        state.epoch += 1
        state.pending_ids.clear()
        state.batch_requested = True
        logger.info(f"Segment {segment_id} criteria changed, epoch {state.epoch}")
        self._ensure_worker(state)
        return state.epoch

    def customer_changed(self, event: CustomerChangedEvent) -> int:
        """Queue an incremental pass on every segment the change can affect."""
        if self._closed:
            return 0
        routed = 0
        for state in self._states.values():
            if not event.affects(state.criteria.referenced_fields):
                continue
            state.pending_ids.add(event.customer_id)
            routed += 1
            # Window is fixed from the first event; later events just join it
            if state.debounce is None:
                loop = asyncio.get_running_loop()
                state.debounce = loop.call_later(self.debounce_seconds, self._debounce_elapsed, state)
        return routed

    def _debounce_elapsed(self, state: _SegmentState) -> None:
        state.debounce = None
        self._ensure_worker(state)

    def request_reconcile(self, segment_id: int, force: bool = False) -> bool:
        """Queue a batch pass; returns False when rate limited or untracked."""
        state = self._states.get(segment_id)
        if state is None or self._closed:
            return False
        if not force and state.last_batch_at is not None:
            elapsed = time.monotonic() - state.last_batch_at
            if elapsed < self.min_batch_interval:
                logger.debug(f"Segment {segment_id} reconciled {elapsed:.0f}s ago, skipping")
                return False
        state.batch_requested = True
        self._ensure_worker(state)
        return True

    async def reconcile_all(self) -> int:
        """Reconciliation job: refresh tracked segments and queue batch passes."""
        try:
            segments = await self.segments.list_auto_updated()
        except RepositoryError as e:
            logger.error(f"Could not refresh auto-updated segments: {e}")
        else:
            self._sync(segments)

        queued = sum(1 for segment_id in list(self._states) if self.request_reconcile(segment_id))
        logger.info(f"Segment reconciliation queued {queued}/{len(self._states)} segments")
        return queued

    async def recompute(self, segment_id: int) -> Optional[str]:
        """
        Run a forced batch pass and wait for it.

        Works for untracked segments too. Returns the error message when the
        pass failed, None on success.

        Raises:
            SegmentNotFoundError: segment does not exist
        """
        state = self._states.get(segment_id)
        if state is not None:
            state.last_error = None
            self.request_reconcile(segment_id, force=True)
            await self.wait_idle(segment_id)
            return state.last_error

        lock = self._recompute_locks.setdefault(segment_id, asyncio.Lock())
        async with lock:
            segment = await self.segments.get_segment(segment_id)
            oneoff = _SegmentState(segment_id=segment_id, criteria=segment.criteria)
            await self._run_batch(oneoff)
        return oneoff.last_error

    # =========================================================================
    # DRAINING
    # =========================================================================

    async def flush(self) -> None:
        """Close every open debounce window now and wait for all work."""
        for state in list(self._states.values()):
            if state.debounce is not None:
                state.debounce.cancel()
                state.debounce = None
                self._ensure_worker(state)
        await self.wait_idle()

    async def wait_idle(self, segment_id: Optional[int] = None) -> None:
        """Wait until no worker task is running (for one segment or all)."""
        while True:
            if segment_id is None:
                states = list(self._states.values())
            else:
                states = [self._states[segment_id]] if segment_id in self._states else []
            tasks = [s.task for s in states if s.task is not None and not s.task.done()]
            if not tasks:
                return
            # asyncio.wait, unlike gather, never cancels the workers
            await asyncio.wait(tasks)

    async def close(self) -> None:
        self._closed = True
        tasks = [s.task for s in self._states.values() if s.task is not None and not s.task.done()]
        for segment_id in list(self._states):
            self.untrack(segment_id)
        if tasks:
            await asyncio.wait(tasks)
        logger.info("Segment auto-update stopped")

    # =========================================================================
    # WORKER
    # =========================================================================

    def _ensure_worker(self, state: _SegmentState) -> None:
        if self._closed or state.removed:
            return
        if state.task is None or state.task.done():
            state.task = asyncio.create_task(self._work(state), name=f"segment-auto-update-{state.segment_id}")

    async def _work(self, state: _SegmentState) -> None:
        state.status = SegmentStatus.EVALUATING
        try:
            while not state.removed:
                if state.batch_requested:
                    await self._run_batch(state)
                elif state.pending_ids and state.debounce is None:
                    customer_ids = state.pending_ids
                    state.pending_ids = set()
                    await self._run_incremental(state, customer_ids)
                else:
                    break
        finally:
            # A newer worker may already own this segment
            if state.task is asyncio.current_task():
                state.task = None
                state.status = SegmentStatus.IDLE

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=self.retry_backoff_max),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _run_batch(self, state: _SegmentState) -> None:
        state.batch_requested = False
        # Batch pass covers every customer, so queued ids are redundant
        state.pending_ids.clear()
        if state.debounce is not None:
            state.debounce.cancel()
            state.debounce = None
        state.last_batch_at = time.monotonic()

        epoch, criteria = state.epoch, state.criteria
        try:
            result = await self._retrying()(self._batch_pass, state, epoch, criteria)
        except EvaluationCancelled as e:
            logger.info(f"Segment {state.segment_id}: {e}")
            return
        except Exception as e:
            await self._handle_failure(state, epoch, e)
            return

        state.last_error = None
        if result.warnings:
            logger.warning(
                f"Segment {state.segment_id} published with {len(result.warnings)} skipped rule(s)"
            )

    async def _batch_pass(self, state: _SegmentState, epoch: int, criteria: SegmentCriteria) -> MembershipResult:
        result = await self.engine.evaluate_batch(
            criteria,
            self.customers.iter_customers(self.engine.chunk_size),
            epoch=epoch,
            is_cancelled=lambda: state.is_stale(epoch),
        )
        if state.is_stale(epoch):
            raise EvaluationCancelled(f"Discarding result for stale epoch {epoch}")
        if not await self.segments.publish_membership(state.segment_id, result, criteria):
            raise EvaluationCancelled(f"Criteria changed while publishing epoch {epoch}")
        return result

    async def _run_incremental(self, state: _SegmentState, customer_ids: Set[int]) -> None:
        epoch, criteria = state.epoch, state.criteria
        try:
            await self._retrying()(self._incremental_pass, state, epoch, criteria, customer_ids)
        except EvaluationCancelled as e:
            logger.info(f"Segment {state.segment_id}: {e}")
            return
        except Exception as e:
            await self._handle_failure(state, epoch, e)
            return
        state.last_error = None

    async def _incremental_pass(
        self, state: _SegmentState, epoch: int, criteria: SegmentCriteria, customer_ids: Set[int]
    ) -> None:
        records = await self.customers.get_customers(customer_ids)
        members = await self.segments.get_member_ids(state.segment_id, customer_ids)

        entered: Set[int] = set()
        left: Set[int] = set()
        for customer_id in sorted(customer_ids):
            outcome = self.engine.evaluate_incremental(criteria, records.get(customer_id), customer_id in members)
            if outcome.entered:
                entered.add(customer_id)
            elif outcome.left:
                left.add(customer_id)

        if state.is_stale(epoch):
            raise EvaluationCancelled(f"Discarding incremental result for stale epoch {epoch}")
        if entered or left:
            count = await self.segments.apply_membership_changes(state.segment_id, entered, left, epoch, criteria)
            if count is None:
                raise EvaluationCancelled(f"Criteria changed while applying epoch {epoch}")
            logger.info(f"Segment {state.segment_id}: {len(entered)} entered, {len(left)} left, {count} members")

    async def _handle_failure(self, state: _SegmentState, epoch: int, error: Exception) -> None:
        if state.is_stale(epoch):
            logger.info(f"Segment {state.segment_id}: ignoring failure of stale epoch {epoch}: {error}")
            return

        if isinstance(error, SegmentNotFoundError):
            logger.warning(f"Segment {state.segment_id} no longer exists, untracking")
            self.untrack(state.segment_id)
            return

        if isinstance(error, (RepositoryError, CriteriaValidationError)):
            logger.error(f"Segment {state.segment_id} evaluation failed: {error}")
        else:
            logger.error(f"Unexpected error evaluating segment {state.segment_id}: {error}", exc_info=True)

        state.last_error = str(error) or type(error).__name__
        try:
            await self.segments.mark_evaluation_failed(state.segment_id, state.last_error)
        except (RepositoryError, SegmentNotFoundError) as e:
            logger.error(f"Could not record failure for segment {state.segment_id}: {e}")


# =============================================================================
# SCHEDULER
# =============================================================================


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler()
    return scheduler


def start_segment_scheduler(updater: SegmentAutoUpdater) -> AsyncIOScheduler:
    """Start the periodic segment reconciliation job."""
    global scheduler

    scheduler = get_scheduler()

    scheduler.add_job(
        updater.reconcile_all,
        IntervalTrigger(minutes=settings.SEGMENT_RECONCILE_INTERVAL_MINUTES),
        id=RECONCILE_JOB_ID,
        name="Reconcile auto-updated segments",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("Segment reconciliation scheduler started")
        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name}: next run at {job.next_run_time}")

    return scheduler


def stop_segment_scheduler() -> None:
    """Stop the segment reconciliation scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Segment reconciliation scheduler stopped")
    scheduler = None
