# backend/valuation_engine/services/jobs.py
"""
Job Runner: recompute cycles on a worker pool, off the request path.

This service handles:
- Accepting jobs (enqueue_reconcile, enqueue_rebuild, force_refresh,
  and transaction triggers from TransactionService)
- At most one active cycle per portfolio; jobs arriving meanwhile
  coalesce into a single follow-up whose scope is the merge of theirs
- Job-level retries with exponential backoff for transient failures
- Carrying the caller's correlation ID onto the worker, and tagging
  every log line of a job with its job ID

Queue model (per portfolio):

    submit ──► pending ──► active ──► done
                  ▲           │
                  └───────────┘  follow-up runs when the active job ends

    - Re-submitting a job already covered by the pending one is a no-op:
      no new job, no generation bump
    - Otherwise the trigger is accepted (generation + 1) and merged into
      the pending job, or becomes the pending job

Usage:
    runner = JobRunner(orchestrator, SessionLocal, max_workers=4)

    job_id = runner.enqueue_rebuild(portfolio_id=1)
    runner.wait()  # block until idle (CLI, tests)
"""

import contextvars
import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from valuation_engine.services.constants import JOB_RETRY_MAX_WAIT, JOB_RETRY_MIN_WAIT
from valuation_engine.services.exceptions import AllProvidersExhausted, ProviderTransientError
from valuation_engine.services.orchestrator import (
    CycleResult,
    RecomputeOrchestrator,
    RecomputeScope,
    TriggerType,
    scope_for_trigger,
)
from valuation_engine.utils.context import clear_job_id, set_job_id

logger = logging.getLogger(__name__)


def is_transient_failure(exc: BaseException) -> bool:
    """Failures worth another attempt: provider outages and database hiccups."""
    if isinstance(exc, AllProvidersExhausted):
        return exc.is_transient
    return isinstance(exc, (ProviderTransientError, OperationalError))


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class RecomputeJob:
    """A pending or running cycle for one portfolio."""

    job_id: str
    portfolio_id: int
    trigger: TriggerType
    scope: RecomputeScope
    generation: int


@dataclass
class _PortfolioQueue:
    active: RecomputeJob | None = None
    pending: RecomputeJob | None = None


# =============================================================================
# JOB RUNNER
# =============================================================================

class JobRunner:
    """
    Thread-pool executor for recompute cycles.

    Attributes:
        max_attempts: Attempts per job for transient failures
        synchronous: Run jobs inline on the submitting thread (CLI, tests)
    """

    def __init__(
            self,
            orchestrator: RecomputeOrchestrator,
            session_factory: Callable[[], Session],
            max_workers: int = 4,
            max_attempts: int = 3,
            synchronous: bool = False,
            retry_min_wait: float = JOB_RETRY_MIN_WAIT,
            retry_max_wait: float = JOB_RETRY_MAX_WAIT,
    ) -> None:
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.synchronous = synchronous
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait

        self._executor = None if synchronous else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="recompute"
        )
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._queues: dict[int, _PortfolioQueue] = {}
        self._last_results: dict[int, CycleResult] = {}

    # =========================================================================
    # JOB TRIGGER INTERFACE
    # =========================================================================

    def enqueue_reconcile(self, portfolio_id: int, asset_id: int) -> str:
        """Reconcile one holding (no rebuild)."""
        return self.submit(
            portfolio_id,
            TriggerType.RECONCILE_REQUESTED,
            scope_for_trigger(TriggerType.RECONCILE_REQUESTED, asset_ids=[asset_id]),
        )

    def enqueue_rebuild(self, portfolio_id: int, from_date: date | None = None) -> str:
        """Rebuild the valuation series from from_date (None = full)."""
        return self.submit(
            portfolio_id,
            TriggerType.REBUILD_REQUESTED,
            scope_for_trigger(TriggerType.REBUILD_REQUESTED, from_date=from_date),
        )

    def force_refresh(self, portfolio_id: int, scope: RecomputeScope | None = None) -> str:
        """Refresh market data, reconcile and rebuild, ignoring quote freshness."""
        if scope is None:
            scope = scope_for_trigger(TriggerType.FORCE_REFRESH)
        return self.submit(portfolio_id, TriggerType.FORCE_REFRESH, scope)

    def submit(self, portfolio_id: int, trigger: TriggerType, scope: RecomputeScope) -> str:
        """
        Accept a trigger and make sure a cycle will run for it.

        Returns:
            ID of the job that will carry out the work (an existing pending
            job when coalesced)

        Raises:
            PortfolioNotFoundError: unknown portfolio
        """
        with self._lock:
            queue = self._queues.setdefault(portfolio_id, _PortfolioQueue())
            if queue.pending is not None and queue.pending.scope.covers(scope):
                logger.debug(f"Portfolio {portfolio_id}: {trigger.value} already covered by job {queue.pending.job_id}")
                return queue.pending.job_id

        with self.session_factory() as db:
            generation = self.orchestrator.accept_trigger(db, portfolio_id, trigger)

        start = False
        with self._lock:
            queue = self._queues.setdefault(portfolio_id, _PortfolioQueue())
            if queue.pending is not None:
                queue.pending.scope = queue.pending.scope.merge(scope)
                queue.pending.generation = max(queue.pending.generation, generation)
                job_id = queue.pending.job_id
                logger.info(f"Portfolio {portfolio_id}: {trigger.value} merged into pending job {job_id}")
            else:
                job_id = uuid.uuid4().hex[:12]
                queue.pending = RecomputeJob(job_id, portfolio_id, trigger, scope, generation)
                start = queue.active is None
                logger.info(f"Portfolio {portfolio_id}: queued job {job_id} for {trigger.value}")

        if start:
            self._dispatch(portfolio_id)
        return job_id

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def queue_state(self, portfolio_id: int) -> dict:
        """In-memory view of a portfolio's queue (for the status endpoint)."""
        with self._lock:
            queue = self._queues.get(portfolio_id) or _PortfolioQueue()
            return {
                "active_job_id": queue.active.job_id if queue.active else None,
                "pending_job_id": queue.pending.job_id if queue.pending else None,
            }

    def last_result(self, portfolio_id: int) -> CycleResult | None:
        with self._lock:
            return self._last_results.get(portfolio_id)

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until no job is active or pending.

        Returns:
            True if idle, False on timeout
        """
        with self._idle:
            return self._idle.wait_for(
                lambda: all(q.active is None and q.pending is None for q in self._queues.values()),
                timeout=timeout,
            )

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def _dispatch(self, portfolio_id: int) -> None:
        if self._executor is None:
            self._drain(portfolio_id)
            return
        # Worker threads start with an empty context; carry the caller's
        context = contextvars.copy_context()
        self._executor.submit(context.run, self._drain, portfolio_id)

    def _drain(self, portfolio_id: int) -> None:
        """Run the portfolio's pending job, then any follow-up, until none is left."""
        while True:
            with self._lock:
                queue = self._queues[portfolio_id]
                job = queue.pending
                queue.pending = None
                queue.active = job
                if job is None:
                    self._idle.notify_all()
                    return

            try:
                result = self._execute(job)
            except Exception as e:
                # Already recorded on RecomputeStatus by the orchestrator
                logger.error(f"Job {job.job_id} for portfolio {portfolio_id} failed: {e}")
                result = CycleResult(portfolio_id, job.generation, status="failed", error=str(e))

            current_generation = None
            if result.status == "superseded":
                with self.session_factory() as db:
                    current_generation = self.orchestrator.current_generation(db, portfolio_id)

            with self._lock:
                self._last_results[portfolio_id] = result
                if current_generation is not None and queue.pending is not None:
                    # The follow-up must also cover what the superseded job left undone
                    queue.pending.scope = job.scope.merge(queue.pending.scope)
                    queue.pending.generation = max(queue.pending.generation, current_generation)
                    logger.info(
                        f"Portfolio {portfolio_id}: superseded job {job.job_id} "
                        f"merged into pending job {queue.pending.job_id}"
                    )
                elif current_generation is not None:
                    # The newer generation came from outside this runner; rerun so it is not lost
                    queue.pending = RecomputeJob(
                        uuid.uuid4().hex[:12], portfolio_id, job.trigger, job.scope, current_generation
                    )
                    logger.info(f"Portfolio {portfolio_id}: rerunning superseded job {job.job_id}")

    def _execute(self, job: RecomputeJob) -> CycleResult:
        """Run one job with retries, tagged with its job ID."""
        set_job_id(job.job_id)
        try:
            logger.info(
                f"Starting job {job.job_id}: portfolio={job.portfolio_id} "
                f"trigger={job.trigger.value} generation={job.generation}"
            )

            @retry(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_min_wait, min=self.retry_min_wait, max=self.retry_max_wait),
                retry=retry_if_exception(is_transient_failure),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            )
            def _attempt() -> CycleResult:
                with self.session_factory() as db:
                    return self.orchestrator.run_cycle(db, job.portfolio_id, job.scope, job.generation)

            return _attempt()
        finally:
            clear_job_id()
