"""Polling worker that claims jobs and drives them through their handlers."""

from __future__ import annotations

import logging
import random
import signal
import threading
import time
from collections import Counter
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from taskgate.completion.base import CompletionService
from taskgate.config import WorkerSettings
from taskgate.errors import WorkerShutdownError
from taskgate.jobs.checkpoints import CheckpointManager
from taskgate.jobs.context import JobHandlerContext
from taskgate.jobs.failures import classify_job_failure
from taskgate.jobs.handlers import HandlerRegistry
from taskgate.jobs.models import CheckpointStatus, CheckpointType, JobStatus, JobView
from taskgate.jobs.repository import JobRepository, is_retryable
from taskgate.observability.error_reporting import (
    ErrorReporter,
    capture_job_exception,
    record_job_transition,
)
from taskgate.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickSummary:
    """What one poll tick did."""

    claimed: int = 0
    busy: int = 0
    idle_polls: int = 0
    requeued: int = 0
    expired_checkpoints: int = 0
    recovered: int = 0
    errors: int = 0


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    ticks: int = 0
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0
    errors: int = 0


@dataclass(slots=True)
class WorkerStats:
    is_running: bool
    active_jobs: int
    max_concurrent_jobs: int
    poll_interval_seconds: float


class JobWorker:
    """Claims eligible jobs and runs their handlers on a bounded thread pool.

    One poll loop claims at most one job per tick and only while fewer than
    `max_concurrent_jobs` handlers are in flight. A handler waiting on an
    approval checkpoint keeps its slot for the whole wait.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        checkpoints: CheckpointManager,
        registry: HandlerRegistry,
        completion: CompletionService,
        reporter: ErrorReporter,
        worker_id: str,
        poll_interval_seconds: float = 5.0,
        max_concurrent_jobs: int = 3,
        checkpoint_poll_seconds: float = 5.0,
        checkpoint_max_wait_seconds: float = 86_400.0,
        retry_base_seconds: float = 30.0,
        retry_max_seconds: float = 900.0,
        stale_running_seconds: int = 1_800,
        shutdown_grace_seconds: float = 30.0,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError(f"max_concurrent_jobs must be >= 1, got {max_concurrent_jobs}")
        self.repository = repository
        self.checkpoints = checkpoints
        self.registry = registry
        self.completion = completion
        self.reporter = reporter
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.max_concurrent_jobs = max_concurrent_jobs
        self.checkpoint_poll_seconds = checkpoint_poll_seconds
        self.checkpoint_max_wait_seconds = checkpoint_max_wait_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_running_seconds = stale_running_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self._random = random.Random()  # noqa: S311
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._active: set[str] = set()
        self._futures: set[Future[None]] = set()
        self._outcomes: Counter[str] = Counter()
        self._executor: ThreadPoolExecutor | None = None
        self._loop_thread: threading.Thread | None = None

    @classmethod
    def from_settings(  # noqa: PLR0913
        cls,
        settings: WorkerSettings,
        *,
        repository: JobRepository,
        checkpoints: CheckpointManager,
        registry: HandlerRegistry,
        completion: CompletionService,
        reporter: ErrorReporter,
    ) -> JobWorker:
        return cls(
            repository=repository,
            checkpoints=checkpoints,
            registry=registry,
            completion=completion,
            reporter=reporter,
            worker_id=settings.worker_id,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            checkpoint_poll_seconds=settings.checkpoint_poll_seconds,
            checkpoint_max_wait_seconds=settings.checkpoint_max_wait_seconds,
            retry_base_seconds=settings.retry_base_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            stale_running_seconds=settings.stale_running_seconds,
            shutdown_grace_seconds=settings.shutdown_grace_seconds,
        )

    @property
    def active_job_count(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def is_running(self) -> bool:
        return self._loop_thread is not None and self._loop_thread.is_alive()

    def stats(self) -> WorkerStats:
        return WorkerStats(
            is_running=self.is_running,
            active_jobs=self.active_job_count,
            max_concurrent_jobs=self.max_concurrent_jobs,
            poll_interval_seconds=self.poll_interval_seconds,
        )

    def run_once(self) -> TickSummary:
        """Run one poll tick: housekeeping, then claim and dispatch at most one job."""

        summary = TickSummary()
        if self._stop_event.is_set():
            summary.idle_polls = 1
            return summary

        try:
            self._housekeeping(summary)
            if self.active_job_count >= self.max_concurrent_jobs:
                summary.busy = 1
                return summary
            claim = self.repository.claim_next_job(worker_id=self.worker_id)
        except Exception as error:
            logger.exception("Worker %s poll tick failed", self.worker_id)
            self.reporter.capture_exception(
                error,
                tags={"worker_id": self.worker_id, "phase": "poll"},
            )
            summary.errors = 1
            return summary

        if claim is None:
            summary.idle_polls = 1
            return summary

        job = claim.job
        summary.claimed = 1
        record_job_transition(
            self.reporter,
            job_id=job.job_id,
            old_status=claim.previous_status,
            new_status=JobStatus.RUNNING,
            reason=f"claimed by {self.worker_id} (attempt {job.attempts}/{job.max_attempts})",
        )
        logger.info(
            "Claimed job %s type=%s attempt=%d/%d",
            job.job_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
        )
        self._dispatch(job)
        return summary

    def run_loop(
        self,
        *,
        max_ticks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run the poll loop in the foreground until stopped.

        Args:
            max_ticks: Stop after this many poll ticks (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls while
                no job is in flight (None = never).
        """

        aggregate = WorkerRunSummary()
        baseline = self._outcome_snapshot()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_event.is_set():
                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    break

                tick = self.run_once()
                aggregate.ticks += 1
                aggregate.claimed += tick.claimed
                aggregate.idle_polls += tick.idle_polls
                aggregate.errors += tick.errors

                if tick.idle_polls and self.active_job_count == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                else:
                    consecutive_idle = 0

                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    break
                self._stop_event.wait(self.poll_interval_seconds)

            self.stop()

        outcomes = self._outcome_snapshot() - baseline
        aggregate.completed = outcomes["completed"]
        aggregate.failed = outcomes["failed"]
        aggregate.retried = outcomes["retried"]
        return aggregate

    def start(self) -> None:
        """Run the poll loop on a background thread."""

        if self.is_running:
            return
        self._stop_event.clear()
        self._loop_thread = threading.Thread(
            target=self._background_loop,
            name=f"taskgate-worker-{self.worker_id}",
            daemon=True,
        )
        self._loop_thread.start()
        logger.info(
            "Worker %s started (poll=%ss, max_concurrent_jobs=%d)",
            self.worker_id,
            self.poll_interval_seconds,
            self.max_concurrent_jobs,
        )

    def stop(self, timeout: float | None = None) -> bool:
        """Stop polling and wait up to the grace period for in-flight jobs.

        Handlers blocked on a checkpoint are interrupted and fail with a
        retryable shutdown error. Returns True if every job finished in time.
        """

        self._stop_event.set()
        self.checkpoints.wake_waiters()
        loop_thread = self._loop_thread
        if loop_thread is not None and loop_thread is not threading.current_thread():
            loop_thread.join(timeout=max(self.poll_interval_seconds, 1.0))
        self._loop_thread = None

        finished = self.wait_for_idle(
            timeout=self.shutdown_grace_seconds if timeout is None else timeout,
        )
        if not finished:
            logger.warning(
                "Worker %s stopped with %d job(s) still running",
                self.worker_id,
                self.active_job_count,
            )
        executor = self._executor
        self._executor = None
        if executor is not None:
            executor.shutdown(wait=False)
        return finished

    def wait_for_idle(self, timeout: float | None = None) -> bool:
        """Wait until all dispatched handlers returned."""

        with self._lock:
            futures = set(self._futures)
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def wait_for_checkpoint(self, job_id: str, checkpoint_id: str) -> bool:
        """Block a handler until its checkpoint is resolved.

        Returns True on approval and False on rejection, expiry or when the
        wait ceiling elapses (the checkpoint is then force-expired).
        """

        deadline = time.monotonic() + self.checkpoint_max_wait_seconds
        while True:
            if self._stop_event.is_set():
                raise WorkerShutdownError(
                    f"Worker stopped while job {job_id} was waiting for checkpoint {checkpoint_id}",
                )
            version = self.checkpoints.version
            checkpoint = self.checkpoints.refresh(checkpoint_id)
            if checkpoint.status == CheckpointStatus.APPROVED:
                return True
            if checkpoint.status in {CheckpointStatus.REJECTED, CheckpointStatus.EXPIRED}:
                return False
            if checkpoint.checkpoint_type == CheckpointType.INFO:
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                expired = self.checkpoints.force_expire(checkpoint_id)
                logger.warning(
                    "Checkpoint %s of job %s hit the wait ceiling; marked %s",
                    checkpoint_id,
                    job_id,
                    expired.status.value,
                )
                return expired.status == CheckpointStatus.APPROVED
            self.checkpoints.wait_for_change(
                since=version,
                timeout=min(self.checkpoint_poll_seconds, remaining),
            )

    def _background_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.poll_interval_seconds)

    def _housekeeping(self, summary: TickSummary) -> None:
        with self._lock:
            active_ids = list(self._active)
        self.repository.touch_jobs(job_ids=active_ids)
        summary.expired_checkpoints = self.checkpoints.expire_stale()
        if self.stale_running_seconds > 0:
            changes = self.repository.recover_stale_running_jobs(
                stale_after=timedelta(seconds=self.stale_running_seconds),
            )
            for change in changes:
                record_job_transition(
                    self.reporter,
                    job_id=change.job_id,
                    old_status=change.old_status,
                    new_status=change.new_status,
                    reason=change.reason,
                )
            summary.recovered = sum(
                1 for change in changes if change.new_status == JobStatus.FAILED
            )
            if summary.recovered:
                logger.warning("Recovered %d stale running job(s)", summary.recovered)

        requeued_ids = self.repository.requeue_due_retries()
        for job_id in requeued_ids:
            record_job_transition(
                self.reporter,
                job_id=job_id,
                old_status=JobStatus.RETRY,
                new_status=JobStatus.QUEUED,
                reason="retry backoff elapsed",
            )
        summary.requeued = len(requeued_ids)

    def _dispatch(self, job: JobView) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_concurrent_jobs,
                thread_name_prefix=f"taskgate-job-{self.worker_id}",
            )
        with self._lock:
            self._active.add(job.job_id)
        future = self._executor.submit(self._process_job, job)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget_future)

    def _forget_future(self, future: Future[None]) -> None:
        with self._lock:
            self._futures.discard(future)

    def _process_job(self, job: JobView) -> None:
        context: JobHandlerContext | None = None
        try:
            with self.reporter.transaction(name=f"job.{job.job_type}", op="job.process"):
                handler = self.registry.resolve(job.job_type)
                context = JobHandlerContext(
                    job=job,
                    repository=self.repository,
                    checkpoints=self.checkpoints,
                    completion=self.completion,
                    wait_for_checkpoint=lambda checkpoint_id: self.wait_for_checkpoint(
                        job.job_id,
                        checkpoint_id,
                    ),
                    stop_event=self._stop_event,
                )
                output = handler(context)
                if not isinstance(output, dict):
                    raise TypeError(
                        f"Handler for {job.job_type} returned {type(output).__name__}, "
                        "expected a dict",
                    )
                self._complete(job, output)
        except Exception as error:  # noqa: BLE001
            self._handle_failure(
                job,
                error,
                checkpoint_id=context.last_checkpoint_id if context is not None else None,
            )
        finally:
            with self._lock:
                self._active.discard(job.job_id)

    def _complete(self, job: JobView, output: dict[str, Any]) -> None:
        if not self.repository.complete_job(job_id=job.job_id, output_data=output):
            logger.warning("Job %s left RUNNING before completion was recorded", job.job_id)
            return
        record_job_transition(
            self.reporter,
            job_id=job.job_id,
            old_status=JobStatus.RUNNING,
            new_status=JobStatus.COMPLETED,
        )
        self._record_outcome("completed")
        logger.info("Job %s completed", job.job_id)

    def _handle_failure(
        self,
        job: JobView,
        error: Exception,
        *,
        checkpoint_id: str | None,
    ) -> None:
        classification = classify_job_failure(error)
        if classification.should_capture:
            capture_job_exception(
                self.reporter,
                error,
                job_id=job.job_id,
                job_type=job.job_type,
                checkpoint_id=checkpoint_id,
            )

        try:
            failed = self.repository.fail_job(
                job_id=job.job_id,
                failure_class=classification.failure_class,
                failure_reason=classification.failure_reason,
            )
        except Exception as store_error:
            logger.exception("Could not record failure of job %s", job.job_id)
            self.reporter.capture_exception(store_error, tags={"job_id": job.job_id})
            return
        if not failed:
            logger.warning("Job %s left RUNNING before failure was recorded", job.job_id)
            return

        record_job_transition(
            self.reporter,
            job_id=job.job_id,
            old_status=JobStatus.RUNNING,
            new_status=JobStatus.FAILED,
            reason=classification.failure_reason,
        )
        self._record_outcome("failed")
        logger.warning(
            "Job %s failed (%s): %s",
            job.job_id,
            classification.failure_class.value,
            classification.failure_reason,
        )

        if not is_retryable(job, classification.failure_class):
            return
        delay_seconds = self._compute_retry_delay(retry_number=job.attempts)
        if self.repository.schedule_retry(
            job_id=job.job_id,
            run_after=utc_now() + timedelta(seconds=delay_seconds),
        ):
            record_job_transition(
                self.reporter,
                job_id=job.job_id,
                old_status=JobStatus.FAILED,
                new_status=JobStatus.RETRY,
                reason=f"retry in {delay_seconds:.1f}s",
            )
            self._record_outcome("retried")

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _record_outcome(self, outcome: str) -> None:
        with self._lock:
            self._outcomes[outcome] += 1

    def _outcome_snapshot(self) -> Counter[str]:
        with self._lock:
            return Counter(self._outcomes)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Worker %s received %s, stopping", self.worker_id, name)
            self._stop_event.set()
            self.checkpoints.wake_waiters()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
