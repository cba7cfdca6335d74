"""
JobScheduler: queues, dispatches, retries and bounds calls to external
capabilities.

One FIFO queue and one fixed worker pool per job kind. Callers are never
blocked by submit(); synchronous callers may suspend in wait(). Every
terminal transition emits exactly one CompletionEvent to the subscribers.
"""

import logging
import random
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from archflow.application.circuit_breaker import BreakerState, CircuitBreaker
from archflow.application.config import SchedulerConfig
from archflow.domain.exceptions import (
    CapabilityUnavailableError,
    FatalError,
    JobTimeoutError,
    NotFoundError,
    PipelineError,
    TransientError,
    ValidationError,
)
from archflow.domain.interfaces import CapabilityInterface
from archflow.domain.models import (
    CompletionEvent,
    Job,
    JobError,
    JobKind,
    JobRequest,
    JobStatus,
)

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[CompletionEvent], None]

_EMA_ALPHA = 0.3


@dataclass
class _Running:
    """Bookkeeping for a job a worker has picked up."""

    started: float  # clock() at first attempt
    deadline: float  # clock() value after which the job times out


def _now() -> str:
    return datetime.now(UTC).isoformat()


class JobScheduler:
    """
    Bounded, retrying, circuit-broken dispatcher.

    Usage:
        with JobScheduler({JobKind.ANALYZE: analyzer}) as scheduler:
            job_id = scheduler.submit(JobRequest(JobKind.ANALYZE, version_id))
            job = scheduler.wait(job_id, timeout=30)
    """

    def __init__(
        self,
        capabilities: Mapping[JobKind, CapabilityInterface],
        config: SchedulerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ):
        """
        Args:
            capabilities: The external capability serving each job kind
            config: Concurrency, deadline, retry and breaker settings
            clock: Monotonic clock (injectable for tests)
            rng: Random source for backoff jitter
        """
        self._capabilities = dict(capabilities)
        self._config = config or SchedulerConfig()
        self._clock = clock
        self._rng = rng or random.Random()

        self._cond = threading.Condition()
        self._jobs: dict[str, Job] = {}
        self._queues: dict[JobKind, deque[str]] = {k: deque() for k in self._capabilities}
        self._running: dict[str, _Running] = {}
        self._trial_jobs: set[str] = set()
        self._service_ema: dict[JobKind, float | None] = {k: None for k in self._capabilities}
        self._breakers = {
            kind: CircuitBreaker(kind.value, self._config.for_kind(kind).breaker, clock)
            for kind in self._capabilities
        }
        self._subscribers: list[CompletionCallback] = []

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "JobScheduler":
        """Start worker pools and the deadline monitor (idempotent)."""
        with self._cond:
            if self._started:
                return self
            self._started = True
            self._stop.clear()

        for kind in self._capabilities:
            for n in range(self._config.for_kind(kind).concurrency):
                self._spawn(self._worker_loop, f"archflow-{kind.value}-{n}", kind)
        self._spawn(self._monitor_loop, "archflow-deadline-monitor")
        logger.debug("Scheduler started with %d threads", len(self._threads))
        return self

    def _spawn(self, target: Callable[..., None], name: str, *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def shutdown(self, wait: bool = True, timeout: float = 5.0) -> None:
        """Stop accepting work from the queues and stop all threads."""
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
            self._started = False
        if wait:
            for thread in self._threads:
                thread.join(timeout)
        self._threads.clear()

    def __enter__(self) -> "JobScheduler":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def subscribe(self, callback: CompletionCallback) -> None:
        """Register a consumer of completion events."""
        self._subscribers.append(callback)

    def breaker(self, kind: JobKind) -> CircuitBreaker:
        return self._breakers[kind]

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def submit(self, request: JobRequest) -> str:
        """
        Queue a job. Never blocks.

        When the capability's breaker is open the job fails immediately with
        a "service degraded" error; otherwise it is queued with an estimated
        completion time.

        Raises:
            ValidationError: If no capability serves the job kind
        """
        if request.kind not in self._capabilities:
            raise ValidationError(
                "This kind of work is not supported.",
                detail=f"no capability registered for {request.kind.value}",
            )

        kind_config = self._config.for_kind(request.kind)
        job = Job(
            job_id=str(uuid.uuid4()),
            kind=request.kind,
            input_ref=request.input_ref,
            status=JobStatus.QUEUED,
            submitted_at=_now(),
            deadline_seconds=kind_config.deadline_seconds,
            params=MappingProxyType(dict(request.params)),
            design_id=request.design_id,
        )

        breaker = self._breakers[request.kind]
        if not breaker.allow_request():
            logger.warning(
                "Short-circuiting %s job %s: circuit open", request.kind.value, job.job_id
            )
            with self._cond:
                self._jobs[job.job_id] = job
            self._finish(
                job.job_id,
                JobStatus.FAILED,
                error=CapabilityUnavailableError(
                    detail=f"circuit open for {request.kind.value}"
                ).to_job_error(),
            )
            return job.job_id

        with self._cond:
            if breaker.state is BreakerState.HALF_OPEN:
                self._trial_jobs.add(job.job_id)
            queue = self._queues[request.kind]
            depth = len(queue)
            eta = self._estimate(request.kind, depth)
            self._jobs[job.job_id] = replace(job, estimated_completion=eta)
            queue.append(job.job_id)
            self._cond.notify_all()

        if depth >= kind_config.queue_capacity:
            logger.warning(
                "%s queue at capacity (%d queued); job %s estimated in %.1fs",
                request.kind.value,
                depth,
                job.job_id,
                eta,
            )
        else:
            logger.debug("Queued %s job %s (eta %.1fs)", request.kind.value, job.job_id, eta)
        return job.job_id

    def status(self, job_id: str) -> Job:
        """Current snapshot of a job.

        Raises:
            NotFoundError: If the job is unknown
        """
        with self._cond:
            if job_id not in self._jobs:
                raise NotFoundError(detail=f"Job not found: {job_id}")
            return self._jobs[job_id]

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a queued or running job.

        Returns:
            False if the job is unknown or already terminal
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return False
            if job.status is JobStatus.QUEUED:
                queue = self._queues[job.kind]
                if job_id in queue:
                    queue.remove(job_id)
            was_running = job.status is JobStatus.RUNNING

        finished = self._finish(
            job_id,
            JobStatus.CANCELLED,
            error=JobError(code="cancelled", message="The operation was cancelled."),
        )
        if finished and was_running:
            self._cancel_external(job)
        return finished

    def wait(self, job_id: str, timeout: float | None = None) -> Job:
        """
        Block until the job is terminal.

        Raises:
            NotFoundError: If the job is unknown
            TimeoutError: If the job is not terminal within timeout seconds
        """
        with self._cond:
            if job_id not in self._jobs:
                raise NotFoundError(detail=f"Job not found: {job_id}")
            done = self._cond.wait_for(
                lambda: self._jobs[job_id].status.is_terminal, timeout
            )
            if not done:
                raise TimeoutError(f"Job {job_id} still {self._jobs[job_id].status.value}")
            return self._jobs[job_id]

    def queue_depth(self, kind: JobKind) -> int:
        with self._cond:
            return len(self._queues[kind])

    def average_service_time(self, kind: JobKind) -> float | None:
        with self._cond:
            return self._service_ema[kind]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _estimate(self, kind: JobKind, queued_ahead: int) -> float:
        """Seconds until a newly queued job should complete. Caller holds the lock."""
        kind_config = self._config.for_kind(kind)
        average = self._service_ema[kind] or kind_config.deadline_seconds
        running = sum(1 for j in self._running if self._jobs[j].kind is kind)
        waves = (queued_ahead + running) // kind_config.concurrency + 1
        return waves * average

    def _worker_loop(self, kind: JobKind) -> None:
        queue = self._queues[kind]
        deadline_seconds = self._config.for_kind(kind).deadline_seconds
        while not self._stop.is_set():
            with self._cond:
                while not queue and not self._stop.is_set():
                    self._cond.wait(self._config.poll_interval)
                if self._stop.is_set():
                    return
                job_id = queue.popleft()
                job = self._jobs[job_id]
                if job.status is not JobStatus.QUEUED:
                    continue
                started = self._clock()
                self._running[job_id] = _Running(started, started + deadline_seconds)
                self._jobs[job_id] = replace(
                    job, status=JobStatus.RUNNING, started_at=_now()
                )
            self._run(job_id)

    def _run(self, job_id: str) -> None:
        """Attempt loop for one job: call, classify, back off, retry."""
        max_attempts = self._config.retry.max_attempts
        attempt = 0
        while True:
            attempt += 1
            with self._cond:
                job = self._jobs[job_id]
                if job.status.is_terminal:
                    return
                job = replace(job, attempts=attempt)
                self._jobs[job_id] = job
            capability = self._capabilities[job.kind]
            breaker = self._breakers[job.kind]

            call_started = self._clock()
            error: PipelineError | None = None
            result: Mapping[str, Any] | None = None
            try:
                result = capability.invoke(job)
            except PipelineError as e:
                error = e
            except Exception as e:
                logger.exception("Capability %s raised unexpectedly", job.kind.value)
                error = FatalError(detail=f"{type(e).__name__}: {e}")

            if self._is_terminal(job_id):
                logger.info(
                    "Discarding late result of %s job %s (attempt %d)",
                    job.kind.value,
                    job_id,
                    attempt,
                )
                return

            with self._cond:
                trial = job_id in self._trial_jobs
                self._trial_jobs.discard(job_id)
            breaker.record(not isinstance(error, TransientError), trial=trial)

            if error is None:
                self._observe_service_time(job.kind, self._clock() - call_started)
                self._finish(job_id, JobStatus.SUCCEEDED, result=dict(result or {}))
                return

            if error.retryable and attempt < max_attempts:
                delay = self._config.retry.delay(attempt, self._rng)
                logger.warning(
                    "%s job %s attempt %d/%d failed (%s); retrying in %.2fs",
                    job.kind.value,
                    job_id,
                    attempt,
                    max_attempts,
                    error.detail or error.user_message,
                    delay,
                )
                self._set_last_error(job_id, error.to_job_error())
                if self._sleep_unless_terminal(job_id, delay):
                    return
                continue

            if error.retryable:
                logger.error(
                    "%s job %s failed after %d attempts: %s",
                    job.kind.value,
                    job_id,
                    attempt,
                    error.detail,
                )
                error = FatalError(
                    "The service kept failing and the operation was abandoned.",
                    detail=f"retries exhausted: {error.detail or error.user_message}",
                )
            else:
                logger.info(
                    "%s job %s failed permanently: %s (%s)",
                    job.kind.value,
                    job_id,
                    error.code,
                    error.detail,
                )
            self._finish(job_id, JobStatus.FAILED, error=error.to_job_error())
            return

    def _set_last_error(self, job_id: str, error: JobError) -> None:
        with self._cond:
            job = self._jobs[job_id]
            if not job.status.is_terminal:
                self._jobs[job_id] = replace(job, last_error=error)

    def _is_terminal(self, job_id: str) -> bool:
        with self._cond:
            return self._jobs[job_id].status.is_terminal

    def _sleep_unless_terminal(self, job_id: str, delay: float) -> bool:
        """Back off; returns True if the job became terminal meanwhile."""
        end = self._clock() + delay
        with self._cond:
            while not self._jobs[job_id].status.is_terminal and not self._stop.is_set():
                remaining = end - self._clock()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def _observe_service_time(self, kind: JobKind, elapsed: float) -> None:
        with self._cond:
            previous = self._service_ema[kind]
            self._service_ema[kind] = (
                elapsed if previous is None else _EMA_ALPHA * elapsed + (1 - _EMA_ALPHA) * previous
            )

    def _monitor_loop(self) -> None:
        """Fail running jobs that passed their deadline, once per poll interval."""
        while not self._stop.wait(self._config.poll_interval):
            self._expire_overdue()

    def _expire_overdue(self) -> None:
        now = self._clock()
        with self._cond:
            overdue = [
                (self._jobs[job_id], job_id in self._trial_jobs)
                for job_id, running in self._running.items()
                if now > running.deadline
            ]
        for job, trial in overdue:
            finished = self._finish(
                job.job_id,
                JobStatus.FAILED,
                error=JobTimeoutError(
                    detail=f"{job.kind.value} exceeded {job.deadline_seconds:.0f}s deadline"
                ).to_job_error(),
            )
            if finished:
                logger.warning(
                    "%s job %s exceeded its %.0fs deadline",
                    job.kind.value,
                    job.job_id,
                    job.deadline_seconds,
                )
                self._breakers[job.kind].record(False, trial=trial)
                self._cancel_external(job)

    def _cancel_external(self, job: Job) -> None:
        capability = self._capabilities[job.kind]
        if capability.supports_cancel and capability.cancel(job.job_id):
            logger.debug("Cancelled external call for job %s", job.job_id)
        else:
            logger.debug("External call for job %s not cancellable; result will be discarded", job.job_id)

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: Mapping[str, Any] | None = None,
        error: JobError | None = None,
    ) -> bool:
        """Move a job to a terminal status exactly once and emit its event."""
        with self._cond:
            job = self._jobs[job_id]
            if job.status.is_terminal:
                return False
            job = replace(
                job,
                status=status,
                result=MappingProxyType(dict(result)) if result is not None else None,
                last_error=error or job.last_error,
                completed_at=_now(),
            )
            self._jobs[job_id] = job
            self._running.pop(job_id, None)
            trial = job_id in self._trial_jobs
            self._trial_jobs.discard(job_id)
            self._cond.notify_all()

        if trial and status is JobStatus.CANCELLED:
            self._breakers[job.kind].release_trial()

        logger.info("%s job %s %s", job.kind.value, job_id, status.value)
        self._emit(
            CompletionEvent(
                job_id=job_id,
                kind=job.kind,
                status=status,
                input_ref=job.input_ref,
                design_id=job.design_id,
                result=job.result,
                error=error,
            )
        )
        return True

    def _emit(self, event: CompletionEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Completion subscriber failed for job %s", event.job_id)

