"""At-most-one-in-flight diagnosis queue with bounded retries and backoff."""

from __future__ import annotations

import itertools
import random
import threading
import time
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from loguru import logger

from flowwatch.control_plane.analysis.providers.base import AnalysisClient, AnalysisRequest, Diagnosis
from flowwatch.control_plane.db.db import FlowwatchDB
from flowwatch.control_plane.errors import AnalysisError, NotFoundError
from flowwatch.control_plane.events.broadcaster import EventBroadcaster, EventKind
from flowwatch.control_plane.models.records import AnalysisResult, AnalysisStatus, ExecutionFailureRecord
from flowwatch.shared.timeutil import utc_now


class JobState(str, Enum):
    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    SUCCEEDED = "SUCCEEDED"
    EXHAUSTED = "EXHAUSTED"


@dataclass
class AnalysisJob:
    subject: str
    sequence: int
    attempts: int = 0
    next_retry_at: float = 0.0
    state: JobState = JobState.PENDING
    last_error: str | None = None
    delays: list[float] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.state in {JobState.PENDING, JobState.IN_FLIGHT}


@dataclass(frozen=True)
class EnqueueDecision:
    accepted: bool
    reason_code: str


def compute_backoff_delay(
    attempt: int,
    *,
    base_delay_s: float = 1.0,
    max_delay_s: float = 60.0,
    jitter_ratio: float = 0.1,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    Jitter stays below one doubling step, so successive delays never decrease
    until they reach ``max_delay_s``.
    """

    exponent = max(0, int(attempt) - 1)
    raw = base_delay_s * (2**exponent) * (1.0 + jitter_ratio * rand())
    return min(max_delay_s, raw)


class AnalysisQueue:
    def __init__(
        self,
        *,
        db: FlowwatchDB,
        client: AnalysisClient,
        broadcaster: EventBroadcaster | None = None,
        workers: int = 2,
        max_attempts: int = 5,
        base_delay_s: float = 1.0,
        max_delay_s: float = 60.0,
        attempt_timeout_s: float = 120.0,
        jitter_ratio: float = 0.1,
        history_size: int = 256,
        clock: Callable[[], float] = time.monotonic,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.db = db
        self.client = client
        self.broadcaster = broadcaster
        self.workers = max(1, int(workers))
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_s = float(base_delay_s)
        self.max_delay_s = float(max_delay_s)
        self.attempt_timeout_s = float(attempt_timeout_s)
        self.jitter_ratio = float(jitter_ratio)
        self.history_size = max(0, int(history_size))
        self.clock = clock
        self.rand = rand
        self._cond = threading.Condition()
        self._jobs: dict[str, AnalysisJob] = {}
        self._pending: deque[str] = deque()
        self._finished: OrderedDict[str, AnalysisJob] = OrderedDict()
        self._sequence = itertools.count(1)
        self._threads: list[threading.Thread] = []
        self._stopping = False

    def enqueue(self, failure_id: str) -> EnqueueDecision:
        if self.db.get_failure(failure_id) is None:
            raise NotFoundError("Execution failure not found", reason_code="failure_not_found")
        with self._cond:
            if failure_id in self._jobs:
                return EnqueueDecision(accepted=False, reason_code="already_queued")
            job = AnalysisJob(subject=failure_id, sequence=next(self._sequence))
            self._jobs[failure_id] = job
            self._pending.append(failure_id)
            self.db.set_failure_status(failure_id, AnalysisStatus.QUEUED)
            self._cond.notify()
        logger.debug("Analysis job queued", failure_id=failure_id)
        return EnqueueDecision(accepted=True, reason_code="accepted")

    def reanalyze(self, owner_id: str, failure_id: str) -> EnqueueDecision:
        if self.db.get_failure_owner(failure_id) != owner_id:
            raise NotFoundError("Execution failure not found", reason_code="failure_not_found")
        return self.enqueue(failure_id)

    def recover(self) -> int:
        """Re-enqueue failures a previous process left QUEUED or ANALYZING."""

        recovered = 0
        stranded = self.db.list_failures(
            statuses=[AnalysisStatus.QUEUED, AnalysisStatus.ANALYZING], limit=10_000
        )
        for failure in stranded:
            if self.enqueue(failure.id).accepted:
                recovered += 1
        if recovered:
            logger.info("Recovered analysis jobs", count=recovered)
        return recovered

    def start(self) -> None:
        with self._cond:
            if self._threads:
                return
            self._stopping = False
        self.recover()
        threads = [
            threading.Thread(target=self._worker_loop, name=f"flowwatch-analysis-{index}", daemon=True)
            for index in range(self.workers)
        ]
        with self._cond:
            self._threads = threads
        for thread in threads:
            thread.start()
        logger.info("Analysis workers started", workers=self.workers)

    def stop(self, timeout: float | None = None) -> None:
        """Let in-flight jobs finish; pending jobs stay QUEUED for the next start."""

        with self._cond:
            self._stopping = True
            threads = list(self._threads)
            self._cond.notify_all()
        for thread in threads:
            thread.join(timeout)
        with self._cond:
            self._threads = [thread for thread in threads if thread.is_alive()]
        logger.info("Analysis workers stopped", pending=self.pending_count())

    def process_next(self) -> AnalysisJob | None:
        """Run one ready job on the calling thread."""

        with self._cond:
            job = self._claim_ready()
        if job is None:
            return None
        self._run_guarded(job)
        return job

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._jobs, timeout=timeout)

    def job_for(self, failure_id: str) -> AnalysisJob | None:
        with self._cond:
            return self._jobs.get(failure_id) or self._finished.get(failure_id)

    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    def in_flight_count(self) -> int:
        with self._cond:
            return sum(1 for job in self._jobs.values() if job.state is JobState.IN_FLIGHT)

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                job = None
                while not self._stopping:
                    job = self._claim_ready()
                    if job is not None:
                        break
                    self._cond.wait(timeout=self._next_wait())
                if job is None:
                    return
            self._run_guarded(job)

    def _claim_ready(self) -> AnalysisJob | None:
        now = self.clock()
        for subject in self._pending:
            job = self._jobs[subject]
            if job.next_retry_at <= now:
                self._pending.remove(subject)
                job.state = JobState.IN_FLIGHT
                job.attempts += 1
                try:
                    self.db.set_failure_status(subject, AnalysisStatus.ANALYZING, last_error=job.last_error)
                except Exception:
                    logger.exception("Could not mark failure ANALYZING", failure_id=subject)
                return job
        return None

    def _next_wait(self) -> float | None:
        if not self._pending:
            return None
        soonest = min(self._jobs[subject].next_retry_at for subject in self._pending)
        return max(0.0, soonest - self.clock())

    def _run_guarded(self, job: AnalysisJob) -> None:
        try:
            self._run(job)
        except Exception as exc:
            logger.exception("Analysis job bookkeeping failed", failure_id=job.subject, attempt=job.attempts)
            self._release_stuck(job, f"internal_error: {exc}")

    def _release_stuck(self, job: AnalysisJob, message: str) -> None:
        """Return a job left IN_FLIGHT by a storage error to the queue, or end it."""

        with self._cond:
            if job.state is not JobState.IN_FLIGHT:
                return
            if job.attempts < self.max_attempts:
                delay = self._next_delay(job, None)
                job.state = JobState.PENDING
                job.last_error = message
                job.delays.append(delay)
                job.next_retry_at = self.clock() + delay
                self._pending.append(job.subject)
                self._cond.notify_all()
                return
        self._finish(job, JobState.EXHAUSTED, message)
        try:
            self.db.set_failure_status(job.subject, AnalysisStatus.FAILED, last_error=message)
        except Exception:
            logger.exception("Could not mark failure FAILED", failure_id=job.subject)

    def _run(self, job: AnalysisJob) -> None:
        log = logger.bind(failure_id=job.subject, attempt=job.attempts)
        failure = self.db.get_failure(job.subject)
        if failure is None:
            log.info("Failure record gone; dropping analysis job")
            self._finish(job, JobState.EXHAUSTED, "failure_deleted")
            return
        request = AnalysisRequest(failure_id=failure.id, payload=failure.error_payload, attempt=job.attempts)
        try:
            diagnosis = self.client.analyze(request, timeout_s=self.attempt_timeout_s)
        except AnalysisError as exc:
            if exc.permanent:
                self._exhaust(job, failure, f"{exc.reason_code}: {exc}")
            else:
                self._retry_or_exhaust(
                    job, failure, f"{exc.reason_code}: {exc}", getattr(exc, "retry_after_s", None)
                )
        except Exception as exc:
            log.exception("Analysis client raised unexpectedly")
            self._retry_or_exhaust(job, failure, f"unexpected_error: {exc}", None)
        else:
            self._succeed(job, failure, diagnosis)

    def _succeed(self, job: AnalysisJob, failure: ExecutionFailureRecord, diagnosis: Diagnosis) -> None:
        result = AnalysisResult(
            id=uuid.uuid4().hex,
            failure_id=failure.id,
            diagnosis=diagnosis.diagnosis,
            suggested_fix=diagnosis.suggested_fix,
            model=diagnosis.model,
            generated_at=utc_now(),
        )
        if not self.db.complete_analysis(result):
            self._finish(job, JobState.EXHAUSTED, "failure_deleted")
            return
        self._finish(job, JobState.SUCCEEDED, None)
        logger.info("Analysis completed", failure_id=failure.id, attempts=job.attempts, model=result.model)
        self._notify(
            failure,
            job,
            {"status": "analyzed", "result": result.as_dict()},
        )

    def _retry_or_exhaust(
        self,
        job: AnalysisJob,
        failure: ExecutionFailureRecord,
        message: str,
        retry_after_s: float | None,
    ) -> None:
        if job.attempts >= self.max_attempts:
            self._exhaust(job, failure, message)
            return
        delay = self._next_delay(job, retry_after_s)
        with self._cond:
            job.state = JobState.PENDING
            job.last_error = message
            job.delays.append(delay)
            job.next_retry_at = self.clock() + delay
            self._pending.append(job.subject)
            self.db.set_failure_status(job.subject, AnalysisStatus.QUEUED, last_error=message)
            self._cond.notify_all()
        logger.info(
            "Analysis attempt failed; retry scheduled",
            failure_id=job.subject,
            attempt=job.attempts,
            delay_s=round(delay, 3),
            error=message,
        )

    def _next_delay(self, job: AnalysisJob, retry_after_s: float | None) -> float:
        delay = compute_backoff_delay(
            job.attempts,
            base_delay_s=self.base_delay_s,
            max_delay_s=self.max_delay_s,
            jitter_ratio=self.jitter_ratio,
            rand=self.rand,
        )
        if retry_after_s is not None:
            delay = min(self.max_delay_s, max(delay, float(retry_after_s)))
        if job.delays:
            # A long Retry-After earlier must not let later delays shrink.
            delay = max(delay, job.delays[-1])
        return delay

    def _exhaust(self, job: AnalysisJob, failure: ExecutionFailureRecord, message: str) -> None:
        self.db.set_failure_status(failure.id, AnalysisStatus.FAILED, last_error=message)
        self._finish(job, JobState.EXHAUSTED, message)
        logger.warning("Analysis exhausted", failure_id=failure.id, attempts=job.attempts, error=message)
        self._notify(failure, job, {"status": "failed", "error": message})

    def _finish(self, job: AnalysisJob, state: JobState, message: str | None) -> None:
        with self._cond:
            job.state = state
            if message is not None:
                job.last_error = message
            self._jobs.pop(job.subject, None)
            self._finished.pop(job.subject, None)
            self._finished[job.subject] = job
            while len(self._finished) > self.history_size:
                self._finished.popitem(last=False)
            self._cond.notify_all()

    def _notify(self, failure: ExecutionFailureRecord, job: AnalysisJob, body: dict[str, object]) -> None:
        payload = {
            "failure_id": failure.id,
            "instance_id": failure.instance_id,
            "execution_id": failure.execution_id,
            "workflow_id": failure.workflow_id,
            "attempts": job.attempts,
            **body,
        }
        try:
            self.db.append_audit_event("analysis_completed", payload)
            owner_id = self.db.get_failure_owner(failure.id)
            if self.broadcaster is not None and owner_id is not None:
                self.broadcaster.publish(owner_id, EventKind.ANALYSIS_COMPLETED, payload)
        except Exception:
            logger.exception("Analysis completion notice not delivered", failure_id=failure.id)
