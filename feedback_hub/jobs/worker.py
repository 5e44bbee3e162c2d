"""
Worker pool: claims jobs per lane and runs the lane handlers.

Each registered lane gets ``concurrency`` consumer tasks. A consumer claims
one job at a time from the store, runs the handler under the lane timeout
while renewing the job lease, then reports the outcome back to the store:

- handler returns              -> complete
- MissingResourceError         -> complete with a skip result
- PermanentError (incl. schema) -> fail without retry
- any other exception/timeout  -> fail, store retries with backoff while
                                  attempts remain

A separate reaper task recovers jobs whose lease expired (stalled workers).
"""

import asyncio
import logging
import os
import socket
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

from pydantic import BaseModel

from core.exceptions import (
    ClaimLostError,
    HandlerTimeoutError,
    MissingResourceError,
    PermanentError,
    PermanentHandlerFailure,
    StoreUnavailableError,
)
from feedback_hub.api.metrics import (
    job_duration_seconds,
    jobs_completed_total,
    jobs_failed_total,
    jobs_in_progress,
    jobs_retried_total,
    jobs_skipped_total,
    jobs_stalled_total,
)
from feedback_hub.audit.models import AuditAction, ResourceType
from feedback_hub.config import Settings
from feedback_hub.jobs.models import Job, JobStatus, Lane
from feedback_hub.jobs.payloads import parse_payload
from feedback_hub.logging_config import job_log_context
from infrastructure.repositories.job_store import JobStore

logger = logging.getLogger(__name__)


def generate_worker_id() -> str:
    """Identity for claims made by this process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:6]}"


class JobContext:
    """
    What a handler sees of the job it is running.

    Attributes:
        job: The claimed job (attempts_made is the current attempt number)
        payload: Payload validated against the lane schema
    """

    def __init__(self, job: Job, payload: BaseModel, store: JobStore, worker_id: str):
        self.job = job
        self.payload = payload
        self._store = store
        self._worker_id = worker_id

    @property
    def attempt(self) -> int:
        return self.job.attempts_made

    @property
    def progress(self) -> Dict[str, Any]:
        """Progress persisted by earlier attempts of this job."""
        return dict(self.job.progress)

    async def update_progress(self, progress: Mapping[str, Any]) -> bool:
        """
        Merge and persist progress so a retry can pick up where this attempt stopped.

        Returns False if the worker no longer holds the job.
        """
        merged = {**self.job.progress, **progress}
        return await self._store.update_progress(self.job, self._worker_id, merged)


Handler = Callable[[JobContext], Awaitable[Optional[Dict[str, Any]]]]


class WorkerPool:
    """
    Pool of asyncio consumers over a shared job store.

    Features:
    - Per-lane consumers with configurable concurrency
    - Per-lane handler timeouts
    - Lease heartbeats while a handler runs
    - Stall recovery for jobs abandoned by dead workers
    - JOB_FAILED audit record on permanent failure
    """

    def __init__(
        self,
        store: JobStore,
        audit=None,
        concurrency: int = 1,
        poll_interval: float = 1.0,
        lease_seconds: float = 30.0,
        stall_check_interval: float = 30.0,
        lane_timeouts: Optional[Dict[str, float]] = None,
        default_timeout: float = 60.0,
        worker_id: Optional[str] = None,
    ):
        """
        Initialize worker pool.

        Args:
            store: Shared job store
            audit: AuditSink for JOB_FAILED records (optional)
            concurrency: Consumers per lane
            poll_interval: Sleep between empty polls (seconds)
            lease_seconds: Claim lease; renewed every third of it
            stall_check_interval: Reaper period (seconds)
            lane_timeouts: Handler timeout per lane name (seconds)
            default_timeout: Timeout for lanes not in lane_timeouts
            worker_id: Claim identity prefix (defaults to host:pid)
        """
        self._store = store
        self._audit = audit
        self._concurrency = max(1, concurrency)
        self._poll_interval = poll_interval
        self._lease_seconds = lease_seconds
        self._stall_check_interval = stall_check_interval
        self._lane_timeouts = dict(lane_timeouts or {})
        self._default_timeout = default_timeout
        self.worker_id = worker_id or generate_worker_id()

        self._handlers: Dict[Lane, Handler] = {}
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._running = False

        # Statistics
        self._processed = 0
        self._completed = 0
        self._skipped = 0
        self._retried = 0
        self._failed = 0
        self._stalled = 0

        logger.info(f"WorkerPool {self.worker_id} initialized (concurrency={self._concurrency})")

    @classmethod
    def from_settings(cls, store: JobStore, settings: Settings, audit=None) -> "WorkerPool":
        return cls(
            store=store,
            audit=audit,
            concurrency=settings.WORKER_CONCURRENCY,
            poll_interval=settings.WORKER_POLL_INTERVAL_S,
            lease_seconds=settings.JOB_LEASE_SECONDS,
            stall_check_interval=settings.JOB_STALL_CHECK_INTERVAL_S,
            lane_timeouts=settings.JOB_LANE_TIMEOUTS,
            default_timeout=settings.JOB_DEFAULT_TIMEOUT_SECONDS,
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def lanes(self) -> List[Lane]:
        return list(self._handlers)

    def register_handler(self, lane: Lane, handler: Handler) -> None:
        """
        Register the handler for a lane.

        Handlers are ``async def handler(ctx: JobContext) -> dict | None``.
        """
        lane = Lane.parse(lane)
        self._handlers[lane] = handler
        logger.info(f"Registered handler for {lane.value}")

    def timeout_for(self, lane: Lane) -> float:
        return self._lane_timeouts.get(lane.value, self._default_timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Start consumers for every registered lane, plus the stall reaper.

        Call this during application startup.
        """
        if self._running:
            logger.warning("WorkerPool already running")
            return

        self._stopping.clear()
        self._running = True

        for lane in self._handlers:
            for index in range(self._concurrency):
                consumer_id = f"{self.worker_id}/{lane.value}/{index}"
                self._tasks.append(asyncio.create_task(self._consume(lane, consumer_id)))
        self._tasks.append(asyncio.create_task(self._reap_loop()))

        logger.info(
            f"WorkerPool started: {len(self._handlers)} lanes x {self._concurrency} consumers"
        )

    async def stop(self) -> None:
        """
        Stop consumers after their in-flight jobs finish.

        Call this during application shutdown.
        """
        if not self._running:
            return

        logger.info("Stopping WorkerPool...")
        self._stopping.set()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._running = False

        logger.info("WorkerPool stopped")

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early on stop()."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _consume(self, lane: Lane, consumer_id: str) -> None:
        logger.info(f"Consumer {consumer_id} started")

        while not self._stopping.is_set():
            try:
                job = await self.process_next(lane, worker_id=consumer_id)
            except StoreUnavailableError as e:
                logger.warning(f"Consumer {consumer_id}: {e}")
                job = None
            except Exception as e:
                logger.error(f"Consumer {consumer_id} error: {e}", exc_info=True)
                job = None

            if job is None:
                await self._sleep(self._poll_interval)

        logger.info(f"Consumer {consumer_id} stopped")

    async def _reap_loop(self) -> None:
        while not self._stopping.is_set():
            await self._sleep(self._stall_check_interval)
            if self._stopping.is_set():
                break
            try:
                await self.reap_stalled()
            except StoreUnavailableError as e:
                logger.warning(f"Stall check skipped: {e}")
            except Exception as e:
                logger.error(f"Stall check error: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_next(self, lane: Lane, worker_id: Optional[str] = None) -> Optional[Job]:
        """
        Claim and run one job from a lane.

        Returns:
            The job as stored after its outcome, or None if the lane was empty.
        """
        lane = Lane.parse(lane)
        if lane not in self._handlers:
            raise ValueError(f"No handler registered for {lane.value}")

        worker_id = worker_id or self.worker_id
        job = await self._store.claim(lane, worker_id, self._lease_seconds)
        if job is None:
            return None
        return await self._execute(job, worker_id)

    async def _execute(self, job: Job, worker_id: str) -> Job:
        extra = {**job_log_context(job), "worker_id": worker_id}
        logger.info(
            f"Job {job.job_id} ({job.lane.value}) attempt {job.attempts_made}/{job.max_attempts}",
            extra=extra,
        )

        self._processed += 1
        jobs_in_progress.labels(lane=job.lane.value).inc()
        heartbeat = asyncio.create_task(self._heartbeat(job, worker_id))
        start_time = time.monotonic()

        try:
            try:
                result = await self._run_handler(job, worker_id)
            finally:
                # No lease renewal may race the outcome commit
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
        except MissingResourceError as e:
            logger.warning(f"Job {job.job_id} skipped: {e.message}", extra=extra)
            return await self._complete(
                job, worker_id, {"skipped": True, "reason": e.message}, start_time, "skipped"
            )
        except PermanentError as e:
            return await self._fail(job, worker_id, e, False, start_time)
        except Exception as e:
            return await self._fail(job, worker_id, e, True, start_time)
        else:
            return await self._complete(job, worker_id, result, start_time, "completed")
        finally:
            jobs_in_progress.labels(lane=job.lane.value).dec()

    async def _run_handler(self, job: Job, worker_id: str) -> Optional[Dict[str, Any]]:
        payload = parse_payload(job.lane, job.payload)
        ctx = JobContext(job, payload, self._store, worker_id)
        timeout = self.timeout_for(job.lane)

        try:
            result = await asyncio.wait_for(self._handlers[job.lane](ctx), timeout=timeout)
        except asyncio.TimeoutError:
            raise HandlerTimeoutError(
                f"Handler exceeded {timeout}s timeout",
                details={"lane": job.lane.value, "timeout": timeout},
            ) from None

        if result is None or isinstance(result, dict):
            return result
        return {"value": result}

    async def _heartbeat(self, job: Job, worker_id: str) -> None:
        interval = self._lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self._store.heartbeat(job, worker_id, self._lease_seconds)
            except StoreUnavailableError as e:
                logger.warning(f"Heartbeat for job {job.job_id} failed: {e}")
                continue
            if not held:
                logger.warning(f"Worker {worker_id} lost claim on job {job.job_id}")
                return

    async def _complete(
        self,
        job: Job,
        worker_id: str,
        result: Optional[Dict[str, Any]],
        start_time: float,
        outcome: str,
    ) -> Job:
        duration = time.monotonic() - start_time
        try:
            stored = await self._store.complete(job, worker_id, result)
        except ClaimLostError as e:
            logger.warning(f"Result of job {job.job_id} discarded: {e}")
            return await self._store.get(job.job_id) or job

        job_duration_seconds.labels(lane=job.lane.value, outcome=outcome).observe(duration)
        if outcome == "skipped":
            self._skipped += 1
            jobs_skipped_total.labels(lane=job.lane.value).inc()
        else:
            self._completed += 1
            jobs_completed_total.labels(lane=job.lane.value).inc()

        logger.info(
            f"Job {job.job_id} completed in {duration:.2f}s",
            extra={**job_log_context(stored), "worker_id": worker_id, "duration_ms": int(duration * 1000)},
        )
        return stored

    async def _fail(
        self,
        job: Job,
        worker_id: str,
        exc: BaseException,
        retry: bool,
        start_time: float,
    ) -> Job:
        duration = time.monotonic() - start_time
        error = f"{type(exc).__name__}: {exc}"
        extra = {**job_log_context(job), "worker_id": worker_id}

        try:
            stored = await self._store.fail(job, worker_id, error, retry=retry)
        except ClaimLostError as e:
            logger.warning(f"Failure of job {job.job_id} discarded: {e}")
            return await self._store.get(job.job_id) or job

        if stored.status == JobStatus.FAILED:
            self._failed += 1
            jobs_failed_total.labels(lane=job.lane.value).inc()
            job_duration_seconds.labels(lane=job.lane.value, outcome="failed").observe(duration)
            logger.error(
                f"Job {job.job_id} failed permanently after {stored.attempts_made} attempt(s): {error}",
                extra=extra,
            )
            self._record_failure(stored)
        else:
            self._retried += 1
            jobs_retried_total.labels(lane=job.lane.value).inc()
            job_duration_seconds.labels(lane=job.lane.value, outcome="retried").observe(duration)
            delay = max(0.0, (stored.run_at or 0.0) - self._store.now())
            logger.warning(
                f"Job {job.job_id} attempt {stored.attempts_made}/{stored.max_attempts} failed, "
                f"retrying in {delay:.2f}s: {error}",
                extra=extra,
            )
        return stored

    def _record_failure(self, job: Job) -> PermanentHandlerFailure:
        """Describe a job that reached FAILED and write its JOB_FAILED audit record."""
        failure = PermanentHandlerFailure(
            f"Job {job.job_id} failed after {job.attempts_made} attempt(s)",
            details={
                "lane": job.lane.value,
                "attempts_made": job.attempts_made,
                "error": job.error,
            },
        )
        if self._audit is not None:
            self._audit.record(
                AuditAction.JOB_FAILED,
                ResourceType.JOB,
                resource_id=job.job_id,
                details={**failure.details, "error_type": type(failure).__name__},
            )
        return failure

    async def reap_stalled(self) -> List[Job]:
        """Recover stalled jobs in every registered lane."""
        recovered: List[Job] = []
        for lane in self._handlers:
            for job in await self._store.reap_stalled(lane):
                self._stalled += 1
                jobs_stalled_total.labels(lane=lane.value).inc()
                if job.status == JobStatus.FAILED:
                    self._failed += 1
                    jobs_failed_total.labels(lane=lane.value).inc()
                    logger.error(f"Job {job.job_id} failed: {job.error}", extra=job_log_context(job))
                    self._record_failure(job)
                else:
                    logger.warning(
                        f"Job {job.job_id} stalled, returned to {lane.value}",
                        extra=job_log_context(job),
                    )
                recovered.append(job)
        return recovered

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get worker pool statistics.

        Returns:
            Statistics dictionary for this process
        """
        return {
            "worker_id": self.worker_id,
            "running": self._running,
            "lanes": [lane.value for lane in self._handlers],
            "concurrency": self._concurrency,
            "processed": self._processed,
            "completed": self._completed,
            "skipped": self._skipped,
            "retried": self._retried,
            "failed": self._failed,
            "stalled": self._stalled,
        }
