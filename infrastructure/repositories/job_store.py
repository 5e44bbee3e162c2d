"""
Job store: the shared, at-least-once task queue behind the producer and workers.

The store arbitrates every state change. Claims, acknowledgements, failures,
lease renewals and stall recovery are atomic here, so workers never need
their own locking and two workers never hold the same job.

Each lane is laid out the same way in every implementation:
- waiting: FIFO of ready job ids
- delayed: job ids with a future run_at (initial delay or retry backoff)
- active:  job ids with a live claim, keyed by lease expiry

The retry and stall policies live on the JobStore base class so every
implementation applies them identically.
"""

import asyncio
import copy
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from core.exceptions import ClaimLostError
from feedback_hub.jobs.models import Job, JobStatus, Lane

logger = logging.getLogger(__name__)

STALLED_ERROR = "job stalled"
STALLED_LIMIT_ERROR = "job stalled more than allowable limit"


class JobStore(ABC):
    """
    Abstract job store.

    Implementations must make claim/complete/fail/heartbeat/reap atomic with
    respect to each other, across every process that shares the store.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def next_run_at(self, job: Job, now: float, retry: bool) -> Optional[float]:
        """
        When a failed job should run again, or None if it fails for good.

        Attempts are counted at claim time, so ``job.attempts_made`` is the
        number of the attempt that just failed.
        """
        if not retry or job.attempts_made >= job.max_attempts:
            return None
        return now + job.backoff.delay_for(job.attempts_made) / 1000.0

    def apply_stall(self, job: Job, now: float) -> Job:
        """Transition a job whose claim expired."""
        job.stalled_count += 1
        job.locked_by = None
        job.lease_expires_at = None
        if job.attempts_made < job.max_attempts:
            job.status = JobStatus.PENDING
            job.run_at = now
            job.error = STALLED_ERROR
        else:
            job.status = JobStatus.FAILED
            job.completed_at = now
            job.error = STALLED_LIMIT_ERROR
        return job

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @abstractmethod
    async def add(self, job: Job) -> Job:
        """Durably record a new pending job."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        """Fetch a job by id."""

    @abstractmethod
    async def claim(self, lane: Lane, worker_id: str, lease_seconds: float) -> Optional[Job]:
        """
        Claim the next ready job in a lane (FIFO), or None.

        Moves the job to active, increments attempts_made and sets a lease.
        """

    @abstractmethod
    async def heartbeat(self, job: Job, worker_id: str, lease_seconds: float) -> bool:
        """Extend the lease on a claimed job. False if the claim was lost."""

    @abstractmethod
    async def update_progress(self, job: Job, worker_id: str, progress: Dict[str, Any]) -> bool:
        """Persist handler progress on a claimed job. False if the claim was lost."""

    @abstractmethod
    async def complete(self, job: Job, worker_id: str, result: Optional[Dict[str, Any]] = None) -> Job:
        """
        Mark a claimed job completed (terminal).

        Raises:
            ClaimLostError: worker no longer holds the claim
        """

    @abstractmethod
    async def fail(self, job: Job, worker_id: str, error: str, retry: bool = True) -> Job:
        """
        Record a failed attempt: reschedule with backoff or fail for good.

        Raises:
            ClaimLostError: worker no longer holds the claim
        """

    @abstractmethod
    async def reap_stalled(self, lane: Lane) -> List[Job]:
        """Recover jobs in a lane whose lease expired. Returns the affected jobs."""

    @abstractmethod
    async def list_jobs(
        self,
        lane: Optional[Lane] = None,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> List[Job]:
        """List jobs, newest first."""

    @abstractmethod
    async def counts(self) -> Dict[str, Dict[str, int]]:
        """Job counts per lane per status."""

    async def ping(self) -> bool:
        """True when the store is reachable."""
        return True

    async def close(self) -> None:
        """Release connections."""


class InMemoryJobStore(JobStore):
    """
    Single-process job store.

    Suitable for development and tests. State is lost on restart and is not
    shared between processes; use RedisJobStore for multi-process workers.
    Only the newest ``max_finished`` completed or failed jobs are kept.
    """

    def __init__(self, clock: Callable[[], float] = time.time, max_finished: int = 10000):
        super().__init__(clock)
        self._jobs: Dict[str, Job] = {}
        self._finished: Deque[str] = deque()
        self._max_finished = max_finished
        self._waiting: Dict[Lane, Deque[str]] = {lane: deque() for lane in Lane}
        self._delayed: Dict[Lane, Dict[str, float]] = {lane: {} for lane in Lane}
        self._active: Dict[Lane, Dict[str, float]] = {lane: {} for lane in Lane}
        self._lock = asyncio.Lock()

        logger.info("InMemoryJobStore initialized")

    @staticmethod
    def _copy(job: Job) -> Job:
        return copy.deepcopy(job)

    def _schedule(self, job: Job, now: float) -> None:
        if job.run_at is not None and job.run_at > now:
            self._delayed[job.lane][job.job_id] = job.run_at
        else:
            self._waiting[job.lane].append(job.job_id)

    def _retire(self, job: Job) -> None:
        # Oldest finished jobs are forgotten first
        self._finished.append(job.job_id)
        while len(self._finished) > self._max_finished:
            self._jobs.pop(self._finished.popleft(), None)

    def _promote_due(self, lane: Lane, now: float) -> None:
        delayed = self._delayed[lane]
        due = sorted(
            (run_at, job_id) for job_id, run_at in delayed.items() if run_at <= now
        )
        for _, job_id in due:
            del delayed[job_id]
            self._waiting[lane].append(job_id)

    def _held(self, job_id: str, worker_id: str) -> Job:
        stored = self._jobs.get(job_id)
        if stored is None or stored.status != JobStatus.ACTIVE or stored.locked_by != worker_id:
            raise ClaimLostError(
                f"Worker {worker_id} no longer holds job {job_id}",
                details={"job_id": job_id},
            )
        return stored

    async def add(self, job: Job) -> Job:
        async with self._lock:
            stored = self._copy(job)
            self._jobs[stored.job_id] = stored
            self._schedule(stored, self.now())
        return self._copy(stored)

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return self._copy(job) if job else None

    async def claim(self, lane: Lane, worker_id: str, lease_seconds: float) -> Optional[Job]:
        async with self._lock:
            now = self.now()
            self._promote_due(lane, now)
            waiting = self._waiting[lane]
            while waiting:
                job = self._jobs.get(waiting.popleft())
                if job is None or job.status != JobStatus.PENDING:
                    continue
                job.status = JobStatus.ACTIVE
                job.attempts_made += 1
                job.started_at = now
                job.locked_by = worker_id
                job.lease_expires_at = now + lease_seconds
                self._active[lane][job.job_id] = job.lease_expires_at
                return self._copy(job)
        return None

    async def heartbeat(self, job: Job, worker_id: str, lease_seconds: float) -> bool:
        async with self._lock:
            try:
                stored = self._held(job.job_id, worker_id)
            except ClaimLostError:
                return False
            stored.lease_expires_at = self.now() + lease_seconds
            self._active[stored.lane][stored.job_id] = stored.lease_expires_at
            job.lease_expires_at = stored.lease_expires_at
            return True

    async def update_progress(self, job: Job, worker_id: str, progress: Dict[str, Any]) -> bool:
        async with self._lock:
            try:
                stored = self._held(job.job_id, worker_id)
            except ClaimLostError:
                return False
            stored.progress = copy.deepcopy(progress)
            job.progress = copy.deepcopy(progress)
            return True

    async def complete(self, job: Job, worker_id: str, result: Optional[Dict[str, Any]] = None) -> Job:
        async with self._lock:
            stored = self._held(job.job_id, worker_id)
            self._active[stored.lane].pop(stored.job_id, None)
            stored.status = JobStatus.COMPLETED
            stored.completed_at = self.now()
            stored.result = copy.deepcopy(result)
            stored.locked_by = None
            stored.lease_expires_at = None
            self._retire(stored)
            return self._copy(stored)

    async def fail(self, job: Job, worker_id: str, error: str, retry: bool = True) -> Job:
        async with self._lock:
            stored = self._held(job.job_id, worker_id)
            now = self.now()
            self._active[stored.lane].pop(stored.job_id, None)
            stored.error = error
            stored.locked_by = None
            stored.lease_expires_at = None

            run_at = self.next_run_at(stored, now, retry)
            if run_at is None:
                stored.status = JobStatus.FAILED
                stored.completed_at = now
                self._retire(stored)
            else:
                stored.status = JobStatus.PENDING
                stored.run_at = run_at
                self._schedule(stored, now)
            return self._copy(stored)

    async def reap_stalled(self, lane: Lane) -> List[Job]:
        recovered = []
        async with self._lock:
            now = self.now()
            active = self._active[lane]
            expired = [job_id for job_id, expires in active.items() if expires < now]
            for job_id in expired:
                del active[job_id]
                job = self._jobs.get(job_id)
                if job is None or job.status != JobStatus.ACTIVE:
                    continue
                self.apply_stall(job, now)
                if job.status == JobStatus.PENDING:
                    self._waiting[lane].append(job_id)
                else:
                    self._retire(job)
                recovered.append(self._copy(job))
        return recovered

    async def list_jobs(
        self,
        lane: Optional[Lane] = None,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> List[Job]:
        jobs = list(self._jobs.values())
        if lane:
            jobs = [j for j in jobs if j.lane == lane]
        if status:
            jobs = [j for j in jobs if j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [self._copy(j) for j in jobs[:limit]]

    async def counts(self) -> Dict[str, Dict[str, int]]:
        result = {lane.value: {status.value: 0 for status in JobStatus} for lane in Lane}
        for job in self._jobs.values():
            result[job.lane.value][job.status.value] += 1
        return result
