"""
Producer API used by request handlers to enqueue background work.

Enqueue never waits for the work itself. Caller mistakes (unknown lane,
bad payload, bad options) and store outages surface synchronously.
"""

import logging
from typing import Any, Mapping, Optional, Union

from core.exceptions import InvalidLaneError, StoreUnavailableError, ValidationError
from feedback_hub.api.metrics import enqueue_failures_total, jobs_enqueued_total
from feedback_hub.config import Settings
from feedback_hub.jobs.models import BackoffPolicy, BackoffType, Job, JobHandle, JobOptions, Lane
from feedback_hub.jobs.payloads import normalize_payload
from infrastructure.repositories.job_store import JobStore

logger = logging.getLogger(__name__)

# Retry policies the web handlers use for their lanes
NOTIFY_STUDENT_OPTIONS = {"attempts": 3, "backoff": 3000}
SEND_REPORT_OPTIONS = {"attempts": 3, "backoff": 5000}


class JobProducer:
    """
    Enqueues jobs on named lanes.

    Safe to call concurrently; every call creates an independent job.
    """

    def __init__(self, store: JobStore, settings: Settings):
        """
        Initialize producer.

        Args:
            store: Shared job store
            settings: Supplies enqueue defaults and validation mode
        """
        self._store = store
        self._validate = settings.JOB_VALIDATE_ON_ENQUEUE
        self._defaults = JobOptions(
            attempts=settings.JOB_DEFAULT_ATTEMPTS,
            backoff=BackoffPolicy(
                type=BackoffType(settings.JOB_DEFAULT_BACKOFF_TYPE),
                delay_ms=settings.JOB_DEFAULT_BACKOFF_MS,
            ),
        )

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def defaults(self) -> JobOptions:
        return self._defaults

    async def enqueue(
        self,
        lane: Union[Lane, str],
        payload: Mapping[str, Any],
        options: Optional[Union[JobOptions, Mapping[str, Any]]] = None,
    ) -> JobHandle:
        """
        Enqueue a job.

        Args:
            lane: Lane member or its wire name
            payload: Lane-specific payload
            options: attempts, backoff, delay_ms (defaults from settings)

        Returns:
            Handle for querying the job

        Raises:
            InvalidLaneError: Unknown lane
            ValidationError: Payload or options invalid
            StoreUnavailableError: Store unreachable
        """
        try:
            lane = Lane.parse(lane)
        except InvalidLaneError:
            enqueue_failures_total.labels(lane=str(lane), reason="invalid_lane").inc()
            raise

        try:
            job_options = JobOptions.parse(options, self._defaults)
            if self._validate:
                payload = normalize_payload(lane, payload)
            elif not isinstance(payload, Mapping):
                raise ValidationError(
                    f"Payload for {lane.value} must be a mapping",
                    details={"lane": lane.value},
                )
        except ValidationError:
            enqueue_failures_total.labels(lane=lane.value, reason="validation").inc()
            raise

        now = self._store.now()
        job = Job(
            lane=lane,
            payload=dict(payload),
            max_attempts=job_options.attempts,
            backoff=job_options.backoff,
            created_at=now,
            run_at=now + job_options.delay_ms / 1000.0,
        )

        try:
            await self._store.add(job)
        except StoreUnavailableError:
            enqueue_failures_total.labels(lane=lane.value, reason="store_unavailable").inc()
            raise
        except (ConnectionError, OSError) as e:
            enqueue_failures_total.labels(lane=lane.value, reason="store_unavailable").inc()
            raise StoreUnavailableError(
                "Job store unavailable", details={"lane": lane.value}
            ) from e

        jobs_enqueued_total.labels(lane=lane.value).inc()
        logger.info(
            f"Job {job.job_id} enqueued on {lane.value} (max_attempts={job.max_attempts})",
            extra={"job_id": job.job_id, "lane": lane.value},
        )
        return JobHandle(job_id=job.job_id, lane=lane, store=self._store)

    # ------------------------------------------------------------------
    # Call-site helpers
    # ------------------------------------------------------------------

    async def send_email(
        self, to: str, subject: str, text: str, html: Optional[str] = None
    ) -> JobHandle:
        payload = {"to": to, "subject": subject, "text": text}
        if html is not None:
            payload["html"] = html
        return await self.enqueue(Lane.SEND_EMAIL, payload)

    async def notify_admin(self, course: str, rating: int, student: str) -> JobHandle:
        """Tell the admins about a new feedback submission."""
        return await self.enqueue(
            Lane.NOTIFY_ADMIN, {"course": course, "rating": rating, "student": student}
        )

    async def notify_student(self, student_id: Any, message: str) -> JobHandle:
        """Push a real-time notification to a student (e.g. blocked/unblocked)."""
        return await self.enqueue(
            Lane.NOTIFY_STUDENT,
            {"studentId": student_id, "message": message},
            NOTIFY_STUDENT_OPTIONS,
        )

    async def send_report(self, admin_email: str, report_path: str) -> JobHandle:
        return await self.enqueue(
            Lane.SEND_REPORT,
            {"adminEmail": admin_email, "reportPath": report_path},
            SEND_REPORT_OPTIONS,
        )

    async def run_analytics(self, task: str) -> JobHandle:
        return await self.enqueue(Lane.ANALYTICS, {"task": task})
