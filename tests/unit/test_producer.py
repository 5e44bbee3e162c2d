"""
Test suite for feedback_hub/jobs/producer.py

Coverage targets:
- Enqueue returns a handle to a pending job
- Option defaults and overrides
- Synchronous rejection of bad lanes, payloads and options
- Store outages surface as StoreUnavailableError
- Call-site helpers
"""

from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from core.exceptions import InvalidLaneError, StoreUnavailableError, ValidationError
from feedback_hub.jobs.models import BackoffType, JobStatus, Lane
from feedback_hub.jobs.producer import JobProducer


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_returns_pending_handle(self, producer, store):
        handle = await producer.enqueue(
            "send-email", {"to": "a@example.com", "subject": "Welcome", "text": "Hello"}
        )

        assert handle.lane == Lane.SEND_EMAIL
        assert await handle.status() == JobStatus.PENDING
        job = await store.get(handle.job_id)
        assert job.payload == {"to": "a@example.com", "subject": "Welcome", "text": "Hello"}

    @pytest.mark.asyncio
    async def test_defaults_from_settings(self, producer):
        handle = await producer.enqueue(Lane.ANALYTICS, {"task": "updateSentiment"})

        job = await handle.refresh()
        assert job.max_attempts == 3
        assert job.backoff.type == BackoffType.EXPONENTIAL
        assert job.backoff.delay_ms == 1000

    @pytest.mark.asyncio
    async def test_options_override_defaults(self, producer):
        handle = await producer.enqueue(
            Lane.ANALYTICS, {"task": "updateCourseAvg"}, {"attempts": 5, "backoff": 250}
        )

        job = await handle.refresh()
        assert job.max_attempts == 5
        assert job.backoff.type == BackoffType.FIXED
        assert job.backoff.delay_ms == 250

    @pytest.mark.asyncio
    async def test_delay_sets_run_at(self, producer, clock):
        handle = await producer.enqueue(Lane.ANALYTICS, {"task": "updateSentiment"}, {"delay": 1500})

        job = await handle.refresh()
        assert job.run_at == pytest.approx(clock() + 1.5)

    @pytest.mark.asyncio
    async def test_payload_normalized_to_wire_names(self, producer):
        handle = await producer.enqueue(Lane.NOTIFY_STUDENT, {"student_id": 12, "message": "hi"})

        job = await handle.refresh()
        assert job.payload == {"studentId": "12", "message": "hi"}

    @pytest.mark.asyncio
    async def test_enqueue_increments_metric(self, producer):
        before = sample("feedbackhub_jobs_enqueued_total", lane="analytics")

        await producer.enqueue(Lane.ANALYTICS, {"task": "updateSentiment"})

        assert sample("feedbackhub_jobs_enqueued_total", lane="analytics") == before + 1


class TestEnqueueRejections:
    @pytest.mark.asyncio
    async def test_unknown_lane(self, producer, store):
        with pytest.raises(InvalidLaneError):
            await producer.enqueue("send-sms", {"to": "a@example.com"})

        assert await store.list_jobs() == []

    @pytest.mark.asyncio
    async def test_invalid_payload(self, producer, store):
        before = sample("feedbackhub_enqueue_failures_total", lane="send-email", reason="validation")

        with pytest.raises(ValidationError) as exc_info:
            await producer.enqueue("send-email", {"to": "nope", "subject": "s", "text": "t"})

        assert exc_info.value.errors
        assert await store.list_jobs() == []
        assert (
            sample("feedbackhub_enqueue_failures_total", lane="send-email", reason="validation")
            == before + 1
        )

    @pytest.mark.asyncio
    async def test_invalid_options(self, producer):
        with pytest.raises(ValidationError):
            await producer.enqueue(Lane.ANALYTICS, {"task": "updateSentiment"}, {"attempts": 0})

    @pytest.mark.asyncio
    async def test_validation_disabled_accepts_bad_payload(self, store, settings):
        settings.JOB_VALIDATE_ON_ENQUEUE = False
        producer = JobProducer(store, settings)

        handle = await producer.enqueue(Lane.SEND_EMAIL, {"to": "nope"})

        assert (await handle.refresh()).payload == {"to": "nope"}

    @pytest.mark.asyncio
    async def test_validation_disabled_still_requires_mapping(self, store, settings):
        settings.JOB_VALIDATE_ON_ENQUEUE = False
        producer = JobProducer(store, settings)

        with pytest.raises(ValidationError):
            await producer.enqueue(Lane.SEND_EMAIL, "to=a@example.com")


class TestStoreUnavailable:
    @pytest.mark.asyncio
    async def test_store_error_propagates(self, store, settings):
        store.add = AsyncMock(side_effect=StoreUnavailableError("Job store unavailable"))
        producer = JobProducer(store, settings)

        with pytest.raises(StoreUnavailableError):
            await producer.enqueue(Lane.ANALYTICS, {"task": "updateSentiment"})

    @pytest.mark.asyncio
    async def test_connection_error_wrapped(self, store, settings):
        store.add = AsyncMock(side_effect=ConnectionRefusedError("refused"))
        producer = JobProducer(store, settings)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await producer.enqueue(Lane.ANALYTICS, {"task": "updateSentiment"})

        assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)


class TestHelpers:
    @pytest.mark.asyncio
    async def test_notify_student_retry_policy(self, producer):
        handle = await producer.notify_student(7, "Your account has been blocked")

        job = await handle.refresh()
        assert job.lane == Lane.NOTIFY_STUDENT
        assert job.payload["studentId"] == "7"
        assert job.max_attempts == 3
        assert job.backoff.type == BackoffType.FIXED
        assert job.backoff.delay_ms == 3000

    @pytest.mark.asyncio
    async def test_send_report_retry_policy(self, producer):
        handle = await producer.send_report("admin@example.com", "/tmp/report.csv")

        job = await handle.refresh()
        assert job.payload == {"adminEmail": "admin@example.com", "reportPath": "/tmp/report.csv"}
        assert job.backoff.delay_ms == 5000

    @pytest.mark.asyncio
    async def test_notify_admin(self, producer):
        handle = await producer.notify_admin("Math", 4, "student@example.com")

        assert handle.lane == Lane.NOTIFY_ADMIN

    @pytest.mark.asyncio
    async def test_send_email_with_html(self, producer):
        handle = await producer.send_email("a@example.com", "Hi", "text", html="<p>text</p>")

        assert (await handle.refresh()).payload["html"] == "<p>text</p>"

    @pytest.mark.asyncio
    async def test_each_call_creates_a_job(self, producer, store):
        first = await producer.run_analytics("updateSentiment")
        second = await producer.run_analytics("updateSentiment")

        assert first.job_id != second.job_id
        assert len(await store.list_jobs(lane=Lane.ANALYTICS)) == 2
