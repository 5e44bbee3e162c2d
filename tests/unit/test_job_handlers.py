"""
Test suite for feedback_hub/jobs/handlers.py

Handlers run through the worker pool so payload parsing, progress and
retries behave as in production.
"""

from datetime import datetime, timezone

import pytest

from feedback_hub.audit.models import AuditAction, ResourceType
from feedback_hub.jobs.handlers import ADMIN_SUBJECT, REPORT_SUBJECT, register_default_handlers
from feedback_hub.jobs.models import JobStatus, Lane
from feedback_hub.services.analytics_service import (
    AnalyticsService,
    FeedbackItem,
    InMemoryFeedbackSource,
)
from feedback_hub.websockets.manager import ConnectionManager
from feedback_hub.websockets.notifier import LocalNotifier


class FakeWebSocket:
    def __init__(self):
        self.sent = []

    async def accept(self):
        pass

    async def send_json(self, message):
        self.sent.append(message)


@pytest.fixture
def manager():
    return ConnectionManager()


@pytest.fixture
def feedback_source():
    return InMemoryFeedbackSource(
        [
            FeedbackItem("f1", "math", 5),
            FeedbackItem("f2", "math", 1),
            FeedbackItem("f3", "physics", 3),
        ]
    )


@pytest.fixture
def wired_pool(pool, mailer, manager, audit, feedback_source, settings):
    register_default_handlers(
        pool,
        mailer=mailer,
        notifier=LocalNotifier(manager),
        audit=audit,
        analytics=AnalyticsService(feedback_source),
        admin_emails=settings.admin_notify_emails,
    )
    return pool


class TestNotifyAdmin:
    @pytest.mark.asyncio
    async def test_all_admins_notified(self, wired_pool, producer, mailer, audit_repository):
        await producer.notify_admin("Math", 4, "student@example.com")

        job = await wired_pool.process_next(Lane.NOTIFY_ADMIN)

        assert job.status == JobStatus.COMPLETED
        assert [m.to for m in mailer.sent] == ["admin1@example.com", "admin2@example.com"]
        assert all(m.subject == ADMIN_SUBJECT for m in mailer.sent)
        assert "rating 4" in mailer.sent[0].text
        records = audit_repository.list_for_resource("Math", ResourceType.COURSE)
        assert [r.action for r in records] == [AuditAction.ADMIN_NOTIFIED]

    @pytest.mark.asyncio
    async def test_retry_skips_delivered_recipients(
        self, wired_pool, producer, mailer, clock, audit_repository
    ):
        mailer.fail_recipients = {"admin2@example.com"}
        await producer.notify_admin("Math", 2, "student@example.com")

        first = await wired_pool.process_next(Lane.NOTIFY_ADMIN)

        assert first.status == JobStatus.PENDING
        assert first.progress == {"delivered": ["admin1@example.com"]}
        assert "admin2@example.com" in first.error
        assert len(audit_repository) == 0

        mailer.fail_recipients = set()
        clock.advance(first.run_at - clock())
        second = await wired_pool.process_next(Lane.NOTIFY_ADMIN)

        assert second.status == JobStatus.COMPLETED
        assert [m.to for m in mailer.sent] == ["admin1@example.com", "admin2@example.com"]
        assert second.result["recipients"] == {
            "admin1@example.com": "already_delivered",
            "admin2@example.com": "delivered",
        }
        assert len(audit_repository.list_for_resource("Math")) == 1


class TestNotifyStudent:
    @pytest.mark.asyncio
    async def test_delivered_to_every_connection(self, wired_pool, producer, manager, audit_repository):
        sockets = [FakeWebSocket(), FakeWebSocket()]
        for ws in sockets:
            connection_id = await manager.connect(ws)
            manager.join(connection_id, "u1")

        enqueued_at = datetime.now(timezone.utc)
        await producer.notify_student("u1", "You have been unblocked")
        job = await wired_pool.process_next(Lane.NOTIFY_STUDENT)

        assert job.result == {"delivered": 2}
        for ws in sockets:
            assert ws.sent[0]["event"] == "notification"
            assert ws.sent[0]["data"]["message"] == "You have been unblocked"
            assert datetime.fromisoformat(ws.sent[0]["data"]["timestamp"]) >= enqueued_at
        assert len(audit_repository.list_for_resource("u1")) == 1


class TestSendReport:
    @pytest.mark.asyncio
    async def test_report_attached(self, wired_pool, producer, mailer, tmp_path, audit_repository):
        report = tmp_path / "feedback.csv"
        report.write_text("course,rating\nmath,5\n")
        await producer.send_report("admin@example.com", str(report))

        job = await wired_pool.process_next(Lane.SEND_REPORT)

        assert job.status == JobStatus.COMPLETED
        assert mailer.sent[0].subject == REPORT_SUBJECT
        assert mailer.sent[0].attachments == [str(report)]
        assert job.result == {"to": "admin@example.com", "report": "feedback.csv"}

    @pytest.mark.asyncio
    async def test_missing_report_is_retried(self, wired_pool, producer, mailer, tmp_path):
        await producer.send_report("admin@example.com", str(tmp_path / "missing.csv"))

        job = await wired_pool.process_next(Lane.SEND_REPORT)

        assert job.status == JobStatus.PENDING
        assert job.error.startswith("TransientHandlerError")
        assert mailer.sent == []


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_update_sentiment(self, wired_pool, producer, feedback_source, audit_repository):
        await producer.run_analytics("updateSentiment")

        job = await wired_pool.process_next(Lane.ANALYTICS)

        assert job.status == JobStatus.COMPLETED
        assert job.result["updated"] == 2
        labels = {item.feedback_id: item.sentiment for item in feedback_source.list_feedback()}
        assert labels == {"f1": "positive", "f2": "negative", "f3": "neutral"}
        records = audit_repository.list_for_resource(job.job_id, ResourceType.JOB)
        assert [r.action for r in records] == [AuditAction.ANALYTICS_COMPLETED]

    @pytest.mark.asyncio
    async def test_update_course_averages(self, wired_pool, producer, feedback_source):
        await producer.run_analytics("updateCourseAvg")

        job = await wired_pool.process_next(Lane.ANALYTICS)

        assert job.result["averages"] == {"math": 3.0, "physics": 3.0}
        assert feedback_source.course_averages["math"] == {"average": 3.0, "count": 2}
