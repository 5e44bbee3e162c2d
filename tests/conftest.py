"""
Pytest configuration and shared fixtures.
"""

from pathlib import Path
from typing import List, Optional, Set

import pytest

from core.exceptions import TransientHandlerError
from feedback_hub.audit.sink import AuditSink
from feedback_hub.config import Settings
from feedback_hub.jobs.producer import JobProducer
from feedback_hub.jobs.worker import WorkerPool
from feedback_hub.services.mailer import Mailer, OutboundEmail
from infrastructure.repositories.audit_repository import InMemoryAuditRepository
from infrastructure.repositories.job_store import InMemoryJobStore


class FakeClock:
    """Manually advanced clock (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingMailer(Mailer):
    """Mailer that records messages and can fail on demand."""

    def __init__(self, fail_times: int = 0, fail_recipients: Optional[Set[str]] = None):
        self.sent: List[OutboundEmail] = []
        self.calls = 0
        self.fail_times = fail_times
        self.fail_recipients = set(fail_recipients or ())

    async def send(self, email: OutboundEmail) -> None:
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransientHandlerError("SMTP connection reset", details={"to": email.to})
        if email.to in self.fail_recipients:
            raise TransientHandlerError("Mailbox unavailable", details={"to": email.to})
        self.sent.append(email)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryJobStore:
    """In-memory job store on a fake clock."""
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment's .env file."""
    return Settings(
        _env_file=None,
        JOB_STORE_BACKEND="memory",
        MAIL_BACKEND="console",
        NOTIFICATION_BACKEND="local",
        AUDIT_BACKEND="memory",
        AUDIT_LOG_PATH=str(tmp_path / "audit.log"),
        ADMIN_NOTIFY_EMAILS="admin1@example.com,admin2@example.com",
        RUN_WORKERS_IN_PROCESS=False,
        ADMIN_API_KEYS="",
    )


@pytest.fixture
def audit_repository() -> InMemoryAuditRepository:
    return InMemoryAuditRepository()


@pytest.fixture
def audit(audit_repository: InMemoryAuditRepository) -> AuditSink:
    return AuditSink(audit_repository)


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def producer(store: InMemoryJobStore, settings: Settings) -> JobProducer:
    return JobProducer(store, settings)


@pytest.fixture
def pool(store: InMemoryJobStore, audit: AuditSink) -> WorkerPool:
    """Worker pool with no consumers started; tests drive it via process_next."""
    return WorkerPool(store, audit=audit, lease_seconds=30.0, worker_id="test-worker")
