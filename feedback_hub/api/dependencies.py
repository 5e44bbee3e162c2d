"""
Service wiring and FastAPI dependencies.

Services are built once per application (or worker process) by
build_services() and stored on ``app.state.services``; endpoints receive
them through the get_* dependencies below.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from feedback_hub.audit.sink import AuditSink
from feedback_hub.auth.token_blacklist import TokenBlacklist
from feedback_hub.config import Settings
from feedback_hub.jobs.handlers import register_default_handlers
from feedback_hub.jobs.producer import JobProducer
from feedback_hub.jobs.worker import WorkerPool
from feedback_hub.services.analytics_service import AnalyticsService, FeedbackSource, InMemoryFeedbackSource
from feedback_hub.services.mailer import Mailer, build_mailer
from feedback_hub.websockets.manager import ConnectionManager
from feedback_hub.websockets.notifier import LocalNotifier, NotificationRelay, Notifier, RedisNotifier
from infrastructure.repositories.audit_repository import (
    AuditRepository,
    FileAuditRepository,
    InMemoryAuditRepository,
)
from infrastructure.repositories.job_store import InMemoryJobStore, JobStore
from infrastructure.repositories.redis_job_store import RedisJobStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the API and the workers share within one process."""

    settings: Settings
    store: JobStore
    producer: JobProducer
    audit: AuditSink
    mailer: Mailer
    connections: ConnectionManager
    notifier: Notifier
    analytics: AnalyticsService
    worker_pool: WorkerPool
    token_blacklist: TokenBlacklist
    relay: Optional[NotificationRelay] = None

    async def start(self, run_workers: Optional[bool] = None) -> None:
        """Start background tasks (relay, and workers when enabled)."""
        if run_workers is None:
            run_workers = self.settings.RUN_WORKERS_IN_PROCESS
        if self.relay is not None:
            await self.relay.start()
        if run_workers:
            await self.worker_pool.start()

    async def stop(self) -> None:
        """Stop background tasks and release connections."""
        await self.worker_pool.stop()
        if self.relay is not None:
            await self.relay.stop()
        await self.notifier.close()
        await self.store.close()


def build_store(settings: Settings) -> JobStore:
    backend = settings.JOB_STORE_BACKEND.lower()
    if backend == "memory":
        return InMemoryJobStore(max_finished=settings.JOB_MEMORY_MAX_FINISHED)
    if backend == "redis":
        return RedisJobStore(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD,
            db=settings.REDIS_DB,
            prefix=settings.JOB_KEY_PREFIX,
        )
    raise ValueError(f"Unknown JOB_STORE_BACKEND: {settings.JOB_STORE_BACKEND}")


def build_audit_repository(settings: Settings) -> AuditRepository:
    backend = settings.AUDIT_BACKEND.lower()
    if backend == "memory":
        return InMemoryAuditRepository()
    if backend == "file":
        return FileAuditRepository(settings.AUDIT_LOG_PATH)
    raise ValueError(f"Unknown AUDIT_BACKEND: {settings.AUDIT_BACKEND}")


def build_services(
    settings: Settings,
    store: Optional[JobStore] = None,
    mailer: Optional[Mailer] = None,
    audit_repository: Optional[AuditRepository] = None,
    feedback_source: Optional[FeedbackSource] = None,
) -> Services:
    """
    Construct and wire all services from settings.

    Any collaborator can be passed in to override the configured backend.
    """
    store = store or build_store(settings)
    audit = AuditSink(audit_repository or build_audit_repository(settings))
    mailer = mailer or build_mailer(settings)
    connections = ConnectionManager()

    relay = None
    backend = settings.NOTIFICATION_BACKEND.lower()
    channel_prefix = f"{settings.JOB_KEY_PREFIX}:notify"
    if backend == "local":
        notifier: Notifier = LocalNotifier(connections)
    elif backend == "redis":
        redis_args = dict(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD,
            db=settings.REDIS_DB,
            prefix=channel_prefix,
        )
        notifier = RedisNotifier(**redis_args)
        relay = NotificationRelay(connections, **redis_args)
    else:
        raise ValueError(f"Unknown NOTIFICATION_BACKEND: {settings.NOTIFICATION_BACKEND}")

    analytics = AnalyticsService(feedback_source or InMemoryFeedbackSource())

    pool = WorkerPool.from_settings(store, settings, audit=audit)
    register_default_handlers(
        pool,
        mailer=mailer,
        notifier=notifier,
        audit=audit,
        analytics=analytics,
        admin_emails=settings.admin_notify_emails,
    )

    return Services(
        settings=settings,
        store=store,
        producer=JobProducer(store, settings),
        audit=audit,
        mailer=mailer,
        connections=connections,
        notifier=notifier,
        analytics=analytics,
        worker_pool=pool,
        token_blacklist=TokenBlacklist(settings.TOKEN_TTL_SECONDS),
        relay=relay,
    )


# ============================================================
# FastAPI dependencies
# ============================================================


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_producer(request: Request) -> JobProducer:
    return request.app.state.services.producer


def get_job_store(request: Request) -> JobStore:
    return request.app.state.services.store


def get_audit_sink(request: Request) -> AuditSink:
    return request.app.state.services.audit


def get_worker_pool(request: Request) -> WorkerPool:
    return request.app.state.services.worker_pool


def get_token_blacklist(request: Request) -> TokenBlacklist:
    return request.app.state.services.token_blacklist
