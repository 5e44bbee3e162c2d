"""
Job handlers for the feedback lanes.

Each handler is an async function taking a JobContext. Collaborators are
bound with functools.partial in register_default_handlers.
"""

import logging
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.exceptions import TransientHandlerError
from feedback_hub.audit.models import AuditAction, ResourceType
from feedback_hub.audit.sink import AuditSink
from feedback_hub.jobs.models import Lane
from feedback_hub.jobs.worker import JobContext, WorkerPool
from feedback_hub.services.analytics_service import AnalyticsService
from feedback_hub.services.mailer import Mailer, OutboundEmail
from feedback_hub.websockets.notifier import Notifier

logger = logging.getLogger(__name__)

REPORT_SUBJECT = "Feedback Report"
REPORT_TEXT = "Please find attached the latest feedback report."
ADMIN_SUBJECT = "New Feedback Submitted"


async def handle_send_email(ctx: JobContext, mailer: Mailer) -> Dict[str, Any]:
    """
    Send a single email.

    Job payload:
        - to, subject, text, html (optional)
    """
    payload = ctx.payload
    await mailer.send(
        OutboundEmail(to=payload.to, subject=payload.subject, text=payload.text, html=payload.html)
    )
    logger.info(f"Email sent to {payload.to}")
    return {"to": payload.to}


async def handle_notify_admin(
    ctx: JobContext,
    mailer: Mailer,
    audit: AuditSink,
    admin_emails: List[str],
) -> Dict[str, Any]:
    """
    Email every configured admin about a new feedback submission.

    Recipients already reached by an earlier attempt are recorded in job
    progress and skipped on retry. Any recipient failure fails the attempt.

    Returns:
        - delivered: recipients reached (all attempts)
        - recipients: per-recipient outcome of this attempt
    """
    payload = ctx.payload
    delivered: List[str] = list(ctx.progress.get("delivered", []))
    outcomes: Dict[str, str] = {}
    errors: Dict[str, str] = {}

    text = f"{payload.student} submitted feedback for {payload.course} with rating {payload.rating}"

    for admin in admin_emails:
        if admin in delivered:
            outcomes[admin] = "already_delivered"
            continue
        try:
            await mailer.send(OutboundEmail(to=admin, subject=ADMIN_SUBJECT, text=text))
        except TransientHandlerError as e:
            outcomes[admin] = "failed"
            errors[admin] = e.message
            continue
        delivered.append(admin)
        outcomes[admin] = "delivered"
        await ctx.update_progress({"delivered": delivered})

    if errors:
        raise TransientHandlerError(
            f"Admin notification failed for {len(errors)} of {len(admin_emails)} recipients",
            details={"failed": sorted(errors)},
        )

    audit.record(
        AuditAction.ADMIN_NOTIFIED,
        ResourceType.COURSE,
        resource_id=payload.course,
        details={"rating": payload.rating, "student": payload.student, "recipients": delivered},
    )
    logger.info("Admins notified about new feedback")
    return {"delivered": delivered, "recipients": outcomes}


async def handle_notify_student(
    ctx: JobContext, notifier: Notifier, audit: AuditSink
) -> Dict[str, Any]:
    """
    Push a notification to a student's live connections.

    No live connection is not a failure; the audit record is written either way.
    """
    payload = ctx.payload
    logger.info(f"Notifying student {payload.student_id}: {payload.message}")

    delivered = await notifier.publish(payload.student_id, payload.message)

    audit.record(
        AuditAction.STUDENT_NOTIFIED,
        ResourceType.USER,
        resource_id=payload.student_id,
        details={"message": payload.message},
    )
    return {"delivered": delivered}


async def handle_send_report(ctx: JobContext, mailer: Mailer, audit: AuditSink) -> Dict[str, Any]:
    """
    Email a generated report file to an admin.

    An unreadable report raises TransientHandlerError (the export may still
    be being written) and is retried.
    """
    payload = ctx.payload
    report = Path(payload.report_path)
    logger.info(f"Sending report to {payload.admin_email}: {report}")

    if not report.is_file():
        raise TransientHandlerError(
            f"Report file not readable: {report}", details={"report_path": str(report)}
        )

    await mailer.send(
        OutboundEmail(
            to=payload.admin_email,
            subject=REPORT_SUBJECT,
            text=REPORT_TEXT,
            attachments=[str(report)],
        )
    )

    audit.record(
        AuditAction.REPORT_SENT,
        ResourceType.ADMIN_ACTION,
        details={"adminEmail": payload.admin_email, "reportPath": str(report)},
    )
    logger.info(f"Report sent successfully to {payload.admin_email}")
    return {"to": payload.admin_email, "report": report.name}


async def handle_analytics(
    ctx: JobContext, analytics: AnalyticsService, audit: AuditSink
) -> Dict[str, Any]:
    """Run an analytics task."""
    task = ctx.payload.task
    result = await analytics.run(task)

    audit.record(
        AuditAction.ANALYTICS_COMPLETED,
        ResourceType.JOB,
        resource_id=ctx.job.job_id,
        details={"task": task, **result},
    )
    return {"task": task, **result}


def register_default_handlers(
    pool: WorkerPool,
    mailer: Mailer,
    notifier: Notifier,
    audit: AuditSink,
    analytics: Optional[AnalyticsService],
    admin_emails: List[str],
) -> None:
    """
    Register all lane handlers with a worker pool.

    The analytics lane is only registered when an AnalyticsService is given.
    """
    pool.register_handler(Lane.SEND_EMAIL, partial(handle_send_email, mailer=mailer))
    pool.register_handler(
        Lane.NOTIFY_ADMIN,
        partial(handle_notify_admin, mailer=mailer, audit=audit, admin_emails=list(admin_emails)),
    )
    pool.register_handler(
        Lane.NOTIFY_STUDENT, partial(handle_notify_student, notifier=notifier, audit=audit)
    )
    pool.register_handler(Lane.SEND_REPORT, partial(handle_send_report, mailer=mailer, audit=audit))
    if analytics is not None:
        pool.register_handler(
            Lane.ANALYTICS, partial(handle_analytics, analytics=analytics, audit=audit)
        )

    logger.info(f"Registered {len(pool.lanes)} job handlers")
