"""
Mail transport used by the email-sending lanes.

SMTP is blocking, so SMTPMailer runs it in the default executor to keep the
event loop (and the producers sharing it) responsive. Retries are the job
queue's business; a transport failure raises TransientHandlerError once.
"""

import asyncio
import logging
import mimetypes
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from pathlib import Path
from typing import List, Optional

from core.exceptions import TransientHandlerError
from feedback_hub.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class OutboundEmail:
    """A message to send. Attachments are file paths read at send time."""

    to: str
    subject: str
    text: str
    html: Optional[str] = None
    attachments: List[str] = field(default_factory=list)


class Mailer(ABC):
    """Mail transport interface."""

    @abstractmethod
    async def send(self, email: OutboundEmail) -> None:
        """
        Deliver one message.

        Raises:
            TransientHandlerError: transport or attachment read failure
        """


def build_message(email: OutboundEmail, sender: str) -> EmailMessage:
    """
    Build a MIME message, attaching files from disk.

    Raises:
        OSError: an attachment could not be read
    """
    message = EmailMessage()
    message["Subject"] = email.subject
    message["From"] = sender
    message["To"] = email.to
    message.set_content(email.text)
    if email.html:
        message.add_alternative(email.html, subtype="html")

    for path in email.attachments:
        attachment = Path(path)
        ctype, encoding = mimetypes.guess_type(attachment.name)
        if ctype is None or encoding is not None:
            ctype = "application/octet-stream"
        maintype, subtype = ctype.split("/", 1)
        message.add_attachment(
            attachment.read_bytes(),
            maintype=maintype,
            subtype=subtype,
            filename=attachment.name,
        )
    return message


class SMTPMailer(Mailer):
    """
    Sends mail through an SMTP relay with STARTTLS.

    One connection per message; the volume here is a few messages per job.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "no-reply@feedbackapp.com",
        use_tls: bool = True,
        timeout: float = 20.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout

        logger.info(f"SMTPMailer initialized ({host}:{port})")

    def _send_sync(self, email: OutboundEmail) -> None:
        message = build_message(email, self.sender)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.user:
                server.login(self.user, self.password or "")
            server.send_message(message)

    async def send(self, email: OutboundEmail) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, email)
        except (smtplib.SMTPException, OSError) as e:
            raise TransientHandlerError(
                f"Failed to send email: {e}",
                details={"to": email.to, "subject": email.subject},
            ) from e

        logger.info(f"Email sent to {email.to}: {email.subject}")


class ConsoleMailer(Mailer):
    """Logs messages instead of sending them (development)."""

    def __init__(self):
        self.sent: List[OutboundEmail] = []

    async def send(self, email: OutboundEmail) -> None:
        for path in email.attachments:
            if not Path(path).is_file():
                raise TransientHandlerError(
                    f"Attachment not readable: {path}", details={"to": email.to}
                )
        self.sent.append(email)
        logger.info(
            f"[MAIL] to={email.to} subject={email.subject!r} attachments={len(email.attachments)}"
        )


def build_mailer(settings: Settings) -> Mailer:
    """Create the mail transport selected by MAIL_BACKEND."""
    backend = settings.MAIL_BACKEND.lower()
    if backend == "console":
        return ConsoleMailer()
    if backend == "smtp":
        return SMTPMailer(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            sender=settings.SMTP_FROM,
            use_tls=settings.SMTP_USE_TLS,
            timeout=settings.SMTP_TIMEOUT_SECONDS,
        )
    raise ValueError(f"Unknown MAIL_BACKEND: {settings.MAIL_BACKEND}")
