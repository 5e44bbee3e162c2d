"""
Test suite for feedback_hub/services/mailer.py
"""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from core.exceptions import TransientHandlerError
from feedback_hub.services.mailer import (
    ConsoleMailer,
    OutboundEmail,
    SMTPMailer,
    build_mailer,
    build_message,
)


class TestBuildMessage:
    def test_plain_and_html(self):
        message = build_message(
            OutboundEmail(to="a@example.com", subject="Hi", text="plain", html="<p>html</p>"),
            sender="no-reply@example.com",
        )

        assert message["To"] == "a@example.com"
        assert message["From"] == "no-reply@example.com"
        assert message.get_body(preferencelist=("html",)).get_content().strip() == "<p>html</p>"

    def test_attachment(self, tmp_path):
        report = tmp_path / "report.csv"
        report.write_text("a,b\n1,2\n")

        message = build_message(
            OutboundEmail(to="a@example.com", subject="Report", text="see attached",
                          attachments=[str(report)]),
            sender="no-reply@example.com",
        )

        attachments = list(message.iter_attachments())
        assert [a.get_filename() for a in attachments] == ["report.csv"]
        assert attachments[0].get_content_type() == "text/csv"

    def test_missing_attachment(self, tmp_path):
        with pytest.raises(OSError):
            build_message(
                OutboundEmail(to="a@example.com", subject="s", text="t",
                              attachments=[str(tmp_path / "nope.csv")]),
                sender="x@example.com",
            )


class TestSMTPMailer:
    @pytest.mark.asyncio
    async def test_sends_with_starttls_and_login(self):
        mailer = SMTPMailer("smtp.test", 587, user="user", password="pw", sender="x@example.com")

        with patch("feedback_hub.services.mailer.smtplib.SMTP") as smtp_cls:
            server = MagicMock()
            smtp_cls.return_value.__enter__.return_value = server

            await mailer.send(OutboundEmail(to="a@example.com", subject="Hi", text="Hello"))

        smtp_cls.assert_called_once_with("smtp.test", 587, timeout=20.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user", "pw")
        server.send_message.assert_called_once()

    @pytest.mark.asyncio
    async def test_transport_failure_is_transient(self):
        mailer = SMTPMailer("smtp.test")

        with patch("feedback_hub.services.mailer.smtplib.SMTP") as smtp_cls:
            smtp_cls.side_effect = smtplib.SMTPConnectError(421, "busy")

            with pytest.raises(TransientHandlerError) as exc_info:
                await mailer.send(OutboundEmail(to="a@example.com", subject="Hi", text="Hello"))

        assert exc_info.value.details["to"] == "a@example.com"


class TestConsoleMailer:
    @pytest.mark.asyncio
    async def test_records_message(self):
        mailer = ConsoleMailer()

        await mailer.send(OutboundEmail(to="a@example.com", subject="Hi", text="Hello"))

        assert [m.to for m in mailer.sent] == ["a@example.com"]

    @pytest.mark.asyncio
    async def test_missing_attachment(self, tmp_path):
        with pytest.raises(TransientHandlerError):
            await ConsoleMailer().send(
                OutboundEmail(to="a@example.com", subject="s", text="t",
                              attachments=[str(tmp_path / "nope.csv")])
            )


class TestBuildMailer:
    def test_console(self, settings):
        assert isinstance(build_mailer(settings), ConsoleMailer)

    def test_smtp(self, settings):
        settings.MAIL_BACKEND = "smtp"
        assert isinstance(build_mailer(settings), SMTPMailer)

    def test_unknown(self, settings):
        settings.MAIL_BACKEND = "carrier-pigeon"
        with pytest.raises(ValueError):
            build_mailer(settings)
