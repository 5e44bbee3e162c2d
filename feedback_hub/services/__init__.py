"""
Collaborators used by job handlers: mail transport and analytics.
"""

from feedback_hub.services.analytics_service import AnalyticsService, FeedbackItem, InMemoryFeedbackSource
from feedback_hub.services.mailer import ConsoleMailer, Mailer, OutboundEmail, SMTPMailer, build_mailer

__all__ = [
    "AnalyticsService",
    "ConsoleMailer",
    "FeedbackItem",
    "InMemoryFeedbackSource",
    "Mailer",
    "OutboundEmail",
    "SMTPMailer",
    "build_mailer",
]
