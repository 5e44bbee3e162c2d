"""Audit trail: immutable records of domain and job actions."""

from feedback_hub.audit.models import AuditAction, AuditRecord, ResourceType
from feedback_hub.audit.sink import AuditSink

__all__ = ["AuditAction", "AuditRecord", "AuditSink", "ResourceType"]
