"""
Audit record model.

Records are frozen once created; details are copied into read-only
containers at every level.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    # Domain actions (written by the web request handlers)
    FEEDBACK_SUBMITTED = "FEEDBACK_SUBMITTED"
    FEEDBACK_EDITED = "FEEDBACK_EDITED"
    FEEDBACK_DELETED = "FEEDBACK_DELETED"
    PROFILE_UPDATED = "PROFILE_UPDATED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    USER_BLOCKED = "USER_BLOCKED"
    USER_UNBLOCKED = "USER_UNBLOCKED"
    COURSE_ADDED = "COURSE_ADDED"
    COURSE_EDITED = "COURSE_EDITED"
    COURSE_DELETED = "COURSE_DELETED"

    # Job actions (written by workers)
    REPORT_SENT = "REPORT_SENT"
    STUDENT_NOTIFIED = "STUDENT_NOTIFIED"
    ADMIN_NOTIFIED = "ADMIN_NOTIFIED"
    ANALYTICS_COMPLETED = "ANALYTICS_COMPLETED"
    JOB_FAILED = "JOB_FAILED"


class ResourceType(str, Enum):
    """Kinds of resource an audit record can refer to."""

    FEEDBACK = "FEEDBACK"
    USER = "USER"
    PROFILE = "PROFILE"
    COURSE = "COURSE"
    ADMIN_ACTION = "ADMIN_ACTION"
    JOB = "JOB"


def _freeze(value: Any) -> Any:
    """Copy a value into read-only containers, all the way down."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, (tuple, frozenset)):
        return [_thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class AuditRecord:
    """
    A single immutable audit entry.

    Attributes:
        action: What happened
        resource_type: Kind of resource it happened to
        resource_id: Identity of the resource (None for global actions)
        actor_id: Who did it (None = system/worker)
        details: Extra context, read-only
        record_id: Unique id
        created_at: When the record was written (UTC)
        sequence: Monotonic counter breaking created_at ties
    """

    action: AuditAction
    resource_type: ResourceType
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)
    record_id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sequence: int = 0

    def __post_init__(self):
        object.__setattr__(self, "details", _freeze(self.details or {}))

    @property
    def sort_key(self):
        return (self.created_at, self.sequence)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "record_id": self.record_id,
            "action": self.action.value,
            "resource_type": self.resource_type.value,
            "resource_id": self.resource_id,
            "actor_id": self.actor_id,
            "details": _thaw(self.details),
            "created_at": self.created_at.isoformat(),
            "sequence": self.sequence,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditRecord":
        return cls(
            record_id=data["record_id"],
            action=AuditAction(data["action"]),
            resource_type=ResourceType(data["resource_type"]),
            resource_id=data.get("resource_id"),
            actor_id=data.get("actor_id"),
            details=data.get("details") or {},
            created_at=datetime.fromisoformat(data["created_at"]),
            sequence=data.get("sequence", 0),
        )
