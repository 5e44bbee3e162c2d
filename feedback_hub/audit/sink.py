"""
Audit sink used by request handlers and workers.

Audit writes are best effort: a failing repository is logged and the caller
carries on. The audit trail is never the reason a job or request fails.
"""

import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, List, Mapping, Optional, Union

from feedback_hub.api.metrics import audit_write_failures_total
from feedback_hub.audit.models import AuditAction, AuditRecord, ResourceType

if TYPE_CHECKING:
    from infrastructure.repositories.audit_repository import AuditRepository

logger = logging.getLogger(__name__)


class AuditSink:
    """
    Appends immutable audit records to a repository.

    Sequence numbers continue from the repository's last record, so ordering
    by (created_at, sequence) is stable across restarts of a single writer.
    """

    def __init__(
        self,
        repository: "AuditRepository",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._repository = repository
        self._clock = clock
        self._lock = threading.Lock()
        try:
            start = repository.last_sequence() + 1
        except Exception as e:
            logger.warning(f"Could not read last audit sequence, starting at 1: {e}")
            start = 1
        self._sequence = itertools.count(start)

    @property
    def repository(self) -> "AuditRepository":
        return self._repository

    def record(
        self,
        action: Union[AuditAction, str],
        resource_type: Union[ResourceType, str],
        resource_id: Optional[Any] = None,
        actor_id: Optional[Any] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> Optional[AuditRecord]:
        """
        Append an audit record.

        Returns:
            The stored record, or None if it could not be written.
        """
        try:
            with self._lock:
                record = AuditRecord(
                    action=AuditAction(action),
                    resource_type=ResourceType(resource_type),
                    resource_id=str(resource_id) if resource_id is not None else None,
                    actor_id=str(actor_id) if actor_id is not None else None,
                    details=details or {},
                    created_at=self._clock(),
                    sequence=next(self._sequence),
                )
                self._repository.append(record)
        except Exception as e:
            audit_write_failures_total.inc()
            logger.error(
                f"Failed to write audit record {action} for {resource_type}:{resource_id}: {e}"
            )
            return None

        logger.info(f"AUDIT: {record.action.value} {record.resource_type.value}:{record.resource_id}")
        return record

    def list_for_resource(
        self, resource_id: Any, resource_type: Optional[Union[ResourceType, str]] = None
    ) -> List[AuditRecord]:
        """All records for a resource, oldest first."""
        rtype = ResourceType(resource_type) if resource_type is not None else None
        return self._repository.list_for_resource(str(resource_id), rtype)
