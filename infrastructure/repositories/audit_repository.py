"""
Audit record storage.

Repositories only append and read; records are never updated or deleted.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from core.exceptions import AuditWriteError
from feedback_hub.audit.models import AuditRecord, ResourceType

logger = logging.getLogger(__name__)


class AuditRepository(ABC):
    """Append-only store of audit records."""

    @abstractmethod
    def append(self, record: AuditRecord) -> None:
        """
        Persist a record.

        Raises:
            AuditWriteError: the record could not be written
        """

    @abstractmethod
    def list_for_resource(
        self, resource_id: str, resource_type: Optional[ResourceType] = None
    ) -> List[AuditRecord]:
        """All records for a resource, ordered by (created_at, sequence)."""

    @abstractmethod
    def last_sequence(self) -> int:
        """Highest sequence number stored, 0 when empty."""


class InMemoryAuditRepository(AuditRepository):
    """Process-local audit repository for development and tests."""

    def __init__(self):
        self._records: List[AuditRecord] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    def list_for_resource(
        self, resource_id: str, resource_type: Optional[ResourceType] = None
    ) -> List[AuditRecord]:
        with self._lock:
            records = [
                r for r in self._records
                if r.resource_id == resource_id
                and (resource_type is None or r.resource_type == resource_type)
            ]
        return sorted(records, key=lambda r: r.sort_key)

    def last_sequence(self) -> int:
        with self._lock:
            return max((r.sequence for r in self._records), default=0)

    def __len__(self) -> int:
        return len(self._records)


class FileAuditRepository(AuditRepository):
    """
    Audit repository backed by an append-only JSON-lines file.

    One record per line. Reads scan the file; it is an audit trail, not a
    query store.
    """

    def __init__(self, log_file: str = "./data/audit/audit.log"):
        """
        Initialize file repository.

        Args:
            log_file: Path to the audit log file (parent dirs are created)
        """
        self.log_file = Path(log_file)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        line = record.to_json() + "\n"
        try:
            with self._lock:
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(line)
        except OSError as e:
            raise AuditWriteError(
                f"Failed to write audit log: {e}",
                details={"path": str(self.log_file), "record_id": record.record_id},
            ) from e

    def _read_all(self) -> List[AuditRecord]:
        if not self.log_file.exists():
            return []

        records = []
        with self._lock:
            with open(self.log_file, "r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(AuditRecord.from_dict(json.loads(line)))
                    except (ValueError, KeyError) as e:
                        logger.warning(f"Skipping malformed audit line {line_no}: {e}")
        return records

    def list_for_resource(
        self, resource_id: str, resource_type: Optional[ResourceType] = None
    ) -> List[AuditRecord]:
        records = [
            r for r in self._read_all()
            if r.resource_id == resource_id
            and (resource_type is None or r.resource_type == resource_type)
        ]
        return sorted(records, key=lambda r: r.sort_key)

    def last_sequence(self) -> int:
        return max((r.sequence for r in self._read_all()), default=0)
