"""
Audit trail query endpoint.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from feedback_hub.api.dependencies import get_audit_sink
from feedback_hub.audit.models import ResourceType
from feedback_hub.audit.sink import AuditSink
from feedback_hub.auth.middleware import get_admin_token

router = APIRouter(prefix="/v1/audit", tags=["audit"], dependencies=[Depends(get_admin_token)])


class AuditRecordResponse(BaseModel):
    record_id: str
    action: str
    resource_type: str
    resource_id: Optional[str]
    actor_id: Optional[str]
    details: Dict[str, Any]
    created_at: str
    sequence: int


@router.get("", response_model=List[AuditRecordResponse])
async def list_audit_records(
    resource_id: str = Query(..., description="Resource identity"),
    resource_type: Optional[ResourceType] = Query(None),
    audit: AuditSink = Depends(get_audit_sink),
):
    """Audit records for one resource, oldest first."""
    records = audit.list_for_resource(resource_id, resource_type)
    return [AuditRecordResponse(**record.to_dict()) for record in records]
