"""
Payload schemas per lane.

Payloads keep the camelCase field names the web front end and the original
request handlers use on the wire; the models accept either spelling.
"""

from typing import Any, Dict, Literal, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictInt, field_validator
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError
from feedback_hub.jobs.models import Lane

ANALYTICS_TASKS = ("updateSentiment", "updateCourseAvg")


class LanePayload(BaseModel):
    """Base for lane payloads: unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, str_strip_whitespace=True)


class SendEmailPayload(LanePayload):
    to: EmailStr
    subject: str = Field(..., min_length=1, max_length=998)
    text: str
    html: Optional[str] = None


class NotifyAdminPayload(LanePayload):
    course: str = Field(..., min_length=1)
    rating: StrictInt = Field(..., ge=1, le=5)
    student: EmailStr


class NotifyStudentPayload(LanePayload):
    student_id: str = Field(..., alias="studentId", min_length=1)
    message: str = Field(..., min_length=1)

    @field_validator("student_id", mode="before")
    @classmethod
    def coerce_identity(cls, v: Any) -> Any:
        """Identities may arrive as integers from some stores."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class SendReportPayload(LanePayload):
    admin_email: EmailStr = Field(..., alias="adminEmail")
    report_path: str = Field(..., alias="reportPath", min_length=1)


class AnalyticsPayload(LanePayload):
    task: Literal["updateSentiment", "updateCourseAvg"]


PAYLOAD_MODELS: Dict[Lane, Type[LanePayload]] = {
    Lane.SEND_EMAIL: SendEmailPayload,
    Lane.NOTIFY_ADMIN: NotifyAdminPayload,
    Lane.NOTIFY_STUDENT: NotifyStudentPayload,
    Lane.SEND_REPORT: SendReportPayload,
    Lane.ANALYTICS: AnalyticsPayload,
}


def parse_payload(lane: Lane, payload: Mapping[str, Any]) -> LanePayload:
    """
    Validate a payload against its lane schema.

    Raises:
        ValidationError: payload is not a mapping or fails the schema
    """
    if not isinstance(payload, Mapping):
        raise ValidationError(
            f"Payload for {lane.value} must be a mapping",
            details={"lane": lane.value},
        )

    model = PAYLOAD_MODELS[lane]
    try:
        return model.model_validate(dict(payload))
    except PydanticValidationError as e:
        errors = [
            {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
            for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid payload for lane {lane.value}",
            details={"lane": lane.value, "error_count": len(errors)},
            errors=errors,
        ) from None


def normalize_payload(lane: Lane, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate and return the payload in its stored (wire-name) form."""
    return parse_payload(lane, payload).model_dump(by_alias=True, exclude_none=True)
