"""Pydantic models for bus responses."""

from typing import Optional

from pydantic import BaseModel, Field

from installer.models.session import StatusSnapshot
from installer.services.disks import Disk


class CommandResponse(BaseModel):
    """Ack for command endpoints (install, begin, retry, abort, reset).

    Carries the snapshot right after the command was applied.
    """

    code: int = Field(default=200, description="Application-level status code (200)")
    msg: str = Field(default="success", description="Success message")
    data: StatusSnapshot


class StatusResponse(BaseModel):
    """GET /api/v1.0/status response.

    Example:
        {
            "code": 200,
            "msg": "success",
            "data": {
                "state": "running",
                "session": {"session_id": "...", "current_stage": 2, ...},
                "last_seq": 17
            }
        }
    """

    code: int = Field(default=200, description="Application-level status code")
    msg: str = Field(default="success")
    data: StatusSnapshot


class DisksResponse(BaseModel):
    """GET /api/v1.0/disks response."""

    code: int = 200
    msg: str = "success"
    data: list[Disk]


class ErrorResponse(BaseModel):
    """Error response for all endpoints.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(..., description="Application-level error code (400/403/404/409/500)")
    msg: str = Field(..., description="Human-readable error message")
    error: str = Field(..., description="Error name, e.g. 'Forbidden' or 'InvalidConfig'")
    state: Optional[str] = Field(None, description="Session state when the error occurred")
