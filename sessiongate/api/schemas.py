from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessiongate.storage.models import SessionSummary

MAX_CREDENTIAL_LENGTH = 8192
MAX_EXTENSION_MINUTES = 60 * 24 * 30

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    refresh_token: Optional[str] = Field(None, max_length=MAX_CREDENTIAL_LENGTH)
    ttl_minutes: Optional[int] = Field(
        None, gt=0, le=MAX_EXTENSION_MINUTES, description="Defaults to the configured TTL"
    )


class ExtendSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    additional_minutes: Optional[int] = Field(
        None, gt=0, le=MAX_EXTENSION_MINUTES, description="Defaults to the configured TTL"
    )


class SessionSummaryResponse(BaseModel):
    """Session metadata without credential material."""

    id: str
    device_fingerprint: str
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    @classmethod
    def from_summary(cls, summary: SessionSummary) -> "SessionSummaryResponse":
        return cls(
            id=summary.id,
            device_fingerprint=summary.device_fingerprint,
            ip_addr=summary.ip_addr,
            user_agent=summary.user_agent,
            created_at=summary.created_at,
            updated_at=summary.updated_at,
            expires_at=summary.expires_at,
        )


class SessionListResponse(BaseModel):
    items: List[SessionSummaryResponse]


class RevokeResponse(BaseModel):
    revoked: int


class ValidationResponse(BaseModel):
    valid: bool
    user_id: str
