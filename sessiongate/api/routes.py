from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from sessiongate.api.schemas import (
    CreateSessionRequest,
    Envelope,
    ExtendSessionRequest,
    RevokeResponse,
    SessionListResponse,
    SessionSummaryResponse,
    ValidationResponse,
)
from sessiongate.logging import get_logger
from sessiongate.service.errors import ServiceError
from sessiongate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class SessionPrincipal:
    """Credential presented on a request, as forwarded by the upstream verifier."""

    user_id: str
    access_token: str
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_credential(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(
        None, convert_underscores=False, alias="X-User-ID"
    ),
    user_agent: Optional[str] = Header(None),
) -> SessionPrincipal:
    token = _bearer_token(authorization)
    user_id = (x_user_id or "").strip()
    if not token or not user_id:
        raise _http_error("unauthorized", "not authenticated", status_code=401)
    return SessionPrincipal(
        user_id=user_id,
        access_token=token,
        user_agent=user_agent,
        ip_addr=request.client.host if request.client else None,
    )


async def get_session_principal(
    principal: SessionPrincipal = Depends(get_credential),
) -> SessionPrincipal:
    try:
        runtime = get_runtime()
        valid = await runtime.sessions.validate(
            principal.user_id,
            principal.user_agent,
            principal.ip_addr,
            principal.access_token,
        )
    except ServiceError as exc:
        # Fail closed; the cause only reaches the logs
        logger.warning(
            "session_validation_failed",
            user_id=principal.user_id,
            error_code=exc.error_code,
            message=exc.message,
        )
        valid = False
    except Exception as exc:
        logger.error(
            "session_runtime_unavailable",
            user_id=principal.user_id,
            error=str(exc),
        )
        valid = False
    if not valid:
        raise _http_error("unauthorized", "not authenticated", status_code=401)
    return principal


@router.post("/sessions", response_model=Envelope, status_code=201, tags=["sessions"])
async def create_session(
    body: Optional[CreateSessionRequest] = None,
    principal: SessionPrincipal = Depends(get_credential),
):
    runtime = get_runtime()
    body = body or CreateSessionRequest()
    session = await runtime.sessions.create(
        principal.user_id,
        principal.user_agent,
        principal.ip_addr,
        principal.access_token,
        refresh_token=body.refresh_token,
        ttl=timedelta(minutes=body.ttl_minutes) if body.ttl_minutes else None,
    )
    return Envelope(
        status="ok",
        data=SessionSummaryResponse.from_summary(session.summary()).model_dump(mode="json"),
    )


@router.get("/sessions/validate", response_model=Envelope, tags=["sessions"])
async def validate_session(principal: SessionPrincipal = Depends(get_session_principal)):
    return Envelope(
        status="ok",
        data=ValidationResponse(valid=True, user_id=principal.user_id).model_dump(),
    )


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: SessionPrincipal = Depends(get_session_principal)):
    runtime = get_runtime()
    summaries = await runtime.sessions.list_active_sessions(principal.user_id)
    payload = SessionListResponse(
        items=[SessionSummaryResponse.from_summary(s) for s in summaries]
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.post("/sessions/extend", response_model=Envelope, tags=["sessions"])
async def extend_session(
    body: Optional[ExtendSessionRequest] = None,
    principal: SessionPrincipal = Depends(get_session_principal),
):
    runtime = get_runtime()
    body = body or ExtendSessionRequest()
    session = await runtime.sessions.extend_session(
        principal.user_id,
        principal.user_agent,
        principal.ip_addr,
        timedelta(minutes=body.additional_minutes) if body.additional_minutes else None,
    )
    if session is None:
        raise _http_error("not_found", "no active session", status_code=404)
    return Envelope(
        status="ok",
        data=SessionSummaryResponse.from_summary(session.summary()).model_dump(mode="json"),
    )


@router.delete("/sessions/current", response_model=Envelope, tags=["sessions"])
async def logout(principal: SessionPrincipal = Depends(get_session_principal)):
    runtime = get_runtime()
    removed = await runtime.sessions.revoke_credential(
        principal.user_id, principal.access_token
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=int(removed)).model_dump())


@router.delete("/sessions/device", response_model=Envelope, tags=["sessions"])
async def revoke_device_sessions(
    principal: SessionPrincipal = Depends(get_session_principal),
):
    runtime = get_runtime()
    removed = await runtime.sessions.revoke(
        principal.user_id, principal.user_agent, principal.ip_addr
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=int(removed)).model_dump())


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    principal: SessionPrincipal = Depends(get_session_principal),
):
    runtime = get_runtime()
    removed = await runtime.sessions.revoke_all(principal.user_id)
    return Envelope(status="ok", data=RevokeResponse(revoked=removed).model_dump())
