from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.context import DEFAULT_TENANT
from app.platform.security.context import ActorUser


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def _request_correlation_id(request: Request) -> str | None:
    return get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=_request_correlation_id(request),
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def http_error_response(request: Request, exc: HTTPException, fallback_code: str) -> JSONResponse:
    """Render a service-layer HTTPException; dict details carry their own domain code."""
    detail = exc.detail
    if isinstance(detail, dict):
        return error_response(
            request,
            status_code=exc.status_code,
            code=str(detail.get("code", fallback_code)),
            message=str(detail.get("message", fallback_code)),
            details=detail,
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=fallback_code,
        message=str(detail),
        details=detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    context = getattr(request.state, "context", None)
    tenant_id = (
        request.headers.get("x-tenant-id")
        or auth_user.tenant_id
        or getattr(context, "tenant_id", None)
        or DEFAULT_TENANT
    )
    normalized_roles = {str(role).lower() for role in auth_user.roles}

    return ActorUser(
        user_id=auth_user.sub,
        tenant_id=tenant_id,
        permissions=set(auth_user.roles),
        roles=sorted(normalized_roles),
        is_super_admin="admin" in normalized_roles or "system.admin" in normalized_roles,
        correlation_id=_request_correlation_id(request),
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if user.is_super_admin:
        return
    if permission not in user.permissions:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": f"Missing permission: {permission}"},
        )
