from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.errors import ApiError
from app.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

# technician_id columns are String(64)
MAX_SUBJECT_LENGTH = 64


class Role(str, enum.Enum):
    TECHNICIAN = "TECHNICIAN"
    SUPERVISOR = "SUPERVISOR"
    ADMIN = "ADMIN"


@dataclass(frozen=True, slots=True)
class Principal:
    subject: str
    role: Role


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    if not settings.jwt_secret:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token verification is not configured.")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip() or len(subject.strip()) > MAX_SUBJECT_LENGTH:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    return payload


def principal_from_claims(claims: dict[str, Any]) -> Principal:
    raw_role = str(claims.get("role") or "").strip().upper()
    try:
        role = Role(raw_role)
    except ValueError as exc:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.") from exc
    return Principal(subject=str(claims["sub"]).strip(), role=role)


def require_roles(*roles: Role) -> Callable[..., Principal]:
    allowed = frozenset(roles)

    def _dependency(
        request: Request,
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    ) -> Principal:
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

        principal = principal_from_claims(decode_token(credentials.credentials))
        if principal.role not in allowed:
            raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")

        request.state.actor = principal.role.value.lower()
        request.state.actor_id = principal.subject
        return principal

    return _dependency


require_technician = require_roles(Role.TECHNICIAN)
require_attendance_viewer = require_roles(Role.ADMIN, Role.SUPERVISOR)
require_any_role = require_roles(*Role)
