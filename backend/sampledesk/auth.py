from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.sampledesk.settings import Settings

# Chat participants (admin/steward/agent) never hold API tokens. The HTTP
# surface knows two callers: operators managing the desk and the gateway.
API_ROLES = frozenset({"admin", "service"})

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    roles: frozenset[str]

    def has_any(self, roles: frozenset[str]) -> bool:
        return not roles or not self.roles.isdisjoint(roles)


class TokenError(Exception):
    def __init__(self, detail: str, status_code: int = status.HTTP_401_UNAUTHORIZED) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


def decode_token(token: str, settings: Settings) -> AuthContext:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise TokenError("auth token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenError("invalid auth token") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise TokenError("token missing subject")
    claimed = payload.get("roles", [])
    if not isinstance(claimed, list):
        raise TokenError("token roles must be a list")
    roles = frozenset(str(role).strip() for role in claimed) & API_ROLES
    if not roles:
        raise TokenError("token grants no desk roles", status.HTTP_403_FORBIDDEN)
    return AuthContext(user_id=subject.strip(), roles=roles)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        return AuthContext(user_id="dev-local", roles=API_ROLES)
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing bearer token")
    try:
        return decode_token(credentials.credentials, settings)
    except TokenError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = frozenset(role.strip() for role in required_roles if role.strip())
    unknown = required - API_ROLES
    if unknown:
        raise ValueError(f"unknown api roles: {sorted(unknown)}")

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not context.has_any(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency


require_admin = require_roles("admin")
require_operator = require_roles("admin", "service")
