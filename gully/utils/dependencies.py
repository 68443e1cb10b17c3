"""
Request-scoped auth dependencies.

The caller's identity is decoded from the bearer token once per request and
handed to services as an explicit ``Principal``.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .errors import Unauthorized, Forbidden
from .logging_config import user_id_var
from .security import verify_access_token

bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str = "player"
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    token = credentials.credentials if credentials else request.cookies.get("access_token")
    if not token:
        raise Unauthorized("Authentication token missing")

    payload = verify_access_token(token)
    if not payload:
        raise Unauthorized("Invalid or expired token")

    user_id = payload.get("sub") or payload.get("user_id") or payload.get("id")
    if not user_id:
        raise Unauthorized("Token does not identify a user")

    user_id_var.set(str(user_id))
    return Principal(user_id=str(user_id), role=payload.get("role", "player"), email=payload.get("email"))


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise Forbidden("Admin access required")
    return principal
