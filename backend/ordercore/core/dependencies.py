from dataclasses import dataclass

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ordercore.core.errors import Forbidden, Unauthorized
from ordercore.core.security import decode_token

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AdminPrincipal:
    id: str
    email: str | None = None


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AdminPrincipal:
    if credentials is None:
        raise Unauthorized("Admin authentication required")

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access":
        raise Unauthorized("Invalid token")

    subject = str(payload.get("sub") or "").strip()
    if not subject:
        raise Unauthorized("Invalid token payload")
    if payload.get("role") != "admin":
        raise Forbidden("Admin access required")

    return AdminPrincipal(id=subject, email=payload.get("email") or None)
