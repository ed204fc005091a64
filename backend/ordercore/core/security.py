from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from ordercore.core.config import settings


def create_admin_token(subject: str, email: str | None = None, expires_delta: timedelta = timedelta(hours=8)) -> str:
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"sub": subject, "email": email, "role": "admin", "type": "access", "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict[str, Any]]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
