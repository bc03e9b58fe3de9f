from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
from telecare.core.config import settings


class InvalidToken(Exception):
    pass


def create_access_token(
        subject: str,
        extra: Optional[dict] = None,
        expires_minutes: int | None = None
        ) -> str:
    to_encode = {"sub": subject, "iat": datetime.now(tz=timezone.utc)}
    if extra:
        to_encode.update(extra)
    expire = datetime.now(tz=timezone.utc) + timedelta(
        minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Returns the verified claims. Tokens are issued by the identity service;
    `sub` and `role` are trusted as-is.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise InvalidToken("Invalid or expired token") from exc

    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub:
        raise InvalidToken("Invalid token payload")
    if not payload.get("role"):
        raise InvalidToken("Token carries no role")
    return payload
