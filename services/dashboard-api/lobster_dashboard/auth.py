import datetime as dt
import logging
import os
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import bcrypt
from fastapi import Depends, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models
from .deps import get_session
from .errors import api_error

logger = logging.getLogger("lobster-dashboard.auth")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

JWT_SECRET = os.getenv("JWT_SECRET") or os.getenv("API_JWT_SECRET", "changeme")
JWT_ALGORITHM = os.getenv("JWT_ALG", "HS256")
JWT_EXP_HOURS = int(os.getenv("JWT_EXP_HOURS", os.getenv("API_JWT_EXP_HOURS", "8")))

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"

AuthHandler = Callable[[str, uuid.UUID], Awaitable[None]]


class InvalidToken(Exception):
    pass


class AuthStateFeed:
    """Notifies listeners when a user signs in or out."""

    def __init__(self) -> None:
        self._handlers: list[AuthHandler] = []

    def on_auth_state_change(self, handler: AuthHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def emit(self, event: str, user_id: uuid.UUID) -> None:
        for handler in list(self._handlers):
            try:
                await handler(event, user_id)
            except Exception:
                logger.exception("Auth state handler failed for %s", event)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        try:
            return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
        except ValueError:
            return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict[str, Any], expires_delta: Optional[dt.timedelta] = None) -> str:
    to_encode = data.copy()
    expire = dt.datetime.now(dt.timezone.utc) + (expires_delta or dt.timedelta(hours=JWT_EXP_HOURS))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def token_expires_at(token: str) -> Optional[dt.datetime]:
    """``exp`` of a token that :func:`authenticate_token` already accepted."""

    exp = jwt.get_unverified_claims(token).get("exp")
    if exp is None:
        return None
    return dt.datetime.fromtimestamp(exp, dt.timezone.utc)


async def authenticate_token(token: str, session: AsyncSession) -> models.User:
    """Resolve a bearer token to an active user or raise :class:`InvalidToken`."""

    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as exc:
        raise InvalidToken(str(exc)) from exc
    user_id: str | None = payload.get("sub")
    role: str | None = payload.get("role")
    if user_id is None or role is None:
        raise InvalidToken("missing claims")
    try:
        parsed_id = uuid.UUID(user_id)
    except ValueError as exc:
        raise InvalidToken("malformed subject") from exc
    result = await session.execute(select(models.User).where(models.User.id == parsed_id))
    user = result.scalar_one_or_none()
    if user is None or not user.active:
        raise InvalidToken("unknown or inactive user")
    return user


async def get_current_user(
    token: str = Depends(oauth2_scheme), session: AsyncSession = Depends(get_session)
) -> models.User:
    try:
        return await authenticate_token(token, session)
    except InvalidToken as exc:
        raise api_error(
            status.HTTP_401_UNAUTHORIZED,
            "auth.invalid_token",
            "Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
