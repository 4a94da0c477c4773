import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .. import auth as auth_utils
from .. import models, schemas
from ..deps import get_auth_feed, get_session
from ..errors import api_error

router = APIRouter()

logger = logging.getLogger("lobster-dashboard.auth")


@router.post("/login", response_model=schemas.Token)
async def login(
    payload: schemas.LoginRequest,
    session: AsyncSession = Depends(get_session),
    auth_feed: auth_utils.AuthStateFeed = Depends(get_auth_feed),
) -> schemas.Token:
    result = await session.execute(select(models.User).where(models.User.username == payload.username))
    user = result.scalar_one_or_none()
    if user is None or not auth_utils.verify_password(payload.password, user.password_hash):
        logger.info("Failed login for %s", payload.username)
        raise api_error(status.HTTP_401_UNAUTHORIZED, "auth.invalid_credentials", "Invalid credentials")
    if not user.active:
        raise api_error(status.HTTP_403_FORBIDDEN, "auth.inactive_user", "Inactive user")
    token = auth_utils.create_access_token({"sub": str(user.id), "role": user.role})
    await auth_feed.emit(auth_utils.SIGNED_IN, user.id)
    return schemas.Token(access_token=token)


@router.post("/refresh", response_model=schemas.Token)
async def refresh(user: models.User = Depends(auth_utils.get_current_user)) -> schemas.Token:
    token = auth_utils.create_access_token({"sub": str(user.id), "role": user.role})
    return schemas.Token(access_token=token)


@router.get("/me", response_model=schemas.UserProfile)
async def me(user: models.User = Depends(auth_utils.get_current_user)) -> schemas.UserProfile:
    return schemas.UserProfile(
        id=user.id,
        username=user.username,
        role=user.role,
        active=user.active,
        created_at=user.created_at,
    )


@router.post("/logout", status_code=204)
async def logout(
    user: models.User = Depends(auth_utils.get_current_user),
    auth_feed: auth_utils.AuthStateFeed = Depends(get_auth_feed),
) -> None:
    await auth_feed.emit(auth_utils.SIGNED_OUT, user.id)
    return None
