from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import sentry_sdk
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session, selectinload

from . import models
from .database import get_db
from .ids import encode_id

if TYPE_CHECKING:
    from .rbac import CollectionPermissionsDetails

# purpose: authenticate bearer tokens and build the per-request viewer context
# status: stable

SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class ViewerContext:
    """Everything a request knows about its authenticated actor.

    Built once per request and passed explicitly down the call chain. The
    collection permission cache is only valid for this request.
    """

    user: models.User
    organization: models.Organization | None
    user_group_ids: list[int] = field(default_factory=list)
    collection_permissions_cache: dict[int, CollectionPermissionsDetails] = field(default_factory=dict)


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _user_from_token(db: Session, token: str) -> models.User | None:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    email = payload.get("sub")
    if not email:
        return None
    user = (
        db.query(models.User)
        .options(selectinload(models.User.group_memberships), selectinload(models.User.organization))
        .filter(models.User.email == email)
        .first()
    )
    if user is None:
        return None
    if user.disabled_at is not None:
        sentry_sdk.capture_message("Found valid token from disabled user")
        return None
    return user


def build_viewer_context(user: models.User) -> ViewerContext:
    sentry_sdk.set_user({"id": encode_id("user", user.id), "email": user.email})
    return ViewerContext(
        user=user,
        organization=user.organization,
        user_group_ids=[membership.user_group_id for membership in user.group_memberships],
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = _user_from_token(db, credentials.credentials)
    if user is None:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    return user


def get_viewer_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> ViewerContext | None:
    """Resolve the optional viewer for GraphQL, where anonymity is not an HTTP error."""

    if credentials is None:
        return None
    user = _user_from_token(db, credentials.credentials)
    if user is None:
        return None
    return build_viewer_context(user)


def get_required_viewer_context(user: models.User = Depends(get_current_user)) -> ViewerContext:
    return build_viewer_context(user)
