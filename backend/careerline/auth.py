import os
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .database import get_db
from .errors import AuthenticationRequired
from . import models

SECRET_KEY = os.getenv("SECRET_KEY", "careerline-dev-secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _user_from_token(db: Session, token: str) -> models.User:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError as exc:
        raise AuthenticationRequired("Invalid or expired token") from exc
    email = payload.get("sub")
    if not email:
        raise AuthenticationRequired("Invalid or expired token")
    user = db.query(models.User).filter(models.User.email == email).first()
    if user is None:
        raise AuthenticationRequired("Invalid or expired token")
    return user


def resolve_request_user(
    request: Request,
    db: Session,
    credentials: HTTPAuthorizationCredentials | None,
) -> models.User | None:
    """Resolve the caller from request state first, then the bearer token."""

    state_user_id = getattr(request.state, "user_id", None)
    if state_user_id:
        try:
            user = db.get(models.User, UUID(str(state_user_id)))
        except ValueError as exc:
            raise AuthenticationRequired() from exc
        if user is None:
            raise AuthenticationRequired()
        return user

    state_user = getattr(request.state, "user", None)
    if state_user is not None:
        user_id = getattr(state_user, "id", None)
        if user_id is None and isinstance(state_user, dict):
            user_id = state_user.get("id")
        if user_id is not None:
            try:
                user = db.get(models.User, UUID(str(user_id)))
            except ValueError as exc:
                raise AuthenticationRequired() from exc
            if user is None:
                raise AuthenticationRequired()
            return user

    if credentials is not None and credentials.credentials:
        return _user_from_token(db, credentials.credentials)
    return None


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> models.User:
    user = resolve_request_user(request, db, credentials)
    if user is None or not user.is_active:
        raise AuthenticationRequired()
    return user


def get_optional_user(
    request: Request,
    db: Session = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> models.User | None:
    user = resolve_request_user(request, db, credentials)
    if user is not None and not user.is_active:
        return None
    return user
