"""
Password hashing and JWT bearer tokens.

Access and refresh tokens share the signing key and are told apart by a
``type`` claim; ``sub`` carries the user id as a string.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from .database import get_db
from .models.user import User
from .config import get_settings
from .responses import Unauthorized

settings = get_settings()

ACCESS = "access"
REFRESH = "refresh"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def _encode(claims: dict, token_type: str, lifetime: timedelta) -> str:
    payload = {**claims, "exp": datetime.now(timezone.utc) + lifetime, "type": token_type}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    return _encode(data, ACCESS, lifetime)


def create_tokens(user_id: int) -> Tuple[str, str]:
    """Access + refresh pair for one user."""
    claims = {"sub": str(user_id)}
    return (
        create_access_token(claims),
        _encode(claims, REFRESH, timedelta(days=settings.refresh_token_expire_days)),
    )


def decode_user_id(token: str, expected_type: str = ACCESS) -> Optional[int]:
    """User id from a valid token of the expected type, else None."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type", ACCESS) != expected_type:
        return None
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None


def _active_user(db: Session, user_id: Optional[int]) -> Optional[User]:
    if user_id is None:
        return None
    user = db.query(User).filter(User.id == user_id).first()
    return user if user and user.is_active else None


def get_required_user(
    token: Optional[str] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Route dependency: the bearer's user, or 401."""
    user = _active_user(db, decode_user_id(token)) if token else None
    if user is None:
        raise Unauthorized()
    return user


def rotate_refresh_token(refresh_token: str, db: Session) -> Tuple[str, str]:
    """Exchange a refresh token for a new pair; the user must still be active."""
    user = _active_user(db, decode_user_id(refresh_token, REFRESH))
    if user is None:
        raise Unauthorized("Invalid or expired refresh token")
    return create_tokens(user.id)
