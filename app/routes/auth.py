"""
Account routes: registration, password login, token refresh and the
current user.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from pydantic import BaseModel

from ..auth import create_tokens, get_password_hash, get_required_user, rotate_refresh_token, verify_password
from ..config import get_settings
from ..database import get_db
from ..limiter import limiter
from ..logging_config import api_logger as logger
from ..models.user import User
from ..responses import ApiException, Unauthorized
from ..schemas.auth import UserCreate, UserLogin, UserResponse
from ..services import wallet

settings = get_settings()

router = APIRouter(prefix="/api/auth", tags=["auth"])


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshRequest(BaseModel):
    refresh_token: str


def _issue(user: User) -> TokenPair:
    access_token, refresh_token = create_tokens(user.id)
    return TokenPair(access_token=access_token, refresh_token=refresh_token)


def _authenticate(db: Session, email: str, password: str) -> User:
    user = db.query(User).filter(User.email == email.strip().lower()).first()
    if user is None or not verify_password(password, user.hashed_password):
        logger.warning("Login failed", email=email)
        raise Unauthorized("Invalid email or password")
    if not user.is_active:
        raise ApiException(403, "Account disabled", "ACCOUNT_DISABLED")
    return user


@router.post("/register", response_model=UserResponse, status_code=201)
@limiter.limit("3/minute")
def register(request: Request, user_data: UserCreate, db: Session = Depends(get_db)):
    """Create an account; its wallet starts at zero credits."""
    email = user_data.email.lower()
    if db.query(User.id).filter(User.email == email).first():
        raise ApiException(409, "Email already registered", "EMAIL_TAKEN")

    user = User(
        email=email,
        hashed_password=get_password_hash(user_data.password),
        display_name=user_data.display_name or email.split("@")[0],
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ApiException(409, "Email already registered", "EMAIL_TAKEN")
    db.refresh(user)

    wallet.ensure_wallet(db, user.id)
    logger.info("User registered", user_id=user.id)
    return user


@router.post("/login", response_model=TokenPair)
@limiter.limit(settings.login_rate_limit)
def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    """OAuth2 password form; ``username`` is the email."""
    return _issue(_authenticate(db, form_data.username, form_data.password))


@router.post("/login/json", response_model=TokenPair)
@limiter.limit(settings.login_rate_limit)
def login_json(request: Request, credentials: UserLogin, db: Session = Depends(get_db)):
    return _issue(_authenticate(db, credentials.email, credentials.password))


@router.post("/refresh", response_model=TokenPair)
@limiter.limit("10/minute")
def refresh_tokens(request: Request, body: RefreshRequest, db: Session = Depends(get_db)):
    access_token, refresh_token = rotate_refresh_token(body.refresh_token, db)
    return TokenPair(access_token=access_token, refresh_token=refresh_token)


@router.get("/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_required_user)):
    return current_user
