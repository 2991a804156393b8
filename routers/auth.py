import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from itsdangerous import BadData, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext
from sqlmodel import Session, select

import activity
import config
from db import SessionDep
from errors import AuthError, ConflictError, ForbiddenError
from models import Role, User, UserStatus
from schemas import (
    AuthData,
    Envelope,
    LoginData,
    PasswordChange,
    ProfileUpdate,
    UserCreate,
    UserRead,
)

log = logging.getLogger("resourcehub.auth")

router = APIRouter(tags=["auth"])

serializer = URLSafeTimedSerializer(config.SECRET_KEY, salt="resourcehub-auth")

pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)

bearer_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user: User) -> str:
    """
    Sign the user's identity into a bearer token.
    Example payload:
        {"id": 3, "email": "ana@example.com", "role": "customer"}
    """
    return serializer.dumps({"id": user.id, "email": user.email, "role": Role(user.role).value})


def read_access_token(token: str, max_age_seconds: Optional[int] = None) -> dict:
    """
    Returns the token payload, or raises AuthError if the token is
    invalid or expired.
    """
    max_age = config.TOKEN_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
    try:
        return serializer.loads(token, max_age=max_age)
    except SignatureExpired:
        raise AuthError("Token expired, please login again") from None
    except BadData:
        raise AuthError("Invalid token, authorization denied") from None


def _check_can_sign_in(user: User) -> None:
    if user.is_blocked:
        raise ForbiddenError("Your account has been blocked. Please contact admin.")
    if user.status != UserStatus.active:
        raise ForbiddenError("Your account is inactive. Please contact admin.")


def get_current_user(
    session: SessionDep,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    """
    Reads the bearer token, verifies it and loads the user.
    Raises 401 if not logged in / invalid, 403 if the account is blocked.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("No token provided, authorization denied")

    data = read_access_token(credentials.credentials)

    user = session.get(User, data.get("id"))
    if user is None:
        raise AuthError("User not found for this token")
    _check_can_sign_in(user)
    return user


CurrentUserDep = Annotated[User, Depends(get_current_user)]


def get_optional_user(
    session: SessionDep,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[User]:
    """Like get_current_user, but returns None instead of raising."""
    if credentials is None:
        return None
    try:
        return get_current_user(session, credentials)
    except (AuthError, ForbiddenError):
        return None


OptionalUserDep = Annotated[Optional[User], Depends(get_optional_user)]


def require_admin(user: CurrentUserDep) -> User:
    if not user.is_admin:
        raise ForbiddenError("Admin access required")
    return user


AdminDep = Annotated[User, Depends(require_admin)]


def ensure_admin(session: Session, email: str, password: str) -> User:
    """Create the admin account, or promote and unblock an existing one."""
    email = email.strip().lower()
    user = session.exec(select(User).where(User.email == email)).first()
    if user is None:
        user = User(
            first_name="Admin",
            last_name="User",
            email=email,
            password_hash=hash_password(password),
            role=Role.admin,
            department="Administration",
            is_verified=True,
        )
        log.info("Admin account %s created", email)
    else:
        user.role = Role.admin
        user.is_blocked = False
        user.status = UserStatus.active
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@router.post("/register", status_code=201, response_model=Envelope[AuthData])
def register(user_in: UserCreate, session: SessionDep):
    """Register a new customer account and hand back a token."""
    existing = session.exec(
        select(User).where(User.email == user_in.email)
    ).first()
    if existing:
        raise ConflictError("User with this email already exists")

    user = User(
        first_name=user_in.first_name.strip(),
        last_name=user_in.last_name.strip(),
        email=user_in.email,
        password_hash=hash_password(user_in.password),
        company=user_in.company,
        phone=user_in.phone,
        department=user_in.department,
        role=Role.customer,
    )
    session.add(user)
    session.commit()
    session.refresh(user)

    token = create_access_token(user)
    data = AuthData(token=token, user=UserRead.model_validate(user))

    activity.record(session, user.id, "user_registered", "user", user.id, {"email": user_in.email})
    return Envelope(message="User registered successfully", data=data)


@router.post("/login", response_model=Envelope[AuthData])
def login(payload: LoginData, session: SessionDep):
    user = session.exec(
        select(User).where(User.email == payload.email)
    ).first()

    if user is None or not verify_password(payload.password, user.password_hash):
        raise AuthError("Invalid email or password")

    _check_can_sign_in(user)

    token = create_access_token(user)
    data = AuthData(token=token, user=UserRead.model_validate(user))

    activity.record(session, user.id, "user_login", "user", user.id, {"email": payload.email})
    return Envelope(message="Login successful", data=data)


@router.get("/me", response_model=Envelope[UserRead])
@router.get("/profile", response_model=Envelope[UserRead])
def read_me(current: CurrentUserDep):
    """Get info about the currently logged-in user."""
    return Envelope(data=UserRead.model_validate(current))


@router.put("/profile", response_model=Envelope[UserRead])
def update_profile(update: ProfileUpdate, session: SessionDep, current: CurrentUserDep):
    changes = update.model_dump(exclude_unset=True, exclude_none=True)
    for key, value in changes.items():
        setattr(current, key, value)
    session.add(current)
    session.commit()
    session.refresh(current)
    data = UserRead.model_validate(current)

    activity.record(session, current.id, "profile_updated", "user", current.id, changes)
    return Envelope(message="Profile updated successfully", data=data)


@router.put("/change-password", response_model=Envelope)
def change_password(payload: PasswordChange, session: SessionDep, current: CurrentUserDep):
    if not verify_password(payload.current_password, current.password_hash):
        raise AuthError("Current password is incorrect")

    current.password_hash = hash_password(payload.new_password)
    session.add(current)
    session.commit()

    activity.record(session, current.id, "password_changed", "user", current.id)
    return Envelope(message="Password changed successfully")
