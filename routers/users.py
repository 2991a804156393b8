# routers/users.py
import logging
from typing import Optional

from fastapi import APIRouter, Query
from sqlalchemy import case, delete, func, or_, update
from sqlmodel import Session, col, select

import activity
import lifecycle
from db import SessionDep
from errors import ConflictError, NotFoundError, ValidationError
from models import Activity, Request, Resource, Role, User, UserStatus
from schemas import (
    AdminUserCreate,
    AdminUserUpdate,
    BlockUpdate,
    Envelope,
    Page,
    UserCounts,
    UserRead,
    VerifyUpdate,
)
from .auth import AdminDep, hash_password

log = logging.getLogger("resourcehub.users")

router = APIRouter(tags=["users"])


def _get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _email_taken(session: Session, email: str, exclude_id: Optional[int] = None) -> bool:
    query = select(User.id).where(User.email == email)
    if exclude_id is not None:
        query = query.where(User.id != exclude_id)
    return session.exec(query).first() is not None


def user_counts(session: Session) -> UserCounts:
    row = session.exec(
        select(
            func.count(User.id),
            func.sum(case((User.status == UserStatus.active, 1), else_=0)),
            func.sum(case((User.status == UserStatus.inactive, 1), else_=0)),
            func.sum(case((User.role == Role.admin, 1), else_=0)),
            func.sum(case((col(User.is_blocked).is_(True), 1), else_=0)),
        )
    ).one()
    return UserCounts(
        total=row[0] or 0,
        active=row[1] or 0,
        inactive=row[2] or 0,
        admins=row[3] or 0,
        blocked=row[4] or 0,
    )


@router.get("/", response_model=Envelope[Page[UserRead]])
def list_users(
    session: SessionDep,
    admin: AdminDep,
    search: Optional[str] = None,
    role: Optional[Role] = None,
    status: Optional[UserStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    query = select(User)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(
            or_(
                col(User.first_name).ilike(pattern),
                col(User.last_name).ilike(pattern),
                col(User.email).ilike(pattern),
            )
        )
    if role is not None:
        query = query.where(User.role == role)
    if status is not None:
        query = query.where(User.status == status)

    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    users = session.exec(
        query.order_by(User.created_at.desc(), User.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return Envelope(
        data=Page[UserRead].build(
            [UserRead.model_validate(u) for u in users], total, page, limit
        )
    )


@router.get("/{user_id}", response_model=Envelope[UserRead])
def get_user(user_id: int, session: SessionDep, admin: AdminDep):
    """
    Get a single user by ID.
    """
    return Envelope(data=UserRead.model_validate(_get_user(session, user_id)))


@router.post("/", status_code=201, response_model=Envelope[UserRead])
def create_user(user_in: AdminUserCreate, session: SessionDep, admin: AdminDep):
    if _email_taken(session, user_in.email):
        raise ConflictError("Email already in use")

    user = User(
        first_name=user_in.first_name.strip(),
        last_name=user_in.last_name.strip(),
        email=user_in.email,
        password_hash=hash_password(user_in.password),
        company=user_in.company,
        phone=user_in.phone,
        department=user_in.department,
        role=user_in.role,
        status=user_in.status,
        is_verified=user_in.is_verified,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    data = UserRead.model_validate(user)

    activity.record(
        session,
        admin.id,
        "user_created_by_admin",
        "user",
        data.id,
        {"email": data.email, "role": data.role.value},
    )
    return Envelope(message="User created successfully", data=data)


@router.put("/{user_id}", response_model=Envelope[UserRead])
def update_user(user_id: int, update_in: AdminUserUpdate, session: SessionDep, admin: AdminDep):
    user = _get_user(session, user_id)
    changes = update_in.model_dump(exclude_unset=True, exclude_none=True)

    if "email" in changes and _email_taken(session, changes["email"], exclude_id=user.id):
        raise ConflictError("Email already in use")
    if user.id == admin.id and changes.get("role", Role.admin) != Role.admin:
        raise ValidationError("You cannot remove your own admin role")
    if user.id == admin.id and changes.get("status", UserStatus.active) != UserStatus.active:
        raise ValidationError("You cannot deactivate your own account")

    password = changes.pop("password", None)
    if password:
        user.password_hash = hash_password(password)
    for key, value in changes.items():
        setattr(user, key, value)

    session.add(user)
    session.commit()
    session.refresh(user)
    data = UserRead.model_validate(user)

    activity.record(
        session,
        admin.id,
        "user_updated",
        "user",
        user_id,
        {"fields": sorted(changes) + (["password"] if password else [])},
    )
    return Envelope(message="User updated successfully", data=data)


@router.put("/{user_id}/verify", response_model=Envelope[UserRead])
def verify_user(user_id: int, payload: VerifyUpdate, session: SessionDep, admin: AdminDep):
    user = _get_user(session, user_id)
    user.is_verified = payload.is_verified
    session.add(user)
    session.commit()
    session.refresh(user)
    data = UserRead.model_validate(user)

    activity.record(
        session, admin.id, "user_verified", "user", user_id, {"is_verified": payload.is_verified}
    )
    state = "verified" if payload.is_verified else "unverified"
    return Envelope(message=f"User {state} successfully", data=data)


@router.put("/{user_id}/block", response_model=Envelope[UserRead])
def block_user(user_id: int, payload: BlockUpdate, session: SessionDep, admin: AdminDep):
    user = _get_user(session, user_id)
    if user.id == admin.id and payload.is_blocked:
        raise ValidationError("You cannot block your own account")
    user.is_blocked = payload.is_blocked
    session.add(user)
    session.commit()
    session.refresh(user)
    data = UserRead.model_validate(user)

    activity.record(
        session, admin.id, "user_blocked", "user", user_id, {"is_blocked": payload.is_blocked}
    )
    state = "blocked" if payload.is_blocked else "unblocked"
    return Envelope(message=f"User {state} successfully", data=data)


@router.delete("/{user_id}", response_model=Envelope)
def delete_user(user_id: int, session: SessionDep, admin: AdminDep):
    user = _get_user(session, user_id)

    if user.id == admin.id:
        raise ValidationError("You cannot delete your own account")

    email = user.email

    # 1) Hand back any stock the user still holds, drop their allocations
    released = lifecycle.release_user_allocations(session, user_id)

    # 2) Delete all requests *made by* this user
    session.exec(delete(Request).where(Request.user_id == user_id))

    # 3) Detach everything else that merely points at the user
    session.exec(update(Request).where(Request.reviewed_by == user_id).values(reviewed_by=None))
    session.exec(update(Resource).where(Resource.owner_id == user_id).values(owner_id=None))
    session.exec(update(Resource).where(Resource.assigned_to == user_id).values(assigned_to=None))
    session.exec(update(Activity).where(Activity.user_id == user_id).values(user_id=None))

    # 4) Finally, delete the user record itself
    session.delete(user)
    session.commit()

    log.info("User %s deleted by admin %s (%d allocation(s) released)", user_id, admin.id, released)
    activity.record(
        session, admin.id, "user_deleted", "user", user_id, {"email": email, "released": released}
    )
    return Envelope(message="User deleted successfully")
