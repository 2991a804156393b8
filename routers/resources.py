import logging
from typing import List, Optional

from fastapi import APIRouter, Query
from sqlalchemy import case, delete, func, or_
from sqlmodel import Session, col, select

import activity
import lifecycle
from db import SessionDep
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import (
    Allocation,
    Request,
    Resource,
    ResourceCategory,
    ResourceStatus,
    User,
)
from schemas import (
    CategoryCount,
    CostLine,
    Envelope,
    Page,
    ResourceCreate,
    ResourceRead,
    ResourceStats,
    ResourceUpdate,
    VerifyUpdate,
)
from .auth import AdminDep, CurrentUserDep, OptionalUserDep

log = logging.getLogger("resourcehub.resources")

router = APIRouter(tags=["resources"])
categories_router = APIRouter(tags=["categories"])


def _get_resource(session: Session, resource_id: int) -> Resource:
    resource = session.get(Resource, resource_id)
    if resource is None:
        raise NotFoundError("Resource not found")
    return resource


def paginate_resources(session: Session, query, page: int, limit: int) -> Page[ResourceRead]:
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    rows = session.exec(
        query.order_by(Resource.updated_at.desc(), Resource.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return Page[ResourceRead].build(
        [ResourceRead.model_validate(r) for r in rows], total, page, limit
    )


def filter_resources(
    query,
    search: Optional[str] = None,
    category: Optional[ResourceCategory] = None,
    status: Optional[ResourceStatus] = None,
    is_verified: Optional[bool] = None,
):
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(
            or_(col(Resource.name).ilike(pattern), col(Resource.description).ilike(pattern))
        )
    if category is not None:
        query = query.where(Resource.category == category)
    if status is not None:
        query = query.where(Resource.status == status)
    if is_verified is not None:
        query = query.where(Resource.is_verified == is_verified)
    return query


def resource_stats(session: Session) -> ResourceStats:
    row = session.exec(
        select(
            func.count(Resource.id),
            func.sum(case((Resource.status == ResourceStatus.available, 1), else_=0)),
            func.sum(case((Resource.status == ResourceStatus.in_use, 1), else_=0)),
            func.sum(case((Resource.status == ResourceStatus.maintenance, 1), else_=0)),
            func.sum(case((Resource.status == ResourceStatus.retired, 1), else_=0)),
            func.sum(case((col(Resource.is_verified).is_(False), 1), else_=0)),
        )
    ).one()
    by_category = session.exec(
        select(Resource.category, func.count(Resource.id)).group_by(Resource.category)
    ).all()
    return ResourceStats(
        total=row[0] or 0,
        available=row[1] or 0,
        in_use=row[2] or 0,
        maintenance=row[3] or 0,
        retired=row[4] or 0,
        unverified=row[5] or 0,
        categories=[
            CategoryCount(category=ResourceCategory(cat).value, count=n)
            for cat, n in by_category
        ],
    )


def cost_overview(session: Session) -> List[CostLine]:
    rows = session.exec(
        select(
            Resource.category,
            func.sum(Resource.cost_per_unit * Resource.quantity),
            func.count(Resource.id),
        ).group_by(Resource.category)
    ).all()
    return [
        CostLine(category=ResourceCategory(cat).value, total_cost=float(total or 0), count=n)
        for cat, total, n in rows
    ]


@router.get("/", response_model=Envelope[Page[ResourceRead]])
def list_resources(
    session: SessionDep,
    search: Optional[str] = None,
    category: Optional[ResourceCategory] = None,
    status: Optional[ResourceStatus] = None,
    is_verified: bool = True,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    """
    List resources, optionally filtered by a name/description substring,
    category and status. Only verified resources are listed unless
    is_verified=false is asked for.
    """
    query = filter_resources(select(Resource), search, category, status, is_verified)

    return Envelope(data=paginate_resources(session, query, page, limit))


@router.get("/available", response_model=Envelope[Page[ResourceRead]])
def list_available_resources(
    session: SessionDep,
    current: OptionalUserDep,
    search: Optional[str] = None,
    category: Optional[ResourceCategory] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
):
    """Resources that can be requested right now; a signed-in caller's own listings are left out."""
    query = filter_resources(
        select(Resource).where(Resource.available_qty > 0),
        search,
        category,
        status=ResourceStatus.available,
        is_verified=True,
    )
    if current is not None:
        query = query.where(
            or_(col(Resource.owner_id).is_(None), Resource.owner_id != current.id)
        )
    return Envelope(data=paginate_resources(session, query, page, limit))


@router.get("/mine", response_model=Envelope[List[ResourceRead]])
def list_my_resources(session: SessionDep, current: CurrentUserDep):
    rows = session.exec(
        select(Resource).where(Resource.owner_id == current.id).order_by(Resource.id.desc())
    ).all()
    return Envelope(data=[ResourceRead.model_validate(r) for r in rows])


@router.get("/stats", response_model=Envelope[ResourceStats])
def get_resource_stats(session: SessionDep, admin: AdminDep):
    return Envelope(data=resource_stats(session))


@router.get("/cost-overview", response_model=Envelope[List[CostLine]])
def get_cost_overview(session: SessionDep, admin: AdminDep):
    return Envelope(data=cost_overview(session))


@router.get("/{resource_id}", response_model=Envelope[ResourceRead])
def get_resource(resource_id: int, session: SessionDep):
    resource = _get_resource(session, resource_id)
    return Envelope(data=ResourceRead.model_validate(resource))


@router.post("/", status_code=201, response_model=Envelope[ResourceRead])
def create_resource(resource_in: ResourceCreate, session: SessionDep, current: CurrentUserDep):
    """
    List a new resource. Non-admins always own what they list; an admin
    creates an unowned (admin-managed) resource unless owner_id is given.
    """
    owner_id = current.id
    if current.is_admin:
        owner_id = resource_in.owner_id
        if owner_id is not None and session.get(User, owner_id) is None:
            raise ValidationError("owner_id does not reference an existing user")

    resource = Resource(
        name=resource_in.name.strip(),
        description=resource_in.description,
        category=resource_in.category,
        condition=resource_in.condition,
        location=resource_in.location,
        status=ResourceStatus.available,
        quantity=resource_in.quantity,
        available_qty=resource_in.quantity,
        cost_per_unit=resource_in.cost_per_unit,
        is_verified=current.is_admin,
        owner_id=owner_id,
    )
    session.add(resource)
    session.commit()
    session.refresh(resource)
    data = ResourceRead.model_validate(resource)

    log.info("Resource %s (%s x%d) created by user %s", resource.id, resource.name, resource.quantity, current.id)
    activity.record(
        session, current.id, "resource_created", "resource", data.id, {"name": data.name}
    )
    return Envelope(message="Resource created successfully", data=data)


@router.put("/{resource_id}", response_model=Envelope[ResourceRead])
def update_resource(
    resource_id: int,
    update: ResourceUpdate,
    session: SessionDep,
    current: CurrentUserDep,
):
    resource = _get_resource(session, resource_id)
    if not lifecycle.can_manage(current, resource):
        raise ForbiddenError("You can only update your own resources")

    changes = update.model_dump(exclude_unset=True, exclude_none=True)

    if changes.get("status") == ResourceStatus.in_use:
        raise ValidationError("Status in-use is managed by allocations")

    # stock goes through the lifecycle so loaned-out units stay accounted for
    if "quantity" in changes:
        lifecycle.set_quantity(session, resource, changes.pop("quantity"))

    if changes.get("status") == ResourceStatus.available and resource.available_qty == 0:
        session.rollback()
        raise ConflictError("A resource with no units left cannot be marked available")

    for key, value in changes.items():
        setattr(resource, key, value)
    session.add(resource)
    session.commit()
    session.refresh(resource)
    data = ResourceRead.model_validate(resource)

    activity.record(
        session,
        current.id,
        "resource_updated",
        "resource",
        resource_id,
        {"fields": sorted(update.model_dump(exclude_unset=True, exclude_none=True))},
    )
    return Envelope(message="Resource updated successfully", data=data)


@router.delete("/{resource_id}", response_model=Envelope)
def delete_resource(resource_id: int, session: SessionDep, current: CurrentUserDep):
    resource = _get_resource(session, resource_id)
    if not lifecycle.can_manage(current, resource):
        raise ForbiddenError("You can only delete your own resources")

    name = resource.name

    # allocations reference requests, so they go first
    session.exec(delete(Allocation).where(Allocation.resource_id == resource_id))
    session.exec(delete(Request).where(Request.resource_id == resource_id))
    session.delete(resource)
    session.commit()

    log.info("Resource %s deleted by user %s", resource_id, current.id)
    activity.record(session, current.id, "resource_deleted", "resource", resource_id, {"name": name})
    return Envelope(message="Resource deleted successfully")


@router.put("/{resource_id}/verify", response_model=Envelope[ResourceRead])
def verify_resource(resource_id: int, payload: VerifyUpdate, session: SessionDep, admin: AdminDep):
    resource = _get_resource(session, resource_id)
    resource.is_verified = payload.is_verified
    session.add(resource)
    session.commit()
    session.refresh(resource)
    data = ResourceRead.model_validate(resource)

    activity.record(
        session,
        admin.id,
        "resource_verified",
        "resource",
        resource_id,
        {"is_verified": payload.is_verified},
    )
    state = "verified" if payload.is_verified else "unverified"
    return Envelope(message=f"Resource {state} successfully", data=data)


def _category_counts(session: Session) -> dict:
    # public counts only include verified resources
    return dict(
        session.exec(
            select(Resource.category, func.count(Resource.id))
            .where(col(Resource.is_verified).is_(True))
            .group_by(Resource.category)
        ).all()
    )


@categories_router.get("/", response_model=Envelope[List[CategoryCount]])
def list_categories(session: SessionDep):
    counts = _category_counts(session)
    return Envelope(
        data=[CategoryCount(category=c.value, count=counts.get(c, 0)) for c in ResourceCategory]
    )


@categories_router.get("/{category}", response_model=Envelope[CategoryCount])
def get_category(category: str, session: SessionDep):
    try:
        found = ResourceCategory(category.strip().lower())
    except ValueError:
        raise NotFoundError("Category not found") from None
    count = _category_counts(session).get(found, 0)
    return Envelope(data=CategoryCount(category=found.value, count=count))
