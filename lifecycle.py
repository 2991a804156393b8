"""
Request lifecycle: the legal status transitions of a Request and the
stock bookkeeping on Resource / Allocation that goes with them.

Every counter change is a conditional UPDATE inside the caller's
transaction, so two concurrent approvals of the last unit cannot both
succeed. Audit entries are written after the commit, best-effort.
"""
import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

import activity
import config
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import (
    OUTSTANDING_ALLOCATION_STATUSES,
    Allocation,
    AllocationStatus,
    Priority,
    Request,
    RequestStatus,
    Resource,
    ResourceStatus,
    User,
    utcnow,
)

log = logging.getLogger("resourcehub.lifecycle")

PENDING_DUPLICATE = "You already have a pending request for this resource"


def _exec_update(session: Session, stmt) -> int:
    result = session.exec(stmt.execution_options(synchronize_session=False))
    return result.rowcount


def _get_request(session: Session, request_id: int) -> Request:
    req = session.get(Request, request_id)
    if req is None:
        raise NotFoundError("Request not found")
    return req


def _get_resource(session: Session, resource_id: int) -> Resource:
    resource = session.get(Resource, resource_id)
    if resource is None:
        raise NotFoundError("Resource not found")
    return resource


def _is_pending_duplicate(exc: IntegrityError) -> bool:
    # postgres names the index, sqlite lists its columns
    message = str(exc.orig)
    return (
        "uq_requests_pending_user_resource" in message
        or "requests.user_id, requests.resource_id" in message
    )


def can_manage(actor: User, resource: Resource) -> bool:
    """Admins manage everything; owners manage what they listed."""
    if actor.is_admin:
        return True
    return resource.owner_id is not None and resource.owner_id == actor.id


def _sync_resource_status(session: Session, resource_id: int) -> None:
    # in-use exactly while stock is exhausted; maintenance/retired are left alone
    _exec_update(
        session,
        update(Resource)
        .where(
            Resource.id == resource_id,
            Resource.status == ResourceStatus.in_use,
            Resource.available_qty > 0,
        )
        .values(status=ResourceStatus.available),
    )
    _exec_update(
        session,
        update(Resource)
        .where(
            Resource.id == resource_id,
            Resource.status == ResourceStatus.available,
            Resource.available_qty == 0,
        )
        .values(status=ResourceStatus.in_use),
    )


def outstanding_count(session: Session, resource_id: int) -> int:
    stmt = (
        select(func.count())
        .select_from(Allocation)
        .where(
            Allocation.resource_id == resource_id,
            col(Allocation.status).in_(OUTSTANDING_ALLOCATION_STATUSES),
        )
    )
    return session.exec(stmt).one()


def create_request(
    session: Session,
    requester: User,
    resource_id: int,
    reason: str,
    priority: Priority = Priority.medium,
    needed_by: Optional[date] = None,
    duration_days: Optional[int] = None,
) -> Request:
    resource = _get_resource(session, resource_id)

    if resource.owner_id is not None and resource.owner_id == requester.id:
        raise ValidationError("You cannot request your own resource")

    if not resource.is_available:
        raise ConflictError("This resource is currently not available")

    existing = session.exec(
        select(Request.id).where(
            Request.user_id == requester.id,
            Request.resource_id == resource.id,
            Request.status == RequestStatus.pending,
        )
    ).first()
    if existing is not None:
        raise ConflictError(PENDING_DUPLICATE)

    req = Request(
        user_id=requester.id,
        resource_id=resource.id,
        reason=reason.strip(),
        priority=priority,
        needed_by=needed_by,
        duration_days=duration_days,
        status=RequestStatus.pending,
    )
    session.add(req)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if not _is_pending_duplicate(exc):
            raise
        # lost the race against a concurrent identical request
        raise ConflictError(PENDING_DUPLICATE) from None
    session.refresh(req)

    log.info("Request %s created by user %s for resource %s", req.id, requester.id, resource.id)
    activity.record(
        session,
        requester.id,
        "request_created",
        "request",
        req.id,
        {"resource_id": resource.id, "resource_name": resource.name},
    )
    return req


def approve_request(
    session: Session,
    request_id: int,
    actor: User,
    admin_note: str = "",
) -> Allocation:
    """
    pending -> approved. Takes one unit of stock and opens an Allocation
    due back after the request's duration (or the default loan period).
    """
    req = _get_request(session, request_id)
    resource = _get_resource(session, req.resource_id)

    if not can_manage(actor, resource):
        raise ForbiddenError("You can only approve requests for your own resources")
    if req.status != RequestStatus.pending:
        raise ConflictError(f"Only pending requests can be approved (this one is {req.status.value})")
    if not resource.is_available:
        raise ConflictError("This resource is no longer available")

    now = utcnow()
    claimed = _exec_update(
        session,
        update(Request)
        .where(Request.id == req.id, Request.status == RequestStatus.pending)
        .values(
            status=RequestStatus.approved,
            admin_note=admin_note or "",
            reviewed_by=actor.id,
            reviewed_at=now,
            updated_at=now,
        ),
    )
    if claimed != 1:
        session.rollback()
        raise ConflictError("This request has already been decided")

    taken = _exec_update(
        session,
        update(Resource)
        .where(
            Resource.id == resource.id,
            Resource.status == ResourceStatus.available,
            Resource.available_qty > 0,
        )
        .values(
            available_qty=Resource.available_qty - 1,
            assigned_to=req.user_id,
            updated_at=now,
        ),
    )
    if taken != 1:
        session.rollback()
        log.warning("Approval of request %s lost the last unit of resource %s", request_id, resource.id)
        raise ConflictError("This resource is no longer available")

    _sync_resource_status(session, resource.id)

    today = date.today()
    allocation = Allocation(
        user_id=req.user_id,
        resource_id=resource.id,
        request_id=req.id,
        assigned_date=today,
        return_due=today + timedelta(days=req.duration_days or config.LOAN_DAYS),
        status=AllocationStatus.active,
    )
    session.add(allocation)
    session.commit()
    session.refresh(allocation)

    log.info(
        "Request %s approved by user %s; allocation %s due %s",
        request_id,
        actor.id,
        allocation.id,
        allocation.return_due,
    )
    activity.record(
        session,
        actor.id,
        "request_approved",
        "request",
        request_id,
        {"resource_id": resource.id, "allocation_id": allocation.id},
    )
    return allocation


def reject_request(
    session: Session,
    request_id: int,
    actor: User,
    admin_note: str = "",
) -> Request:
    req = _get_request(session, request_id)
    resource = _get_resource(session, req.resource_id)

    if not can_manage(actor, resource):
        raise ForbiddenError("You can only reject requests for your own resources")
    if req.status != RequestStatus.pending:
        raise ConflictError(f"Only pending requests can be rejected (this one is {req.status.value})")

    now = utcnow()
    changed = _exec_update(
        session,
        update(Request)
        .where(Request.id == req.id, Request.status == RequestStatus.pending)
        .values(
            status=RequestStatus.rejected,
            admin_note=admin_note or "",
            reviewed_by=actor.id,
            reviewed_at=now,
            updated_at=now,
        ),
    )
    if changed != 1:
        session.rollback()
        raise ConflictError("This request has already been decided")
    session.commit()
    session.refresh(req)

    log.info("Request %s rejected by user %s", request_id, actor.id)
    activity.record(
        session,
        actor.id,
        "request_rejected",
        "request",
        request_id,
        {"resource_id": resource.id},
    )
    return req


def cancel_request(session: Session, request_id: int, actor: User) -> Request:
    """pending -> cancelled, by the requester only. The row is kept."""
    req = _get_request(session, request_id)

    if req.user_id != actor.id:
        raise ForbiddenError("You can only cancel your own requests")
    if req.status != RequestStatus.pending:
        raise ConflictError("Only pending requests can be cancelled")

    changed = _exec_update(
        session,
        update(Request)
        .where(Request.id == req.id, Request.status == RequestStatus.pending)
        .values(status=RequestStatus.cancelled, updated_at=utcnow()),
    )
    if changed != 1:
        session.rollback()
        raise ConflictError("Only pending requests can be cancelled")
    session.commit()
    session.refresh(req)

    log.info("Request %s cancelled by its requester", request_id)
    activity.record(
        session,
        actor.id,
        "request_cancelled",
        "request",
        request_id,
        {"resource_id": req.resource_id},
    )
    return req


def _close_allocation(session: Session, allocation: Allocation, actor: User) -> Allocation:
    today = date.today()
    now = utcnow()

    closed = _exec_update(
        session,
        update(Allocation)
        .where(
            Allocation.id == allocation.id,
            col(Allocation.status).in_(OUTSTANDING_ALLOCATION_STATUSES),
        )
        .values(status=AllocationStatus.returned, returned_date=today),
    )
    if closed != 1:
        session.rollback()
        raise ConflictError("This resource has already been returned")

    restored = _exec_update(
        session,
        update(Resource)
        .where(
            Resource.id == allocation.resource_id,
            Resource.available_qty < Resource.quantity,
        )
        .values(available_qty=Resource.available_qty + 1, updated_at=now),
    )
    if restored != 1:
        session.rollback()
        log.error(
            "Resource %s is already at full stock; refusing return of allocation %s",
            allocation.resource_id,
            allocation.id,
        )
        raise ConflictError("Resource stock is already full")

    _sync_resource_status(session, allocation.resource_id)

    if outstanding_count(session, allocation.resource_id) == 0:
        _exec_update(
            session,
            update(Resource)
            .where(Resource.id == allocation.resource_id)
            .values(assigned_to=None),
        )

    if allocation.request_id is not None:
        _exec_update(
            session,
            update(Request)
            .where(
                Request.id == allocation.request_id,
                Request.status == RequestStatus.approved,
            )
            .values(status=RequestStatus.returned, updated_at=now),
        )

    session.commit()
    session.refresh(allocation)

    log.info("Allocation %s returned (resource %s)", allocation.id, allocation.resource_id)
    activity.record(
        session,
        actor.id,
        "resource_returned",
        "allocation",
        allocation.id,
        {"resource_id": allocation.resource_id, "request_id": allocation.request_id},
    )
    return allocation


def return_allocation(session: Session, allocation_id: int, actor: User) -> Allocation:
    allocation = session.get(Allocation, allocation_id)
    if allocation is None:
        raise NotFoundError("Allocation not found")
    if allocation.user_id != actor.id and not actor.is_admin:
        raise ForbiddenError("You can only return your own resources")
    if allocation.status not in OUTSTANDING_ALLOCATION_STATUSES:
        raise ConflictError("This resource has already been returned")
    return _close_allocation(session, allocation, actor)


def return_request(session: Session, request_id: int, actor: User) -> Allocation:
    """approved -> returned, through the request's outstanding allocation."""
    req = _get_request(session, request_id)

    if req.user_id != actor.id and not actor.is_admin:
        raise ForbiddenError("You can only mark your own returns")
    if req.status != RequestStatus.approved:
        raise ConflictError("Only approved requests can be returned")

    allocation = session.exec(
        select(Allocation).where(
            Allocation.request_id == req.id,
            col(Allocation.status).in_(OUTSTANDING_ALLOCATION_STATUSES),
        )
    ).first()
    if allocation is None:
        raise ConflictError("No outstanding allocation for this request")
    return _close_allocation(session, allocation, actor)


def mark_overdue(
    session: Session,
    today: Optional[date] = None,
    actor: Optional[User] = None,
) -> int:
    """Flag active allocations whose return date has passed."""
    today = today or date.today()
    marked = _exec_update(
        session,
        update(Allocation)
        .where(
            Allocation.status == AllocationStatus.active,
            col(Allocation.return_due).is_not(None),
            Allocation.return_due < today,
        )
        .values(status=AllocationStatus.overdue),
    )
    session.commit()

    if marked:
        log.info("%d allocation(s) marked overdue", marked)
        activity.record(
            session,
            actor.id if actor else None,
            "allocations_overdue",
            "allocation",
            None,
            {"count": marked, "as_of": today.isoformat()},
        )
    return marked


def set_quantity(session: Session, resource: Resource, new_quantity: int) -> None:
    """
    Change a resource's total stock, keeping the units currently out on
    loan out. Does not commit.
    """
    if new_quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    delta = new_quantity - resource.quantity
    if delta == 0:
        return

    changed = _exec_update(
        session,
        update(Resource)
        .where(
            Resource.id == resource.id,
            Resource.quantity == resource.quantity,
            Resource.available_qty + delta >= 0,
        )
        .values(
            quantity=new_quantity,
            available_qty=Resource.available_qty + delta,
            updated_at=utcnow(),
        ),
    )
    if changed != 1:
        session.rollback()
        raise ConflictError("Quantity cannot be lower than the number of units currently allocated")

    _sync_resource_status(session, resource.id)
    session.refresh(resource)


def release_user_allocations(session: Session, user_id: int) -> int:
    """
    Put back the stock held by a user's outstanding allocations and
    drop all of their allocation rows. Does not commit.
    """
    allocations = session.exec(select(Allocation).where(Allocation.user_id == user_id)).all()
    resource_ids = {a.resource_id for a in allocations}
    released = 0
    for allocation in allocations:
        if allocation.status in OUTSTANDING_ALLOCATION_STATUSES:
            _exec_update(
                session,
                update(Resource)
                .where(
                    Resource.id == allocation.resource_id,
                    Resource.available_qty < Resource.quantity,
                )
                .values(available_qty=Resource.available_qty + 1),
            )
            released += 1
        session.delete(allocation)
    session.flush()

    for resource_id in resource_ids:
        _sync_resource_status(session, resource_id)
        if outstanding_count(session, resource_id) == 0:
            _exec_update(
                session,
                update(Resource).where(Resource.id == resource_id).values(assigned_to=None),
            )
    return released
