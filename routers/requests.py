from typing import Optional

from fastapi import APIRouter, Query
from sqlalchemy import case, func
from sqlmodel import Session, select

import lifecycle
from db import SessionDep
from errors import ForbiddenError, NotFoundError
from models import Request as RequestModel, RequestStatus, Resource
from schemas import (
    AllocationRead,
    Envelope,
    Page,
    RequestCounts,
    RequestCreate,
    RequestDecision,
    RequestRead,
)
from .auth import AdminDep, CurrentUserDep

router = APIRouter(tags=["requests"])


def request_counts(session: Session, user_id: Optional[int] = None) -> RequestCounts:
    def _count(status: RequestStatus):
        return func.sum(case((RequestModel.status == status, 1), else_=0))

    query = select(
        func.count(RequestModel.id),
        _count(RequestStatus.pending),
        _count(RequestStatus.approved),
        _count(RequestStatus.rejected),
        _count(RequestStatus.cancelled),
        _count(RequestStatus.returned),
    )
    if user_id is not None:
        query = query.where(RequestModel.user_id == user_id)
    row = session.exec(query).one()
    return RequestCounts(
        total=row[0] or 0,
        pending=row[1] or 0,
        approved=row[2] or 0,
        rejected=row[3] or 0,
        cancelled=row[4] or 0,
        returned=row[5] or 0,
    )


def _paginate(session: Session, query, page: int, limit: int) -> Page[RequestRead]:
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    rows = session.exec(
        query.order_by(RequestModel.created_at.desc(), RequestModel.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return Page[RequestRead].build(
        [RequestRead.from_model(r) for r in rows], total, page, limit
    )


@router.post("/", status_code=201, response_model=Envelope[RequestRead])
def create_request(request_data: RequestCreate, session: SessionDep, current: CurrentUserDep):
    req = lifecycle.create_request(
        session,
        current,
        resource_id=request_data.resource_id,
        reason=request_data.reason,
        priority=request_data.priority,
        needed_by=request_data.needed_by,
        duration_days=request_data.duration_days,
    )
    return Envelope(message="Request sent successfully", data=RequestRead.from_model(req))


@router.get("/", response_model=Envelope[Page[RequestRead]])
def list_requests(
    session: SessionDep,
    admin: AdminDep,
    status: Optional[RequestStatus] = None,
    user_id: Optional[int] = None,
    resource_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    query = select(RequestModel)
    if status is not None:
        query = query.where(RequestModel.status == status)
    if user_id is not None:
        query = query.where(RequestModel.user_id == user_id)
    if resource_id is not None:
        query = query.where(RequestModel.resource_id == resource_id)
    return Envelope(data=_paginate(session, query, page, limit))


@router.get("/mine", response_model=Envelope[Page[RequestRead]])
@router.get("/sent", response_model=Envelope[Page[RequestRead]])
def list_my_requests(
    session: SessionDep,
    current: CurrentUserDep,
    status: Optional[RequestStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    query = select(RequestModel).where(RequestModel.user_id == current.id)
    if status is not None:
        query = query.where(RequestModel.status == status)
    return Envelope(data=_paginate(session, query, page, limit))


@router.get("/received", response_model=Envelope[Page[RequestRead]])
def list_received_requests(
    session: SessionDep,
    current: CurrentUserDep,
    status: Optional[RequestStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    """Requests made against resources the caller owns."""
    query = (
        select(RequestModel)
        .join(Resource, Resource.id == RequestModel.resource_id)
        .where(Resource.owner_id == current.id)
    )
    if status is not None:
        query = query.where(RequestModel.status == status)
    return Envelope(data=_paginate(session, query, page, limit))


@router.get("/counts", response_model=Envelope[RequestCounts])
def get_request_counts(session: SessionDep, current: CurrentUserDep, mine: bool = False):
    user_id = None if current.is_admin and not mine else current.id
    return Envelope(data=request_counts(session, user_id))


@router.get("/{request_id}", response_model=Envelope[RequestRead])
def get_request(request_id: int, session: SessionDep, current: CurrentUserDep):
    req = session.get(RequestModel, request_id)
    if req is None:
        raise NotFoundError("Request not found")
    if req.user_id != current.id and not lifecycle.can_manage(current, req.resource):
        raise ForbiddenError("You can only view your own requests")
    return Envelope(data=RequestRead.from_model(req))


@router.put("/{request_id}/approve", response_model=Envelope[AllocationRead])
def approve_request(
    request_id: int,
    session: SessionDep,
    current: CurrentUserDep,
    decision: Optional[RequestDecision] = None,
):
    allocation = lifecycle.approve_request(
        session, request_id, current, decision.admin_note if decision else ""
    )
    return Envelope(
        message="Request approved successfully",
        data=AllocationRead.from_model(allocation),
    )


@router.put("/{request_id}/reject", response_model=Envelope[RequestRead])
def reject_request(
    request_id: int,
    session: SessionDep,
    current: CurrentUserDep,
    decision: Optional[RequestDecision] = None,
):
    req = lifecycle.reject_request(
        session, request_id, current, decision.admin_note if decision else ""
    )
    return Envelope(message="Request rejected", data=RequestRead.from_model(req))


@router.put("/{request_id}/return", response_model=Envelope[AllocationRead])
def return_request(request_id: int, session: SessionDep, current: CurrentUserDep):
    allocation = lifecycle.return_request(session, request_id, current)
    return Envelope(
        message="Resource marked as returned",
        data=AllocationRead.from_model(allocation),
    )


@router.delete("/{request_id}", response_model=Envelope[RequestRead])
@router.delete("/{request_id}/cancel", response_model=Envelope[RequestRead])
def cancel_request(request_id: int, session: SessionDep, current: CurrentUserDep):
    req = lifecycle.cancel_request(session, request_id, current)
    return Envelope(message="Request cancelled", data=RequestRead.from_model(req))
