from typing import Optional

from fastapi import APIRouter, Query
from sqlalchemy import case, func
from sqlmodel import Session, col, select

import activity
from db import SessionDep
from models import (
    OUTSTANDING_ALLOCATION_STATUSES,
    Allocation,
    AllocationStatus,
    Resource,
    ResourceCategory,
    ResourceStatus,
)
from schemas import (
    ActivityRead,
    AdminStats,
    AllocationCounts,
    AllocationRead,
    CustomerDashboard,
    Envelope,
    Page,
    ResourceRead,
)
from .auth import AdminDep, CurrentUserDep
from .requests import request_counts
from .resources import cost_overview, filter_resources, paginate_resources, resource_stats
from .users import user_counts

router = APIRouter(tags=["admin"])
dashboard_router = APIRouter(tags=["dashboard"])


def allocation_counts(session: Session) -> AllocationCounts:
    def _count(status: AllocationStatus):
        return func.sum(case((Allocation.status == status, 1), else_=0))

    row = session.exec(
        select(
            _count(AllocationStatus.active),
            _count(AllocationStatus.overdue),
            _count(AllocationStatus.returned),
        )
    ).one()
    return AllocationCounts(active=row[0] or 0, overdue=row[1] or 0, returned=row[2] or 0)


def admin_stats(session: Session) -> AdminStats:
    return AdminStats(
        users=user_counts(session),
        resources=resource_stats(session),
        requests=request_counts(session),
        allocations=allocation_counts(session),
        cost_overview=cost_overview(session),
        recent_activity=[ActivityRead.from_model(a) for a in activity.recent(session, 10)],
    )


@router.get("/stats", response_model=Envelope[AdminStats])
def get_stats(session: SessionDep, admin: AdminDep):
    return Envelope(data=admin_stats(session))


@router.get("/activity", response_model=Envelope[Page[ActivityRead]])
def get_activity(
    session: SessionDep,
    admin: AdminDep,
    user_id: Optional[int] = None,
    action: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
):
    entries, total = activity.query(session, user_id=user_id, action=action, page=page, limit=limit)
    return Envelope(
        data=Page[ActivityRead].build(
            [ActivityRead.from_model(e) for e in entries], total, page, limit
        )
    )


@router.get("/resources", response_model=Envelope[Page[ResourceRead]])
def list_all_resources(
    session: SessionDep,
    admin: AdminDep,
    search: Optional[str] = None,
    category: Optional[ResourceCategory] = None,
    status: Optional[ResourceStatus] = None,
    is_verified: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    """Every resource, verified or not; used for moderation."""
    query = filter_resources(select(Resource), search, category, status, is_verified)
    return Envelope(data=paginate_resources(session, query, page, limit))


@dashboard_router.get("/admin", response_model=Envelope[AdminStats])
def admin_dashboard(session: SessionDep, admin: AdminDep):
    return Envelope(data=admin_stats(session))


@dashboard_router.get("/customer", response_model=Envelope[CustomerDashboard])
def customer_dashboard(session: SessionDep, current: CurrentUserDep):
    outstanding = session.exec(
        select(Allocation)
        .where(
            Allocation.user_id == current.id,
            col(Allocation.status).in_(OUTSTANDING_ALLOCATION_STATUSES),
        )
        .order_by(Allocation.assigned_date.desc(), Allocation.id.desc())
    ).all()
    due_dates = [a.return_due for a in outstanding if a.return_due is not None]

    return Envelope(
        data=CustomerDashboard(
            active_resources=len(outstanding),
            requests=request_counts(session, current.id),
            nearest_return=min(due_dates) if due_dates else None,
            allocations=[AllocationRead.from_model(a) for a in outstanding],
        )
    )
