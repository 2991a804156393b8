from typing import List, Optional

from fastapi import APIRouter
from sqlmodel import col, select

import lifecycle
from db import SessionDep
from models import OUTSTANDING_ALLOCATION_STATUSES, Allocation, AllocationStatus
from schemas import AllocationRead, Envelope, OverdueResult
from .auth import AdminDep, CurrentUserDep

router = APIRouter(tags=["allocations"])


@router.get("/mine", response_model=Envelope[List[AllocationRead]])
def list_my_allocations(session: SessionDep, current: CurrentUserDep):
    """Resources the caller currently holds."""
    rows = session.exec(
        select(Allocation)
        .where(
            Allocation.user_id == current.id,
            col(Allocation.status).in_(OUTSTANDING_ALLOCATION_STATUSES),
        )
        .order_by(Allocation.assigned_date.desc(), Allocation.id.desc())
    ).all()
    return Envelope(data=[AllocationRead.from_model(a) for a in rows])


@router.get("/", response_model=Envelope[List[AllocationRead]])
def list_allocations(
    session: SessionDep,
    admin: AdminDep,
    status: Optional[AllocationStatus] = None,
):
    query = select(Allocation)
    if status is not None:
        query = query.where(Allocation.status == status)
    rows = session.exec(
        query.order_by(Allocation.assigned_date.desc(), Allocation.id.desc())
    ).all()
    return Envelope(data=[AllocationRead.from_model(a) for a in rows])


@router.put("/{allocation_id}/return", response_model=Envelope[AllocationRead])
def return_allocation(allocation_id: int, session: SessionDep, current: CurrentUserDep):
    allocation = lifecycle.return_allocation(session, allocation_id, current)
    return Envelope(
        message="Resource returned successfully",
        data=AllocationRead.from_model(allocation),
    )


@router.post("/refresh-overdue", response_model=Envelope[OverdueResult])
def refresh_overdue(session: SessionDep, admin: AdminDep):
    marked = lifecycle.mark_overdue(session, actor=admin)
    return Envelope(data=OverdueResult(marked=marked))
