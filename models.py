from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    admin = "admin"
    manager = "manager"
    customer = "customer"


class UserStatus(str, Enum):
    active = "active"
    inactive = "inactive"


class ResourceCategory(str, Enum):
    hardware = "hardware"
    software = "software"
    license = "license"
    equipment = "equipment"


class ResourceStatus(str, Enum):
    available = "available"
    in_use = "in-use"
    maintenance = "maintenance"
    retired = "retired"


class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class RequestStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"
    returned = "returned"


class AllocationStatus(str, Enum):
    active = "active"
    returned = "returned"
    overdue = "overdue"


# Allocations still holding a unit of stock.
OUTSTANDING_ALLOCATION_STATUSES = (AllocationStatus.active, AllocationStatus.overdue)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    first_name: str = Field(max_length=100)
    last_name: str = Field(max_length=100)
    email: str = Field(max_length=255, unique=True, index=True)
    password_hash: str
    company: str = ""
    phone: str = ""
    department: str = ""
    role: Role = Field(default=Role.customer)
    status: UserStatus = Field(default=UserStatus.active)
    is_verified: bool = False
    is_blocked: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow}
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin


class Resource(SQLModel, table=True):
    __tablename__ = "resources"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=255, index=True)
    description: str = ""
    category: ResourceCategory = Field(index=True)
    condition: str = ""
    location: str = ""
    status: ResourceStatus = Field(default=ResourceStatus.available, index=True)
    quantity: int = Field(default=1, ge=1)
    available_qty: int = Field(default=1, ge=0)
    cost_per_unit: float = Field(default=0.0, ge=0)
    # hidden from the public catalog until an admin verifies it
    is_verified: bool = Field(default=False, index=True)

    # None means the resource is admin-managed.
    owner_id: Optional[int] = Field(
        default=None, foreign_key="users.id", ondelete="SET NULL", index=True
    )
    assigned_to: Optional[int] = Field(
        default=None, foreign_key="users.id", ondelete="SET NULL"
    )

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow}
    )

    owner: Optional[User] = Relationship(
        sa_relationship_kwargs={"foreign_keys": "[Resource.owner_id]"}
    )
    assignee: Optional[User] = Relationship(
        sa_relationship_kwargs={"foreign_keys": "[Resource.assigned_to]"}
    )

    @property
    def is_available(self) -> bool:
        return self.available_qty > 0 and self.status == ResourceStatus.available


class Request(SQLModel, table=True):
    __tablename__ = "requests"
    __table_args__ = (
        # at most one pending request per (user, resource)
        Index(
            "uq_requests_pending_user_resource",
            "user_id",
            "resource_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    resource_id: int = Field(foreign_key="resources.id", ondelete="CASCADE", index=True)

    reason: str
    priority: Priority = Field(default=Priority.medium)
    needed_by: Optional[date] = None
    duration_days: Optional[int] = Field(default=None, ge=1)

    status: RequestStatus = Field(default=RequestStatus.pending, index=True)
    admin_note: str = ""
    reviewed_by: Optional[int] = Field(
        default=None, foreign_key="users.id", ondelete="SET NULL"
    )
    reviewed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow}
    )

    requester: Optional[User] = Relationship(
        sa_relationship_kwargs={"foreign_keys": "[Request.user_id]"}
    )
    reviewer: Optional[User] = Relationship(
        sa_relationship_kwargs={"foreign_keys": "[Request.reviewed_by]"}
    )
    resource: Optional[Resource] = Relationship()


class Allocation(SQLModel, table=True):
    __tablename__ = "allocations"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    resource_id: int = Field(foreign_key="resources.id", ondelete="CASCADE", index=True)
    request_id: Optional[int] = Field(
        default=None, foreign_key="requests.id", ondelete="SET NULL"
    )

    assigned_date: date = Field(default_factory=date.today)
    return_due: Optional[date] = None
    returned_date: Optional[date] = None
    status: AllocationStatus = Field(default=AllocationStatus.active, index=True)

    created_at: datetime = Field(default_factory=utcnow)

    user: Optional[User] = Relationship()
    resource: Optional[Resource] = Relationship()


class Activity(SQLModel, table=True):
    """Append-only audit trail."""

    __tablename__ = "activity_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(
        default=None, foreign_key="users.id", ondelete="SET NULL", index=True
    )
    action: str = Field(max_length=255, index=True)
    entity_type: str = Field(default="", max_length=50)
    entity_id: Optional[int] = None
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)

    user: Optional[User] = Relationship()
