import math
from datetime import date, datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from models import (
    AllocationStatus,
    Priority,
    RequestStatus,
    ResourceCategory,
    ResourceStatus,
    Role,
    UserStatus,
)

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    message: Optional[str] = None
    data: Optional[T] = None


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    total_pages: int

    @classmethod
    def build(cls, items: List[T], total: int, page: int, limit: int) -> "Page[T]":
        return cls(
            items=items,
            total=total,
            page=page,
            total_pages=math.ceil(total / limit) if limit else 0,
        )


# ---------- users / auth ----------


class UserCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(min_length=6)
    company: str = ""
    phone: str = ""
    department: str = ""

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class AdminUserCreate(UserCreate):
    role: Role = Role.customer
    status: UserStatus = UserStatus.active
    is_verified: bool = False


class LoginData(BaseModel):
    email: EmailStr
    password: str

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    company: Optional[str] = None
    phone: Optional[str] = None
    department: Optional[str] = None


class AdminUserUpdate(ProfileUpdate):
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    status: Optional[UserStatus] = None
    password: Optional[str] = Field(default=None, min_length=6)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6)


class VerifyUpdate(BaseModel):
    is_verified: bool


class BlockUpdate(BaseModel):
    is_blocked: bool


class UserRead(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str
    company: str
    phone: str
    department: str
    role: Role
    status: UserStatus
    is_verified: bool
    is_blocked: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuthData(BaseModel):
    token: str
    user: UserRead


class UserCounts(BaseModel):
    total: int = 0
    active: int = 0
    inactive: int = 0
    admins: int = 0
    blocked: int = 0


# ---------- resources ----------


class ResourceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    category: ResourceCategory
    description: str = ""
    condition: str = ""
    location: str = ""
    quantity: int = Field(default=1, ge=1)
    cost_per_unit: float = Field(default=0.0, ge=0)
    # only honoured for admins; others always own what they list
    owner_id: Optional[int] = None


class ResourceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    category: Optional[ResourceCategory] = None
    description: Optional[str] = None
    condition: Optional[str] = None
    location: Optional[str] = None
    cost_per_unit: Optional[float] = Field(default=None, ge=0)
    quantity: Optional[int] = Field(default=None, ge=1)
    status: Optional[ResourceStatus] = None


class ResourceRead(BaseModel):
    id: int
    name: str
    description: str
    category: ResourceCategory
    condition: str
    location: str
    status: ResourceStatus
    quantity: int
    available_qty: int
    cost_per_unit: float
    is_verified: bool
    owner_id: Optional[int]
    assigned_to: Optional[int]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CategoryCount(BaseModel):
    category: str
    count: int


class ResourceStats(BaseModel):
    total: int = 0
    unverified: int = 0
    available: int = 0
    in_use: int = 0
    maintenance: int = 0
    retired: int = 0
    categories: List[CategoryCount] = []


class CostLine(BaseModel):
    category: str
    total_cost: float
    count: int


# ---------- requests ----------


class RequestCreate(BaseModel):
    resource_id: int
    reason: str = Field(min_length=1)
    priority: Priority = Priority.medium
    needed_by: Optional[date] = None
    duration_days: Optional[int] = Field(default=None, ge=1, le=365)


class RequestDecision(BaseModel):
    admin_note: str = ""


class RequestRead(BaseModel):
    id: int
    user_id: int
    resource_id: int
    reason: str
    priority: Priority
    needed_by: Optional[date]
    duration_days: Optional[int]
    status: RequestStatus
    admin_note: str
    reviewed_by: Optional[int]
    reviewed_at: Optional[datetime]
    created_at: datetime
    resource_name: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    reviewer_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, req) -> "RequestRead":
        out = cls.model_validate(req)
        if req.resource is not None:
            out.resource_name = req.resource.name
        if req.requester is not None:
            out.user_name = req.requester.full_name
            out.user_email = req.requester.email
        if req.reviewer is not None:
            out.reviewer_name = req.reviewer.full_name
        return out


class RequestCounts(BaseModel):
    total: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    cancelled: int = 0
    returned: int = 0


# ---------- allocations ----------


class AllocationRead(BaseModel):
    id: int
    user_id: int
    resource_id: int
    request_id: Optional[int]
    assigned_date: date
    return_due: Optional[date]
    returned_date: Optional[date]
    status: AllocationStatus
    resource_name: Optional[str] = None
    resource_category: Optional[ResourceCategory] = None
    user_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, allocation) -> "AllocationRead":
        out = cls.model_validate(allocation)
        if allocation.resource is not None:
            out.resource_name = allocation.resource.name
            out.resource_category = allocation.resource.category
        if allocation.user is not None:
            out.user_name = allocation.user.full_name
        return out


class AllocationCounts(BaseModel):
    active: int = 0
    overdue: int = 0
    returned: int = 0


class OverdueResult(BaseModel):
    marked: int


# ---------- activity / dashboards ----------


class ActivityRead(BaseModel):
    id: int
    user_id: Optional[int]
    action: str
    entity_type: str
    entity_id: Optional[int]
    details: Optional[dict]
    created_at: datetime
    user_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, entry) -> "ActivityRead":
        out = cls.model_validate(entry)
        if entry.user is not None:
            out.user_name = entry.user.full_name
        return out


class AdminStats(BaseModel):
    users: UserCounts
    resources: ResourceStats
    requests: RequestCounts
    allocations: AllocationCounts
    cost_overview: List[CostLine]
    recent_activity: List[ActivityRead]


class CustomerDashboard(BaseModel):
    active_resources: int
    requests: RequestCounts
    nearest_return: Optional[date]
    allocations: List[AllocationRead]
