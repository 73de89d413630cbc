from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field


UserRole = Literal["user", "admin"]
ContactStatus = Literal["lead", "prospect", "customer", "inactive"]
DealStage = Literal["lead", "qualified", "proposal", "negotiation", "closed_won", "closed_lost"]
ActivityType = Literal["call", "email", "meeting", "task", "note"]
ActivityStatus = Literal["pending", "completed", "overdue"]
NotificationType = Literal[
    "new_deal",
    "deal_won",
    "deal_lost",
    "activity_due",
    "activity_overdue",
    "contact_added",
    "system",
]
ExportFormat = Literal["csv", "xlsx"]


def _to_utc(value: datetime) -> datetime:
    # Naive input is taken as UTC; offsets are converted so stored values compare consistently.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDateTime = Annotated[datetime, AfterValidator(_to_utc)]

DEFAULT_LIST_LIMIT = 100


class IdInput(BaseModel):
    id: int


class ListWindow(BaseModel):
    limit: int = Field(default=DEFAULT_LIST_LIMIT, ge=1)
    offset: int = Field(default=0, ge=0)


# Users


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    open_id: str
    name: str | None
    email: str | None
    login_method: str | None
    role: UserRole
    avatar: str | None
    phone: str | None
    department: str | None
    created_at: datetime
    updated_at: datetime
    last_signed_in: datetime


class UserRoleUpdate(BaseModel):
    user_id: int
    role: UserRole


class EmailPreferences(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    email_notify_new_deal: bool
    email_notify_deal_won: bool
    email_notify_deal_lost: bool
    email_notify_overdue: bool
    email_notify_activity_due: bool


class EmailPreferencesUpdate(BaseModel):
    email_notify_new_deal: bool | None = None
    email_notify_deal_won: bool | None = None
    email_notify_deal_lost: bool | None = None
    email_notify_overdue: bool | None = None
    email_notify_activity_due: bool | None = None


# Contacts


class ContactBase(BaseModel):
    email: EmailStr | None = None
    phone: str | None = None
    mobile: str | None = None
    job_title: str | None = None
    department: str | None = None
    company_id: int | None = None
    address: str | None = None
    city: str | None = None
    country: str | None = None
    linked_in: str | None = None
    twitter: str | None = None
    notes: str | None = None
    source: str | None = None
    avatar: str | None = None


class ContactCreate(ContactBase):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    status: ContactStatus | None = None


class ContactUpdate(ContactBase):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    status: ContactStatus | None = None


class ContactUpdateInput(BaseModel):
    id: int
    data: ContactUpdate


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    mobile: str | None
    job_title: str | None
    department: str | None
    company_id: int | None
    address: str | None
    city: str | None
    country: str | None
    linked_in: str | None
    twitter: str | None
    notes: str | None
    status: ContactStatus
    source: str | None
    avatar: str | None
    owner_id: int | None
    created_at: datetime
    updated_at: datetime


class ContactListOptions(ListWindow):
    search: str | None = None
    status: str | None = None
    statuses: list[str] | None = None
    sources: list[str] | None = None
    date_from: UtcDateTime | None = None
    date_to: UtcDateTime | None = None
    owner_id: int | None = None


class ContactCountOptions(BaseModel):
    status: str | None = None


# Companies


class CompanyBase(BaseModel):
    industry: str | None = None
    website: str | None = None
    phone: str | None = None
    email: EmailStr | None = None
    address: str | None = None
    city: str | None = None
    country: str | None = None
    employee_count: int | None = None
    annual_revenue: Decimal | None = None
    description: str | None = None
    logo: str | None = None


class CompanyCreate(CompanyBase):
    name: str = Field(min_length=1)


class CompanyUpdate(CompanyBase):
    name: str | None = Field(default=None, min_length=1)


class CompanyUpdateInput(BaseModel):
    id: int
    data: CompanyUpdate


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    industry: str | None
    website: str | None
    phone: str | None
    email: str | None
    address: str | None
    city: str | None
    country: str | None
    employee_count: int | None
    annual_revenue: Decimal | None
    description: str | None
    logo: str | None
    owner_id: int | None
    created_at: datetime
    updated_at: datetime


class CompanyListOptions(ListWindow):
    search: str | None = None
    owner_id: int | None = None


# Deals


class DealBase(BaseModel):
    value: Decimal | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: UtcDateTime | None = None
    contact_id: int | None = None
    company_id: int | None = None
    description: str | None = None
    lost_reason: str | None = None


class DealCreate(DealBase):
    title: str = Field(min_length=1)
    currency: str = Field(default="EUR", min_length=1, max_length=3)
    stage: DealStage | None = None


class DealUpdate(DealBase):
    title: str | None = Field(default=None, min_length=1)
    currency: str | None = Field(default=None, min_length=1, max_length=3)
    stage: DealStage | None = None


class DealUpdateInput(BaseModel):
    id: int
    data: DealUpdate


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    value: Decimal | None
    currency: str | None
    stage: DealStage
    probability: int | None
    expected_close_date: datetime | None
    actual_close_date: datetime | None
    contact_id: int | None
    company_id: int | None
    owner_id: int | None
    description: str | None
    lost_reason: str | None
    created_at: datetime
    updated_at: datetime


class DealListOptions(ListWindow):
    stage: str | None = None
    stages: list[str] | None = None
    value_min: Decimal | None = None
    value_max: Decimal | None = None
    date_from: UtcDateTime | None = None
    date_to: UtcDateTime | None = None
    owner_id: int | None = None


class DealCountOptions(BaseModel):
    stage: str | None = None


# Activities


class ActivityBase(BaseModel):
    description: str | None = None
    due_date: UtcDateTime | None = None
    contact_id: int | None = None
    company_id: int | None = None
    deal_id: int | None = None


class ActivityCreate(ActivityBase):
    type: ActivityType
    subject: str = Field(min_length=1)


class ActivityUpdate(ActivityBase):
    type: ActivityType | None = None
    subject: str | None = Field(default=None, min_length=1)


class ActivityUpdateInput(BaseModel):
    id: int
    data: ActivityUpdate


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: ActivityType
    subject: str
    description: str | None
    due_date: datetime | None
    completed_at: datetime | None
    is_completed: bool
    contact_id: int | None
    company_id: int | None
    deal_id: int | None
    owner_id: int | None
    created_at: datetime
    updated_at: datetime
    status: ActivityStatus | None = None


class ActivityListOptions(ListWindow):
    type: str | None = None
    types: list[str] | None = None
    contact_id: int | None = None
    company_id: int | None = None
    deal_id: int | None = None
    owner_id: int | None = None
    is_completed: bool | None = None
    status: ActivityStatus | None = None
    date_from: UtcDateTime | None = None
    date_to: UtcDateTime | None = None


class RecentActivitiesOptions(BaseModel):
    limit: int = Field(default=10, ge=1)


# Tags


class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    color: str | None = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")


class TagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: str | None
    created_at: datetime


# Notifications


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    type: NotificationType
    title: str
    message: str | None
    link: str | None
    is_read: bool
    related_deal_id: int | None
    related_activity_id: int | None
    related_contact_id: int | None
    created_at: datetime


class NotificationListOptions(BaseModel):
    limit: int = Field(default=50, ge=1)
    unread_only: bool = False


class ReminderResult(BaseModel):
    upcoming_sent: bool
    overdue_sent: bool
    upcoming_count: int
    overdue_count: int


# Reporting


class StatusCount(BaseModel):
    status: ContactStatus
    count: int


class TypeCount(BaseModel):
    type: ActivityType
    count: int


class PipelineStageStats(BaseModel):
    stage: DealStage
    count: int
    total_value: str


class DashboardStats(BaseModel):
    total_contacts: int = 0
    total_companies: int = 0
    total_deals: int = 0
    open_activities: int = 0
    pipeline_value: str = "0"
    won_deals_value: str = "0"


# Export


class ExportRequest(BaseModel):
    format: ExportFormat


class ExportResult(BaseModel):
    data: str
    filename: str
    mime_type: str
    is_base64: bool = False
