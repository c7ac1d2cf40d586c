"""Pydantic models for the quote pipeline API.

Field names are snake_case in Python and camelCase on the wire
(``clientName``, ``nextChaseAt``); both spellings are accepted on input.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

from quoteboard.db.models import LEGACY_STAGES, Stage, TaskPriority


def normalize_stage(value):
    """Map legacy stage keys onto the current columns."""
    if isinstance(value, str) and value in LEGACY_STAGES:
        return LEGACY_STAGES[value].value
    return value


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes from clients are taken as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Exact in Python and the database, a plain JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# --- Quotes ---


class QuoteRead(CamelModel):
    """A quote as the board sees it."""

    id: str
    title: str
    client_name: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    value: Optional[Money] = None
    stage: Stage
    position: int = 0
    so_number: Optional[str] = None
    last_chased_at: Optional[datetime] = None
    next_chase_at: Optional[datetime] = None
    reminder_email: Optional[str] = None
    attachment_url: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    check_stage = field_validator("stage", mode="before")(normalize_stage)


class _QuoteFields(CamelModel):
    title: Optional[str] = None
    client_name: Optional[str] = None
    customer_id: Optional[str] = None
    value: Optional[Money] = None
    so_number: Optional[str] = None
    last_chased_at: Optional[datetime] = None
    next_chase_at: Optional[datetime] = None
    reminder_email: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None

    check_dates = field_validator("last_chased_at", "next_chase_at")(as_utc)


class QuoteCreate(_QuoteFields):
    """POST /quotes body. Title and client name are checked by the store."""

    id: Optional[str] = None
    customer_name: Optional[str] = None
    stage: Optional[Stage] = None

    check_stage = field_validator("stage", mode="before")(normalize_stage)


class QuoteUpdate(_QuoteFields):
    """PUT /quotes/{id} body. Only fields that are sent are applied."""

    stage: Optional[Stage] = None
    position: Optional[int] = Field(default=None, ge=0)
    attachment_url: Optional[str] = None

    check_stage = field_validator("stage", mode="before")(normalize_stage)


class StageChange(CamelModel):
    """PATCH /quotes/{id}/stage body. Position is 1-based; omitted → end of column."""

    stage: Stage
    position: Optional[int] = Field(default=None, ge=1)

    check_stage = field_validator("stage", mode="before")(normalize_stage)


class PositionUpdate(CamelModel):
    id: str
    position: int = Field(..., ge=0)
    stage: Stage

    check_stage = field_validator("stage", mode="before")(normalize_stage)


class PositionsRequest(CamelModel):
    """PATCH /quotes/positions body."""

    updates: list[PositionUpdate] = []


class StageOrderRequest(CamelModel):
    """PATCH /quotes/order body: final id order per affected column."""

    stages: dict[Stage, list[str]]

    @field_validator("stages", mode="before")
    @classmethod
    def _legacy_keys(cls, value):
        if isinstance(value, dict):
            return {normalize_stage(k): v for k, v in value.items()}
        return value


# --- Customers & CRM ---


class CustomerRead(CamelModel):
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    address: Optional[str] = None
    industry: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CustomerDetail(CustomerRead):
    quotes: list[QuoteRead] = []


class CustomerUpdate(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    address: Optional[str] = None
    industry: Optional[str] = None
    notes: Optional[str] = None


class CustomerCreate(CustomerUpdate):
    pass


class ContactRead(CamelModel):
    id: str
    customer_id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    job_title: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ContactUpdate(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    job_title: Optional[str] = None
    notes: Optional[str] = None


class ContactCreate(ContactUpdate):
    pass


class ActivityRead(CamelModel):
    id: str
    customer_id: str
    contact_id: Optional[str] = None
    quote_id: Optional[str] = None
    type: str
    subject: Optional[str] = None
    description: Optional[str] = None
    activity_date: datetime
    created_by: Optional[str] = None
    created_at: datetime


class ActivityCreate(CamelModel):
    contact_id: Optional[str] = None
    quote_id: Optional[str] = None
    type: Optional[str] = None
    subject: Optional[str] = None
    description: Optional[str] = None
    activity_date: Optional[datetime] = None

    check_dates = field_validator("activity_date")(as_utc)


class TaskRead(CamelModel):
    id: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    contact_id: Optional[str] = None
    quote_id: Optional[str] = None
    assigned_to: Optional[str] = None
    title: str
    description: Optional[str] = None
    due_date: Optional[date] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    completed: bool = False
    created_at: datetime
    updated_at: datetime


class TaskUpdate(CamelModel):
    customer_id: Optional[str] = None
    contact_id: Optional[str] = None
    quote_id: Optional[str] = None
    assigned_to: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[date] = None
    priority: Optional[TaskPriority] = None
    completed: Optional[bool] = None


class TaskCreate(TaskUpdate):
    pass


# --- Auth ---


class Credentials(CamelModel):
    username: Optional[str] = None
    password: Optional[str] = None


class UserRead(CamelModel):
    id: str
    username: str


class TokenResponse(CamelModel):
    token: str
    user: UserRead


# --- Notifications ---


class ReminderMessage(BaseModel):
    """One rendered follow-up reminder, ready for a notifier."""

    quote_id: str
    to: str
    subject: str
    body: str
