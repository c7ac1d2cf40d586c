"""Database models for the quote pipeline.

Uses SQLAlchemy 2.0 with async support.
Backend-agnostic: works with SQLite (dev/tests) and PostgreSQL (production).
"""

import enum
import secrets
import time
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


def new_quote_id() -> str:
    """Quote ids look like ``q_1718000000000_a1b2c3``."""
    return f"q_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo, so values are stored as naive UTC and re-tagged
    with UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# --- Enums ---


class Stage(str, enum.Enum):
    """Pipeline columns. Declaration order is the board order."""
    NEW = "new"
    FOLLOW_UP = "follow_up"
    TENDER = "tender"
    WON = "won"
    LOST = "lost"

    @property
    def label(self) -> str:
        return STAGE_LABELS[self]

    @property
    def rank(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER: list[Stage] = list(Stage)

STAGE_LABELS = {
    Stage.NEW: "New",
    Stage.FOLLOW_UP: "Follow-up",
    Stage.TENDER: "Tender",
    Stage.WON: "Won",
    Stage.LOST: "Lost",
}

# Keys used by earlier board versions
LEGACY_STAGES = {
    "sent": Stage.NEW,
    "negotiation": Stage.TENDER,
}


class TaskPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# --- Models ---


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}')>"


class Customer(Base):
    """Company the quotes are addressed to."""

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    website: Mapped[Optional[str]] = mapped_column(String(500))
    address: Mapped[Optional[str]] = mapped_column(Text)
    industry: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, name='{self.name}')>"


class Quote(Base):
    """A sales opportunity card on the board."""

    __tablename__ = "quotes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_quote_id)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    client_name: Mapped[str] = mapped_column(Text, nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="SET NULL")
    )
    value: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))

    # --- Board placement ---
    stage: Mapped[str] = mapped_column(String(20), default=Stage.NEW.value, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    so_number: Mapped[Optional[str]] = mapped_column(String(100))

    # --- Chasing ---
    last_chased_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    next_chase_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    reminder_email: Mapped[Optional[str]] = mapped_column(String(255))

    attachment_url: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[Optional[str]] = mapped_column(String(50))  # "Tender", "OTP"
    notes: Mapped[Optional[str]] = mapped_column(Text)

    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    customer: Mapped[Optional["Customer"]] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_quotes_stage_position", "stage", "position"),
        Index("ix_quotes_next_chase_at", "next_chase_at"),
        Index("ix_quotes_customer_id", "customer_id"),
    )

    @property
    def customer_name(self) -> Optional[str]:
        return self.customer.name if self.customer else None

    def __repr__(self) -> str:
        return (
            f"<Quote(id={self.id}, stage='{self.stage}', "
            f"position={self.position}, title='{self.title[:40]}')>"
        )


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    job_title: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Contact(id={self.id}, name='{self.first_name} {self.last_name}')>"


class Activity(Base):
    """Logged interaction with a customer (call, email, meeting, note)."""

    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    contact_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("contacts.id", ondelete="SET NULL")
    )
    quote_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("quotes.id", ondelete="SET NULL")
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(500))
    description: Mapped[Optional[str]] = mapped_column(Text)
    activity_date: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_activities_customer_date", "customer_id", "activity_date"),
    )


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    customer_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="SET NULL")
    )
    contact_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("contacts.id", ondelete="SET NULL")
    )
    quote_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("quotes.id", ondelete="SET NULL")
    )
    assigned_to: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL")
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    priority: Mapped[str] = mapped_column(
        String(10), default=TaskPriority.MEDIUM.value, nullable=False
    )
    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    customer: Mapped[Optional["Customer"]] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_tasks_assigned_to", "assigned_to"),
        Index("ix_tasks_customer_id", "customer_id"),
    )

    @property
    def customer_name(self) -> Optional[str]:
        return self.customer.name if self.customer else None
