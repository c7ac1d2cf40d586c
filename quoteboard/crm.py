"""Customer relationship records around the quote board.

Customers, their contacts, logged activities and follow-up tasks.

Usage:
    from quoteboard.crm import find_or_create_customer, create_task

    async with get_session() as session:
        customer = await find_or_create_customer(session, "Acme Ltd")

All functions take an ``AsyncSession``; the caller manages commit.
"""

import logging
from typing import Any, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quoteboard.db.models import Activity, Contact, Customer, Task, TaskPriority, utcnow
from quoteboard.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CUSTOMER_FIELDS = ("email", "phone", "website", "address", "industry", "notes")
CONTACT_FIELDS = ("first_name", "last_name", "email", "phone", "job_title", "notes")
TASK_FIELDS = (
    "customer_id",
    "contact_id",
    "quote_id",
    "assigned_to",
    "title",
    "description",
    "due_date",
    "priority",
    "completed",
)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

async def _customer_by_name(session: AsyncSession, name: str) -> Optional[Customer]:
    return await session.scalar(
        select(Customer).where(func.lower(Customer.name) == name.strip().lower())
    )


async def find_or_create_customer(session: AsyncSession, name: str) -> Customer:
    """Case-insensitive lookup by name; creates the customer when missing."""
    if _blank(name):
        raise ValidationError("Customer name is required")
    existing = await _customer_by_name(session, name)
    if existing is not None:
        return existing

    customer = Customer(name=name.strip())
    session.add(customer)
    await session.flush()
    logger.info(f"Created customer {customer.id} '{customer.name}'")
    return customer


async def list_customers(session: AsyncSession) -> list[Customer]:
    result = await session.scalars(select(Customer).order_by(Customer.name.asc()))
    return list(result.all())


async def get_customer(session: AsyncSession, customer_id: str) -> Customer:
    customer = await session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer", customer_id)
    return customer


async def update_customer(
    session: AsyncSession, customer_id: str, fields: Mapping[str, Any]
) -> Customer:
    """Apply the given CRM fields. A rename must stay unique (case-insensitive)."""
    customer = await get_customer(session, customer_id)

    if "name" in fields:
        name = fields["name"]
        if _blank(name):
            raise ValidationError("Customer name is required")
        clash = await _customer_by_name(session, name)
        if clash is not None and clash.id != customer.id:
            raise ConflictError(f"Customer '{name.strip()}' already exists")
        customer.name = name.strip()

    for key in CUSTOMER_FIELDS:
        if key in fields:
            setattr(customer, key, fields[key])
    customer.updated_at = utcnow()
    await session.flush()
    return customer


async def create_customer(session: AsyncSession, fields: Mapping[str, Any]) -> Customer:
    """Find-or-create by name, then apply whichever CRM fields were sent."""
    customer = await find_or_create_customer(session, fields.get("name"))
    extra = {k: fields[k] for k in CUSTOMER_FIELDS if not _blank(fields.get(k))}
    if extra:
        customer = await update_customer(session, customer.id, extra)
    return customer


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

async def list_contacts(session: AsyncSession, customer_id: str) -> list[Contact]:
    result = await session.scalars(
        select(Contact)
        .where(Contact.customer_id == customer_id)
        .order_by(Contact.last_name.asc(), Contact.first_name.asc())
    )
    return list(result.all())


async def create_contact(
    session: AsyncSession, customer_id: str, fields: Mapping[str, Any]
) -> Contact:
    if _blank(fields.get("first_name")) or _blank(fields.get("last_name")):
        raise ValidationError("First name and last name are required")
    await get_customer(session, customer_id)

    contact = Contact(
        customer_id=customer_id,
        **{k: fields.get(k) for k in CONTACT_FIELDS},
    )
    session.add(contact)
    await session.flush()
    return contact


async def get_contact(session: AsyncSession, contact_id: str) -> Contact:
    contact = await session.get(Contact, contact_id)
    if contact is None:
        raise NotFoundError("Contact", contact_id)
    return contact


async def update_contact(
    session: AsyncSession, contact_id: str, fields: Mapping[str, Any]
) -> Contact:
    contact = await get_contact(session, contact_id)
    for key in ("first_name", "last_name"):
        if key in fields and _blank(fields[key]):
            raise ValidationError("First name and last name are required")
    for key in CONTACT_FIELDS:
        if key in fields:
            setattr(contact, key, fields[key])
    contact.updated_at = utcnow()
    await session.flush()
    return contact


async def delete_contact(session: AsyncSession, contact_id: str) -> None:
    contact = await get_contact(session, contact_id)
    await session.delete(contact)
    await session.flush()
    logger.info(f"Deleted contact {contact_id}")


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------

async def list_activities(session: AsyncSession, customer_id: str) -> list[Activity]:
    result = await session.scalars(
        select(Activity)
        .where(Activity.customer_id == customer_id)
        .order_by(Activity.activity_date.desc(), Activity.created_at.desc())
    )
    return list(result.all())


async def create_activity(
    session: AsyncSession,
    customer_id: str,
    fields: Mapping[str, Any],
    created_by: Optional[str] = None,
) -> Activity:
    if _blank(fields.get("type")):
        raise ValidationError("Activity type is required")
    await get_customer(session, customer_id)

    activity = Activity(
        customer_id=customer_id,
        contact_id=fields.get("contact_id"),
        quote_id=fields.get("quote_id"),
        type=fields["type"].strip(),
        subject=fields.get("subject"),
        description=fields.get("description"),
        activity_date=fields.get("activity_date") or utcnow(),
        created_by=created_by,
    )
    session.add(activity)
    await session.flush()
    return activity


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

def _task_query():
    # Open tasks first, soonest due date first, undated last
    return select(Task).order_by(
        Task.completed.asc(),
        Task.due_date.is_(None),
        Task.due_date.asc(),
        Task.created_at.desc(),
    )


async def list_tasks(session: AsyncSession) -> list[Task]:
    return list((await session.scalars(_task_query())).all())


async def list_tasks_for_user(session: AsyncSession, user_id: str) -> list[Task]:
    result = await session.scalars(_task_query().where(Task.assigned_to == user_id))
    return list(result.all())


async def list_tasks_for_customer(session: AsyncSession, customer_id: str) -> list[Task]:
    result = await session.scalars(_task_query().where(Task.customer_id == customer_id))
    return list(result.all())


async def create_task(
    session: AsyncSession,
    fields: Mapping[str, Any],
    user_id: Optional[str] = None,
) -> Task:
    """Create a task. Unassigned tasks go to the creating user."""
    if _blank(fields.get("title")):
        raise ValidationError("Title is required")

    values = {k: fields.get(k) for k in TASK_FIELDS}
    values["title"] = values["title"].strip()
    values["assigned_to"] = values["assigned_to"] or user_id
    values["priority"] = TaskPriority(values["priority"] or TaskPriority.MEDIUM).value
    values["completed"] = bool(values["completed"])

    task = Task(**values)
    session.add(task)
    await session.flush()
    return await get_task(session, task.id)


async def get_task(session: AsyncSession, task_id: str) -> Task:
    task = await session.scalar(
        select(Task)
        .where(Task.id == task_id)
        .execution_options(populate_existing=True)
    )
    if task is None:
        raise NotFoundError("Task", task_id)
    return task


async def update_task(
    session: AsyncSession, task_id: str, fields: Mapping[str, Any]
) -> Task:
    task = await get_task(session, task_id)
    if "title" in fields and _blank(fields["title"]):
        raise ValidationError("Title is required")
    for key in TASK_FIELDS:
        if key not in fields:
            continue
        value = fields[key]
        if key in ("priority", "completed") and value is None:
            continue
        if key == "priority":
            value = TaskPriority(value).value
        setattr(task, key, value)
    task.updated_at = utcnow()
    await session.flush()
    return await get_task(session, task_id)
