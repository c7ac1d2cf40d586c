"""
Customer, contact and activity endpoints
"""

from typing import List

from fastapi import APIRouter, Depends

from quoteboard import crm
from quoteboard.auth import get_current_user
from quoteboard.db.connection import get_session
from quoteboard.db.models import User
from quoteboard.deps import get_store
from quoteboard.pipeline import PipelineStore
from quoteboard.schemas import (
    ActivityCreate,
    ActivityRead,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CustomerCreate,
    CustomerDetail,
    CustomerRead,
    CustomerUpdate,
    TaskRead,
)

router = APIRouter(tags=["customers"], dependencies=[Depends(get_current_user)])


# --- Customers ---


@router.get("/customers", response_model=List[CustomerRead])
async def list_customers():
    async with get_session() as session:
        return [CustomerRead.model_validate(c) for c in await crm.list_customers(session)]


@router.get("/customers/{customer_id}", response_model=CustomerDetail)
async def get_customer(customer_id: str, store: PipelineStore = Depends(get_store)):
    """Customer with all of its quotes, newest first"""
    async with get_session() as session:
        customer = CustomerDetail.model_validate(await crm.get_customer(session, customer_id))
    customer.quotes = await store.list_by_customer(customer_id)
    return customer


@router.post("/customers", response_model=CustomerRead, status_code=201)
async def create_customer(body: CustomerCreate):
    """Find-or-create by name (case-insensitive), then apply the CRM fields sent"""
    async with get_session() as session:
        customer = await crm.create_customer(session, body.model_dump(exclude_unset=True))
        return CustomerRead.model_validate(customer)


@router.put("/customers/{customer_id}", response_model=CustomerRead)
async def update_customer(customer_id: str, body: CustomerUpdate):
    async with get_session() as session:
        customer = await crm.update_customer(
            session, customer_id, body.model_dump(exclude_unset=True)
        )
        return CustomerRead.model_validate(customer)


# --- Contacts ---


@router.get("/customers/{customer_id}/contacts", response_model=List[ContactRead])
async def list_contacts(customer_id: str):
    async with get_session() as session:
        return [ContactRead.model_validate(c) for c in await crm.list_contacts(session, customer_id)]


@router.post("/customers/{customer_id}/contacts", response_model=ContactRead, status_code=201)
async def create_contact(customer_id: str, body: ContactCreate):
    async with get_session() as session:
        contact = await crm.create_contact(session, customer_id, body.model_dump(exclude_unset=True))
        return ContactRead.model_validate(contact)


@router.put("/contacts/{contact_id}", response_model=ContactRead)
async def update_contact(contact_id: str, body: ContactUpdate):
    async with get_session() as session:
        contact = await crm.update_contact(session, contact_id, body.model_dump(exclude_unset=True))
        return ContactRead.model_validate(contact)


@router.delete("/contacts/{contact_id}")
async def delete_contact(contact_id: str):
    async with get_session() as session:
        await crm.delete_contact(session, contact_id)
    return {"message": "Contact deleted"}


# --- Activities ---


@router.get("/customers/{customer_id}/activities", response_model=List[ActivityRead])
async def list_activities(customer_id: str):
    async with get_session() as session:
        return [
            ActivityRead.model_validate(a)
            for a in await crm.list_activities(session, customer_id)
        ]


@router.post(
    "/customers/{customer_id}/activities", response_model=ActivityRead, status_code=201
)
async def create_activity(
    customer_id: str,
    body: ActivityCreate,
    current_user: User = Depends(get_current_user),
):
    async with get_session() as session:
        activity = await crm.create_activity(
            session, customer_id, body.model_dump(exclude_unset=True), created_by=current_user.id
        )
        return ActivityRead.model_validate(activity)


# --- Tasks per customer ---


@router.get("/customers/{customer_id}/tasks", response_model=List[TaskRead])
async def list_customer_tasks(customer_id: str):
    async with get_session() as session:
        return [
            TaskRead.model_validate(t)
            for t in await crm.list_tasks_for_customer(session, customer_id)
        ]
