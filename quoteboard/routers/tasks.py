"""
Task endpoints
"""

from typing import List

from fastapi import APIRouter, Depends

from quoteboard import crm
from quoteboard.auth import get_current_user
from quoteboard.db.connection import get_session
from quoteboard.db.models import User
from quoteboard.schemas import TaskCreate, TaskRead, TaskUpdate

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("", response_model=List[TaskRead])
async def list_tasks(current_user: User = Depends(get_current_user)):
    async with get_session() as session:
        return [TaskRead.model_validate(t) for t in await crm.list_tasks(session)]


@router.get("/my", response_model=List[TaskRead])
async def list_my_tasks(current_user: User = Depends(get_current_user)):
    """Tasks assigned to the caller"""
    async with get_session() as session:
        tasks = await crm.list_tasks_for_user(session, current_user.id)
        return [TaskRead.model_validate(t) for t in tasks]


@router.post("", response_model=TaskRead, status_code=201)
async def create_task(body: TaskCreate, current_user: User = Depends(get_current_user)):
    async with get_session() as session:
        task = await crm.create_task(
            session, body.model_dump(exclude_unset=True), user_id=current_user.id
        )
        return TaskRead.model_validate(task)


@router.put("/{task_id}", response_model=TaskRead)
async def update_task(
    task_id: str,
    body: TaskUpdate,
    current_user: User = Depends(get_current_user),
):
    async with get_session() as session:
        task = await crm.update_task(session, task_id, body.model_dump(exclude_unset=True))
        return TaskRead.model_validate(task)
