"""Task API routes."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..middleware import get_context, require_auth
from ...context import AppContext
from ...models import (
    Task,
    TaskPriority,
    TaskSource,
    User,
    TASK_DESCRIPTION_MAX_LENGTH,
    TASK_TITLE_MAX_LENGTH,
)


logger = logging.getLogger(__name__)


class CreateTaskRequest(BaseModel):
    """Task creation request."""
    title: str = Field(..., min_length=1, max_length=TASK_TITLE_MAX_LENGTH)
    description: str = Field(..., min_length=1, max_length=TASK_DESCRIPTION_MAX_LENGTH)
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    assigned_to: Optional[int] = None
    is_private: bool = False


router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_task(body: CreateTaskRequest,
                      background_tasks: BackgroundTasks,
                      user: User = Depends(require_auth),
                      context: AppContext = Depends(get_context)):
    """Create a task.

    A task with a due date is also added to the configured external calendar
    after the response is sent.
    """
    task = Task(
        title=body.title,
        description=body.description,
        created_by=user.id,
        priority=body.priority,
        due_date=body.due_date,
        assigned_to=body.assigned_to,
        is_private=body.is_private,
        source=TaskSource.MANUAL,
    )

    try:
        task = await context.db.create_task(task)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    if context.engine is not None and task.due_date is not None:
        background_tasks.add_task(context.engine.sync_task_to_external_calendar, task)

    return task.to_dict()


@router.get("")
async def list_tasks(user: User = Depends(require_auth),
                     context: AppContext = Depends(get_context)):
    """Tasks created by or assigned to the caller."""
    tasks = await context.db.list_tasks_for_user(user.id)
    return {"tasks": [task.to_dict() for task in tasks], "count": len(tasks)}
