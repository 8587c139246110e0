"""Orchestrator tasks: fire-and-forget submission and status polling."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from taskgate.api.dependencies import get_app_context
from taskgate.api.schemas import TaskStatusResponse, TaskSubmitRequest, TaskSubmitResponse
from taskgate.app import AppContext

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.post("", response_model=TaskSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
def submit_task(
    payload: TaskSubmitRequest,
    context: AppContext = Depends(get_app_context),
) -> TaskSubmitResponse:
    task_id = context.orchestrator.submit_task(
        payload.task,
        context=payload.context,
        user_id=payload.user_id,
        priority=payload.priority,
    )
    return TaskSubmitResponse(task_id=task_id)


@router.get("/{task_id}", response_model=TaskStatusResponse)
def get_task(task_id: str, context: AppContext = Depends(get_app_context)) -> TaskStatusResponse:
    task_status = context.orchestrator.get_status(task_id)
    if task_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task not found: {task_id}",
        )
    return TaskStatusResponse.from_status(task_status)
