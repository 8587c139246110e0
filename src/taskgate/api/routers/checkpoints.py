"""Checkpoint review: list pending gates, approve or reject them."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from taskgate.api.dependencies import get_app_context
from taskgate.api.schemas import (
    ApproveRequest,
    CheckpointDetailsResponse,
    CheckpointListResponse,
    CheckpointResponse,
    RejectRequest,
)
from taskgate.app import AppContext
from taskgate.errors import JobInputError
from taskgate.jobs.models import CheckpointType

router = APIRouter(prefix="/checkpoints", tags=["checkpoints"])


@router.get("", response_model=CheckpointListResponse)
def list_pending_checkpoints(
    checkpoint_type: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    context: AppContext = Depends(get_app_context),
) -> CheckpointListResponse:
    checkpoints = context.checkpoints.list_pending(
        checkpoint_type=_parse_checkpoint_type(checkpoint_type),
        limit=limit,
        offset=offset,
    )
    return CheckpointListResponse(
        checkpoints=[CheckpointResponse.from_view(item) for item in checkpoints],
        count=len(checkpoints),
        limit=limit,
        offset=offset,
    )


@router.get("/{checkpoint_id}", response_model=CheckpointDetailsResponse)
def get_checkpoint(
    checkpoint_id: str,
    context: AppContext = Depends(get_app_context),
) -> CheckpointDetailsResponse:
    return CheckpointDetailsResponse.from_details(context.checkpoints.get_details(checkpoint_id))


@router.post("/{checkpoint_id}/approve", response_model=CheckpointResponse)
def approve_checkpoint(
    checkpoint_id: str,
    payload: ApproveRequest,
    context: AppContext = Depends(get_app_context),
) -> CheckpointResponse:
    checkpoint = context.checkpoints.approve(checkpoint_id, approver_id=payload.approver_id)
    return CheckpointResponse.from_view(checkpoint)


@router.post("/{checkpoint_id}/reject", response_model=CheckpointResponse)
def reject_checkpoint(
    checkpoint_id: str,
    payload: RejectRequest,
    context: AppContext = Depends(get_app_context),
) -> CheckpointResponse:
    checkpoint = context.checkpoints.reject(
        checkpoint_id,
        approver_id=payload.approver_id,
        reason=payload.reason,
    )
    return CheckpointResponse.from_view(checkpoint)


def _parse_checkpoint_type(value: str | None) -> CheckpointType | None:
    if value is None:
        return None
    try:
        return CheckpointType(value.strip().upper())
    except ValueError as error:
        raise JobInputError(f"Unsupported checkpoint type: {value!r}") from error
