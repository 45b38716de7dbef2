"""Inspection workflow routes.

Routes:
- POST /api/{target_type}/{target_id}/start     - Begin inspection
- POST /api/{target_type}/{target_id}/complete  - Ready for review
- POST /api/{target_type}/{target_id}/approve   - Approve and lock
- POST /api/{target_type}/{target_id}/reject    - Reject (comment required)
- POST /api/{target_type}/{target_id}/return    - Return for rework (comment required)
- POST /api/{target_type}/{target_id}/unlock    - Reopen an approved item (admin)
- POST /api/{target_type}/{target_id}/assign    - Assign or unassign an inspector
- POST /api/projects/{project_id}/bulk          - One action over many targets

``target_type`` is ``elements`` or ``groups``.
"""

from __future__ import annotations

from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.bulk.engine import BulkParams, apply_bulk
from assemblyqc.db.connection import get_db
from assemblyqc.models import Actor, BulkResult, EntityType
from assemblyqc.web.dependencies import get_actor, http_errors
from assemblyqc.web.models import (
    AssignRequest,
    BulkRequest,
    ReviewRequest,
    UnlockRequest,
    WorkflowStateResponse,
)
from assemblyqc.workflow.rules import Transition
from assemblyqc.workflow.service import InspectionWorkflow

router = APIRouter(tags=["review"])

TargetPath = Literal["elements", "groups"]


# ============================================================================
# Helper Functions
# ============================================================================


def _entity_type(target_type: TargetPath) -> EntityType:
    return EntityType.GROUP if target_type == "groups" else EntityType.ELEMENT


async def _transition(
    db: AsyncSession,
    target_type: TargetPath,
    target_id: UUID,
    transition: Transition,
    actor: Actor,
    comment: str | None = None,
):
    with http_errors():
        return await InspectionWorkflow(db).transition(
            _entity_type(target_type), target_id, transition, actor, comment=comment
        )


# ============================================================================
# Single-target Workflow Routes
# ============================================================================


@router.post("/api/{target_type}/{target_id}/start", response_model=WorkflowStateResponse)
async def start_inspection(
    target_type: TargetPath,
    target_id: UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await _transition(db, target_type, target_id, Transition.START, actor)


@router.post("/api/{target_type}/{target_id}/complete", response_model=WorkflowStateResponse)
async def complete_inspection(
    target_type: TargetPath,
    target_id: UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await _transition(db, target_type, target_id, Transition.COMPLETE, actor)


@router.post("/api/{target_type}/{target_id}/approve", response_model=WorkflowStateResponse)
async def approve(
    target_type: TargetPath,
    target_id: UUID,
    body: ReviewRequest | None = None,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    comment = body.comment if body else None
    return await _transition(db, target_type, target_id, Transition.APPROVE, actor, comment)


@router.post("/api/{target_type}/{target_id}/reject", response_model=WorkflowStateResponse)
async def reject(
    target_type: TargetPath,
    target_id: UUID,
    body: ReviewRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await _transition(db, target_type, target_id, Transition.REJECT, actor, body.comment)


@router.post("/api/{target_type}/{target_id}/return", response_model=WorkflowStateResponse)
async def return_for_rework(
    target_type: TargetPath,
    target_id: UUID,
    body: ReviewRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await _transition(db, target_type, target_id, Transition.RETURN, actor, body.comment)


@router.post("/api/{target_type}/{target_id}/unlock", response_model=WorkflowStateResponse)
async def unlock(
    target_type: TargetPath,
    target_id: UUID,
    body: UnlockRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        return await InspectionWorkflow(db).unlock(
            _entity_type(target_type), target_id, actor, body.reason
        )


@router.post("/api/{target_type}/{target_id}/assign", response_model=WorkflowStateResponse)
async def assign(
    target_type: TargetPath,
    target_id: UUID,
    body: AssignRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        return await InspectionWorkflow(db).assign(
            _entity_type(target_type),
            target_id,
            body.assignee,
            actor,
            assignee_name=body.assignee_name,
        )


# ============================================================================
# Bulk Operations
# ============================================================================


@router.post("/api/projects/{project_id}/bulk", response_model=BulkResult)
async def bulk_action(
    project_id: str,
    body: BulkRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Per-target outcomes; batch-level validation problems fail the whole call."""
    params = BulkParams(
        comment=body.comment,
        status=body.status,
        assignee=body.assignee,
        assignee_name=body.assignee_name,
    )
    with http_errors():
        return await apply_bulk(
            db,
            project_id,
            body.action,
            body.target_ids,
            actor,
            params,
            target_type=body.target_type,
        )
