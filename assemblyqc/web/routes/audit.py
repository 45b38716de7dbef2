"""Audit trail routes.

Routes:
- GET /api/elements/{element_id}/history            - Element history, newest first
- GET /api/elements/{element_id}/state              - Element state as of a timestamp
- GET /api/projects/{project_id}/bulk-actions       - Recent bulk operations
- GET /api/bulk-actions/{bulk_action_id}/entries    - Audit entries of one bulk operation
- GET /api/projects/{project_id}/stats              - Lifecycle statistics
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.audit.log import entries_for_bulk, to_history_entry
from assemblyqc.db.connection import get_db
from assemblyqc.lifecycle.history import get_history, state_as_of
from assemblyqc.models import HistoryEntry
from assemblyqc.reporting.lifecycle_metrics import compute_lifecycle_stats, list_bulk_actions
from assemblyqc.web.dependencies import http_errors

router = APIRouter(tags=["audit"])


@router.get("/api/elements/{element_id}/history", response_model=list[HistoryEntry])
async def element_history(
    element_id: UUID,
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        history = await get_history(db, element_id)

    entries = []
    async for entry in history:
        entries.append(entry)
        if len(entries) >= limit:
            break
    return entries


@router.get("/api/elements/{element_id}/state")
async def element_state(
    element_id: UUID,
    at: datetime = Query(..., description="Point in time (ISO 8601)"),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        state = await state_as_of(db, element_id, at)
    return {"element_id": str(element_id), "at": at.isoformat(), "state": state}


@router.get("/api/projects/{project_id}/bulk-actions")
async def bulk_actions(
    project_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_bulk_actions(db, project_id, limit=limit)
    return [
        {
            "id": str(row.id),
            "action_type": row.action_type,
            "target_type": row.target_type,
            "success_count": row.success_count,
            "failure_count": row.failure_count,
            "failures": row.failures,
            "performed_by": row.performed_by,
            "performed_at": row.performed_at.isoformat() if row.performed_at else None,
        }
        for row in rows
    ]


@router.get("/api/bulk-actions/{bulk_action_id}/entries", response_model=list[HistoryEntry])
async def bulk_action_entries(bulk_action_id: UUID, db: AsyncSession = Depends(get_db)):
    return [to_history_entry(row) for row in await entries_for_bulk(db, bulk_action_id)]


@router.get("/api/projects/{project_id}/stats")
async def project_stats(project_id: str, db: AsyncSession = Depends(get_db)):
    stats = await compute_lifecycle_stats(db, project_id)
    return {
        "project_id": stats.project_id,
        "total_elements": stats.total_elements,
        "arrived_count": stats.arrived_count,
        "installed_count": stats.installed_count,
        "status_counts": stats.status_counts,
        "approval_rate": stats.approval_rate,
    }
