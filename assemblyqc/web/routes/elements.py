"""Element identity and lifecycle routes.

Routes:
- GET  /api/projects/{project_id}/elements                   - List active elements
- POST /api/projects/{project_id}/elements                   - Register an element
- GET  /api/projects/{project_id}/elements/by-guid/{guid}    - Look up by current or previous GUID
- POST /api/projects/{project_id}/elements/remap-guid        - Atomic GUID remap
- POST /api/elements/{element_id}/arrival                     - Delivery recorded
- POST /api/elements/{element_id}/arrival-check              - Goods-in check
- POST /api/elements/{element_id}/installation               - Installed on site
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.db.connection import get_db
from assemblyqc.lifecycle.events import record_arrival, record_arrival_check, record_installation
from assemblyqc.lifecycle.identity import (
    create_element,
    find_element,
    get_element,
    list_elements,
    remap_guid,
)
from assemblyqc.models import Actor, ElementDescriptors, InspectionStatus
from assemblyqc.web.dependencies import get_actor, http_errors
from assemblyqc.web.models import (
    ArrivalCheckRequest,
    ArrivalRequest,
    ElementCreateRequest,
    ElementResponse,
    GuidRemapRequest,
    InstallationRequest,
)

router = APIRouter(tags=["elements"])


@router.get("/api/projects/{project_id}/elements", response_model=list[ElementResponse])
async def elements_list(
    project_id: str,
    status_filter: InspectionStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await list_elements(
        db,
        project_id,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/api/projects/{project_id}/elements",
    response_model=ElementResponse,
    status_code=status.HTTP_201_CREATED,
)
async def elements_create(
    project_id: str,
    body: ElementCreateRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    descriptors = ElementDescriptors(**body.model_dump(exclude={"guid"}))
    with http_errors():
        return await create_element(db, project_id, body.guid, descriptors, actor)


@router.get("/api/projects/{project_id}/elements/by-guid/{guid}", response_model=ElementResponse)
async def element_by_guid(
    project_id: str,
    guid: str,
    include_history: bool = True,
    db: AsyncSession = Depends(get_db),
):
    element = await find_element(db, project_id, guid, include_history=include_history)
    if element is None:
        raise HTTPException(status_code=404, detail=f"No element with GUID {guid}")
    return element


@router.post("/api/projects/{project_id}/elements/remap-guid", response_model=ElementResponse)
async def element_remap_guid(
    project_id: str,
    body: GuidRemapRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Move an element to a new GUID together with every record that references it."""
    with http_errors():
        element_id = await remap_guid(db, project_id, body.old_guid, body.new_guid, actor)
        return await get_element(db, element_id)


@router.post("/api/elements/{element_id}/arrival", response_model=ElementResponse)
async def element_arrival(
    element_id: UUID,
    body: ArrivalRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        return await record_arrival(
            db,
            element_id,
            actor,
            arrived_at=body.arrived_at,
            delivery_vehicle_id=body.delivery_vehicle_id,
        )


@router.post("/api/elements/{element_id}/arrival-check", response_model=ElementResponse)
async def element_arrival_check(
    element_id: UUID,
    body: ArrivalCheckRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        return await record_arrival_check(db, element_id, body.result, actor, comment=body.comment)


@router.post("/api/elements/{element_id}/installation", response_model=ElementResponse)
async def element_installation(
    element_id: UUID,
    body: InstallationRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        return await record_installation(
            db,
            element_id,
            actor,
            installed_at=body.installed_at,
            resource_id=body.resource_id,
        )
