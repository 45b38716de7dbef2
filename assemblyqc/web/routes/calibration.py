"""Calibration routes.

Routes:
- PUT  /api/projects/{project_id}/calibration/settings          - Select local or named pathway
- GET  /api/projects/{project_id}/calibration                   - Status, quality and residuals
- GET  /api/projects/{project_id}/calibration/points            - List points
- POST /api/projects/{project_id}/calibration/points            - Add a surveyed point
- POST /api/projects/{project_id}/calibration/points/{id}/deactivate
- POST /api/projects/{project_id}/calibration/points/{id}/reactivate
- POST /api/projects/{project_id}/calibration/to-gps            - Model -> GPS
- POST /api/projects/{project_id}/calibration/to-model          - GPS -> model
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.calibration.store import CalibrationStore
from assemblyqc.db.connection import get_db
from assemblyqc.models import (
    Actor,
    CalibrationStatus,
    GpsCoord,
    ModelCoord,
    NewCalibrationPoint,
)
from assemblyqc.web.dependencies import get_actor, http_errors
from assemblyqc.web.models import (
    CalibrationPointRequest,
    CalibrationPointResponse,
    ConvertRequest,
    CoordinateSettingsRequest,
)

router = APIRouter(prefix="/api/projects/{project_id}/calibration", tags=["calibration"])


@router.put("/settings")
async def update_settings(
    project_id: str,
    body: CoordinateSettingsRequest,
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        settings = await CalibrationStore(db).configure(
            project_id,
            body.mode,
            body.model_units,
            coordinate_system=body.coordinate_system,
            planar_crs=body.planar_crs,
        )
    return {
        "project_id": project_id,
        "mode": settings.mode,
        "model_units": settings.model_units,
        "coordinate_system": settings.coordinate_system,
        "planar_crs": settings.planar_crs,
    }


@router.get("", response_model=CalibrationStatus)
async def calibration_status(project_id: str, db: AsyncSession = Depends(get_db)):
    """Transform, accuracy grade and per-point residuals with outlier flags."""
    with http_errors():
        return await CalibrationStore(db).calibration_status(project_id)


@router.get("/points", response_model=list[CalibrationPointResponse])
async def list_points(
    project_id: str,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
):
    return await CalibrationStore(db).list_points(project_id, include_inactive=include_inactive)


@router.post(
    "/points", response_model=CalibrationPointResponse, status_code=status.HTTP_201_CREATED
)
async def add_point(
    project_id: str,
    body: CalibrationPointRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    point = NewCalibrationPoint(
        model=ModelCoord(x=body.model_x, y=body.model_y, z=body.model_z),
        gps=GpsCoord(
            lat=body.latitude,
            lon=body.longitude,
            altitude=body.altitude,
            accuracy_m=body.accuracy_m,
        ),
        name=body.name,
        description=body.description,
        reference_guid=body.reference_guid,
        reference_assembly_mark=body.reference_assembly_mark,
        capture_method=body.capture_method,
    )
    with http_errors():
        return await CalibrationStore(db).add_point(project_id, point, actor)


@router.post("/points/{point_id}/deactivate", response_model=CalibrationPointResponse)
async def deactivate_point(
    project_id: str,
    point_id: UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        return await CalibrationStore(db).deactivate_point(project_id, point_id, actor)


@router.post("/points/{point_id}/reactivate", response_model=CalibrationPointResponse)
async def reactivate_point(
    project_id: str,
    point_id: UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        return await CalibrationStore(db).reactivate_point(project_id, point_id, actor)


@router.post("/to-gps", response_model=GpsCoord)
async def model_to_gps(project_id: str, body: ConvertRequest, db: AsyncSession = Depends(get_db)):
    with http_errors():
        return await CalibrationStore(db).convert_model_to_gps(
            project_id, ModelCoord(x=body.x, y=body.y, z=body.z)
        )


@router.post("/to-model", response_model=ModelCoord)
async def gps_to_model(project_id: str, body: GpsCoord, db: AsyncSession = Depends(get_db)):
    with http_errors():
        return await CalibrationStore(db).convert_gps_to_model(project_id, body)
