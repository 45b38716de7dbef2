"""Request and response bodies for the AssemblyQC web API.

Domain types from ``assemblyqc.models`` are reused where they already
describe the wire shape (``CalibrationStatus``, ``BulkResult``,
``HistoryEntry``); the models here cover inputs and ORM-row views.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from assemblyqc.models import (
    ArrivalCheckResult,
    BulkActionType,
    CaptureMethod,
    CoordinateMode,
    EntityType,
    InspectionStatus,
    ModelUnits,
)


# ============================================================================
# Calibration
# ============================================================================


class CoordinateSettingsRequest(BaseModel):
    mode: CoordinateMode
    model_units: ModelUnits = ModelUnits.MILLIMETERS
    coordinate_system: Optional[str] = None
    planar_crs: Optional[str] = None


class CalibrationPointRequest(BaseModel):
    """A surveyed point: model coordinate (native units) plus GPS fix.

    Used by: POST /api/projects/{project_id}/calibration/points
    """

    model_x: float
    model_y: float
    model_z: Optional[float] = None
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    altitude: Optional[float] = None
    accuracy_m: Optional[float] = Field(default=None, ge=0)
    name: Optional[str] = None
    description: Optional[str] = None
    reference_guid: Optional[str] = None
    reference_assembly_mark: Optional[str] = None
    capture_method: CaptureMethod = CaptureMethod.MANUAL


class CalibrationPointResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: str
    model_x: float
    model_y: float
    gps_lat: float
    gps_lon: float
    gps_accuracy_m: Optional[float] = None
    accuracy_warning: bool
    name: Optional[str] = None
    reference_guid: Optional[str] = None
    is_active: bool
    captured_by: str


class ConvertRequest(BaseModel):
    x: float
    y: float
    z: Optional[float] = None


# ============================================================================
# Elements
# ============================================================================


class ElementCreateRequest(BaseModel):
    guid: str
    assembly_mark: Optional[str] = None
    product_name: Optional[str] = None
    object_name: Optional[str] = None
    object_type: Optional[str] = None


class GuidRemapRequest(BaseModel):
    old_guid: str
    new_guid: str


class ElementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: str
    guid: str
    assembly_mark: Optional[str] = None
    product_name: Optional[str] = None
    object_type: Optional[str] = None
    inspection_status: InspectionStatus
    can_edit: bool
    arrived_at: Optional[datetime] = None
    installed_at: Optional[datetime] = None
    guid_history: list[dict[str, Any]] = Field(default_factory=list)


class ArrivalRequest(BaseModel):
    arrived_at: Optional[datetime] = None
    delivery_vehicle_id: Optional[str] = None


class ArrivalCheckRequest(BaseModel):
    result: ArrivalCheckResult
    comment: Optional[str] = None


class InstallationRequest(BaseModel):
    installed_at: Optional[datetime] = None
    resource_id: Optional[str] = None


# ============================================================================
# Review & Bulk
# ============================================================================


class ReviewRequest(BaseModel):
    comment: Optional[str] = None


class UnlockRequest(BaseModel):
    reason: str


class AssignRequest(BaseModel):
    assignee: Optional[str] = None
    assignee_name: Optional[str] = None


class WorkflowStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    inspection_status: InspectionStatus
    review_decision: Optional[str] = None
    review_comment: Optional[str] = None
    can_edit: bool
    assigned_to: Optional[str] = None


class BulkRequest(BaseModel):
    """Used by: POST /api/projects/{project_id}/bulk"""

    action: BulkActionType
    target_ids: list[UUID]
    target_type: EntityType = EntityType.ELEMENT
    comment: Optional[str] = None
    status: Optional[InspectionStatus] = None
    assignee: Optional[str] = None
    assignee_name: Optional[str] = None
