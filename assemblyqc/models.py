"""AssemblyQC Pydantic models for type-safe data validation.

Value objects shared by the calibration, lifecycle, workflow and bulk
engines. Database rows live in ``assemblyqc.db.models``.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ModelUnits(str, Enum):
    MILLIMETERS = "millimeters"
    METERS = "meters"
    FEET = "feet"


class CoordinateMode(str, Enum):
    """How model coordinates relate to the real world."""

    LOCAL = "local"  # arbitrary model frame, needs calibration
    NAMED = "named"  # model already in a named CRS


class TransformType(str, Enum):
    HELMERT = "helmert"
    AFFINE = "affine"


class CalibrationQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    POOR = "poor"
    UNUSABLE = "unusable"


class CaptureMethod(str, Enum):
    MANUAL = "manual"
    GPS = "gps"
    SURVEY = "survey"


class InspectionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"


class ArrivalCheckResult(str, Enum):
    OK = "ok"
    DAMAGED = "damaged"
    MISSING_PARTS = "missing_parts"
    WRONG_ITEM = "wrong_item"


class EntityType(str, Enum):
    ELEMENT = "element"
    GROUP = "group"
    RESULT = "result"
    PLAN_ITEM = "plan_item"
    CALIBRATION_POINT = "calibration_point"


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STATUS_CHANGED = "status_changed"
    GUID_CHANGED = "guid_changed"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    PHOTO_ADDED = "photo_added"
    PHOTO_DELETED = "photo_deleted"
    COMMENT_ADDED = "comment_added"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    ARRIVED = "arrived"
    ARRIVAL_CHECKED = "arrival_checked"
    INSTALLED = "installed"
    RESULT_RECORDED = "result_recorded"


class AuditActionCategory(str, Enum):
    LIFECYCLE = "lifecycle"
    INSPECTION = "inspection"
    REVIEW = "review"
    PHOTO = "photo"
    COMMENT = "comment"
    ADMIN = "admin"
    SYSTEM = "system"


class BulkActionType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"
    STATUS_CHANGE = "status_change"
    ASSIGN = "assign"


class UploadType(str, Enum):
    STATUS_CHANGE = "status_change"
    RESULT = "result"
    PHOTO = "photo"
    COMMENT = "comment"


class UploadStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


class Actor(BaseModel):
    """Who performs an operation. Authentication happens upstream."""

    model_config = ConfigDict(frozen=True)

    email: str
    name: str | None = None
    role: str = "inspector"

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("actor email is required")
        return v.strip()


# ---------------------------------------------------------------------------
# Coordinates & calibration
# ---------------------------------------------------------------------------


class ModelCoord(BaseModel):
    """Position in the building model frame (native model units)."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    z: float | None = None


class GpsCoord(BaseModel):
    """WGS84 position."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    altitude: float | None = None
    accuracy_m: float | None = Field(default=None, ge=0)


class GpsSample(BaseModel):
    """One reading from the site GPS sensor."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0)
    altitude: float | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_gps(self) -> GpsCoord:
        return GpsCoord(
            lat=self.latitude,
            lon=self.longitude,
            altitude=self.altitude,
            accuracy_m=self.accuracy,
        )


class NewCalibrationPoint(BaseModel):
    """Calibration point as captured on site."""

    model: ModelCoord
    gps: GpsCoord
    name: str | None = None
    description: str | None = None
    reference_guid: str | None = None
    reference_assembly_mark: str | None = None
    capture_method: CaptureMethod = CaptureMethod.MANUAL
    captured_at: datetime = Field(default_factory=utcnow)


class TransformOrigin(BaseModel):
    model_config = ConfigDict(frozen=True)

    model_x: float
    model_y: float
    planar_x: float
    planar_y: float


class CoordinateTransform(BaseModel):
    """Fitted model(meters) -> planar(meters) mapping.

    ``x' = a*x + b*y + tx`` and ``y' = c*x + d*y + ty``. The frame
    description says which planar CRS the right-hand side lives in.
    """

    model_config = ConfigDict(frozen=True)

    type: TransformType
    a: float
    b: float
    c: float
    d: float
    tx: float
    ty: float
    rotation_deg: float
    scale: float
    origin: TransformOrigin
    frame: dict[str, Any]
    point_count: int

    @property
    def determinant(self) -> float:
        return self.a * self.d - self.b * self.c

    def is_finite(self) -> bool:
        values = (self.a, self.b, self.c, self.d, self.tx, self.ty, self.rotation_deg, self.scale)
        return all(math.isfinite(v) for v in values)


class AccuracyReport(BaseModel):
    rmse_m: float
    max_error_m: float
    per_point_errors_m: list[float]
    quality: CalibrationQuality


class PointResidual(BaseModel):
    point_id: UUID
    name: str | None
    residual_m: float
    is_outlier: bool
    accuracy_warning: bool


class CalibrationStatus(BaseModel):
    """Operator-facing calibration summary for one project."""

    project_id: str
    mode: CoordinateMode
    is_calibrated: bool
    active_point_count: int
    transform: CoordinateTransform | None = None
    accuracy: AccuracyReport | None = None
    residuals: list[PointResidual] = Field(default_factory=list)
    message: str | None = None


# ---------------------------------------------------------------------------
# Elements & history
# ---------------------------------------------------------------------------


class ElementDescriptors(BaseModel):
    assembly_mark: str | None = None
    product_name: str | None = None
    object_name: str | None = None
    object_type: str | None = None


class GuidHistoryEntry(BaseModel):
    old_guid: str
    changed_at: datetime
    changed_by: str


class HistoryEntry(BaseModel):
    """One replayed audit event for an entity."""

    id: int
    entity_type: EntityType
    entity_id: str
    action: AuditAction
    category: AuditActionCategory
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    actor: str
    actor_name: str | None = None
    at: datetime
    is_bulk: bool = False
    bulk_action_id: UUID | None = None


class AuditEntry(BaseModel):
    """Input for the audit log engine."""

    project_id: str
    entity_type: EntityType
    entity_id: str
    action: AuditAction
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    actor: Actor
    bulk_action_id: UUID | None = None


# ---------------------------------------------------------------------------
# Bulk operations
# ---------------------------------------------------------------------------


class BulkItemResult(BaseModel):
    id: UUID
    success: bool
    error: str | None = None
    error_code: str | None = None


class BulkResult(BaseModel):
    bulk_action_id: UUID
    action: BulkActionType
    success_count: int
    failure_count: int
    results: list[BulkItemResult]

    @property
    def failures(self) -> list[BulkItemResult]:
        return [r for r in self.results if not r.success]

    def summary(self) -> str:
        return (
            f"{self.action.value}: {self.success_count} succeeded, "
            f"{self.failure_count} failed"
        )

