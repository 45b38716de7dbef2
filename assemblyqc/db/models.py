"""SQLAlchemy async database models for AssemblyQC.

Elements and checkpoint groups carry an embedded inspection state and an
optimistic version column. The audit log is append-only; ORM guards at the
bottom of this module reject any update or delete against it.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    Text,
    Uuid,
    event,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from assemblyqc.core.errors import AuditLogImmutableError
from assemblyqc.models import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------


class ProjectCoordinateSettingsModel(Base):
    """Per-project coordinate pathway and a display mirror of calibration status."""

    __tablename__ = "project_coordinate_settings"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    mode: Mapped[str] = mapped_column(Text, nullable=False, default="local")
    coordinate_system: Mapped[str] = mapped_column(Text, nullable=False, default="EPSG:3301")
    planar_crs: Mapped[str | None] = mapped_column(Text)  # None -> local TM frame
    model_units: Mapped[str] = mapped_column(Text, nullable=False, default="millimeters")

    # Mirrored from the cached transform, never read back as a source of truth
    is_calibrated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    calibration_point_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rmse_m: Mapped[float | None] = mapped_column(Float)
    max_error_m: Mapped[float | None] = mapped_column(Float)
    quality: Mapped[str | None] = mapped_column(Text)
    calibrated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("mode IN ('local', 'named')", name="check_coordinate_mode"),
        CheckConstraint(
            "model_units IN ('millimeters', 'meters', 'feet')", name="check_model_units"
        ),
    )


class CalibrationPointModel(Base):
    """Surveyed pair of model coordinate and GPS fix."""

    __tablename__ = "calibration_points"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    # Model frame, native model units
    model_x: Mapped[float] = mapped_column(Float, nullable=False)
    model_y: Mapped[float] = mapped_column(Float, nullable=False)
    model_z: Mapped[float | None] = mapped_column(Float)

    # WGS84
    gps_lat: Mapped[float] = mapped_column(Float, nullable=False)
    gps_lon: Mapped[float] = mapped_column(Float, nullable=False)
    gps_altitude: Mapped[float | None] = mapped_column(Float)
    gps_accuracy_m: Mapped[float | None] = mapped_column(Float)
    accuracy_warning: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    name: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    reference_guid: Mapped[str | None] = mapped_column(Text, index=True)
    reference_assembly_mark: Mapped[str | None] = mapped_column(Text)
    capture_method: Mapped[str] = mapped_column(Text, nullable=False, default="manual")

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    captured_by: Mapped[str] = mapped_column(Text, nullable=False)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deactivated_by: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("gps_lat >= -90 AND gps_lat <= 90", name="check_gps_lat_range"),
        CheckConstraint("gps_lon >= -180 AND gps_lon <= 180", name="check_gps_lon_range"),
        CheckConstraint(
            "capture_method IN ('manual', 'gps', 'survey')", name="check_capture_method"
        ),
        Index("idx_calibration_points_active", "project_id", "is_active"),
    )


class CoordinateTransformModel(Base):
    """Cached transform derived from the active calibration points.

    ``fingerprint`` identifies the active point set the row was fitted from;
    ``version`` guards concurrent recomputes.
    """

    __tablename__ = "coordinate_transforms"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fingerprint: Mapped[str | None] = mapped_column(Text)
    transform: Mapped[dict | None] = mapped_column(JSON)
    accuracy: Mapped[dict | None] = mapped_column(JSON)

    computed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    invalidated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


# ---------------------------------------------------------------------------
# Elements & inspection state
# ---------------------------------------------------------------------------


class InspectionStateMixin:
    """Workflow columns shared by elements and checkpoint groups."""

    inspection_status: Mapped[str] = mapped_column(
        Text, nullable=False, default="not_started", index=True
    )

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_by: Mapped[str | None] = mapped_column(Text)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[str | None] = mapped_column(Text)

    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reviewed_by: Mapped[str | None] = mapped_column(Text)
    reviewed_by_name: Mapped[str | None] = mapped_column(Text)
    review_decision: Mapped[str | None] = mapped_column(Text)
    review_comment: Mapped[str | None] = mapped_column(Text)

    can_edit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    locked_by: Mapped[str | None] = mapped_column(Text)

    assigned_to: Mapped[str | None] = mapped_column(Text, index=True)
    assigned_to_name: Mapped[str | None] = mapped_column(Text)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    assigned_by: Mapped[str | None] = mapped_column(Text)


class ElementModel(InspectionStateMixin, Base):
    """Physical construction element, keyed by a stable id rather than its model GUID."""

    __tablename__ = "elements"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    guid: Mapped[str] = mapped_column(Text, nullable=False)
    guid_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Descriptors
    assembly_mark: Mapped[str | None] = mapped_column(Text, index=True)
    product_name: Mapped[str | None] = mapped_column(Text)
    object_name: Mapped[str | None] = mapped_column(Text)
    object_type: Mapped[str | None] = mapped_column(Text)

    # Delivery
    arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    arrived_by: Mapped[str | None] = mapped_column(Text)
    delivery_vehicle_id: Mapped[str | None] = mapped_column(Text)
    arrival_check_result: Mapped[str | None] = mapped_column(Text)
    arrival_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    arrival_checked_by: Mapped[str | None] = mapped_column(Text)
    arrival_comment: Mapped[str | None] = mapped_column(Text)

    # Installation
    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    installed_by: Mapped[str | None] = mapped_column(Text)
    installation_resource_id: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        # At most one active element per (project_id, guid)
        Index(
            "idx_elements_active_guid",
            "project_id",
            "guid",
            unique=True,
            postgresql_where=text("is_active = true"),
            sqlite_where=text("is_active = 1"),
        ),
        CheckConstraint(
            "inspection_status IN ('not_started', 'in_progress', 'completed', "
            "'approved', 'rejected', 'returned')",
            name="check_element_inspection_status",
        ),
        CheckConstraint(
            "arrival_check_result IS NULL OR arrival_check_result IN "
            "('ok', 'damaged', 'missing_parts', 'wrong_item')",
            name="check_arrival_check_result",
        ),
    )


class CheckpointGroupModel(InspectionStateMixin, Base):
    """Named set of element GUIDs inspected and reviewed together."""

    __tablename__ = "checkpoint_groups"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    element_guids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        CheckConstraint(
            "inspection_status IN ('not_started', 'in_progress', 'completed', "
            "'approved', 'rejected', 'returned')",
            name="check_group_inspection_status",
        ),
    )


class InspectionResultModel(Base):
    """Recorded inspection answers for one element, referenced by GUID value."""

    __tablename__ = "inspection_results"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    guid: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    plan_item_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))
    checkpoint_group_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))

    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    comment: Mapped[str | None] = mapped_column(Text)

    inspector_email: Mapped[str] = mapped_column(Text, nullable=False)
    inspector_name: Mapped[str | None] = mapped_column(Text)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class InspectionPlanItemModel(Base):
    """Planned inspection for an element GUID."""

    __tablename__ = "inspection_plan_items"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    guid: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    assembly_mark: Mapped[str | None] = mapped_column(Text)
    plan_name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    checkpoint_group_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    created_by: Mapped[str] = mapped_column(Text, nullable=False)


# ---------------------------------------------------------------------------
# Audit & bulk
# ---------------------------------------------------------------------------


class AuditLogModel(Base):
    """Append-only audit trail. The integer id gives a total order."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)

    action: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    action_category: Mapped[str] = mapped_column(Text, nullable=False)
    old_values: Mapped[dict | None] = mapped_column(JSON)
    new_values: Mapped[dict | None] = mapped_column(JSON)
    changed_fields: Mapped[list | None] = mapped_column(JSON)

    actor_email: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    actor_name: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    is_bulk_action: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    bulk_action_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), index=True)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id", "id"),
    )


class BulkActionLogModel(Base):
    """One row per bulk operation with its per-item outcome summary."""

    __tablename__ = "bulk_actions_log"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    action_type: Mapped[str] = mapped_column(Text, nullable=False)
    target_type: Mapped[str] = mapped_column(Text, nullable=False, default="element")
    target_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    affected_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    changes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failures: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    performed_by: Mapped[str] = mapped_column(Text, nullable=False)
    performed_by_name: Mapped[str | None] = mapped_column(Text)
    performed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "action_type IN ('approve', 'reject', 'return', 'status_change', 'assign')",
            name="check_bulk_action_type",
        ),
        CheckConstraint("success_count >= 0", name="check_success_non_negative"),
        CheckConstraint("failure_count >= 0", name="check_failure_non_negative"),
    )


# ---------------------------------------------------------------------------
# Offline sync
# ---------------------------------------------------------------------------


class OfflineUploadModel(Base):
    """Write captured on a disconnected device, waiting for replay."""

    __tablename__ = "offline_upload_queue"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    upload_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False, default="element")
    entity_id: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending", index=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)

    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_by_name: Mapped[str | None] = mapped_column(Text)
    created_by_role: Mapped[str] = mapped_column(Text, nullable=False, default="inspector")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "upload_type IN ('status_change', 'result', 'photo', 'comment')",
            name="check_upload_type",
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="check_upload_status",
        ),
        CheckConstraint("retry_count >= 0", name="check_retry_count_non_negative"),
        Index("idx_offline_queue_replay", "status", "priority", "created_at"),
    )


# ---------------------------------------------------------------------------
# Audit log immutability
# ---------------------------------------------------------------------------


@event.listens_for(AuditLogModel, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutableError("audit log entries cannot be modified", entry_id=target.id)


@event.listens_for(AuditLogModel, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError("audit log entries cannot be deleted", entry_id=target.id)


@event.listens_for(Session, "do_orm_execute")
def _reject_audit_bulk_writes(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is AuditLogModel:
        raise AuditLogImmutableError("audit log entries cannot be modified in bulk")
