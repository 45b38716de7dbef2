"""Database layer for AssemblyQC with async SQLAlchemy."""

from assemblyqc.db.connection import get_session, init_db, transaction
from assemblyqc.db.models import (
    AuditLogModel,
    Base,
    BulkActionLogModel,
    CalibrationPointModel,
    CheckpointGroupModel,
    CoordinateTransformModel,
    ElementModel,
    InspectionPlanItemModel,
    InspectionResultModel,
    OfflineUploadModel,
    ProjectCoordinateSettingsModel,
)

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "transaction",
    "AuditLogModel",
    "BulkActionLogModel",
    "CalibrationPointModel",
    "CheckpointGroupModel",
    "CoordinateTransformModel",
    "ElementModel",
    "InspectionPlanItemModel",
    "InspectionResultModel",
    "OfflineUploadModel",
    "ProjectCoordinateSettingsModel",
]
