"""Calibration store: points, cached transform and conversions per project.

The cached transform is a pure function of the active point set. Every
mutator invalidates it before committing, and ``get_transform`` refits
whenever the stored fingerprint no longer matches the active points.
"""

from __future__ import annotations

import asyncio
import hashlib
import weakref
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from assemblyqc.audit.log import record, snapshot
from assemblyqc.config import CalibrationConfig, get_config
from assemblyqc.core.errors import (
    CalibrationError,
    NotCalibratedError,
    NotFoundError,
    PersistenceFailure,
    ValidationFailure,
)
from assemblyqc.db.connection import transaction
from assemblyqc.db.models import (
    CalibrationPointModel,
    CoordinateTransformModel,
    ProjectCoordinateSettingsModel,
)
from assemblyqc.geo.projection import PlanarFrame, from_meters, to_meters
from assemblyqc.geo.transform import apply, apply_inverse, evaluate_accuracy, fit_transform
from assemblyqc.lifecycle.guids import normalize_guid
from assemblyqc.models import (
    Actor,
    AuditAction,
    AuditEntry,
    CalibrationStatus,
    CaptureMethod,
    CoordinateMode,
    CoordinateTransform,
    EntityType,
    GpsCoord,
    GpsSample,
    ModelCoord,
    ModelUnits,
    NewCalibrationPoint,
    PointResidual,
    utcnow,
)

logger = structlog.get_logger(__name__)

# One recompute per project at a time within a process. Keyed by loop so
# that locks never leak across event loops.
_recompute_locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


def _recompute_lock(project_id: str) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    per_loop = _recompute_locks.setdefault(loop, {})
    return per_loop.setdefault(project_id, asyncio.Lock())


def point_from_gps_sample(
    sample: GpsSample,
    model: ModelCoord,
    name: str | None = None,
    reference_guid: str | None = None,
    reference_assembly_mark: str | None = None,
) -> NewCalibrationPoint:
    """Build a calibration point from a live GPS reading."""
    return NewCalibrationPoint(
        model=model,
        gps=sample.to_gps(),
        name=name,
        reference_guid=reference_guid,
        reference_assembly_mark=reference_assembly_mark,
        capture_method=CaptureMethod.GPS,
        captured_at=sample.timestamp,
    )


class CalibrationStore:
    """Calibration points and the derived transform for each project."""

    def __init__(self, session: AsyncSession, config: CalibrationConfig | None = None):
        self.session = session
        self.config = config or get_config().calibration

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_settings(self, project_id: str) -> ProjectCoordinateSettingsModel:
        """Return the project's coordinate settings, creating defaults on first use."""
        result = await self.session.execute(
            select(ProjectCoordinateSettingsModel).where(
                ProjectCoordinateSettingsModel.project_id == project_id
            )
        )
        settings = result.scalar_one_or_none()
        if settings is None:
            settings = ProjectCoordinateSettingsModel(
                project_id=project_id,
                mode=CoordinateMode.LOCAL.value,
                coordinate_system=self.config.default_coordinate_system,
                model_units=ModelUnits(self.config.default_model_units).value,
            )
            self.session.add(settings)
            await self.session.flush()
        return settings

    async def configure(
        self,
        project_id: str,
        mode: CoordinateMode,
        model_units: ModelUnits,
        coordinate_system: str | None = None,
        planar_crs: str | None = None,
    ) -> ProjectCoordinateSettingsModel:
        """Select the coordinate pathway for a project."""
        if mode == CoordinateMode.NAMED and not coordinate_system:
            raise ValidationFailure("Named coordinate mode requires a coordinate system")
        for crs in (coordinate_system, planar_crs):
            if crs:
                PlanarFrame.named(crs)  # rejects unknown codes

        async with transaction(self.session):
            settings = await self.get_settings(project_id)
            settings.mode = mode.value
            settings.model_units = model_units.value
            if coordinate_system:
                settings.coordinate_system = coordinate_system
            settings.planar_crs = planar_crs
            await self._invalidate(project_id, reason="settings_changed")

        logger.info(
            "coordinate_settings_updated",
            project_id=project_id,
            mode=mode.value,
            model_units=model_units.value,
        )
        return settings

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------

    async def add_point(
        self, project_id: str, point: NewCalibrationPoint, actor: Actor
    ) -> CalibrationPointModel:
        """Append an active calibration point and invalidate the cached transform.

        A GPS fix worse than the configured accuracy threshold is accepted
        but flagged with ``accuracy_warning``.
        """
        accuracy = point.gps.accuracy_m
        warning = accuracy is not None and accuracy > self.config.accuracy_warning_m

        async with transaction(self.session):
            await self.get_settings(project_id)
            row = CalibrationPointModel(
                project_id=project_id,
                model_x=point.model.x,
                model_y=point.model.y,
                model_z=point.model.z,
                gps_lat=point.gps.lat,
                gps_lon=point.gps.lon,
                gps_altitude=point.gps.altitude,
                gps_accuracy_m=accuracy,
                accuracy_warning=warning,
                name=point.name,
                description=point.description,
                reference_guid=normalize_guid(point.reference_guid) or None,
                reference_assembly_mark=point.reference_assembly_mark,
                capture_method=point.capture_method.value,
                captured_at=point.captured_at,
                captured_by=actor.email,
                is_active=True,
            )
            self.session.add(row)
            await self.session.flush()

            await self._invalidate(project_id, reason="point_added")
            await record(
                self.session,
                AuditEntry(
                    project_id=project_id,
                    entity_type=EntityType.CALIBRATION_POINT,
                    entity_id=str(row.id),
                    action=AuditAction.CREATED,
                    new_values=snapshot(row),
                    actor=actor,
                ),
            )

        if warning:
            logger.warning(
                "calibration_point_low_accuracy",
                project_id=project_id,
                point_id=str(row.id),
                accuracy_m=accuracy,
                threshold_m=self.config.accuracy_warning_m,
            )
        logger.info("calibration_point_added", project_id=project_id, point_id=str(row.id))
        return row

    async def deactivate_point(
        self, project_id: str, point_id: UUID, actor: Actor
    ) -> CalibrationPointModel:
        """Soft-disable a point. Deactivating an inactive point is a no-op."""
        return await self._set_active(project_id, point_id, actor, active=False)

    async def reactivate_point(
        self, project_id: str, point_id: UUID, actor: Actor
    ) -> CalibrationPointModel:
        return await self._set_active(project_id, point_id, actor, active=True)

    async def _set_active(
        self, project_id: str, point_id: UUID, actor: Actor, active: bool
    ) -> CalibrationPointModel:
        async with transaction(self.session):
            point = await self.session.get(CalibrationPointModel, point_id)
            if point is None or point.project_id != project_id:
                raise NotFoundError(
                    f"Calibration point {point_id} not found in project {project_id}",
                    point_id=str(point_id),
                )
            if point.is_active == active:
                return point

            point.is_active = active
            if active:
                point.deactivated_at = None
                point.deactivated_by = None
            else:
                point.deactivated_at = utcnow()
                point.deactivated_by = actor.email

            await self._invalidate(
                project_id, reason="point_reactivated" if active else "point_deactivated"
            )
            await record(
                self.session,
                AuditEntry(
                    project_id=project_id,
                    entity_type=EntityType.CALIBRATION_POINT,
                    entity_id=str(point.id),
                    action=AuditAction.UPDATED,
                    old_values={"is_active": not active},
                    new_values={"is_active": active},
                    actor=actor,
                ),
            )

        logger.info(
            "calibration_point_toggled",
            project_id=project_id,
            point_id=str(point_id),
            is_active=active,
        )
        return point

    async def active_points(self, project_id: str) -> list[CalibrationPointModel]:
        result = await self.session.execute(
            select(CalibrationPointModel)
            .where(
                CalibrationPointModel.project_id == project_id,
                CalibrationPointModel.is_active.is_(True),
            )
            .order_by(CalibrationPointModel.captured_at, CalibrationPointModel.id)
        )
        return list(result.scalars().all())

    async def list_points(self, project_id: str, include_inactive: bool = False) -> list[CalibrationPointModel]:
        stmt = select(CalibrationPointModel).where(CalibrationPointModel.project_id == project_id)
        if not include_inactive:
            stmt = stmt.where(CalibrationPointModel.is_active.is_(True))
        result = await self.session.execute(stmt.order_by(CalibrationPointModel.captured_at))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Transform cache
    # ------------------------------------------------------------------

    async def _cache_row(self, project_id: str) -> CoordinateTransformModel | None:
        result = await self.session.execute(
            select(CoordinateTransformModel)
            .where(CoordinateTransformModel.project_id == project_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _invalidate(self, project_id: str, reason: str) -> None:
        row = await self._cache_row(project_id)
        if row is not None and row.is_valid:
            row.is_valid = False
            row.invalidated_at = utcnow()
        settings = await self.get_settings(project_id)
        settings.is_calibrated = False
        logger.debug("transform_invalidated", project_id=project_id, reason=reason)

    def _pairs(
        self, points: list[CalibrationPointModel], units: str
    ) -> list[tuple[ModelCoord, GpsCoord]]:
        return [
            (
                ModelCoord(x=to_meters(p.model_x, units), y=to_meters(p.model_y, units)),
                GpsCoord(lat=p.gps_lat, lon=p.gps_lon),
            )
            for p in points
        ]

    @staticmethod
    def _fingerprint(
        points: list[CalibrationPointModel], settings: ProjectCoordinateSettingsModel
    ) -> str:
        digest = hashlib.sha256()
        digest.update(f"{settings.model_units}|{settings.planar_crs or 'local'}".encode())
        for p in sorted(points, key=lambda p: str(p.id)):
            digest.update(
                f"|{p.id}:{p.model_x!r}:{p.model_y!r}:{p.gps_lat!r}:{p.gps_lon!r}".encode()
            )
        return digest.hexdigest()

    async def get_transform(self, project_id: str) -> CoordinateTransform | None:
        """Current transform for a local-mode project.

        Returns None when the project is not calibrated (fewer than two
        active points, or a named CRS project that needs no calibration).

        Raises:
            SingularConfigurationError / DegenerateProjectionError: the
                active points cannot define a transform
            PersistenceFailure: a concurrent recompute could not be reconciled
        """
        async with _recompute_lock(project_id):
            settings = await self.get_settings(project_id)
            if settings.mode == CoordinateMode.NAMED.value:
                return None

            points = await self.active_points(project_id)
            if len(points) < 2:
                return None

            fingerprint = self._fingerprint(points, settings)
            cached = await self._cache_row(project_id)
            if cached is not None and cached.is_valid and cached.fingerprint == fingerprint:
                return CoordinateTransform.model_validate(cached.transform)

            frame = PlanarFrame.named(settings.planar_crs) if settings.planar_crs else None
            pairs = self._pairs(points, settings.model_units)
            transform = fit_transform(pairs, frame=frame, config=self.config)
            accuracy = evaluate_accuracy(transform, pairs, self.config)

            try:
                async with transaction(self.session):
                    cached = await self._cache_row(project_id)
                    if cached is None:
                        cached = CoordinateTransformModel(project_id=project_id)
                        self.session.add(cached)
                    cached.is_valid = True
                    cached.fingerprint = fingerprint
                    cached.transform = transform.model_dump(mode="json")
                    cached.accuracy = accuracy.model_dump(mode="json")
                    cached.computed_at = utcnow()

                    settings = await self.get_settings(project_id)
                    settings.is_calibrated = True
                    settings.calibration_point_count = len(points)
                    settings.rmse_m = accuracy.rmse_m
                    settings.max_error_m = accuracy.max_error_m
                    settings.quality = accuracy.quality.value
                    settings.calibrated_at = cached.computed_at
            except (StaleDataError, IntegrityError):
                # Another writer stored a transform first; use theirs if it matches
                winner = await self._cache_row(project_id)
                if winner is not None and winner.is_valid and winner.fingerprint == fingerprint:
                    return CoordinateTransform.model_validate(winner.transform)
                raise PersistenceFailure(
                    "Concurrent calibration update, retry the request", project_id=project_id
                )

            logger.info(
                "transform_recomputed",
                project_id=project_id,
                type=transform.type.value,
                points=len(points),
                rmse_m=round(accuracy.rmse_m, 4),
                quality=accuracy.quality.value,
            )
            return transform

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    async def convert_model_to_gps(self, project_id: str, model: ModelCoord) -> GpsCoord:
        """Model coordinate (native units) to WGS84.

        Raises:
            NotCalibratedError: local project without a usable transform
        """
        settings = await self.get_settings(project_id)
        units = settings.model_units
        x_m, y_m = to_meters(model.x, units), to_meters(model.y, units)

        if settings.mode == CoordinateMode.NAMED.value:
            return PlanarFrame.named(settings.coordinate_system).to_gps(x_m, y_m)

        transform = await self.get_transform(project_id)
        if transform is None:
            raise NotCalibratedError(
                f"Project {project_id} has no calibration yet; add at least 2 points",
                project_id=project_id,
            )
        return apply(transform, ModelCoord(x=x_m, y=y_m))

    async def convert_gps_to_model(self, project_id: str, gps: GpsCoord) -> ModelCoord:
        """WGS84 to model coordinate in the project's native units."""
        settings = await self.get_settings(project_id)
        units = settings.model_units

        if settings.mode == CoordinateMode.NAMED.value:
            x_m, y_m = PlanarFrame.named(settings.coordinate_system).to_planar(gps)
        else:
            transform = await self.get_transform(project_id)
            if transform is None:
                raise NotCalibratedError(
                    f"Project {project_id} has no calibration yet; add at least 2 points",
                    project_id=project_id,
                )
            local = apply_inverse(transform, gps)
            x_m, y_m = local.x, local.y

        return ModelCoord(x=from_meters(x_m, units), y=from_meters(y_m, units))

    # ------------------------------------------------------------------
    # Operator view
    # ------------------------------------------------------------------

    async def calibration_status(self, project_id: str) -> CalibrationStatus:
        """Summary for the operator, including per-point residuals and outliers."""
        settings = await self.get_settings(project_id)
        points = await self.active_points(project_id)
        mode = CoordinateMode(settings.mode)

        if mode == CoordinateMode.NAMED:
            return CalibrationStatus(
                project_id=project_id,
                mode=mode,
                is_calibrated=True,
                active_point_count=len(points),
                message=f"Model coordinates are in {settings.coordinate_system}",
            )

        try:
            transform = await self.get_transform(project_id)
        except CalibrationError as exc:
            return CalibrationStatus(
                project_id=project_id,
                mode=mode,
                is_calibrated=False,
                active_point_count=len(points),
                message=exc.message,
            )

        if transform is None:
            return CalibrationStatus(
                project_id=project_id,
                mode=mode,
                is_calibrated=False,
                active_point_count=len(points),
                message=f"{len(points)} active point(s); at least 2 are required",
            )

        accuracy = evaluate_accuracy(
            transform, self._pairs(points, settings.model_units), self.config
        )
        outlier_threshold = max(
            self.config.outlier_factor * accuracy.rmse_m, self.config.acceptable_rmse_m
        )
        residuals = [
            PointResidual(
                point_id=p.id,
                name=p.name,
                residual_m=err,
                is_outlier=err > outlier_threshold,
                accuracy_warning=p.accuracy_warning,
            )
            for p, err in zip(points, accuracy.per_point_errors_m)
        ]
        return CalibrationStatus(
            project_id=project_id,
            mode=mode,
            is_calibrated=True,
            active_point_count=len(points),
            transform=transform,
            accuracy=accuracy,
            residuals=residuals,
        )
