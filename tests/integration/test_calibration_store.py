"""Integration tests for the calibration store.

Covers point lifecycle, transform caching and invalidation, conversions in
both coordinate modes, and operator status reporting.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.calibration.store import CalibrationStore, point_from_gps_sample
from assemblyqc.core.errors import (
    NotCalibratedError,
    NotFoundError,
    SingularConfigurationError,
    ValidationFailure,
)
from assemblyqc.db.models import AuditLogModel, CoordinateTransformModel
from assemblyqc.geo.projection import PlanarFrame
from assemblyqc.models import (
    CalibrationQuality,
    CaptureMethod,
    CoordinateMode,
    GpsCoord,
    GpsSample,
    ModelCoord,
    ModelUnits,
    NewCalibrationPoint,
    TransformType,
)


@pytest.fixture
def store(db_session: AsyncSession) -> CalibrationStore:
    return CalibrationStore(db_session)


@pytest_asyncio.fixture
async def calibrated(store, test_project_id, inspector, tallinn_points):
    await store.configure(test_project_id, CoordinateMode.LOCAL, ModelUnits.METERS)
    points = [await store.add_point(test_project_id, p, inspector) for p in tallinn_points]
    return points


def _point(x, y, lat, lon, accuracy=0.02, name=None):
    return NewCalibrationPoint(
        model=ModelCoord(x=x, y=y), gps=GpsCoord(lat=lat, lon=lon, accuracy_m=accuracy), name=name
    )


@pytest.mark.asyncio
async def test_settings_created_with_defaults(store, test_project_id):
    settings = await store.get_settings(test_project_id)

    assert settings.mode == "local"
    assert settings.model_units == "millimeters"
    assert settings.coordinate_system == "EPSG:3301"
    assert settings.is_calibrated is False


@pytest.mark.asyncio
async def test_not_calibrated_below_two_points(store, test_project_id, inspector, tallinn_points):
    await store.add_point(test_project_id, tallinn_points[0], inspector)

    assert await store.get_transform(test_project_id) is None
    with pytest.raises(NotCalibratedError):
        await store.convert_model_to_gps(test_project_id, ModelCoord(x=1, y=1))


@pytest.mark.asyncio
async def test_tallinn_two_point_calibration(store, test_project_id, calibrated):
    transform = await store.get_transform(test_project_id)

    assert transform.type == TransformType.HELMERT
    assert transform.rotation_deg == pytest.approx(0.0, abs=0.01)

    gps = await store.convert_model_to_gps(test_project_id, ModelCoord(x=50, y=0))
    assert gps.lat == pytest.approx(59.4370, abs=1e-6)
    assert gps.lon == pytest.approx(24.7543, abs=1e-6)

    back = await store.convert_gps_to_model(test_project_id, gps)
    assert back.x == pytest.approx(50, abs=1e-3)
    assert back.y == pytest.approx(0, abs=1e-3)


@pytest.mark.asyncio
async def test_transform_is_cached_and_settings_mirrored(
    store, db_session, test_project_id, calibrated
):
    first = await store.get_transform(test_project_id)
    second = await store.get_transform(test_project_id)

    assert first == second
    rows = (await db_session.execute(select(CoordinateTransformModel))).scalars().all()
    assert len(rows) == 1
    assert rows[0].is_valid is True

    settings = await store.get_settings(test_project_id)
    assert settings.is_calibrated is True
    assert settings.calibration_point_count == 2
    assert settings.quality == CalibrationQuality.EXCELLENT.value


@pytest.mark.asyncio
async def test_adding_point_invalidates_and_refits(store, test_project_id, inspector, calibrated):
    helmert = await store.get_transform(test_project_id)

    # ~79 m per 100 model meters east; put a third point north of the first
    await store.add_point(test_project_id, _point(0, 100, 59.43771, 24.7536), inspector)
    cached = await store._cache_row(test_project_id)
    assert cached.is_valid is False

    affine = await store.get_transform(test_project_id)
    assert affine.type == TransformType.AFFINE
    assert affine != helmert
    assert affine.point_count == 3


@pytest.mark.asyncio
async def test_deactivate_is_idempotent(
    store, db_session, test_project_id, inspector, calibrated
):
    third = await store.add_point(test_project_id, _point(0, 100, 59.43771, 24.7536), inspector)
    await store.get_transform(test_project_id)

    await store.deactivate_point(test_project_id, third.id, inspector)
    after_first = await store.get_transform(test_project_id)
    audit_count = len((await db_session.execute(select(AuditLogModel))).scalars().all())

    again = await store.deactivate_point(test_project_id, third.id, inspector)
    after_second = await store.get_transform(test_project_id)

    assert again.is_active is False
    assert after_second == after_first
    assert after_first.type == TransformType.HELMERT
    assert len((await db_session.execute(select(AuditLogModel))).scalars().all()) == audit_count


@pytest.mark.asyncio
async def test_deactivated_points_are_kept(store, test_project_id, inspector, calibrated):
    await store.deactivate_point(test_project_id, calibrated[0].id, inspector)

    assert len(await store.list_points(test_project_id)) == 1
    all_points = await store.list_points(test_project_id, include_inactive=True)
    assert len(all_points) == 2
    assert await store.get_transform(test_project_id) is None

    await store.reactivate_point(test_project_id, calibrated[0].id, inspector)
    assert await store.get_transform(test_project_id) is not None


@pytest.mark.asyncio
async def test_deactivate_unknown_point(store, test_project_id, inspector, calibrated):
    with pytest.raises(NotFoundError):
        await store.deactivate_point("other-project", calibrated[0].id, inspector)


@pytest.mark.asyncio
async def test_low_accuracy_point_is_flagged(store, test_project_id, inspector):
    point = await store.add_point(
        test_project_id, _point(0, 0, 59.437, 24.7536, accuracy=12.0), inspector
    )

    assert point.accuracy_warning is True
    assert point.is_active is True


@pytest.mark.asyncio
async def test_point_from_gps_sample(store, test_project_id, inspector):
    sample = GpsSample(latitude=59.437, longitude=24.7536, accuracy=1.5)

    point = await store.add_point(
        test_project_id, point_from_gps_sample(sample, ModelCoord(x=0, y=0), name="Gate"), inspector
    )

    assert point.capture_method == CaptureMethod.GPS.value
    assert point.gps_accuracy_m == 1.5


@pytest.mark.asyncio
async def test_collinear_points_report_singular(store, test_project_id, inspector):
    await store.configure(test_project_id, CoordinateMode.LOCAL, ModelUnits.METERS)
    for i in range(3):
        await store.add_point(
            test_project_id, _point(i * 50, i * 50, 59.437 + i * 0.0003, 24.7536 + i * 0.0006), inspector
        )

    with pytest.raises(SingularConfigurationError):
        await store.get_transform(test_project_id)

    status = await store.calibration_status(test_project_id)
    assert status.is_calibrated is False
    assert "collinear" in status.message


@pytest.mark.asyncio
async def test_millimeter_model_units(store, test_project_id, inspector):
    """Default project units are millimeters; the fit runs in meters."""
    await store.add_point(test_project_id, _point(0, 0, 59.4370, 24.7536), inspector)
    await store.add_point(test_project_id, _point(100_000, 0, 59.4370, 24.7550), inspector)

    transform = await store.get_transform(test_project_id)
    gps = await store.convert_model_to_gps(test_project_id, ModelCoord(x=50_000, y=0))

    assert transform.scale == pytest.approx(0.794, abs=0.003)
    assert gps.lon == pytest.approx(24.7543, abs=1e-6)


@pytest.mark.asyncio
async def test_named_mode_needs_no_points(store, test_project_id):
    await store.configure(
        test_project_id, CoordinateMode.NAMED, ModelUnits.METERS, coordinate_system="EPSG:3301"
    )
    frame = PlanarFrame.named("EPSG:3301")
    x, y = frame.to_planar(GpsCoord(lat=59.4370, lon=24.7536))

    gps = await store.convert_model_to_gps(test_project_id, ModelCoord(x=x, y=y))
    model = await store.convert_gps_to_model(test_project_id, gps)

    assert gps.lat == pytest.approx(59.4370, abs=1e-7)
    assert gps.lon == pytest.approx(24.7536, abs=1e-7)
    assert model.x == pytest.approx(x, abs=1e-3)
    assert await store.get_transform(test_project_id) is None

    status = await store.calibration_status(test_project_id)
    assert status.mode == CoordinateMode.NAMED
    assert status.is_calibrated is True


@pytest.mark.asyncio
async def test_named_mode_requires_crs(store, test_project_id):
    with pytest.raises(ValidationFailure):
        await store.configure(test_project_id, CoordinateMode.NAMED, ModelUnits.METERS)


@pytest.mark.asyncio
async def test_unknown_crs_rejected(store, test_project_id):
    with pytest.raises(ValidationFailure):
        await store.configure(
            test_project_id, CoordinateMode.NAMED, ModelUnits.METERS, coordinate_system="EPSG:0"
        )


@pytest.mark.asyncio
async def test_status_flags_outliers(store, test_project_id, inspector):
    await store.configure(test_project_id, CoordinateMode.LOCAL, ModelUnits.METERS)
    frame = PlanarFrame.local(59.4370, 24.7540)
    grid = [(x, y) for y in (0, 50, 100) for x in (0, 50, 100)]
    for i, (x, y) in enumerate(grid):
        # the centre point was surveyed 3 m off
        px, py = (x + 3.0, y) if (x, y) == (50, 50) else (x, y)
        gps = frame.to_gps(px, py)
        await store.add_point(
            test_project_id, _point(x, y, gps.lat, gps.lon, name=f"P{i}"), inspector
        )

    status = await store.calibration_status(test_project_id)

    assert status.is_calibrated is True
    assert status.active_point_count == 9
    outliers = [r.name for r in status.residuals if r.is_outlier]
    assert outliers == ["P4"]
