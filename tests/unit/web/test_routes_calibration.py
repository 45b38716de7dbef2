"""Tests for assemblyqc.web.routes.calibration - Calibration routes."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from assemblyqc.core.errors import NotCalibratedError, NotFoundError, SingularConfigurationError
from assemblyqc.models import (
    CalibrationStatus,
    CoordinateMode,
    GpsCoord,
    ModelCoord,
    ModelUnits,
    PointResidual,
)
from assemblyqc.web.routes import calibration

PREFIX = "/api/projects/test-project/calibration"


@pytest.fixture
def app(override_db):
    test_app = FastAPI()
    test_app.include_router(calibration.router)
    override_db(test_app)
    return test_app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def store():
    with patch("assemblyqc.web.routes.calibration.CalibrationStore") as store_cls:
        yield store_cls.return_value


class TestSettings:
    def test_configure_named_mode(self, client, store):
        store.configure = AsyncMock(
            return_value=SimpleNamespace(
                mode="named", model_units="meters", coordinate_system="EPSG:3301", planar_crs=None
            )
        )

        response = client.put(
            f"{PREFIX}/settings",
            json={"mode": "named", "model_units": "meters", "coordinate_system": "EPSG:3301"},
        )

        assert response.status_code == 200
        assert response.json()["coordinate_system"] == "EPSG:3301"
        args = store.configure.call_args
        assert args.args == ("test-project", CoordinateMode.NAMED, ModelUnits.METERS)
        assert args.kwargs["coordinate_system"] == "EPSG:3301"

    def test_invalid_mode_rejected(self, client, store):
        response = client.put(f"{PREFIX}/settings", json={"mode": "geodetic"})

        assert response.status_code == 422


class TestPoints:
    def test_add_point(self, client, store, headers, make_point):
        store.add_point = AsyncMock(return_value=make_point())

        response = client.post(
            f"{PREFIX}/points",
            json={
                "model_x": 0,
                "model_y": 0,
                "latitude": 59.437,
                "longitude": 24.7536,
                "accuracy_m": 0.02,
                "name": "P1",
            },
            headers=headers,
        )

        assert response.status_code == 201
        assert response.json()["name"] == "P1"
        project_id, point, actor = store.add_point.call_args.args
        assert project_id == "test-project"
        assert point.model == ModelCoord(x=0, y=0)
        assert point.gps.accuracy_m == 0.02
        assert actor.email == "reviewer@site.test"

    def test_out_of_range_latitude(self, client, store, headers):
        response = client.post(
            f"{PREFIX}/points",
            json={"model_x": 0, "model_y": 0, "latitude": 95, "longitude": 24.7},
            headers=headers,
        )

        assert response.status_code == 422

    def test_list_points_including_inactive(self, client, store, make_point):
        store.list_points = AsyncMock(
            return_value=[make_point(), make_point(is_active=False, name="P2")]
        )

        response = client.get(f"{PREFIX}/points?include_inactive=true")

        assert response.status_code == 200
        assert [p["is_active"] for p in response.json()] == [True, False]
        assert store.list_points.call_args.kwargs["include_inactive"] is True

    def test_deactivate_unknown_point(self, client, store, headers):
        store.deactivate_point = AsyncMock(side_effect=NotFoundError("point not found"))

        response = client.post(f"{PREFIX}/points/{uuid4()}/deactivate", headers=headers)

        assert response.status_code == 404

    def test_reactivate(self, client, store, headers, make_point):
        point = make_point()
        store.reactivate_point = AsyncMock(return_value=point)

        response = client.post(f"{PREFIX}/points/{point.id}/reactivate", headers=headers)

        assert response.status_code == 200
        assert response.json()["id"] == str(point.id)


class TestStatusAndConversion:
    def test_status_with_outliers(self, client, store):
        point_id = uuid4()
        store.calibration_status = AsyncMock(
            return_value=CalibrationStatus(
                project_id="test-project",
                mode=CoordinateMode.LOCAL,
                is_calibrated=True,
                active_point_count=9,
                residuals=[
                    PointResidual(
                        point_id=point_id,
                        name="P4",
                        residual_m=2.4,
                        is_outlier=True,
                        accuracy_warning=False,
                    )
                ],
            )
        )

        response = client.get(PREFIX)

        assert response.status_code == 200
        body = response.json()
        assert body["is_calibrated"] is True
        assert body["residuals"][0]["is_outlier"] is True

    def test_to_gps(self, client, store):
        store.convert_model_to_gps = AsyncMock(return_value=GpsCoord(lat=59.437, lon=24.7543))

        response = client.post(f"{PREFIX}/to-gps", json={"x": 50000, "y": 0})

        assert response.status_code == 200
        assert response.json()["lon"] == 24.7543
        assert store.convert_model_to_gps.call_args.args[1] == ModelCoord(x=50000, y=0)

    def test_to_gps_not_calibrated(self, client, store):
        store.convert_model_to_gps = AsyncMock(
            side_effect=NotCalibratedError("Project needs at least 2 active calibration points")
        )

        response = client.post(f"{PREFIX}/to-gps", json={"x": 1, "y": 1})

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "not_calibrated"

    def test_to_model_singular(self, client, store):
        store.convert_gps_to_model = AsyncMock(
            side_effect=SingularConfigurationError("points are collinear")
        )

        response = client.post(f"{PREFIX}/to-model", json={"lat": 59.437, "lon": 24.75})

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "singular_configuration"
