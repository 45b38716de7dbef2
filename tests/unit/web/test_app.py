"""Tests for assemblyqc.web.app - Application wiring."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from assemblyqc import __version__
from assemblyqc.core.errors import NotCalibratedError, NotFoundError
from assemblyqc.db.connection import get_db
from assemblyqc.web.app import app, domain_error_handler


def test_health():
    response = TestClient(app).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": __version__}


def test_all_routers_mounted():
    paths = {route.path for route in app.routes}

    assert "/api/projects/{project_id}/calibration" in paths
    assert "/api/projects/{project_id}/elements/remap-guid" in paths
    assert "/api/{target_type}/{target_id}/approve" in paths
    assert "/api/elements/{element_id}/history" in paths


def test_domain_error_response(mock_db_session):
    async def _get_db():
        yield mock_db_session

    app.dependency_overrides[get_db] = _get_db
    try:
        with patch(
            "assemblyqc.web.routes.calibration.CalibrationStore.convert_model_to_gps",
            AsyncMock(side_effect=NotCalibratedError("not calibrated")),
        ):
            response = TestClient(app).post(
                "/api/projects/p1/calibration/to-gps",
                json={"x": 1, "y": 2},
                headers={"X-Request-ID": "req-1"},
            )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "not_calibrated"


@pytest.mark.asyncio
async def test_untranslated_domain_error_handler():
    response = await domain_error_handler(None, NotFoundError("element missing", guid="g1"))

    assert response.status_code == 404
    assert json.loads(response.body) == {
        "detail": {"code": "not_found", "message": "element missing", "guid": "g1"}
    }
