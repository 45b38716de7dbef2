"""Shared fixtures for web route tests."""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from assemblyqc.db.connection import get_db

ACTOR_HEADERS = {
    "X-Actor-Email": "reviewer@site.test",
    "X-Actor-Name": "Rita Reviewer",
    "X-Actor-Role": "reviewer",
}


@pytest.fixture
def mock_db_session():
    """Stand-in session; route collaborators are patched per test."""
    return AsyncMock()


@pytest.fixture
def override_db(mock_db_session):
    def _install(app):
        async def _get_db():
            yield mock_db_session

        app.dependency_overrides[get_db] = _get_db
        return mock_db_session

    return _install


@pytest.fixture
def headers():
    return dict(ACTOR_HEADERS)


def _element(**overrides):
    values = {
        "id": uuid4(),
        "project_id": "test-project",
        "guid": "2O2Fr$t4X7Zf8NOew3FLOH",
        "assembly_mark": "C-101",
        "product_name": None,
        "object_type": None,
        "inspection_status": "not_started",
        "review_decision": None,
        "review_comment": None,
        "can_edit": True,
        "assigned_to": None,
        "arrived_at": None,
        "installed_at": None,
        "guid_history": [],
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _point(**overrides):
    values = {
        "id": uuid4(),
        "project_id": "test-project",
        "model_x": 0.0,
        "model_y": 0.0,
        "gps_lat": 59.437,
        "gps_lon": 24.7536,
        "gps_accuracy_m": 0.02,
        "accuracy_warning": False,
        "name": "P1",
        "reference_guid": None,
        "is_active": True,
        "captured_by": "inspector@site.test",
        "captured_at": datetime(2026, 3, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def make_element():
    """Factory for row-like element objects accepted by the response models."""
    return _element


@pytest.fixture
def make_point():
    return _point
