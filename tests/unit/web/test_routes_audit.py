"""Tests for assemblyqc.web.routes.audit - Audit trail routes."""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from assemblyqc.core.errors import NotFoundError
from assemblyqc.models import AuditAction, AuditActionCategory, EntityType, HistoryEntry
from assemblyqc.reporting.lifecycle_metrics import LifecycleStats
from assemblyqc.web.routes import audit

ROUTES = "assemblyqc.web.routes.audit"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def app(override_db):
    test_app = FastAPI()
    test_app.include_router(audit.router)
    override_db(test_app)
    return test_app


@pytest.fixture
def client(app):
    return TestClient(app)


def _entry(entry_id: int, action: AuditAction = AuditAction.STATUS_CHANGED) -> HistoryEntry:
    return HistoryEntry(
        id=entry_id,
        entity_type=EntityType.ELEMENT,
        entity_id="e1",
        action=action,
        category=AuditActionCategory.INSPECTION,
        actor="inspector@site.test",
        at=NOW,
    )


class FakeHistory:
    def __init__(self, entries):
        self.entries = entries

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for entry in self.entries:
            yield entry


class TestHistory:
    def test_history_respects_limit(self, client):
        history = FakeHistory([_entry(3), _entry(2), _entry(1, AuditAction.CREATED)])
        with patch(f"{ROUTES}.get_history", AsyncMock(return_value=history)):
            response = client.get(f"/api/elements/{uuid4()}/history?limit=2")

        assert response.status_code == 200
        assert [e["id"] for e in response.json()] == [3, 2]

    def test_history_of_unknown_element(self, client):
        with patch(f"{ROUTES}.get_history", AsyncMock(side_effect=NotFoundError("missing"))):
            response = client.get(f"/api/elements/{uuid4()}/history")

        assert response.status_code == 404

    def test_state_as_of(self, client):
        element_id = uuid4()
        with patch(
            f"{ROUTES}.state_as_of",
            AsyncMock(return_value={"inspection_status": "in_progress"}),
        ) as state:
            response = client.get(
                f"/api/elements/{element_id}/state", params={"at": "2026-03-01T12:00:00+00:00"}
            )

        assert response.status_code == 200
        assert response.json()["state"] == {"inspection_status": "in_progress"}
        assert state.call_args.args[2] == NOW

    def test_state_requires_timestamp(self, client):
        response = client.get(f"/api/elements/{uuid4()}/state")

        assert response.status_code == 422


class TestBulkActionsAndStats:
    def test_bulk_actions(self, client):
        row = SimpleNamespace(
            id=uuid4(),
            action_type="approve",
            target_type="element",
            success_count=2,
            failure_count=1,
            failures=[{"id": "x", "error_code": "invalid_transition"}],
            performed_by="reviewer@site.test",
            performed_at=NOW,
        )
        with patch(f"{ROUTES}.list_bulk_actions", AsyncMock(return_value=[row])) as listing:
            response = client.get("/api/projects/test-project/bulk-actions?limit=5")

        assert response.status_code == 200
        body = response.json()
        assert body[0]["failure_count"] == 1
        assert body[0]["performed_at"] == NOW.isoformat()
        assert listing.call_args.kwargs["limit"] == 5

    def test_bulk_entries(self, client):
        row = MagicMock()
        with patch(f"{ROUTES}.entries_for_bulk", AsyncMock(return_value=[row])), patch(
            f"{ROUTES}.to_history_entry", return_value=_entry(7, AuditAction.APPROVED)
        ):
            response = client.get(f"/api/bulk-actions/{uuid4()}/entries")

        assert response.status_code == 200
        assert response.json()[0]["action"] == "approved"

    def test_project_stats(self, client):
        stats = LifecycleStats(
            project_id="test-project",
            total_elements=4,
            arrived_count=2,
            installed_count=1,
            status_counts={"approved": 1, "not_started": 3},
        )
        with patch(f"{ROUTES}.compute_lifecycle_stats", AsyncMock(return_value=stats)):
            response = client.get("/api/projects/test-project/stats")

        assert response.status_code == 200
        assert response.json()["approval_rate"] == 0.25
