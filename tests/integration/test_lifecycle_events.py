"""Integration tests for delivery and installation events."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest
import pytest_asyncio

from assemblyqc.core.errors import InvalidTransitionError, NotFoundError
from assemblyqc.lifecycle.events import record_arrival, record_arrival_check, record_installation
from assemblyqc.lifecycle.history import get_history, state_as_of
from assemblyqc.lifecycle.identity import create_element
from assemblyqc.models import ArrivalCheckResult, AuditAction, ElementDescriptors, EntityType
from assemblyqc.workflow.service import InspectionWorkflow


@pytest_asyncio.fixture
async def element(db_session, test_project_id, inspector):
    return await create_element(
        db_session, test_project_id, "guid-w12", ElementDescriptors(assembly_mark="W-12"), inspector
    )


@pytest.mark.asyncio
async def test_arrival_then_check(db_session, element, inspector):
    arrived = await record_arrival(db_session, element.id, inspector, delivery_vehicle_id="TRUCK-4")
    checked = await record_arrival_check(
        db_session, element.id, ArrivalCheckResult.DAMAGED, inspector, comment="Dented flange"
    )

    assert arrived.delivery_vehicle_id == "TRUCK-4"
    assert checked.arrival_check_result == "damaged"
    assert checked.arrival_comment == "Dented flange"

    history = await (await get_history(db_session, element.id)).to_list()
    assert [e.action for e in history][:2] == [AuditAction.ARRIVAL_CHECKED, AuditAction.ARRIVED]


@pytest.mark.asyncio
async def test_check_requires_arrival(db_session, element, inspector):
    with pytest.raises(InvalidTransitionError):
        await record_arrival_check(db_session, element.id, ArrivalCheckResult.OK, inspector)


@pytest.mark.asyncio
async def test_installation(db_session, element, inspector):
    installed_at = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

    installed = await record_installation(
        db_session, element.id, inspector, installed_at=installed_at, resource_id="CRANE-2"
    )

    assert installed.installation_resource_id == "CRANE-2"
    assert installed.installed_by == inspector.email


@pytest.mark.asyncio
async def test_locked_element_rejects_events(db_session, element, inspector, reviewer):
    workflow = InspectionWorkflow(db_session)
    await workflow.start(EntityType.ELEMENT, element.id, inspector)
    await workflow.complete(EntityType.ELEMENT, element.id, inspector)
    await workflow.approve(EntityType.ELEMENT, element.id, reviewer)

    with pytest.raises(InvalidTransitionError):
        await record_installation(db_session, element.id, inspector)


@pytest.mark.asyncio
async def test_unknown_element(db_session, inspector):
    with pytest.raises(NotFoundError):
        await record_arrival(db_session, uuid4(), inspector)


@pytest.mark.asyncio
async def test_state_as_of_replays_history(db_session, element, inspector):
    before = datetime.now(timezone.utc)
    await record_arrival(db_session, element.id, inspector)

    past = await state_as_of(db_session, element.id, before)
    now = await state_as_of(db_session, element.id, datetime.now(timezone.utc))

    assert past["arrived_at"] is None
    assert now["arrived_by"] == inspector.email
