"""Delivery and installation events on an element."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.audit.log import record, snapshot
from assemblyqc.core.errors import InvalidTransitionError, NotFoundError
from assemblyqc.db.connection import transaction
from assemblyqc.db.models import ElementModel
from assemblyqc.models import (
    Actor,
    ArrivalCheckResult,
    AuditAction,
    AuditEntry,
    EntityType,
    utcnow,
)

logger = structlog.get_logger(__name__)

ARRIVAL_FIELDS = ("arrived_at", "arrived_by", "delivery_vehicle_id")
ARRIVAL_CHECK_FIELDS = (
    "arrival_check_result",
    "arrival_checked_at",
    "arrival_checked_by",
    "arrival_comment",
)
INSTALLATION_FIELDS = ("installed_at", "installed_by", "installation_resource_id")


async def _load_editable(session: AsyncSession, element_id: UUID) -> ElementModel:
    result = await session.execute(
        select(ElementModel)
        .where(ElementModel.id == element_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    element = result.scalar_one_or_none()
    if element is None:
        raise NotFoundError(f"Element {element_id} not found", element_id=str(element_id))
    if not element.can_edit:
        raise InvalidTransitionError(
            f"Element {element.guid} is locked after approval",
            element_id=str(element_id),
        )
    return element


async def _audited_update(
    session: AsyncSession,
    element: ElementModel,
    fields: tuple[str, ...],
    values: dict,
    action: AuditAction,
    actor: Actor,
) -> None:
    old_values = snapshot(element, fields)
    for name, value in values.items():
        setattr(element, name, value)
    await session.flush()
    await record(
        session,
        AuditEntry(
            project_id=element.project_id,
            entity_type=EntityType.ELEMENT,
            entity_id=str(element.id),
            action=action,
            old_values=old_values,
            new_values=snapshot(element, fields),
            actor=actor,
        ),
    )


async def record_arrival(
    session: AsyncSession,
    element_id: UUID,
    actor: Actor,
    arrived_at: datetime | None = None,
    delivery_vehicle_id: str | None = None,
) -> ElementModel:
    async with transaction(session):
        element = await _load_editable(session, element_id)
        await _audited_update(
            session,
            element,
            ARRIVAL_FIELDS,
            {
                "arrived_at": arrived_at or utcnow(),
                "arrived_by": actor.email,
                "delivery_vehicle_id": delivery_vehicle_id,
            },
            AuditAction.ARRIVED,
            actor,
        )
    logger.info("element_arrived", element_id=str(element_id), vehicle=delivery_vehicle_id)
    return element


async def record_arrival_check(
    session: AsyncSession,
    element_id: UUID,
    result: ArrivalCheckResult,
    actor: Actor,
    comment: str | None = None,
) -> ElementModel:
    """Record the goods-in check. The element must have arrived first."""
    async with transaction(session):
        element = await _load_editable(session, element_id)
        if element.arrived_at is None:
            raise InvalidTransitionError(
                f"Element {element.guid} has not arrived yet", element_id=str(element_id)
            )
        await _audited_update(
            session,
            element,
            ARRIVAL_CHECK_FIELDS,
            {
                "arrival_check_result": result.value,
                "arrival_checked_at": utcnow(),
                "arrival_checked_by": actor.email,
                "arrival_comment": comment,
            },
            AuditAction.ARRIVAL_CHECKED,
            actor,
        )
    if result != ArrivalCheckResult.OK:
        logger.warning("arrival_check_failed", element_id=str(element_id), result=result.value)
    return element


async def record_installation(
    session: AsyncSession,
    element_id: UUID,
    actor: Actor,
    installed_at: datetime | None = None,
    resource_id: str | None = None,
) -> ElementModel:
    async with transaction(session):
        element = await _load_editable(session, element_id)
        await _audited_update(
            session,
            element,
            INSTALLATION_FIELDS,
            {
                "installed_at": installed_at or utcnow(),
                "installed_by": actor.email,
                "installation_resource_id": resource_id,
            },
            AuditAction.INSTALLED,
            actor,
        )
    logger.info("element_installed", element_id=str(element_id), resource=resource_id)
    return element
