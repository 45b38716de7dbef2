"""Checkpoint groups, inspection results and plan items.

All three reference elements by GUID value, which is why they are listed
as dependents of a GUID remap.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.audit.log import record, snapshot
from assemblyqc.core.errors import InvalidTransitionError, NotFoundError, ValidationFailure
from assemblyqc.db.connection import transaction
from assemblyqc.db.models import (
    CheckpointGroupModel,
    InspectionPlanItemModel,
    InspectionResultModel,
)
from assemblyqc.lifecycle.guids import normalize_guid
from assemblyqc.lifecycle.identity import find_element
from assemblyqc.models import Actor, AuditAction, AuditEntry, EntityType

logger = structlog.get_logger(__name__)


async def create_group(
    session: AsyncSession,
    project_id: str,
    name: str,
    element_guids: list[str],
    actor: Actor,
    description: str | None = None,
) -> CheckpointGroupModel:
    """Create a checkpoint group over one or more element GUIDs.

    Duplicate GUIDs are collapsed; order of first appearance is kept.
    """
    if not (name and name.strip()):
        raise ValidationFailure("Checkpoint group name is required")
    members = list(dict.fromkeys(normalize_guid(g) for g in element_guids if g and g.strip()))
    if not members:
        raise ValidationFailure("A checkpoint group needs at least one element GUID")

    async with transaction(session):
        group = CheckpointGroupModel(
            project_id=project_id,
            name=name.strip(),
            description=description,
            element_guids=members,
            created_by=actor.email,
        )
        session.add(group)
        await session.flush()
        await record(
            session,
            AuditEntry(
                project_id=project_id,
                entity_type=EntityType.GROUP,
                entity_id=str(group.id),
                action=AuditAction.CREATED,
                new_values=snapshot(group),
                actor=actor,
            ),
        )

    logger.info("checkpoint_group_created", group_id=str(group.id), members=len(members))
    return group


async def get_group(session: AsyncSession, group_id: UUID) -> CheckpointGroupModel:
    group = await session.get(CheckpointGroupModel, group_id, populate_existing=True)
    if group is None:
        raise NotFoundError(f"Checkpoint group {group_id} not found", group_id=str(group_id))
    return group


async def groups_for_guid(session: AsyncSession, project_id: str, guid: str) -> list[CheckpointGroupModel]:
    guid = normalize_guid(guid)
    result = await session.execute(
        select(CheckpointGroupModel).where(CheckpointGroupModel.project_id == project_id)
    )
    return [g for g in result.scalars() if guid in g.element_guids]


async def record_result(
    session: AsyncSession,
    project_id: str,
    guid: str,
    payload: dict[str, Any],
    actor: Actor,
    comment: str | None = None,
    plan_item_id: UUID | None = None,
    checkpoint_group_id: UUID | None = None,
) -> InspectionResultModel:
    """Store inspection answers for the element currently holding ``guid``.

    Raises:
        NotFoundError: no active element holds the GUID
        InvalidTransitionError: the element is locked after approval
    """
    guid = normalize_guid(guid)
    async with transaction(session):
        element = await find_element(session, project_id, guid)
        if element is None:
            raise NotFoundError(f"No element with GUID {guid} in project {project_id}", guid=guid)
        if not element.can_edit:
            raise InvalidTransitionError(
                f"Element {guid} is locked after approval; results cannot change",
                guid=guid,
            )

        row = InspectionResultModel(
            project_id=project_id,
            guid=guid,
            plan_item_id=plan_item_id,
            checkpoint_group_id=checkpoint_group_id,
            payload=payload,
            comment=comment,
            inspector_email=actor.email,
            inspector_name=actor.name,
        )
        session.add(row)
        await session.flush()
        await record(
            session,
            AuditEntry(
                project_id=project_id,
                entity_type=EntityType.RESULT,
                entity_id=str(row.id),
                action=AuditAction.RESULT_RECORDED,
                new_values=snapshot(row),
                actor=actor,
            ),
        )

    return row


async def results_for_guid(session: AsyncSession, project_id: str, guid: str) -> list[InspectionResultModel]:
    guid = normalize_guid(guid)
    result = await session.execute(
        select(InspectionResultModel)
        .where(InspectionResultModel.project_id == project_id, InspectionResultModel.guid == guid)
        .order_by(InspectionResultModel.recorded_at)
    )
    return list(result.scalars().all())


async def create_plan_item(
    session: AsyncSession,
    project_id: str,
    guid: str,
    plan_name: str,
    actor: Actor,
    category: str | None = None,
    checkpoint_group_id: UUID | None = None,
    assembly_mark: str | None = None,
) -> InspectionPlanItemModel:
    guid = normalize_guid(guid)
    if not guid:
        raise ValidationFailure("Plan items need an element GUID")
    if not (plan_name and plan_name.strip()):
        raise ValidationFailure("Plan name is required")

    async with transaction(session):
        item = InspectionPlanItemModel(
            project_id=project_id,
            guid=guid,
            plan_name=plan_name.strip(),
            category=category,
            checkpoint_group_id=checkpoint_group_id,
            assembly_mark=assembly_mark,
            created_by=actor.email,
        )
        session.add(item)
        await session.flush()
        await record(
            session,
            AuditEntry(
                project_id=project_id,
                entity_type=EntityType.PLAN_ITEM,
                entity_id=str(item.id),
                action=AuditAction.CREATED,
                new_values=snapshot(item),
                actor=actor,
            ),
        )
    return item
