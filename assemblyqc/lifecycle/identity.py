"""Element identity: stable ids, current model GUIDs and atomic GUID remapping.

An element is keyed by its own UUID. The model GUID is a mutable,
indexed attribute; other tables reference elements by GUID value, so a
remap fans out to every dependent collection in one transaction. The
dependents are listed explicitly in ``GuidRemapUnitOfWork``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.audit.log import record, snapshot
from assemblyqc.core.errors import (
    AssemblyQCError,
    ConflictingGuidError,
    DuplicateGuidError,
    NotFoundError,
    PersistenceFailure,
    ValidationFailure,
)
from assemblyqc.db.connection import transaction
from assemblyqc.db.models import (
    CalibrationPointModel,
    CheckpointGroupModel,
    ElementModel,
    InspectionPlanItemModel,
    InspectionResultModel,
)
from assemblyqc.lifecycle.guids import normalize_guid
from assemblyqc.models import (
    Actor,
    AuditAction,
    AuditEntry,
    ElementDescriptors,
    EntityType,
    GuidHistoryEntry,
    utcnow,
)

logger = structlog.get_logger(__name__)

DependentUpdate = Callable[[AsyncSession, str, str, str, Actor], Awaitable[int]]


@dataclass(frozen=True, slots=True)
class GuidDependent:
    """A collection that references elements by GUID value."""

    name: str
    apply: DependentUpdate


async def _remap_results(
    session: AsyncSession, project_id: str, old: str, new: str, actor: Actor
) -> int:
    result = await session.execute(
        update(InspectionResultModel)
        .where(InspectionResultModel.project_id == project_id, InspectionResultModel.guid == old)
        .values(guid=new)
    )
    return result.rowcount


async def _remap_plan_items(
    session: AsyncSession, project_id: str, old: str, new: str, actor: Actor
) -> int:
    result = await session.execute(
        update(InspectionPlanItemModel)
        .where(
            InspectionPlanItemModel.project_id == project_id,
            InspectionPlanItemModel.guid == old,
        )
        .values(guid=new)
    )
    return result.rowcount


async def _remap_calibration_refs(
    session: AsyncSession, project_id: str, old: str, new: str, actor: Actor
) -> int:
    result = await session.execute(
        update(CalibrationPointModel)
        .where(
            CalibrationPointModel.project_id == project_id,
            CalibrationPointModel.reference_guid == old,
        )
        .values(reference_guid=new)
    )
    return result.rowcount


async def _remap_group_members(
    session: AsyncSession, project_id: str, old: str, new: str, actor: Actor
) -> int:
    # Membership is a JSON list; rewrite in place, keeping order and other members
    result = await session.execute(
        select(CheckpointGroupModel)
        .where(CheckpointGroupModel.project_id == project_id)
        .with_for_update()
    )
    touched = 0
    for group in result.scalars().all():
        if old not in group.element_guids:
            continue
        before = list(group.element_guids)
        group.element_guids = list(dict.fromkeys(new if guid == old else guid for guid in before))
        await record(
            session,
            AuditEntry(
                project_id=project_id,
                entity_type=EntityType.GROUP,
                entity_id=str(group.id),
                action=AuditAction.UPDATED,
                old_values={"element_guids": before},
                new_values={"element_guids": group.element_guids},
                actor=actor,
            ),
        )
        touched += 1
    await session.flush()
    return touched


DEFAULT_DEPENDENTS: tuple[GuidDependent, ...] = (
    GuidDependent("inspection_results", _remap_results),
    GuidDependent("checkpoint_groups", _remap_group_members),
    GuidDependent("inspection_plan_items", _remap_plan_items),
    GuidDependent("calibration_points", _remap_calibration_refs),
)


class GuidRemapUnitOfWork:
    """Every dependent collection a GUID remap must update."""

    def __init__(self, dependents: Sequence[GuidDependent] | None = None):
        self.dependents = list(dependents) if dependents is not None else list(DEFAULT_DEPENDENTS)

    async def run(
        self, session: AsyncSession, project_id: str, old: str, new: str, actor: Actor
    ) -> dict[str, int]:
        counts: dict[str, int] = {}
        for dependent in self.dependents:
            counts[dependent.name] = await dependent.apply(session, project_id, old, new, actor)
        return counts


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


async def get_element(session: AsyncSession, element_id: UUID) -> ElementModel:
    element = await session.get(ElementModel, element_id, populate_existing=True)
    if element is None:
        raise NotFoundError(f"Element {element_id} not found", element_id=str(element_id))
    return element


async def find_element(
    session: AsyncSession, project_id: str, guid: str, include_history: bool = False
) -> ElementModel | None:
    """Active element currently holding ``guid``.

    MS and IFC spellings of the same GUID resolve to the same element.
    With ``include_history`` an element whose previous GUIDs contain
    ``guid`` is returned when no element holds it now.
    """
    guid = normalize_guid(guid)
    result = await session.execute(
        select(ElementModel).where(
            ElementModel.project_id == project_id,
            ElementModel.guid == guid,
            ElementModel.is_active.is_(True),
        )
    )
    element = result.scalar_one_or_none()
    if element is not None or not include_history:
        return element

    result = await session.execute(
        select(ElementModel).where(
            ElementModel.project_id == project_id, ElementModel.is_active.is_(True)
        )
    )
    for candidate in result.scalars():
        if any(entry.get("old_guid") == guid for entry in candidate.guid_history or []):
            return candidate
    return None


async def list_elements(
    session: AsyncSession,
    project_id: str,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[ElementModel]:
    stmt = select(ElementModel).where(
        ElementModel.project_id == project_id, ElementModel.is_active.is_(True)
    )
    if status:
        stmt = stmt.where(ElementModel.inspection_status == status)
    stmt = stmt.order_by(ElementModel.assembly_mark, ElementModel.guid).limit(limit).offset(offset)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def guid_history(element: ElementModel) -> list[GuidHistoryEntry]:
    return [GuidHistoryEntry.model_validate(entry) for entry in element.guid_history or []]


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def create_element(
    session: AsyncSession,
    project_id: str,
    guid: str,
    descriptors: ElementDescriptors,
    actor: Actor,
) -> ElementModel:
    """Register a new element under its current model GUID.

    Raises:
        ValidationFailure: blank GUID
        DuplicateGuidError: an active element in the project already holds the GUID
    """
    guid = normalize_guid(guid)
    if not guid:
        raise ValidationFailure("Element GUID is required")

    try:
        async with transaction(session):
            if await find_element(session, project_id, guid) is not None:
                raise DuplicateGuidError(
                    f"GUID {guid} already exists in project {project_id}",
                    guid=guid,
                    project_id=project_id,
                )
            element = ElementModel(
                project_id=project_id,
                guid=guid,
                guid_history=[],
                assembly_mark=descriptors.assembly_mark,
                product_name=descriptors.product_name,
                object_name=descriptors.object_name,
                object_type=descriptors.object_type,
                created_by=actor.email,
            )
            session.add(element)
            await session.flush()

            await record(
                session,
                AuditEntry(
                    project_id=project_id,
                    entity_type=EntityType.ELEMENT,
                    entity_id=str(element.id),
                    action=AuditAction.CREATED,
                    new_values=snapshot(element),
                    actor=actor,
                ),
            )
    except IntegrityError as exc:
        # Lost a race against a concurrent create of the same GUID
        raise DuplicateGuidError(
            f"GUID {guid} already exists in project {project_id}", guid=guid
        ) from exc

    logger.info("element_created", project_id=project_id, element_id=str(element.id), guid=guid)
    return element


async def remap_guid(
    session: AsyncSession,
    project_id: str,
    old_guid: str,
    new_guid: str,
    actor: Actor,
    unit_of_work: GuidRemapUnitOfWork | None = None,
) -> UUID:
    """Move an element from ``old_guid`` to ``new_guid`` everywhere at once.

    Runs as its own transaction with the element row locked. Either the
    element, every dependent collection and the single ``guid_changed``
    audit entry all commit, or nothing does.

    Returns:
        The element's stable id

    Raises:
        ValidationFailure: blank or unchanged GUID
        NotFoundError: no active element holds ``old_guid``
        ConflictingGuidError: another active element already holds ``new_guid``
        PersistenceFailure: any other failure; the whole remap was rolled back
    """
    old_guid = normalize_guid(old_guid)
    new_guid = normalize_guid(new_guid)
    if not old_guid or not new_guid:
        raise ValidationFailure("Both old and new GUID are required")
    if old_guid == new_guid:
        raise ValidationFailure("New GUID is identical to the current GUID", guid=old_guid)

    unit_of_work = unit_of_work or GuidRemapUnitOfWork()

    try:
        async with transaction(session):
            result = await session.execute(
                select(ElementModel)
                .where(
                    ElementModel.project_id == project_id,
                    ElementModel.guid == old_guid,
                    ElementModel.is_active.is_(True),
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            element = result.scalar_one_or_none()
            if element is None:
                raise NotFoundError(
                    f"No element with GUID {old_guid} in project {project_id}", guid=old_guid
                )
            if await find_element(session, project_id, new_guid) is not None:
                raise ConflictingGuidError(
                    f"GUID {new_guid} is already used by another element", guid=new_guid
                )

            changed_at = utcnow()
            previous_history = list(element.guid_history or [])
            element.guid = new_guid
            element.guid_history = [
                *previous_history,
                {
                    "old_guid": old_guid,
                    "changed_at": changed_at.isoformat(),
                    "changed_by": actor.email,
                },
            ]
            await session.flush()

            counts = await unit_of_work.run(session, project_id, old_guid, new_guid, actor)

            await record(
                session,
                AuditEntry(
                    project_id=project_id,
                    entity_type=EntityType.ELEMENT,
                    entity_id=str(element.id),
                    action=AuditAction.GUID_CHANGED,
                    old_values={"guid": old_guid, "guid_history": previous_history},
                    new_values={"guid": new_guid, "guid_history": element.guid_history},
                    actor=actor,
                ),
            )
            element_id = element.id
    except AssemblyQCError:
        raise
    except Exception as exc:
        logger.error(
            "guid_remap_failed",
            project_id=project_id,
            old_guid=old_guid,
            new_guid=new_guid,
            error=str(exc),
        )
        raise PersistenceFailure(
            f"GUID remap {old_guid} -> {new_guid} failed and was rolled back",
            old_guid=old_guid,
            new_guid=new_guid,
        ) from exc

    logger.info(
        "guid_remapped",
        project_id=project_id,
        element_id=str(element_id),
        old_guid=old_guid,
        new_guid=new_guid,
        dependents=counts,
    )
    return element_id
