"""Append-only audit log.

Every mutating operation calls ``record`` explicitly inside its own
transaction, so an audit row exists if and only if the change committed.
Rows are never updated or deleted (see the ORM guards in
``assemblyqc.db.models``).
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterable
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.db.models import AuditLogModel
from assemblyqc.models import (
    AuditAction,
    AuditActionCategory,
    AuditEntry,
    EntityType,
    HistoryEntry,
)

logger = structlog.get_logger(__name__)

ACTION_CATEGORIES: dict[AuditAction, AuditActionCategory] = {
    AuditAction.CREATED: AuditActionCategory.LIFECYCLE,
    AuditAction.UPDATED: AuditActionCategory.LIFECYCLE,
    AuditAction.DELETED: AuditActionCategory.LIFECYCLE,
    AuditAction.ARRIVED: AuditActionCategory.LIFECYCLE,
    AuditAction.ARRIVAL_CHECKED: AuditActionCategory.LIFECYCLE,
    AuditAction.INSTALLED: AuditActionCategory.LIFECYCLE,
    AuditAction.STATUS_CHANGED: AuditActionCategory.INSPECTION,
    AuditAction.ASSIGNED: AuditActionCategory.INSPECTION,
    AuditAction.UNASSIGNED: AuditActionCategory.INSPECTION,
    AuditAction.RESULT_RECORDED: AuditActionCategory.INSPECTION,
    AuditAction.APPROVED: AuditActionCategory.REVIEW,
    AuditAction.REJECTED: AuditActionCategory.REVIEW,
    AuditAction.RETURNED: AuditActionCategory.REVIEW,
    AuditAction.LOCKED: AuditActionCategory.ADMIN,
    AuditAction.UNLOCKED: AuditActionCategory.ADMIN,
    AuditAction.PHOTO_ADDED: AuditActionCategory.PHOTO,
    AuditAction.PHOTO_DELETED: AuditActionCategory.PHOTO,
    AuditAction.COMMENT_ADDED: AuditActionCategory.COMMENT,
    AuditAction.GUID_CHANGED: AuditActionCategory.SYSTEM,
}

# Actions that carry a full snapshot instead of a field-scoped diff
_SNAPSHOT_ACTIONS = {AuditAction.CREATED, AuditAction.DELETED}


def category_for(action: AuditAction) -> AuditActionCategory:
    return ACTION_CATEGORIES[action]


def jsonable(value: Any) -> Any:
    """Coerce a column value into something the JSON column accepts."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def snapshot(row: Any, fields: Iterable[str] | None = None) -> dict[str, Any]:
    """Column values of an ORM row, optionally restricted to ``fields``."""
    names = list(fields) if fields is not None else [c.key for c in row.__table__.columns]
    return {name: jsonable(getattr(row, name)) for name in names}


def _diff(
    old: dict[str, Any] | None, new: dict[str, Any] | None
) -> tuple[dict[str, Any] | None, dict[str, Any] | None, list[str]]:
    old = old or {}
    new = new or {}
    changed = sorted(k for k in set(old) | set(new) if old.get(k) != new.get(k))
    return (
        {k: old.get(k) for k in changed} or None,
        {k: new.get(k) for k in changed} or None,
        changed,
    )


async def record(session: AsyncSession, entry: AuditEntry) -> AuditLogModel:
    """Append one audit row in the caller's transaction.

    Create/delete entries keep the full snapshots they are given. Every
    other action is reduced to the fields whose values actually changed.
    """
    if entry.action in _SNAPSHOT_ACTIONS:
        old_values = jsonable(entry.old_values) if entry.old_values else None
        new_values = jsonable(entry.new_values) if entry.new_values else None
        changed_fields = sorted((new_values or old_values or {}).keys())
    else:
        old_values, new_values, changed_fields = _diff(
            jsonable(entry.old_values), jsonable(entry.new_values)
        )

    row = AuditLogModel(
        project_id=entry.project_id,
        entity_type=entry.entity_type.value,
        entity_id=entry.entity_id,
        action=entry.action.value,
        action_category=category_for(entry.action).value,
        old_values=old_values,
        new_values=new_values,
        changed_fields=changed_fields,
        actor_email=entry.actor.email,
        actor_name=entry.actor.name,
        is_bulk_action=entry.bulk_action_id is not None,
        bulk_action_id=entry.bulk_action_id,
    )
    session.add(row)
    await session.flush()

    logger.debug(
        "audit_recorded",
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        action=row.action,
        entry_id=row.id,
    )
    return row


async def query_history(
    session: AsyncSession,
    entity_type: EntityType,
    entity_id: str,
    limit: int | None = None,
    before_id: int | None = None,
) -> list[AuditLogModel]:
    """Entries for one entity, newest first.

    ``before_id`` pages backwards: only entries older than that id are returned.
    """
    stmt = (
        select(AuditLogModel)
        .where(
            AuditLogModel.entity_type == entity_type.value,
            AuditLogModel.entity_id == str(entity_id),
        )
        .order_by(AuditLogModel.id.desc())
    )
    if before_id is not None:
        stmt = stmt.where(AuditLogModel.id < before_id)
    if limit is not None:
        stmt = stmt.limit(limit)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def entries_for_bulk(session: AsyncSession, bulk_action_id: UUID) -> list[AuditLogModel]:
    result = await session.execute(
        select(AuditLogModel)
        .where(AuditLogModel.bulk_action_id == bulk_action_id)
        .order_by(AuditLogModel.id)
    )
    return list(result.scalars().all())


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; they were written as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_history_entry(row: AuditLogModel) -> HistoryEntry:
    return HistoryEntry(
        id=row.id,
        entity_type=EntityType(row.entity_type),
        entity_id=row.entity_id,
        action=AuditAction(row.action),
        category=AuditActionCategory(row.action_category),
        old_values=row.old_values,
        new_values=row.new_values,
        actor=row.actor_email,
        actor_name=row.actor_name,
        at=_as_utc(row.created_at),
        is_bulk=row.is_bulk_action,
        bulk_action_id=row.bulk_action_id,
    )
