"""Read-only lifecycle and activity statistics for a project.

Feeds dashboards and the CLI status tables. Nothing here writes.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.db.models import AuditLogModel, BulkActionLogModel, ElementModel
from assemblyqc.models import AuditActionCategory, InspectionStatus, utcnow


@dataclass
class LifecycleStats:
    """Element counts by lifecycle stage and inspection status."""

    project_id: str
    total_elements: int
    arrived_count: int
    installed_count: int
    status_counts: dict[str, int]

    @property
    def approved_count(self) -> int:
        return self.status_counts.get(InspectionStatus.APPROVED.value, 0)

    @property
    def pending_review_count(self) -> int:
        return self.status_counts.get(InspectionStatus.COMPLETED.value, 0)

    @property
    def approval_rate(self) -> float:
        if self.total_elements == 0:
            return 0.0
        return self.approved_count / self.total_elements


@dataclass
class UserActivity:
    actor_email: str
    actor_name: str | None
    total_actions: int
    reviews: int
    inspections: int
    last_activity: datetime | None


@dataclass
class DailyActivity:
    day: date
    total_actions: int
    by_category: dict[str, int] = field(default_factory=dict)


async def compute_lifecycle_stats(session: AsyncSession, project_id: str) -> LifecycleStats:
    active = (ElementModel.project_id == project_id, ElementModel.is_active.is_(True))

    totals = (
        await session.execute(
            select(
                func.count(ElementModel.id).label("total"),
                func.sum(case((ElementModel.arrived_at.is_not(None), 1), else_=0)).label("arrived"),
                func.sum(case((ElementModel.installed_at.is_not(None), 1), else_=0)).label(
                    "installed"
                ),
            ).where(*active)
        )
    ).one()

    rows = await session.execute(
        select(ElementModel.inspection_status, func.count(ElementModel.id))
        .where(*active)
        .group_by(ElementModel.inspection_status)
    )
    status_counts = {status.value: 0 for status in InspectionStatus}
    status_counts.update({status: count for status, count in rows.all()})

    return LifecycleStats(
        project_id=project_id,
        total_elements=totals.total or 0,
        arrived_count=totals.arrived or 0,
        installed_count=totals.installed or 0,
        status_counts=status_counts,
    )


async def _recent_audit_rows(session: AsyncSession, project_id: str, days: int):
    since = utcnow() - timedelta(days=days)
    result = await session.execute(
        select(
            AuditLogModel.actor_email,
            AuditLogModel.actor_name,
            AuditLogModel.action_category,
            AuditLogModel.created_at,
        )
        .where(AuditLogModel.project_id == project_id, AuditLogModel.created_at >= since)
        .order_by(AuditLogModel.id)
    )
    return result.all()


async def compute_user_activity(
    session: AsyncSession, project_id: str, days: int = 30
) -> list[UserActivity]:
    """Per-user action counts over the last ``days`` days, busiest first."""
    per_user: dict[str, UserActivity] = {}
    for email, name, category, created_at in await _recent_audit_rows(session, project_id, days):
        activity = per_user.setdefault(
            email, UserActivity(email, name, 0, 0, 0, None)
        )
        activity.total_actions += 1
        if category == AuditActionCategory.REVIEW.value:
            activity.reviews += 1
        elif category == AuditActionCategory.INSPECTION.value:
            activity.inspections += 1
        activity.actor_name = name or activity.actor_name
        activity.last_activity = created_at

    return sorted(per_user.values(), key=lambda a: a.total_actions, reverse=True)


async def compute_daily_activity(
    session: AsyncSession, project_id: str, days: int = 7
) -> list[DailyActivity]:
    """Actions per calendar day (UTC), oldest day first."""
    per_day: dict[date, Counter] = defaultdict(Counter)
    for _, _, category, created_at in await _recent_audit_rows(session, project_id, days):
        per_day[created_at.date()][category] += 1

    return [
        DailyActivity(day=day, total_actions=sum(counts.values()), by_category=dict(counts))
        for day, counts in sorted(per_day.items())
    ]


async def list_bulk_actions(
    session: AsyncSession, project_id: str, limit: int = 20
) -> list[BulkActionLogModel]:
    result = await session.execute(
        select(BulkActionLogModel)
        .where(BulkActionLogModel.project_id == project_id)
        .order_by(BulkActionLogModel.performed_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
