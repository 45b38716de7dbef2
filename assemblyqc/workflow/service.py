"""Persisted inspection workflow for elements and checkpoint groups."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.audit.log import record, snapshot
from assemblyqc.config import WorkflowConfig, get_config
from assemblyqc.core.errors import NotFoundError, ValidationFailure
from assemblyqc.db.connection import transaction
from assemblyqc.db.models import CheckpointGroupModel, ElementModel
from assemblyqc.models import Actor, AuditAction, AuditEntry, EntityType, InspectionStatus, utcnow
from assemblyqc.workflow.rules import (
    STATE_FIELDS,
    Transition,
    apply_rule,
    apply_unlock,
    check_assign,
    check_transition,
    check_unlock,
    transition_for_status,
)

logger = logging.getLogger(__name__)

TARGET_MODELS = {
    EntityType.ELEMENT: ElementModel,
    EntityType.GROUP: CheckpointGroupModel,
}

Target = ElementModel | CheckpointGroupModel


class InspectionWorkflow:
    """Applies workflow transitions, one transaction and one audit entry each."""

    def __init__(
        self,
        session: AsyncSession,
        config: WorkflowConfig | None = None,
        project_id: str | None = None,
    ):
        self.session = session
        self.config = config or get_config().workflow
        # When set, targets outside this project are reported as not found
        self.project_id = project_id

    async def load(self, target_type: EntityType, target_id: UUID, for_update: bool = False) -> Target:
        model = TARGET_MODELS.get(target_type)
        if model is None:
            raise ValidationFailure(
                f"Workflow does not apply to {target_type.value}", target_type=target_type.value
            )
        stmt = select(model).where(model.id == target_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        target = (await self.session.execute(stmt)).scalar_one_or_none()
        if target is None or (self.project_id and target.project_id != self.project_id):
            raise NotFoundError(
                f"{target_type.value} {target_id} not found", target_id=str(target_id)
            )
        return target

    async def _audit(
        self,
        target: Target,
        target_type: EntityType,
        action: AuditAction,
        old_values: dict,
        new_values: dict,
        actor: Actor,
        bulk_action_id: UUID | None,
    ) -> None:
        await record(
            self.session,
            AuditEntry(
                project_id=target.project_id,
                entity_type=target_type,
                entity_id=str(target.id),
                action=action,
                old_values=old_values,
                new_values=new_values,
                actor=actor,
                bulk_action_id=bulk_action_id,
            ),
        )

    async def transition(
        self,
        target_type: EntityType,
        target_id: UUID,
        transition: Transition,
        actor: Actor,
        comment: str | None = None,
        bulk_action_id: UUID | None = None,
    ) -> Target:
        """Apply one transition atomically with its audit entry.

        Raises:
            NotFoundError: unknown target
            InvalidTransitionError: locked item or wrong source state
            ValidationFailure: reviewer role or comment missing
        """
        async with transaction(self.session):
            target = await self.load(target_type, target_id, for_update=True)
            rule = check_transition(target, transition, actor, comment, self.config)

            old_values = snapshot(target, STATE_FIELDS)
            apply_rule(target, rule, actor, comment, utcnow())
            await self.session.flush()

            await self._audit(
                target,
                target_type,
                rule.audit_action,
                old_values,
                snapshot(target, STATE_FIELDS),
                actor,
                bulk_action_id,
            )

        logger.info(
            f"{target_type.value} {target_id}: {transition.value} -> {rule.target.value} "
            f"by {actor.email}"
        )
        return target

    async def start(self, target_type: EntityType, target_id: UUID, actor: Actor) -> Target:
        return await self.transition(target_type, target_id, Transition.START, actor)

    async def complete(self, target_type: EntityType, target_id: UUID, actor: Actor) -> Target:
        return await self.transition(target_type, target_id, Transition.COMPLETE, actor)

    async def approve(
        self, target_type: EntityType, target_id: UUID, actor: Actor, comment: str | None = None
    ) -> Target:
        return await self.transition(target_type, target_id, Transition.APPROVE, actor, comment)

    async def reject(
        self, target_type: EntityType, target_id: UUID, actor: Actor, comment: str
    ) -> Target:
        return await self.transition(target_type, target_id, Transition.REJECT, actor, comment)

    async def return_for_rework(
        self, target_type: EntityType, target_id: UUID, actor: Actor, comment: str
    ) -> Target:
        return await self.transition(target_type, target_id, Transition.RETURN, actor, comment)

    async def status_change(
        self,
        target_type: EntityType,
        target_id: UUID,
        status: InspectionStatus,
        actor: Actor,
        comment: str | None = None,
        bulk_action_id: UUID | None = None,
    ) -> Target:
        """Move to ``status`` through the transition that reaches it."""
        return await self.transition(
            target_type,
            target_id,
            transition_for_status(status),
            actor,
            comment=comment,
            bulk_action_id=bulk_action_id,
        )

    async def assign(
        self,
        target_type: EntityType,
        target_id: UUID,
        assignee: str | None,
        actor: Actor,
        assignee_name: str | None = None,
        bulk_action_id: UUID | None = None,
    ) -> Target:
        """Assign an inspector, or clear the assignment when ``assignee`` is None."""
        async with transaction(self.session):
            target = await self.load(target_type, target_id, for_update=True)
            check_assign(target)

            fields = ("assigned_to", "assigned_to_name", "assigned_at", "assigned_by")
            old_values = snapshot(target, fields)
            if assignee:
                target.assigned_to = assignee
                target.assigned_to_name = assignee_name
                target.assigned_at = utcnow()
                target.assigned_by = actor.email
                action = AuditAction.ASSIGNED
            else:
                target.assigned_to = None
                target.assigned_to_name = None
                target.assigned_at = None
                target.assigned_by = None
                action = AuditAction.UNASSIGNED
            await self.session.flush()

            await self._audit(
                target,
                target_type,
                action,
                old_values,
                snapshot(target, fields),
                actor,
                bulk_action_id,
            )

        logger.info(f"{target_type.value} {target_id}: {action.value} {assignee or ''}".rstrip())
        return target

    async def unlock(
        self, target_type: EntityType, target_id: UUID, actor: Actor, reason: str
    ) -> Target:
        """Reopen an approved item. Admin only, with a recorded reason."""
        async with transaction(self.session):
            target = await self.load(target_type, target_id, for_update=True)
            check_unlock(target, actor, reason, self.config)

            old_values = snapshot(target, STATE_FIELDS)
            apply_unlock(target)
            await self.session.flush()

            new_values = snapshot(target, STATE_FIELDS)
            new_values["unlock_reason"] = reason.strip()
            await self._audit(
                target, target_type, AuditAction.UNLOCKED, old_values, new_values, actor, None
            )

        logger.warning(f"{target_type.value} {target_id} unlocked by {actor.email}: {reason}")
        return target
