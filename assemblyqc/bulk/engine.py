"""Bulk workflow operations.

Applies one action to many elements or checkpoint groups. Each target is
its own transaction: one failing target never blocks or rolls back the
others. Every successful target gets its own audit entry carrying the
shared ``bulk_action_id``, and one ``bulk_actions_log`` row summarises the
call.
"""

from __future__ import annotations

import logging
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.config import WorkflowConfig, get_config
from assemblyqc.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationFailure,
)
from assemblyqc.db.connection import transaction
from assemblyqc.db.models import BulkActionLogModel
from assemblyqc.models import (
    Actor,
    BulkActionType,
    BulkItemResult,
    BulkResult,
    EntityType,
    InspectionStatus,
)
from assemblyqc.workflow.rules import Transition, is_reviewer, transition_for_status
from assemblyqc.workflow.service import InspectionWorkflow

logger = logging.getLogger(__name__)

# Per-target failures reported in the result instead of raised
ITEM_ERRORS = (InvalidTransitionError, NotFoundError, ValidationFailure)

_REVIEW_ACTIONS = {
    BulkActionType.APPROVE: Transition.APPROVE,
    BulkActionType.REJECT: Transition.REJECT,
    BulkActionType.RETURN: Transition.RETURN,
}


class BulkParams(BaseModel):
    """Parameters shared by every target of one bulk call."""

    comment: str | None = None
    status: InspectionStatus | None = None
    assignee: str | None = None
    assignee_name: str | None = None


def validate_batch(
    action: BulkActionType,
    target_ids: list[UUID],
    actor: Actor,
    params: BulkParams,
    config: WorkflowConfig,
) -> Transition | None:
    """Checks that hold for the whole batch; raised before any target is touched."""
    if not target_ids:
        raise ValidationFailure("Bulk action needs at least one target")

    if action in _REVIEW_ACTIONS:
        if not is_reviewer(actor, config):
            raise ValidationFailure(
                f"Role '{actor.role}' may not {action.value}; a reviewer is required",
                role=actor.role,
            )
        if action != BulkActionType.APPROVE and not (params.comment and params.comment.strip()):
            raise ValidationFailure(f"A comment is required to {action.value}")
        return _REVIEW_ACTIONS[action]

    if action == BulkActionType.STATUS_CHANGE:
        if params.status is None:
            raise ValidationFailure("Bulk status change needs a target status")
        return transition_for_status(params.status)

    return None


async def apply_bulk(
    session: AsyncSession,
    project_id: str,
    action: BulkActionType,
    target_ids: list[UUID],
    actor: Actor,
    params: BulkParams | None = None,
    target_type: EntityType = EntityType.ELEMENT,
    config: WorkflowConfig | None = None,
) -> BulkResult:
    """Apply ``action`` to every target, one transaction per target.

    Raises:
        ValidationFailure: batch-level parameter problems (no targets, missing
            comment or status, actor lacks the reviewer role)
    """
    params = params or BulkParams()
    config = config or get_config().workflow
    target_ids = list(dict.fromkeys(target_ids))
    transition = validate_batch(action, target_ids, actor, params, config)

    bulk_action_id = uuid4()
    workflow = InspectionWorkflow(session, config, project_id=project_id)
    results: list[BulkItemResult] = []

    for target_id in target_ids:
        try:
            if action == BulkActionType.ASSIGN:
                await workflow.assign(
                    target_type,
                    target_id,
                    params.assignee,
                    actor,
                    assignee_name=params.assignee_name,
                    bulk_action_id=bulk_action_id,
                )
            else:
                await workflow.transition(
                    target_type,
                    target_id,
                    transition,
                    actor,
                    comment=params.comment,
                    bulk_action_id=bulk_action_id,
                )
            results.append(BulkItemResult(id=target_id, success=True))
        except ITEM_ERRORS as exc:
            results.append(
                BulkItemResult(id=target_id, success=False, error=exc.message, error_code=exc.code)
            )
        except SQLAlchemyError as exc:
            logger.error(f"Bulk {action.value} failed on {target_id}: {exc}")
            results.append(
                BulkItemResult(
                    id=target_id,
                    success=False,
                    error=str(exc),
                    error_code="persistence_failure",
                )
            )

    success_count = sum(1 for r in results if r.success)
    failures = [r.model_dump(mode="json") for r in results if not r.success]

    async with transaction(session):
        session.add(
            BulkActionLogModel(
                id=bulk_action_id,
                project_id=project_id,
                action_type=action.value,
                target_type=target_type.value,
                target_ids=[str(t) for t in target_ids],
                affected_count=success_count,
                changes=params.model_dump(mode="json", exclude_none=True),
                success_count=success_count,
                failure_count=len(failures),
                failures=failures,
                performed_by=actor.email,
                performed_by_name=actor.name,
            )
        )

    result = BulkResult(
        bulk_action_id=bulk_action_id,
        action=action,
        success_count=success_count,
        failure_count=len(failures),
        results=results,
    )
    logger.info(f"Bulk {result.summary()} (batch {bulk_action_id}, by {actor.email})")
    return result
