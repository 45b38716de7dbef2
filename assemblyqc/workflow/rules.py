"""Inspection workflow rules.

Pure transition table plus the checks and side effects for each
transition. Works on anything carrying the inspection state columns
(elements and checkpoint groups alike); persistence lives in
``assemblyqc.workflow.service``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from assemblyqc.config import WorkflowConfig
from assemblyqc.core.errors import InvalidTransitionError, ValidationFailure
from assemblyqc.models import Actor, AuditAction, InspectionStatus, ReviewDecision


class Transition(str, Enum):
    START = "start"
    COMPLETE = "complete"
    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"


@dataclass(frozen=True, slots=True)
class TransitionRule:
    sources: frozenset[InspectionStatus]
    target: InspectionStatus
    audit_action: AuditAction
    review: bool = False
    requires_comment: bool = False
    decision: ReviewDecision | None = None


_REOPENED = frozenset({InspectionStatus.RETURNED})

RULES: dict[Transition, TransitionRule] = {
    Transition.START: TransitionRule(
        sources=frozenset({InspectionStatus.NOT_STARTED}) | _REOPENED,
        target=InspectionStatus.IN_PROGRESS,
        audit_action=AuditAction.STATUS_CHANGED,
    ),
    Transition.COMPLETE: TransitionRule(
        sources=frozenset({InspectionStatus.IN_PROGRESS}) | _REOPENED,
        target=InspectionStatus.COMPLETED,
        audit_action=AuditAction.STATUS_CHANGED,
    ),
    Transition.APPROVE: TransitionRule(
        sources=frozenset({InspectionStatus.COMPLETED}),
        target=InspectionStatus.APPROVED,
        audit_action=AuditAction.APPROVED,
        review=True,
        decision=ReviewDecision.APPROVED,
    ),
    Transition.REJECT: TransitionRule(
        sources=frozenset({InspectionStatus.COMPLETED}),
        target=InspectionStatus.REJECTED,
        audit_action=AuditAction.REJECTED,
        review=True,
        requires_comment=True,
        decision=ReviewDecision.REJECTED,
    ),
    Transition.RETURN: TransitionRule(
        sources=frozenset({InspectionStatus.COMPLETED}),
        target=InspectionStatus.RETURNED,
        audit_action=AuditAction.RETURNED,
        review=True,
        requires_comment=True,
        decision=ReviewDecision.RETURNED,
    ),
}

# Columns that make up the workflow state, in audit snapshot order
STATE_FIELDS = (
    "inspection_status",
    "started_at",
    "started_by",
    "completed_at",
    "completed_by",
    "reviewed_at",
    "reviewed_by",
    "reviewed_by_name",
    "review_decision",
    "review_comment",
    "can_edit",
    "locked_at",
    "locked_by",
    "assigned_to",
    "assigned_to_name",
    "assigned_at",
    "assigned_by",
)


def is_reviewer(actor: Actor, config: WorkflowConfig) -> bool:
    return actor.role in config.reviewer_roles


def transition_for_status(status: InspectionStatus) -> Transition:
    """The one transition whose target is ``status``."""
    for transition, rule in RULES.items():
        if rule.target == status:
            return transition
    raise InvalidTransitionError(
        f"No transition leads to status '{status.value}'", status=status.value
    )


def check_transition(
    target: Any,
    transition: Transition,
    actor: Actor,
    comment: str | None,
    config: WorkflowConfig,
) -> TransitionRule:
    """Validate ``transition`` against the current state of ``target``.

    Raises without touching ``target``:
        InvalidTransitionError: locked item, or wrong source state
        ValidationFailure: missing reviewer role or mandatory comment
    """
    rule = RULES[transition]
    current = InspectionStatus(target.inspection_status)

    if not target.can_edit and not rule.review:
        raise InvalidTransitionError(
            f"Cannot {transition.value}: item is locked after approval",
            transition=transition.value,
            status=current.value,
        )
    if current not in rule.sources:
        raise InvalidTransitionError(
            f"Cannot {transition.value} from status '{current.value}'",
            transition=transition.value,
            status=current.value,
        )
    if rule.review and not is_reviewer(actor, config):
        raise ValidationFailure(
            f"Role '{actor.role}' may not {transition.value}; a reviewer is required",
            role=actor.role,
        )
    if rule.requires_comment and not (comment and comment.strip()):
        raise ValidationFailure(
            f"A comment is required to {transition.value}", transition=transition.value
        )
    return rule


def apply_rule(
    target: Any,
    rule: TransitionRule,
    actor: Actor,
    comment: str | None,
    now: datetime,
) -> None:
    """Mutate ``target`` for an already checked transition."""
    target.inspection_status = rule.target.value

    if rule.target == InspectionStatus.IN_PROGRESS:
        target.started_at = now
        target.started_by = actor.email
        return
    if rule.target == InspectionStatus.COMPLETED:
        target.completed_at = now
        target.completed_by = actor.email
        return

    target.review_decision = rule.decision.value
    target.review_comment = comment.strip() if comment else None
    target.reviewed_at = now
    target.reviewed_by = actor.email
    target.reviewed_by_name = actor.name

    if rule.target == InspectionStatus.APPROVED:
        target.can_edit = False
        target.locked_at = now
        target.locked_by = actor.email
    elif rule.target == InspectionStatus.RETURNED:
        target.can_edit = True
        target.locked_at = None
        target.locked_by = None


def check_assign(target: Any) -> None:
    if not target.can_edit:
        raise InvalidTransitionError(
            "Cannot reassign: item is locked after approval",
            status=target.inspection_status,
        )


def check_unlock(target: Any, actor: Actor, reason: str | None, config: WorkflowConfig) -> None:
    if actor.role not in config.unlock_roles:
        raise ValidationFailure(
            f"Role '{actor.role}' may not unlock approved items", role=actor.role
        )
    if not (reason and reason.strip()):
        raise ValidationFailure("A reason is required to unlock an approved item")
    if target.inspection_status != InspectionStatus.APPROVED.value:
        raise InvalidTransitionError(
            f"Only approved items can be unlocked, status is '{target.inspection_status}'",
            status=target.inspection_status,
        )


def apply_unlock(target: Any) -> None:
    # The approval stays in the audit trail; the live row is back in progress
    target.inspection_status = InspectionStatus.IN_PROGRESS.value
    target.can_edit = True
    target.locked_at = None
    target.locked_by = None
    target.review_decision = None
    target.review_comment = None
    target.reviewed_at = None
    target.reviewed_by = None
    target.reviewed_by_name = None
