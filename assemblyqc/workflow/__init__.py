"""Inspection workflow state machine."""

from assemblyqc.workflow.rules import RULES, Transition, transition_for_status
from assemblyqc.workflow.service import InspectionWorkflow

__all__ = ["RULES", "Transition", "transition_for_status", "InspectionWorkflow"]
