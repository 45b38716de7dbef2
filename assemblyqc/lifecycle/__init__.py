"""Element identity and lifecycle engine."""

from assemblyqc.lifecycle.guids import ifc_to_ms_guid, ms_to_ifc_guid, normalize_guid
from assemblyqc.lifecycle.identity import (
    GuidDependent,
    GuidRemapUnitOfWork,
    create_element,
    find_element,
    get_element,
    remap_guid,
)
from assemblyqc.lifecycle.history import ElementHistory, get_history, reconstruct_states, state_as_of

__all__ = [
    "ifc_to_ms_guid",
    "ms_to_ifc_guid",
    "normalize_guid",
    "GuidDependent",
    "GuidRemapUnitOfWork",
    "create_element",
    "find_element",
    "get_element",
    "remap_guid",
    "ElementHistory",
    "get_history",
    "reconstruct_states",
    "state_as_of",
]
