"""Append-only audit log engine."""

from assemblyqc.audit.log import (
    ACTION_CATEGORIES,
    entries_for_bulk,
    query_history,
    record,
    snapshot,
    to_history_entry,
)

__all__ = [
    "ACTION_CATEGORIES",
    "entries_for_bulk",
    "query_history",
    "record",
    "snapshot",
    "to_history_entry",
]
