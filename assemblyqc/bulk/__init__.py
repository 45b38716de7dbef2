"""Bulk operation engine."""

from assemblyqc.bulk.engine import BulkParams, apply_bulk

__all__ = ["BulkParams", "apply_bulk"]
