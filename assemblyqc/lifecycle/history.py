"""Element history replayed from the audit log."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.audit.log import query_history, to_history_entry
from assemblyqc.config import get_config
from assemblyqc.lifecycle.identity import get_element
from assemblyqc.models import AuditAction, EntityType, HistoryEntry


class ElementHistory:
    """Audit trail of one element, newest first.

    Pages through the audit log lazily. Each ``async for`` starts again from
    the newest entry, and iteration ends once the oldest entry is reached.
    """

    def __init__(self, session: AsyncSession, element_id: UUID, page_size: int):
        self.session = session
        self.element_id = element_id
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[HistoryEntry]:
        return self._pages()

    async def _pages(self) -> AsyncIterator[HistoryEntry]:
        before_id = None
        while True:
            rows = await query_history(
                self.session,
                EntityType.ELEMENT,
                str(self.element_id),
                limit=self.page_size,
                before_id=before_id,
            )
            for row in rows:
                yield to_history_entry(row)
            if len(rows) < self.page_size:
                return
            before_id = rows[-1].id

    async def to_list(self) -> list[HistoryEntry]:
        return [entry async for entry in self]


async def get_history(
    session: AsyncSession, element_id: UUID, page_size: int | None = None
) -> ElementHistory:
    """History of an element.

    Raises:
        NotFoundError: unknown element
    """
    await get_element(session, element_id)
    return ElementHistory(session, element_id, page_size or get_config().history.page_size)


def reconstruct_states(entries: Iterable[HistoryEntry]) -> list[tuple[HistoryEntry, dict[str, Any]]]:
    """Replay entries oldest-first into the state after each one.

    Create entries reset the state to their snapshot, delete entries clear
    it, and every other entry overlays its changed fields.
    """
    state: dict[str, Any] = {}
    states = []
    for entry in sorted(entries, key=lambda e: e.id):
        if entry.action == AuditAction.CREATED:
            state = dict(entry.new_values or {})
        elif entry.action == AuditAction.DELETED:
            state = {}
        else:
            state.update(entry.new_values or {})
        states.append((entry, dict(state)))
    return states


async def state_as_of(
    session: AsyncSession, element_id: UUID, at: datetime
) -> dict[str, Any] | None:
    """Element state as it was at ``at``, or None if it did not exist yet."""
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    history = await get_history(session, element_id)
    snapshot = None
    for entry, state in reconstruct_states(await history.to_list()):
        if entry.at > at:
            break
        snapshot = state
    return snapshot
