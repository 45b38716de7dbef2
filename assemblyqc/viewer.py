"""3D viewer collaborator: selection lookup and status colouring.

The viewer itself lives in the host application. This module only
describes what we need from it and how workflow status maps to colours.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Protocol

import structlog

from assemblyqc.lifecycle.guids import normalize_guid
from assemblyqc.models import InspectionStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ModelSelection:
    model_id: str
    runtime_ids: list[int]


class ModelViewer(Protocol):
    async def get_selection(self) -> list[ModelSelection]: ...

    async def convert_to_object_ids(self, model_id: str, runtime_ids: list[int]) -> list[str]: ...

    async def convert_to_object_runtime_ids(self, model_id: str, guids: list[str]) -> list[int]: ...

    async def set_object_state(
        self, model_id: str | None, runtime_ids: list[int] | None, state: dict
    ) -> None: ...


# RGB per workflow status
STATUS_COLORS: dict[InspectionStatus, tuple[int, int, int]] = {
    InspectionStatus.NOT_STARTED: (148, 163, 184),
    InspectionStatus.IN_PROGRESS: (245, 158, 11),
    InspectionStatus.COMPLETED: (59, 130, 246),
    InspectionStatus.APPROVED: (34, 197, 94),
    InspectionStatus.REJECTED: (239, 68, 68),
    InspectionStatus.RETURNED: (168, 85, 247),
}


async def selected_guids(viewer: ModelViewer) -> list[str]:
    """Model GUIDs of everything currently selected in the viewer.

    The viewer may answer with MS or IFC spellings; both come back in the
    stored (IFC) form.
    """
    guids: list[str] = []
    for selection in await viewer.get_selection():
        if selection.runtime_ids:
            object_ids = await viewer.convert_to_object_ids(selection.model_id, selection.runtime_ids)
            guids.extend(normalize_guid(guid) for guid in object_ids)
    return guids


async def paint_by_status(
    viewer: ModelViewer, model_id: str, elements: Iterable
) -> dict[str, int]:
    """Reset colours, then colour each element by its inspection status.

    ``elements`` is anything with ``guid`` and ``inspection_status``.
    Returns the number of painted objects per status.
    """
    by_status: dict[InspectionStatus, list[str]] = defaultdict(list)
    for element in elements:
        by_status[InspectionStatus(element.inspection_status)].append(element.guid)

    await viewer.set_object_state(None, None, {"color": "reset"})

    painted: dict[str, int] = {}
    for status, guids in by_status.items():
        runtime_ids = await viewer.convert_to_object_runtime_ids(model_id, guids)
        if not runtime_ids:
            continue
        r, g, b = STATUS_COLORS[status]
        await viewer.set_object_state(model_id, runtime_ids, {"color": {"r": r, "g": g, "b": b}})
        painted[status.value] = len(runtime_ids)
    return painted


class SelectionPoller:
    """Polls the viewer selection and reports changes until stopped.

    A failing poll or callback is logged and the next poll goes ahead.
    """

    def __init__(
        self,
        viewer: ModelViewer,
        on_change: Callable[[list[str]], Awaitable[None]],
        interval: float = 1.0,
    ):
        self.viewer = viewer
        self.on_change = on_change
        self.interval = interval
        self._task: asyncio.Task | None = None
        self._last: list[str] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                guids = await selected_guids(self.viewer)
                if guids != self._last:
                    self._last = guids
                    await self.on_change(guids)
            except Exception:
                logger.exception("selection_poll_failed")
            await asyncio.sleep(self.interval)
