"""Offline upload queue.

Site tablets keep working without a connection; their writes are queued
and replayed later through the same workflow and audit entry points as
online requests. Items are replayed by priority (highest first), then by
capture time.

Retryable failures (storage or database I/O) put the item back to
``pending`` until ``max_retries`` is reached. Domain errors and malformed
payloads cannot succeed on replay and fail the item straight away. Failed
items stay listed and can be re-queued. An item whose replay was
interrupted (cancelled task, dead worker) is released again once it has
been ``processing`` for longer than ``processing_timeout_s``.
"""

from __future__ import annotations

import base64
import logging
from datetime import timedelta
from typing import Any, Protocol
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from assemblyqc.audit.log import record
from assemblyqc.config import OfflineQueueConfig, WorkflowConfig, get_config
from assemblyqc.core.errors import AssemblyQCError, PersistenceFailure, ValidationFailure
from assemblyqc.db.connection import transaction
from assemblyqc.db.models import OfflineUploadModel
from assemblyqc.lifecycle.groups import record_result
from assemblyqc.models import (
    Actor,
    AuditAction,
    AuditEntry,
    EntityType,
    InspectionStatus,
    UploadStatus,
    UploadType,
    utcnow,
)
from assemblyqc.workflow.service import InspectionWorkflow

logger = logging.getLogger(__name__)


class PhotoStorage(Protocol):
    """Object storage for inspection photos."""

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` at ``path`` and return its public reference."""
        ...


class QueueRunSummary(BaseModel):
    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0


class OfflineQueue:
    """Queue of writes captured while disconnected."""

    def __init__(
        self,
        session: AsyncSession,
        config: OfflineQueueConfig | None = None,
        workflow_config: WorkflowConfig | None = None,
        photo_storage: PhotoStorage | None = None,
    ):
        self.session = session
        self.config = config or get_config().offline_queue
        self.workflow_config = workflow_config or get_config().workflow
        self.photo_storage = photo_storage

    async def enqueue(
        self,
        project_id: str,
        upload_type: UploadType,
        payload: dict[str, Any],
        actor: Actor,
        entity_type: EntityType = EntityType.ELEMENT,
        entity_id: str | None = None,
        priority: int = 0,
    ) -> OfflineUploadModel:
        async with transaction(self.session):
            upload = OfflineUploadModel(
                project_id=project_id,
                upload_type=upload_type.value,
                entity_type=entity_type.value,
                entity_id=entity_id,
                payload=payload,
                priority=priority,
                status=UploadStatus.PENDING.value,
                retry_count=0,
                created_by=actor.email,
                created_by_name=actor.name,
                created_by_role=actor.role,
            )
            self.session.add(upload)
        logger.info(f"Queued offline {upload_type.value} upload {upload.id}")
        return upload

    async def list_uploads(
        self, project_id: str | None = None, status: UploadStatus | None = None
    ) -> list[OfflineUploadModel]:
        stmt = select(OfflineUploadModel)
        if project_id:
            stmt = stmt.where(OfflineUploadModel.project_id == project_id)
        if status:
            stmt = stmt.where(OfflineUploadModel.status == status.value)
        stmt = stmt.order_by(OfflineUploadModel.priority.desc(), OfflineUploadModel.created_at)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def process_pending(self, project_id: str | None = None) -> QueueRunSummary:
        """Replay one batch of pending uploads.

        Stale ``processing`` items are released first and replayed in the
        same batch.
        """
        await self.release_stale(project_id)
        pending = await self.list_uploads(project_id, UploadStatus.PENDING)
        summary = QueueRunSummary()

        for upload_id in [u.id for u in pending[: self.config.batch_size]]:
            summary.processed += 1
            outcome = await self._process_one(upload_id)
            if outcome == UploadStatus.COMPLETED:
                summary.completed += 1
            elif outcome == UploadStatus.FAILED:
                summary.failed += 1
            else:
                summary.retried += 1

        if summary.processed:
            logger.info(
                f"Offline replay: {summary.completed} completed, {summary.retried} retrying, "
                f"{summary.failed} failed"
            )
        return summary

    async def _process_one(self, upload_id: UUID) -> UploadStatus:
        async with transaction(self.session):
            upload = await self.session.get(OfflineUploadModel, upload_id, populate_existing=True)
            upload.status = UploadStatus.PROCESSING.value
            upload.processing_started_at = utcnow()

        try:
            await self._replay(upload)
        except AssemblyQCError as exc:
            if exc.retryable:
                return await self._record_failure(upload_id, exc.message, terminal=False)
            return await self._record_failure(upload_id, exc.message, terminal=True)
        except Exception as exc:
            # Storage and network errors: worth another attempt
            return await self._record_failure(upload_id, str(exc) or type(exc).__name__, terminal=False)
        except BaseException:
            # Cancelled mid-replay: hand the item back before propagating
            await self._record_failure(upload_id, "Replay was interrupted", terminal=False)
            raise

        async with transaction(self.session):
            upload = await self.session.get(OfflineUploadModel, upload_id, populate_existing=True)
            upload.status = UploadStatus.COMPLETED.value
            upload.processing_started_at = None
            upload.processed_at = utcnow()
            upload.error_message = None
        return UploadStatus.COMPLETED

    async def _record_failure(self, upload_id: UUID, message: str, terminal: bool) -> UploadStatus:
        async with transaction(self.session):
            upload = await self.session.get(OfflineUploadModel, upload_id, populate_existing=True)
            upload.retry_count += 1
            upload.error_message = message
            upload.processing_started_at = None
            if terminal or upload.retry_count >= self.config.max_retries:
                upload.status = UploadStatus.FAILED.value
                upload.processed_at = utcnow()
            else:
                upload.status = UploadStatus.PENDING.value
            status = UploadStatus(upload.status)

        if status == UploadStatus.FAILED:
            logger.error(f"Offline upload {upload_id} failed permanently: {message}")
        else:
            logger.warning(f"Offline upload {upload_id} will be retried: {message}")
        return status

    def _stale_processing(self):
        cutoff = utcnow() - timedelta(seconds=self.config.processing_timeout_s)
        return (OfflineUploadModel.status == UploadStatus.PROCESSING.value) & or_(
            OfflineUploadModel.processing_started_at.is_(None),
            OfflineUploadModel.processing_started_at < cutoff,
        )

    async def release_stale(self, project_id: str | None = None) -> int:
        """Return interrupted ``processing`` uploads to the retry path.

        Each release counts as a failed attempt, so an item that keeps
        killing its worker still ends up ``failed``.
        """
        stmt = select(OfflineUploadModel.id).where(self._stale_processing())
        if project_id:
            stmt = stmt.where(OfflineUploadModel.project_id == project_id)
        stale = list((await self.session.execute(stmt)).scalars().all())
        for upload_id in stale:
            await self._record_failure(upload_id, "Replay was interrupted", terminal=False)
        return len(stale)

    async def requeue_failed(self, project_id: str | None = None) -> int:
        """Send failed and stale uploads back to ``pending`` with a fresh retry budget."""
        stmt = (
            update(OfflineUploadModel)
            .where(
                or_(
                    OfflineUploadModel.status == UploadStatus.FAILED.value,
                    self._stale_processing(),
                )
            )
            .values(
                status=UploadStatus.PENDING.value,
                retry_count=0,
                processing_started_at=None,
                processed_at=None,
            )
        )
        if project_id:
            stmt = stmt.where(OfflineUploadModel.project_id == project_id)
        async with transaction(self.session):
            result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        logger.info(f"Re-queued {result.rowcount} failed offline uploads")
        return result.rowcount

    # ------------------------------------------------------------------
    # Replay handlers
    # ------------------------------------------------------------------

    async def _replay(self, upload: OfflineUploadModel) -> None:
        upload_id, kind = upload.id, upload.upload_type
        try:
            actor = Actor(
                email=upload.created_by, name=upload.created_by_name, role=upload.created_by_role
            )
            upload_type = UploadType(upload.upload_type)
            if upload_type == UploadType.STATUS_CHANGE:
                await self._replay_status_change(upload, actor)
            elif upload_type == UploadType.RESULT:
                await self._replay_result(upload, actor)
            elif upload_type == UploadType.PHOTO:
                await self._replay_photo(upload, actor)
            else:
                await self._replay_comment(upload, actor)
        except ValueError as exc:
            # Bad enum values, ids or base64 in the payload never parse on a later attempt
            raise ValidationFailure(
                f"Malformed queued {kind}: {exc}", upload_id=str(upload_id)
            ) from exc

    def _target_id(self, upload: OfflineUploadModel) -> UUID:
        if not upload.entity_id:
            raise ValidationFailure(f"Upload {upload.id} has no target entity")
        try:
            return UUID(upload.entity_id)
        except ValueError as exc:
            raise ValidationFailure(f"Invalid entity id {upload.entity_id!r}") from exc

    async def _replay_status_change(self, upload: OfflineUploadModel, actor: Actor) -> None:
        status = upload.payload.get("status")
        if not status:
            raise ValidationFailure("Queued status change has no status")
        workflow = InspectionWorkflow(
            self.session, self.workflow_config, project_id=upload.project_id
        )
        await workflow.status_change(
            EntityType(upload.entity_type),
            self._target_id(upload),
            InspectionStatus(status),
            actor,
            comment=upload.payload.get("comment"),
        )

    async def _replay_result(self, upload: OfflineUploadModel, actor: Actor) -> None:
        payload = upload.payload
        if not payload.get("guid"):
            raise ValidationFailure("Queued result has no element GUID")
        plan_item_id = payload.get("plan_item_id")
        group_id = payload.get("checkpoint_group_id")
        await record_result(
            self.session,
            upload.project_id,
            payload["guid"],
            payload.get("answers", {}),
            actor,
            comment=payload.get("comment"),
            plan_item_id=UUID(plan_item_id) if plan_item_id else None,
            checkpoint_group_id=UUID(group_id) if group_id else None,
        )

    async def _replay_photo(self, upload: OfflineUploadModel, actor: Actor) -> None:
        if self.photo_storage is None:
            raise PersistenceFailure("No photo storage configured for offline replay")
        payload = upload.payload
        file_name = payload.get("file_name")
        if not file_name or not payload.get("data"):
            raise ValidationFailure("Queued photo is missing its file name or data")

        data = base64.b64decode(payload["data"].split(",")[-1])
        reference = await self.photo_storage.upload(
            file_name, data, payload.get("content_type", "image/jpeg")
        )
        async with transaction(self.session):
            await record(
                self.session,
                AuditEntry(
                    project_id=upload.project_id,
                    entity_type=EntityType(upload.entity_type),
                    entity_id=upload.entity_id or file_name,
                    action=AuditAction.PHOTO_ADDED,
                    new_values={"photo": reference, "file_name": file_name},
                    actor=actor,
                ),
            )

    async def _replay_comment(self, upload: OfflineUploadModel, actor: Actor) -> None:
        text = (upload.payload.get("text") or "").strip()
        if not text:
            raise ValidationFailure("Queued comment is empty")
        async with transaction(self.session):
            await record(
                self.session,
                AuditEntry(
                    project_id=upload.project_id,
                    entity_type=EntityType(upload.entity_type),
                    entity_id=str(self._target_id(upload)),
                    action=AuditAction.COMMENT_ADDED,
                    new_values={"comment": text},
                    actor=actor,
                ),
            )
