"""Integration tests for offline upload replay."""

from __future__ import annotations

import asyncio
import base64
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from assemblyqc.config import OfflineQueueConfig
from assemblyqc.db.models import AuditLogModel, ElementModel, OfflineUploadModel
from assemblyqc.lifecycle.groups import results_for_guid
from assemblyqc.lifecycle.identity import create_element
from assemblyqc.models import AuditAction, ElementDescriptors, UploadStatus, UploadType, utcnow
from assemblyqc.sync.offline_queue import OfflineQueue


class MemoryStorage:
    def __init__(self):
        self.files: dict[str, bytes] = {}

    async def upload(self, path, data, content_type):
        self.files[path] = data
        return f"memory://{path}"


class CancellingStorage:
    async def upload(self, path, data, content_type):
        raise asyncio.CancelledError()


@pytest_asyncio.fixture
async def element(db_session, test_project_id, inspector):
    return await create_element(
        db_session, test_project_id, "guid-q1", ElementDescriptors(assembly_mark="Q-1"), inspector
    )


@pytest.fixture
def queue(db_session):
    return OfflineQueue(db_session, config=OfflineQueueConfig(max_retries=3, batch_size=50))


@pytest.mark.asyncio
async def test_status_change_replays_through_workflow(
    db_session, queue, test_project_id, inspector, element
):
    upload = await queue.enqueue(
        test_project_id,
        UploadType.STATUS_CHANGE,
        {"status": "in_progress"},
        inspector,
        entity_id=str(element.id),
    )

    summary = await queue.process_pending()

    assert summary.completed == 1
    refreshed = await db_session.get(ElementModel, element.id, populate_existing=True)
    assert refreshed.inspection_status == "in_progress"
    assert refreshed.started_by == inspector.email

    (done,) = await queue.list_uploads(status=UploadStatus.COMPLETED)
    assert done.id == upload.id
    assert done.processed_at is not None


@pytest.mark.asyncio
async def test_domain_error_fails_without_retry(queue, test_project_id, inspector, element):
    # not_started -> approved has no transition
    await queue.enqueue(
        test_project_id,
        UploadType.STATUS_CHANGE,
        {"status": "approved"},
        inspector,
        entity_id=str(element.id),
    )

    summary = await queue.process_pending()

    assert summary.failed == 1
    (failed,) = await queue.list_uploads(status=UploadStatus.FAILED)
    assert failed.retry_count == 1
    assert failed.error_message


@pytest.mark.asyncio
async def test_retryable_error_until_budget_spent(queue, test_project_id, inspector, element):
    # no photo storage configured: every attempt is a retryable persistence failure
    await queue.enqueue(
        test_project_id,
        UploadType.PHOTO,
        {"file_name": "weld.jpg", "data": base64.b64encode(b"jpeg").decode()},
        inspector,
        entity_id=str(element.id),
    )

    first = await queue.process_pending()
    second = await queue.process_pending()

    assert first.retried == 1
    assert second.retried == 1
    (pending,) = await queue.list_uploads(status=UploadStatus.PENDING)
    assert pending.retry_count == 2

    third = await queue.process_pending()
    assert third.failed == 1
    (failed,) = await queue.list_uploads(status=UploadStatus.FAILED)
    assert failed.retry_count == 3


@pytest.mark.asyncio
async def test_requeue_failed(queue, test_project_id, inspector, element):
    await queue.enqueue(
        test_project_id, UploadType.COMMENT, {"text": "   "}, inspector, entity_id=str(element.id)
    )
    await queue.process_pending()

    assert await queue.requeue_failed(test_project_id) == 1

    (pending,) = await queue.list_uploads(status=UploadStatus.PENDING)
    assert pending.retry_count == 0


@pytest.mark.asyncio
async def test_photo_replay_uploads_and_audits(db_session, test_project_id, inspector, element):
    storage = MemoryStorage()
    queue = OfflineQueue(db_session, photo_storage=storage)
    await queue.enqueue(
        test_project_id,
        UploadType.PHOTO,
        {
            "file_name": "weld.jpg",
            "data": "data:image/jpeg;base64," + base64.b64encode(b"jpeg-bytes").decode(),
        },
        inspector,
        entity_id=str(element.id),
    )

    summary = await queue.process_pending()

    assert summary.completed == 1
    assert storage.files == {"weld.jpg": b"jpeg-bytes"}
    row = (
        await db_session.execute(
            select(AuditLogModel).where(AuditLogModel.action == AuditAction.PHOTO_ADDED.value)
        )
    ).scalar_one()
    assert row.new_values["photo"] == "memory://weld.jpg"


@pytest.mark.asyncio
async def test_comment_and_result_replay(db_session, queue, test_project_id, inspector, element):
    await queue.enqueue(
        test_project_id,
        UploadType.COMMENT,
        {"text": "Shim plate missing"},
        inspector,
        entity_id=str(element.id),
    )
    await queue.enqueue(
        test_project_id,
        UploadType.RESULT,
        {"guid": "guid-q1", "answers": {"plumb": True}},
        inspector,
    )

    summary = await queue.process_pending()

    assert summary.completed == 2
    results = await results_for_guid(db_session, test_project_id, "guid-q1")
    assert [r.payload for r in results] == [{"plumb": True}]
    comment = (
        await db_session.execute(
            select(AuditLogModel).where(AuditLogModel.action == AuditAction.COMMENT_ADDED.value)
        )
    ).scalar_one()
    assert comment.new_values == {"comment": "Shim plate missing"}


@pytest.mark.asyncio
async def test_higher_priority_first(queue, test_project_id, inspector, element):
    low = await queue.enqueue(
        test_project_id, UploadType.COMMENT, {"text": "low"}, inspector, entity_id=str(element.id)
    )
    high = await queue.enqueue(
        test_project_id,
        UploadType.COMMENT,
        {"text": "high"},
        inspector,
        entity_id=str(element.id),
        priority=10,
    )

    pending = await queue.list_uploads(test_project_id, UploadStatus.PENDING)

    assert [u.id for u in pending] == [high.id, low.id]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "upload_type,payload",
    [
        (UploadType.STATUS_CHANGE, {"status": "done"}),
        (UploadType.RESULT, {"guid": "guid-q1", "plan_item_id": "not-a-uuid"}),
        (UploadType.PHOTO, {"file_name": "weld.jpg", "data": "abc"}),
    ],
)
async def test_malformed_payload_fails_without_retry(
    db_session, test_project_id, inspector, element, upload_type, payload
):
    queue = OfflineQueue(
        db_session, config=OfflineQueueConfig(max_retries=3), photo_storage=MemoryStorage()
    )
    await queue.enqueue(test_project_id, upload_type, payload, inspector, entity_id=str(element.id))

    summary = await queue.process_pending()

    assert summary.failed == 1
    assert summary.retried == 0
    (failed,) = await queue.list_uploads(status=UploadStatus.FAILED)
    assert failed.retry_count == 1
    assert failed.error_message.startswith(f"Malformed queued {upload_type.value}")


@pytest.mark.asyncio
async def test_cancelled_replay_returns_item_to_pending(
    db_session, test_project_id, inspector, element
):
    queue = OfflineQueue(
        db_session, config=OfflineQueueConfig(max_retries=3), photo_storage=CancellingStorage()
    )
    await queue.enqueue(
        test_project_id,
        UploadType.PHOTO,
        {"file_name": "weld.jpg", "data": base64.b64encode(b"jpeg").decode()},
        inspector,
        entity_id=str(element.id),
    )

    with pytest.raises(asyncio.CancelledError):
        await queue.process_pending()

    (pending,) = await queue.list_uploads(status=UploadStatus.PENDING)
    assert pending.retry_count == 1
    assert pending.error_message == "Replay was interrupted"
    assert await queue.list_uploads(status=UploadStatus.PROCESSING) == []

    queue.photo_storage = MemoryStorage()
    summary = await queue.process_pending()
    assert summary.completed == 1


async def _mark_processing(db_session, upload_id, started_ago: timedelta):
    upload = await db_session.get(OfflineUploadModel, upload_id, populate_existing=True)
    upload.status = UploadStatus.PROCESSING.value
    upload.processing_started_at = utcnow() - started_ago
    await db_session.commit()


@pytest.mark.asyncio
async def test_stale_processing_item_is_replayed(
    db_session, queue, test_project_id, inspector, element
):
    stuck = await queue.enqueue(
        test_project_id, UploadType.COMMENT, {"text": "Grout"}, inspector, entity_id=str(element.id)
    )
    busy = await queue.enqueue(
        test_project_id, UploadType.COMMENT, {"text": "Bolts"}, inspector, entity_id=str(element.id)
    )
    await _mark_processing(db_session, stuck.id, timedelta(hours=1))
    await _mark_processing(db_session, busy.id, timedelta(seconds=5))

    summary = await queue.process_pending()

    assert summary.completed == 1
    (done,) = await queue.list_uploads(status=UploadStatus.COMPLETED)
    assert done.id == stuck.id
    assert done.retry_count == 1
    (still_busy,) = await queue.list_uploads(status=UploadStatus.PROCESSING)
    assert still_busy.id == busy.id


@pytest.mark.asyncio
async def test_requeue_includes_stale_processing(
    db_session, queue, test_project_id, inspector, element
):
    stuck = await queue.enqueue(
        test_project_id, UploadType.COMMENT, {"text": "Grout"}, inspector, entity_id=str(element.id)
    )
    await _mark_processing(db_session, stuck.id, timedelta(hours=1))

    assert await queue.requeue_failed(test_project_id) == 1

    (pending,) = await queue.list_uploads(status=UploadStatus.PENDING)
    assert pending.id == stuck.id
    assert pending.retry_count == 0
