"""The audit log refuses every update and delete path the ORM offers."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import delete, select, update

from assemblyqc.core.errors import AuditLogImmutableError
from assemblyqc.db.models import AuditLogModel
from assemblyqc.lifecycle.identity import create_element
from assemblyqc.models import ElementDescriptors


@pytest_asyncio.fixture
async def entry(db_session, test_project_id, inspector):
    await create_element(db_session, test_project_id, "guid-1", ElementDescriptors(), inspector)
    return (await db_session.execute(select(AuditLogModel))).scalar_one()


@pytest.mark.asyncio
async def test_entry_cannot_be_modified(db_session, entry):
    entry.actor_email = "someone-else@site.test"

    with pytest.raises(AuditLogImmutableError):
        await db_session.flush()
    await db_session.rollback()

    reloaded = await db_session.get(AuditLogModel, entry.id, populate_existing=True)
    assert reloaded.actor_email == "inspector@site.test"


@pytest.mark.asyncio
async def test_entry_cannot_be_deleted(db_session, entry):
    await db_session.delete(entry)

    with pytest.raises(AuditLogImmutableError):
        await db_session.flush()
    await db_session.rollback()

    assert len((await db_session.execute(select(AuditLogModel))).scalars().all()) == 1


@pytest.mark.asyncio
async def test_bulk_update_rejected(db_session, entry):
    with pytest.raises(AuditLogImmutableError):
        await db_session.execute(update(AuditLogModel).values(actor_email="x@site.test"))
    await db_session.rollback()


@pytest.mark.asyncio
async def test_bulk_delete_rejected(db_session, entry):
    with pytest.raises(AuditLogImmutableError):
        await db_session.execute(delete(AuditLogModel).where(AuditLogModel.id == entry.id))
    await db_session.rollback()

    assert len((await db_session.execute(select(AuditLogModel))).scalars().all()) == 1
