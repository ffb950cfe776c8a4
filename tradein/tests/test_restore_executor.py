"""
Unit tests for restore.

Restore replaces each selected collection with the backup's documents and
never writes storefront content back.
"""

import pytest
from bson import ObjectId
from pymongo.errors import ServerSelectionTimeoutError

from tradein.models.backup_schemas import (
    BackupRecord, BackupType, CollectionSnapshot, ExternalContentSlot,
)
from tradein.services.backup_lock import BackupLockManager
from tradein.services.backup_store import BackupNotFound, BackupStore, InvalidBackupId
from tradein.services.restore_executor import RestoreExecutor
from tradein.tests.conftest import at, seed


def make_executor(db):
    store = BackupStore(db)
    lock = BackupLockManager(db)
    return RestoreExecutor(db, store, lock), store, lock


async def save_backup(store, backup_type=BackupType.FULL, external_content=None):
    return await store.save(BackupRecord(
        type=backup_type,
        created_at=at(),
        created_by="system",
        collections=[
            CollectionSnapshot(name="submissions", count=2, data=[
                {"_id": ObjectId(), "ref": "s1"},
                {"_id": ObjectId(), "ref": "s2"},
            ]),
            CollectionSnapshot(name="pricing", count=1, data=[{"_id": ObjectId(), "type": "rules"}]),
            CollectionSnapshot(name="audit_logs", count=0, data=[]),
        ],
        external_content=external_content,
    ))


class TestRestore:

    @pytest.mark.asyncio
    async def test_replaces_collection_contents(self, fake_db):
        executor, store, _ = make_executor(fake_db)
        backup_id = await save_backup(store)
        seed(fake_db, "submissions", [{"ref": "live-1"}, {"ref": "live-2"}, {"ref": "live-3"}])

        result = await executor.restore(backup_id, requested_by="admin@store.test")

        assert result.success
        assert sorted(d["ref"] for d in fake_db["submissions"].docs) == ["s1", "s2"]
        assert [(c.name, c.count) for c in result.restored_collections] == [
            ("submissions", 2), ("pricing", 1), ("audit_logs", 0),
        ]
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_empty_snapshot_empties_collection(self, fake_db):
        executor, store, _ = make_executor(fake_db)
        backup_id = await save_backup(store)
        seed(fake_db, "audit_logs", [{"action": "price_update"}])

        await executor.restore(backup_id, collections=["audit_logs"])

        assert fake_db["audit_logs"].docs == []

    @pytest.mark.asyncio
    async def test_only_selected_collections_touched(self, fake_db):
        executor, store, _ = make_executor(fake_db)
        backup_id = await save_backup(store)
        seed(fake_db, "submissions", [{"ref": "live"}])
        seed(fake_db, "pricing", [{"type": "live-rules"}])

        result = await executor.restore(backup_id, collections=["pricing", "staff_members"])

        assert [d["ref"] for d in fake_db["submissions"].docs] == ["live"]
        assert [d["type"] for d in fake_db["pricing"].docs] == ["rules"]
        assert result.warnings == [f"Collection staff_members is not part of backup {backup_id}"]

    @pytest.mark.asyncio
    async def test_no_matching_collections(self, fake_db):
        executor, store, _ = make_executor(fake_db)
        backup_id = await save_backup(store)

        result = await executor.restore(backup_id, collections=["staff_members"])

        assert not result.success
        assert result.restored_collections == []
        assert fake_db["backup_lock"].docs == []

    @pytest.mark.asyncio
    async def test_incremental_restore_warns(self, fake_db):
        executor, store, _ = make_executor(fake_db)
        backup_id = await save_backup(store, backup_type=BackupType.INCREMENTAL)

        result = await executor.restore(backup_id)

        assert result.success
        assert any("Incremental" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_external_content_is_reported_not_restored(self, fake_db):
        executor, store, _ = make_executor(fake_db)
        backup_id = await save_backup(store, external_content={
            "products": ExternalContentSlot(items=[{"id": 1}, {"id": 2}], count=2),
            "blogs": ExternalContentSlot(error="timeout"),
        })

        result = await executor.restore(backup_id)

        status = result.external_content_restore_status
        assert status.status == "manual_restore_required"
        assert status.counts == {"products": 2, "blogs": 0}

    @pytest.mark.asyncio
    async def test_without_external_content(self, fake_db):
        executor, store, _ = make_executor(fake_db)
        backup_id = await save_backup(store)

        result = await executor.restore(backup_id)

        assert result.external_content_restore_status.status == "not_included"


class TestLocking:

    @pytest.mark.asyncio
    async def test_skipped_while_backup_running(self, fake_db):
        executor, store, lock = make_executor(fake_db)
        backup_id = await save_backup(store)
        await lock.acquire(holder="system:scheduler")
        seed(fake_db, "submissions", [{"ref": "live"}])

        result = await executor.restore(backup_id)

        assert result.skipped
        assert not result.success
        assert [d["ref"] for d in fake_db["submissions"].docs] == ["live"]

    @pytest.mark.asyncio
    async def test_lock_released_after_success(self, fake_db):
        executor, store, _ = make_executor(fake_db)
        backup_id = await save_backup(store)

        await executor.restore(backup_id)

        assert fake_db["backup_lock"].docs == []

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, fake_db):
        executor, store, _ = make_executor(fake_db)
        backup_id = await save_backup(store)
        fake_db["pricing"].failures["insert_many"] = ServerSelectionTimeoutError("primary stepped down")

        with pytest.raises(ServerSelectionTimeoutError):
            await executor.restore(backup_id)

        assert fake_db["backup_lock"].docs == []


class TestErrors:

    @pytest.mark.asyncio
    async def test_invalid_id(self, fake_db):
        executor, _, _ = make_executor(fake_db)

        with pytest.raises(InvalidBackupId):
            await executor.restore("bogus")

    @pytest.mark.asyncio
    async def test_unknown_id(self, fake_db):
        executor, _, _ = make_executor(fake_db)

        with pytest.raises(BackupNotFound):
            await executor.restore(str(ObjectId()))
