# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Job store tests: records, lifecycle transitions and listings.
"""

from pathlib import Path

import pytest
import pytest_asyncio

from srvbak.config import BackupKind, JobStatus, MigrationDirection, RetentionClass
from srvbak.exceptions import JobNotFoundError, JobStoreError
from srvbak.store import (
    BACKUP,
    backup_in_use,
    delete_backup_job,
    get_backup_job,
    get_job,
    get_store_stats,
    init_job_db,
    insert_backup_job,
    insert_migration_job,
    insert_restore_job,
    job_family,
    list_backup_jobs,
    list_jobs,
    list_unfinished_jobs,
    mark_failed,
    mark_running,
    mark_success,
    new_job_id,
    open_job_db,
    update_backup_job,
)


@pytest_asyncio.fixture
async def db_path(temp_dir: Path) -> Path:
    path = temp_dir / "jobs.db"
    await init_job_db(path)
    return path


@pytest.mark.asyncio
async def test_init_is_idempotent(db_path: Path):
    await init_job_db(db_path)

    async with open_job_db(db_path) as db:
        assert await list_backup_jobs(db) == []


def test_job_ids_carry_their_family():
    job_id = new_job_id(BACKUP)

    assert job_id.startswith("backup-")
    assert job_family(job_id) == BACKUP
    with pytest.raises(JobNotFoundError):
        job_family("snapshot-123")


@pytest.mark.asyncio
async def test_backup_record_lifecycle(db_path: Path):
    async with open_job_db(db_path) as db:
        job_id = await insert_backup_job(
            db,
            kind=BackupKind.CONFIG,
            retention_class=RetentionClass.WEEKLY,
            actor="alice",
            name="cfg1",
        )

        record = await get_backup_job(db, job_id)
        assert record["status"] == JobStatus.PENDING.value
        assert record["kind"] == "config"
        assert record["retention_class"] == "weekly"
        assert record["metadata"] == {}
        assert record["completed_at"] is None

        await mark_running(db, job_id)
        record = await get_backup_job(db, job_id)
        assert record["status"] == "running"
        assert record["started_at"] is not None

        await mark_success(
            db, job_id, archive_path="/vault/a.tar.zst", archive_size_bytes=42, metadata={"roots": ["ops.json"]}
        )
        record = await get_backup_job(db, job_id)
        assert record["status"] == "success"
        assert record["archive_size_bytes"] == 42
        assert record["metadata"] == {"roots": ["ops.json"]}
        assert record["completed_at"] is not None
        assert record["error_message"] is None


@pytest.mark.asyncio
async def test_failed_backup_never_references_an_archive(db_path: Path):
    async with open_job_db(db_path) as db:
        job_id = await insert_backup_job(db, kind="full", retention_class="daily", actor="system")
        await update_backup_job(db, job_id, archive_path="/vault/partial.tar.zst")

        await mark_failed(db, job_id, "disk full")

        record = await get_backup_job(db, job_id)
        assert record["status"] == "failed"
        assert record["error_message"] == "disk full"
        assert record["archive_path"] is None
        assert record["archive_size_bytes"] is None


@pytest.mark.asyncio
async def test_unknown_job_raises_not_found(db_path: Path):
    async with open_job_db(db_path) as db:
        with pytest.raises(JobNotFoundError):
            await get_job(db, new_job_id(BACKUP))
        with pytest.raises(JobNotFoundError):
            await mark_running(db, new_job_id("restore"))


@pytest.mark.asyncio
async def test_update_rejects_unknown_columns(db_path: Path):
    async with open_job_db(db_path) as db:
        job_id = await insert_backup_job(db, kind="full", retention_class="daily", actor="system")

        with pytest.raises(JobStoreError):
            await update_backup_job(db, job_id, owner="mallory")
        with pytest.raises(JobStoreError):
            await update_backup_job(db, job_id, id="backup-other")


@pytest.mark.asyncio
async def test_listing_is_newest_first_with_paging_and_filters(db_path: Path):
    async with open_job_db(db_path) as db:
        ids = [
            await insert_backup_job(db, kind="full", retention_class="daily", actor="system")
            for _ in range(5)
        ]
        await mark_failed(db, ids[0], "boom")

        listed = await list_backup_jobs(db)
        assert [r["id"] for r in listed] == list(reversed(ids))

        page = await list_backup_jobs(db, limit=2, offset=1)
        assert [r["id"] for r in page] == [ids[3], ids[2]]

        failed = await list_jobs(db, BACKUP, status="failed")
        assert [r["id"] for r in failed] == [ids[0]]

        with pytest.raises(JobStoreError):
            await list_jobs(db, "snapshot")


@pytest.mark.asyncio
async def test_listing_by_family_specific_columns(db_path: Path):
    async with open_job_db(db_path) as db:
        config_id = await insert_backup_job(db, kind="config", retention_class="daily", actor="system")
        full_id = await insert_backup_job(db, kind="full", retention_class="weekly", actor="system")
        restore_id = await insert_restore_job(
            db, backup_id=full_id, restore_scope=BackupKind.FULL, actor="system"
        )
        await insert_restore_job(db, backup_id=config_id, restore_scope=BackupKind.CONFIG, actor="system")
        export_id = await insert_migration_job(db, direction=MigrationDirection.EXPORT, actor="system")
        await insert_migration_job(
            db, direction=MigrationDirection.IMPORT, actor="system", source_bundle_path="/b.tar.zst"
        )

        assert [r["id"] for r in await list_jobs(db, BACKUP, kind=BackupKind.CONFIG)] == [config_id]
        assert [r["id"] for r in await list_jobs(db, BACKUP, retention_class="weekly")] == [full_id]
        assert [r["id"] for r in await list_jobs(db, "restore", backup_id=full_id)] == [restore_id]
        assert [r["id"] for r in await list_jobs(db, "migration", direction="export")] == [export_id]

        with pytest.raises(JobStoreError, match="direction"):
            await list_jobs(db, BACKUP, direction="export")


@pytest.mark.asyncio
async def test_backup_in_use_tracks_active_restores(db_path: Path):
    async with open_job_db(db_path) as db:
        backup_id = await insert_backup_job(db, kind="full", retention_class="daily", actor="system")
        restore_id = await insert_restore_job(
            db, backup_id=backup_id, restore_scope=BackupKind.FULL, actor="system"
        )

        assert await backup_in_use(db, backup_id)

        await mark_success(db, restore_id)
        assert not await backup_in_use(db, backup_id)


@pytest.mark.asyncio
async def test_unfinished_jobs_span_all_families(db_path: Path):
    async with open_job_db(db_path) as db:
        backup_id = await insert_backup_job(db, kind="full", retention_class="daily", actor="system")
        done_id = await insert_backup_job(db, kind="full", retention_class="daily", actor="system")
        await mark_success(db, done_id, archive_path="/x", archive_size_bytes=1)
        migration_id = await insert_migration_job(
            db, direction=MigrationDirection.IMPORT, actor="system", source_bundle_path="/b.tar.zst"
        )
        await mark_running(db, migration_id)

        unfinished = {job["id"] for job in await list_unfinished_jobs(db)}

        assert unfinished == {backup_id, migration_id}


@pytest.mark.asyncio
async def test_delete_and_stats(db_path: Path):
    async with open_job_db(db_path) as db:
        job_id = await insert_backup_job(db, kind="full", retention_class="daily", actor="system")
        await mark_success(db, job_id, archive_path="/x", archive_size_bytes=100)

        stats = await get_store_stats(db)
        assert stats["jobs"][BACKUP] == {"success": 1}
        assert stats["archive_count"] == 1
        assert stats["archive_bytes"] == 100

        assert await delete_backup_job(db, job_id)
        assert not await delete_backup_job(db, job_id)
        with pytest.raises(JobNotFoundError):
            await get_backup_job(db, job_id)
