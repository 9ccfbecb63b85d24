# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Migration tests: bundle export on one host and import on another.
"""

import io
import json
import tarfile
from pathlib import Path

import pytest
import zstandard as zstd

from srvbak.archive import read_manifest
from srvbak.backup import create_backup, enforce_retention, export_bundle, import_bundle
from srvbak.core import get_job, list_jobs, wait_for_job
from srvbak.exceptions import Busy, InvalidRequest


def _content(snapshot: dict) -> dict:
    return {path: (kind, digest) for path, (kind, digest, _) in snapshot.items()}


def _rewrite_manifest(bundle: Path, destination: Path, **changes) -> Path:
    """Copy a bundle, replacing manifest fields and keeping every other member."""
    with open(bundle, "rb") as raw:
        with zstd.ZstdDecompressor().stream_reader(raw) as reader:
            with tarfile.open(fileobj=reader, mode="r|") as tar:
                members = []
                for member in tar:
                    data = tar.extractfile(member).read() if member.isfile() else None
                    members.append((member, data))

    manifest = json.loads(members[0][1])
    manifest.update(changes)
    manifest_bytes = json.dumps(manifest).encode()
    members[0][0].size = len(manifest_bytes)
    members[0] = (members[0][0], manifest_bytes)

    with open(destination, "wb") as raw:
        with zstd.ZstdCompressor().stream_writer(raw, closefd=False) as compressor:
            with tarfile.open(fileobj=compressor, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                for member, data in members:
                    tar.addfile(member, io.BytesIO(data) if data is not None else None)
    return destination


async def _exported_bundle(engine_config, engine_state) -> dict:
    migration_id = await export_bundle(engine_config, engine_state, actor="alice")
    migration = await wait_for_job(engine_state, migration_id)
    assert migration["status"] == "success", migration["error_message"]
    return migration


# ============================================================================
# Export
# ============================================================================

@pytest.mark.asyncio
async def test_export_produces_permanent_migration_backup(engine_config, engine_state):
    migration = await _exported_bundle(engine_config, engine_state)

    assert migration["direction"] == "export"
    bundle = Path(migration["bundle_path"])
    assert bundle.is_file()
    assert migration["metadata"]["bundle_size_bytes"] == bundle.stat().st_size
    assert migration["metadata"]["service_version"] == "1.20.4"

    backup = await get_job(engine_state, migration["metadata"]["backup_id"])
    assert backup["status"] == "success"
    assert backup["kind"] == "migration"
    assert backup["retention_class"] == "permanent"
    assert backup["archive_path"] == migration["bundle_path"]
    assert backup["metadata"]["migration_id"] == migration["id"]

    manifest = await read_manifest(bundle)
    assert manifest["kind"] == "migration"
    assert manifest["service_name"] == "minecraft"
    assert manifest["service_version"] == "1.20.4"


@pytest.mark.asyncio
async def test_retention_never_removes_a_bundle(engine_config, engine_state):
    migration = await _exported_bundle(engine_config, engine_state)

    for retention_class in ("daily", "weekly", "monthly", "permanent"):
        await enforce_retention(engine_config, engine_state, retention_class)

    assert Path(migration["bundle_path"]).is_file()


@pytest.mark.asyncio
async def test_export_while_busy_creates_no_record(engine_config, engine_state):
    running = await create_backup(engine_config, engine_state, "full")

    with pytest.raises(Busy):
        await export_bundle(engine_config, engine_state)

    assert await list_jobs(engine_state, "migration") == []
    assert [r["id"] for r in await list_jobs(engine_state, "backup")] == [running]
    await wait_for_job(engine_state, running)


# ============================================================================
# Import
# ============================================================================

@pytest.mark.asyncio
async def test_import_reproduces_source_data_set(engine_config, engine_state, server_dir, target_config, target_state, snapshot_tree):
    """
    CRITICAL: Importing a bundle leaves the target's data set equal to the
    source's captured data set; version mismatches are only warnings.
    """
    migration = await _exported_bundle(engine_config, engine_state)

    import_id = await import_bundle(target_config, target_state, migration["bundle_path"], actor="bob")
    imported = await wait_for_job(target_state, import_id)

    assert imported["status"] == "success", imported["error_message"]
    assert imported["direction"] == "import"
    assert imported["source_bundle_path"] == migration["bundle_path"]
    assert any("1.20.4" in warning for warning in imported["metadata"]["warnings"])
    assert _content(snapshot_tree(target_config.server_dir)) == _content(snapshot_tree(server_dir))
    assert not (target_config.server_dir / "world" / "only-on-target.dat").exists()

    snapshot = await get_job(target_state, imported["metadata"]["pre_restore_backup_id"])
    assert snapshot["status"] == "success"
    assert snapshot["name"] == "pre-restore"
    manifest = await read_manifest(Path(snapshot["archive_path"]))
    assert "world/only-on-target.dat" in {entry["path"] for entry in manifest["entries"]}

    assert target_state["controller"].calls == ["quiesce", "resume", "stop", "start"]
    assert target_state["event_sink"].statuses(import_id) == ["pending", "success"]


@pytest.mark.asyncio
async def test_full_backup_can_be_imported_with_warning(engine_config, engine_state, target_config, target_state):
    job_id = await create_backup(engine_config, engine_state, "full")
    backup = await wait_for_job(engine_state, job_id)

    import_id = await import_bundle(
        target_config, target_state, backup["archive_path"], take_safety_snapshot=False
    )
    imported = await wait_for_job(target_state, import_id)

    assert imported["status"] == "success"
    assert any("not a migration bundle" in warning for warning in imported["metadata"]["warnings"])
    assert "pre_restore_backup_id" not in imported["metadata"]


@pytest.mark.asyncio
async def test_import_rejects_missing_bundle(target_config, target_state, temp_dir: Path):
    with pytest.raises(InvalidRequest, match="not found"):
        await import_bundle(target_config, target_state, temp_dir / "nope.tar.zst")

    assert await list_jobs(target_state, "migration") == []


@pytest.mark.asyncio
async def test_import_rejects_unreadable_bundle(target_config, target_state, temp_dir: Path):
    garbage = temp_dir / "garbage.tar.zst"
    garbage.write_bytes(b"\x00" * 64)

    with pytest.raises(InvalidRequest, match="cannot be read"):
        await import_bundle(target_config, target_state, garbage)


@pytest.mark.asyncio
async def test_import_rejects_partial_archive(engine_config, engine_state, target_config, target_state, snapshot_tree):
    job_id = await create_backup(engine_config, engine_state, "config")
    backup = await wait_for_job(engine_state, job_id)
    before = snapshot_tree(target_config.server_dir)

    with pytest.raises(InvalidRequest, match="full data set"):
        await import_bundle(target_config, target_state, backup["archive_path"])

    assert snapshot_tree(target_config.server_dir) == before
    assert not target_state["lock"].held


@pytest.mark.parametrize(
    "changes",
    [
        {"categories": ["primary_data", "extensions", "config", "bogus"]},
        {"format_version": "1"},
        {"entries": "everything"},
    ],
)
@pytest.mark.asyncio
async def test_import_rejects_malformed_manifest(engine_config, engine_state, target_config, target_state, temp_dir: Path, snapshot_tree, changes):
    migration = await _exported_bundle(engine_config, engine_state)
    tampered = _rewrite_manifest(Path(migration["bundle_path"]), temp_dir / "tampered.tar.zst", **changes)
    before = snapshot_tree(target_config.server_dir)

    with pytest.raises(InvalidRequest, match="cannot be read"):
        await import_bundle(target_config, target_state, tampered)

    assert await list_jobs(target_state, "migration") == []
    assert snapshot_tree(target_config.server_dir) == before
    assert not target_state["lock"].held


@pytest.mark.asyncio
async def test_import_rejects_entry_without_digest(engine_config, engine_state, target_config, target_state, temp_dir: Path):
    migration = await _exported_bundle(engine_config, engine_state)
    manifest = await read_manifest(Path(migration["bundle_path"]))
    entries = [
        {k: v for k, v in entry.items() if k != "sha256"} if entry["type"] == "file" else entry
        for entry in manifest["entries"]
    ]
    tampered = _rewrite_manifest(Path(migration["bundle_path"]), temp_dir / "tampered.tar.zst", entries=entries)

    with pytest.raises(InvalidRequest, match="cannot be read"):
        await import_bundle(target_config, target_state, tampered)
