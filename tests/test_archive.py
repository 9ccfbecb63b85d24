# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Archive codec tests: manifest-first packing, verification on unpack and
atomic finalization.
"""

import io
import json
import tarfile
from pathlib import Path

import pytest
import zstandard as zstd

from srvbak.archive import (
    MANIFEST_NAME,
    manifest_entry_set,
    pack_archive,
    read_manifest,
    summarize_manifest,
    unpack_archive,
)
from srvbak.config import ALL_CATEGORIES, SourceCategory, SourceRoot
from srvbak.exceptions import CaptureError, CorruptArchiveError


def _roots(engine_config, categories=ALL_CATEGORIES):
    return engine_config.roots_for(categories)


def _header(**extra):
    return {"job_id": "backup-test", "kind": "full", "categories": ["primary_data", "extensions", "config"], **extra}


def _write_raw_archive(path: Path, manifest: dict, members: list) -> Path:
    """Write a .tar.zst by hand so tests can corrupt it on purpose."""
    cctx = zstd.ZstdCompressor()
    with open(path, "wb") as raw:
        with cctx.stream_writer(raw, closefd=False) as compressor:
            with tarfile.open(fileobj=compressor, mode="w|") as tar:
                payload = [(MANIFEST_NAME, json.dumps(manifest).encode())] + members
                for name, data in payload:
                    info = tarfile.TarInfo(name)
                    info.size = len(data)
                    tar.addfile(info, io.BytesIO(data))
    return path


def _manifest_for(entries: list, roots: list) -> dict:
    return {
        "format_version": 1,
        "kind": "config",
        "categories": ["config"],
        "roots": roots,
        "entries": entries,
    }


# ============================================================================
# Packing
# ============================================================================

@pytest.mark.asyncio
async def test_manifest_is_first_member_and_lists_every_source(engine_config, temp_dir: Path):
    """The manifest leads the tar stream and indexes every captured path."""
    destination = temp_dir / "out" / "full.tar.zst"

    result = await pack_archive(_roots(engine_config), destination, header=_header())

    assert result.archive_path == destination
    assert result.size_bytes == destination.stat().st_size > 0

    with open(destination, "rb") as raw:
        with zstd.ZstdDecompressor().stream_reader(raw) as reader:
            with tarfile.open(fileobj=reader, mode="r|") as tar:
                assert tar.next().name == MANIFEST_NAME

    manifest = await read_manifest(destination)
    paths = {entry["path"] for entry in manifest["entries"]}
    assert "world/region/r.0.0.mca" in paths
    assert "world/datapacks" in paths
    assert "world_nether/DIM-1/region/r.0.0.mca" in paths
    assert "plugins/Essentials/config.yml" in paths
    assert "server.properties" in paths
    assert "server.log" not in paths
    assert "world_the_end" in manifest["missing_roots"]
    assert {root["name"] for root in manifest["roots"]} == {
        "world", "world_nether", "plugins", "server.properties", "bukkit.yml", "ops.json",
    }
    assert manifest["job_id"] == "backup-test"


@pytest.mark.asyncio
async def test_entries_carry_size_and_digest(engine_config, server_dir: Path, temp_dir: Path):
    result = await pack_archive(_roots(engine_config), temp_dir / "a.tar.zst", header=_header())

    entry = next(e for e in result.manifest["entries"] if e["path"] == "world/level.dat")
    assert entry["type"] == "file"
    assert entry["category"] == SourceCategory.PRIMARY_DATA.value
    assert entry["size"] == (server_dir / "world" / "level.dat").stat().st_size
    assert len(entry["sha256"]) == 64


@pytest.mark.asyncio
async def test_pack_with_nothing_to_capture_fails(temp_dir: Path):
    """No existing root means there is nothing to back up."""
    roots = [SourceRoot(SourceCategory.CONFIG, "missing.yml", temp_dir / "missing.yml")]
    destination = temp_dir / "empty.tar.zst"

    with pytest.raises(CaptureError):
        await pack_archive(roots, destination, header=_header())

    assert not destination.exists()
    assert not (temp_dir / "empty.tar.zst.tmp").exists()


@pytest.mark.asyncio
async def test_pack_failure_never_touches_final_path(engine_config, temp_dir: Path, monkeypatch):
    """
    CRITICAL: A write error mid-pack leaves no archive and no temp file.
    """
    import srvbak.archive.codec as codec

    def _fail(tar, entry, live):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(codec, "_add_entry", _fail)
    destination = temp_dir / "full.tar.zst"

    with pytest.raises(CaptureError, match="No space left"):
        await pack_archive(_roots(engine_config), destination, header=_header())

    assert not destination.exists()
    assert list(temp_dir.glob("*.tmp")) == []


# ============================================================================
# Reading and unpacking
# ============================================================================

@pytest.mark.asyncio
async def test_unpack_reproduces_content_and_mtime(engine_config, server_dir: Path, temp_dir: Path):
    archive = await pack_archive(_roots(engine_config), temp_dir / "a.tar.zst", header=_header())
    staging = temp_dir / "staging"

    manifest = await unpack_archive(archive.archive_path, staging)

    assert manifest_entry_set(manifest) == manifest_entry_set(archive.manifest)
    original = server_dir / "world" / "region" / "r.0.0.mca"
    restored = staging / "world" / "region" / "r.0.0.mca"
    assert restored.read_bytes() == original.read_bytes()
    assert abs(restored.stat().st_mtime - original.stat().st_mtime) < 0.001
    assert (staging / "world" / "datapacks").is_dir()
    assert (staging / "server.properties").read_text() == (server_dir / "server.properties").read_text()


@pytest.mark.asyncio
async def test_read_manifest_rejects_garbage(temp_dir: Path):
    path = temp_dir / "garbage.tar.zst"
    path.write_bytes(b"definitely not zstd")

    with pytest.raises(CorruptArchiveError):
        await read_manifest(path)


@pytest.mark.asyncio
async def test_read_manifest_requires_manifest_first(temp_dir: Path):
    path = temp_dir / "no-manifest.tar.zst"
    cctx = zstd.ZstdCompressor()
    with open(path, "wb") as raw:
        with cctx.stream_writer(raw, closefd=False) as compressor:
            with tarfile.open(fileobj=compressor, mode="w|") as tar:
                info = tarfile.TarInfo("server.properties")
                info.size = 3
                tar.addfile(info, io.BytesIO(b"a=b"))

    with pytest.raises(CorruptArchiveError, match="manifest"):
        await read_manifest(path)


@pytest.mark.asyncio
async def test_unpack_detects_content_mismatch(temp_dir: Path):
    """
    CRITICAL: An entry whose bytes do not match its manifest digest is rejected.
    """
    manifest = _manifest_for(
        entries=[{
            "path": "ops.json",
            "type": "file",
            "category": "config",
            "size": 2,
            "mtime": 1700000000.0,
            "sha256": "0" * 64,
        }],
        roots=[{"name": "ops.json", "category": "config", "type": "file"}],
    )
    archive = _write_raw_archive(temp_dir / "bad.tar.zst", manifest, [("ops.json", b"[]")])

    with pytest.raises(CorruptArchiveError, match="ops.json"):
        await unpack_archive(archive, temp_dir / "staging")


@pytest.mark.asyncio
async def test_unpack_detects_missing_entry(temp_dir: Path):
    manifest = _manifest_for(
        entries=[{
            "path": "ops.json",
            "type": "file",
            "category": "config",
            "size": 2,
            "mtime": 1700000000.0,
            "sha256": "4f53cda18c2baa0c0354bb5f9a3ecbe5ed12ab4d8e11ba873c2f11161202b945",
        }],
        roots=[{"name": "ops.json", "category": "config", "type": "file"}],
    )
    archive = _write_raw_archive(temp_dir / "short.tar.zst", manifest, [])

    with pytest.raises(CorruptArchiveError, match="missing"):
        await unpack_archive(archive, temp_dir / "staging")


@pytest.mark.asyncio
async def test_unpack_never_writes_outside_staging(temp_dir: Path):
    """
    CRITICAL: Member names that escape the staging directory are refused.
    """
    manifest = _manifest_for(
        entries=[],
        roots=[{"name": "ops.json", "category": "config", "type": "file"}],
    )
    archive = _write_raw_archive(
        temp_dir / "evil.tar.zst", manifest, [("../escaped.txt", b"pwned")]
    )

    with pytest.raises(CorruptArchiveError):
        await unpack_archive(archive, temp_dir / "staging")

    assert not (temp_dir / "escaped.txt").exists()


@pytest.mark.asyncio
async def test_summary_counts_files_per_category(engine_config, temp_dir: Path):
    result = await pack_archive(_roots(engine_config), temp_dir / "a.tar.zst", header=_header())

    summary = summarize_manifest(result.manifest)

    assert summary["categories"]["config"]["files"] == 3
    assert summary["categories"]["extensions"]["files"] == 2
    assert summary["total_files"] == sum(
        1 for e in result.manifest["entries"] if e["type"] == "file"
    )


def _ops_entry(**overrides) -> dict:
    entry = {
        "path": "ops.json",
        "type": "file",
        "category": "config",
        "size": 2,
        "mtime": 1700000000.0,
        "sha256": "4f53cda18c2baa0c0354bb5f9a3ecbe5ed12ab4d8e11ba873c2f11161202b945",
    }
    entry.update(overrides)
    return entry


_OPS_ROOT = {"name": "ops.json", "category": "config", "type": "file"}


@pytest.mark.parametrize(
    "field, value",
    [
        ("format_version", "1"),
        ("format_version", None),
        ("categories", ["config", "bogus"]),
        ("categories", "config"),
        ("roots", {"ops.json": "config"}),
        ("entries", None),
        ("roots", [{"name": "ops.json", "category": "savegames", "type": "file"}]),
    ],
)
@pytest.mark.asyncio
async def test_read_manifest_rejects_malformed_fields(temp_dir: Path, field, value):
    manifest = _manifest_for(entries=[_ops_entry()], roots=[_OPS_ROOT])
    manifest[field] = value
    archive = _write_raw_archive(temp_dir / "odd.tar.zst", manifest, [("ops.json", b"[]")])

    with pytest.raises(CorruptArchiveError):
        await read_manifest(archive)


@pytest.mark.parametrize(
    "entry",
    [
        {k: v for k, v in _ops_entry().items() if k != "size"},
        {k: v for k, v in _ops_entry().items() if k != "sha256"},
        {k: v for k, v in _ops_entry().items() if k != "mtime"},
        _ops_entry(size="2"),
        _ops_entry(size=-1),
        _ops_entry(sha256=42),
        _ops_entry(mtime="yesterday"),
        _ops_entry(category="bogus"),
    ],
)
@pytest.mark.asyncio
async def test_malformed_entries_are_corrupt_not_crashes(temp_dir: Path, entry):
    manifest = _manifest_for(entries=[entry], roots=[_OPS_ROOT])
    archive = _write_raw_archive(temp_dir / "odd.tar.zst", manifest, [("ops.json", b"[]")])

    with pytest.raises(CorruptArchiveError):
        await read_manifest(archive)
    with pytest.raises(CorruptArchiveError):
        await unpack_archive(archive, temp_dir / "staging")


@pytest.mark.asyncio
async def test_well_formed_foreign_manifest_is_accepted(temp_dir: Path):
    manifest = _manifest_for(entries=[_ops_entry()], roots=[_OPS_ROOT])
    archive = _write_raw_archive(temp_dir / "ok.tar.zst", manifest, [("ops.json", b"[]")])

    unpacked = await unpack_archive(archive, temp_dir / "staging")

    assert unpacked["categories"] == ["config"]
    assert (temp_dir / "staging" / "ops.json").read_bytes() == b"[]"
