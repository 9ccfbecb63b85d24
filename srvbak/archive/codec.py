# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Archive Codec - Pack, inspect and unpack backup archives.

An archive is a tar stream compressed with zstd. Its first member is
MANIFEST.json, which lists every captured root and entry (logical path,
type, size, mtime and sha256). Because the manifest comes first, a preview
only decompresses until the end of that member.

Packing writes to ``<archive>.tmp`` and renames into place, so a reader
never observes a partially written archive at the final path. Unpacking
only ever writes into a caller-provided staging directory and verifies each
entry against the manifest while extracting.
"""

import asyncio
import hashlib
import io
import json
import os
import tarfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, UTC
from functools import partial
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Tuple

import structlog
import zstandard as zstd

from srvbak.config import SourceCategory, SourceRoot, is_valid_root_name
from srvbak.exceptions import CaptureError, CorruptArchiveError

logger = structlog.get_logger()

# Thread pool for blocking archive I/O
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="srvbak-archive")

MANIFEST_NAME = "MANIFEST.json"
FORMAT_VERSION = 1
ARCHIVE_SUFFIX = ".tar.zst"
CHUNK_SIZE = 1024 * 1024

_CATEGORY_VALUES = frozenset(category.value for category in SourceCategory)


@dataclass
class PackResult:
    """Result of packing an archive."""

    archive_path: Path
    size_bytes: int
    manifest: dict


class _HashingReader:
    """File wrapper that hashes and counts every byte handed to tarfile."""

    def __init__(self, fileobj):
        self._fileobj = fileobj
        self.sha256 = hashlib.sha256()
        self.size = 0

    def read(self, size: int = -1) -> bytes:
        data = self._fileobj.read(size)
        self.sha256.update(data)
        self.size += len(data)
        return data


def _hash_file(path: Path) -> Tuple[int, str]:
    sha256 = hashlib.sha256()
    size = 0
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha256.update(chunk)
            size += len(chunk)
    return size, sha256.hexdigest()


def _scan_root(root: SourceRoot) -> List[Tuple[dict, Path]]:
    """Walk one live root, returning (manifest entry, live path) pairs in archive order."""
    results: List[Tuple[dict, Path]] = []

    def _file_entry(logical: str, live: Path) -> dict:
        stat = live.stat()
        size, digest = _hash_file(live)
        return {
            "path": logical,
            "type": "file",
            "category": root.category.value,
            "size": size,
            "mtime": stat.st_mtime,
            "mode": stat.st_mode & 0o7777,
            "sha256": digest,
        }

    def _dir_entry(logical: str, live: Path) -> dict:
        stat = live.stat()
        return {
            "path": logical,
            "type": "dir",
            "category": root.category.value,
            "size": 0,
            "mtime": stat.st_mtime,
            "mode": stat.st_mode & 0o7777,
            "sha256": None,
        }

    if root.path.is_file():
        results.append((_file_entry(root.name, root.path), root.path))
        return results

    results.append((_dir_entry(root.name, root.path), root.path))
    for dirpath, dirnames, filenames in os.walk(root.path, onerror=_raise_walk_error):
        dirnames.sort()
        current = Path(dirpath)
        relative = current.relative_to(root.path)
        for dirname in list(dirnames):
            live = current / dirname
            if live.is_symlink():
                logger.warning("capture_symlink_skipped", path=str(live))
                dirnames.remove(dirname)
                continue
            logical = str(PurePosixPath(root.name, *relative.parts, dirname))
            results.append((_dir_entry(logical, live), live))
        for filename in sorted(filenames):
            live = current / filename
            if live.is_symlink() or not live.is_file():
                logger.warning("capture_special_file_skipped", path=str(live))
                continue
            logical = str(PurePosixPath(root.name, *relative.parts, filename))
            results.append((_file_entry(logical, live), live))
    return results


def _raise_walk_error(error: OSError) -> None:
    raise error


def scan_sources(
    roots: Iterable[SourceRoot],
) -> Tuple[List[dict], List[Tuple[dict, Path]], List[str]]:
    """
    Scan live roots.

    Returns:
        Tuple of (captured root descriptors, (entry, live path) pairs, missing root names)
    """
    captured: List[dict] = []
    sources: List[Tuple[dict, Path]] = []
    missing: List[str] = []

    for root in roots:
        if not root.path.exists():
            missing.append(root.name)
            continue
        captured.append({
            "name": root.name,
            "category": root.category.value,
            "type": "file" if root.path.is_file() else "dir",
        })
        sources.extend(_scan_root(root))

    return captured, sources, missing


def _pack_sync(
    roots: List[SourceRoot],
    destination: Path,
    header: dict,
    zstd_level: int,
) -> PackResult:
    temp_path = destination.with_name(destination.name + ".tmp")

    try:
        captured, sources, missing = scan_sources(roots)
        if not captured:
            raise CaptureError(
                "Nothing to capture: none of the configured paths exist",
                details={"missing": missing},
            )

        manifest = {
            **header,
            "format_version": FORMAT_VERSION,
            "created_at": datetime.now(UTC).isoformat(),
            "roots": captured,
            "missing_roots": missing,
            "entries": [entry for entry, _ in sources],
        }
        manifest_bytes = json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8")

        destination.parent.mkdir(parents=True, exist_ok=True)
        cctx = zstd.ZstdCompressor(level=zstd_level)

        with open(temp_path, "wb") as raw:
            with cctx.stream_writer(raw, closefd=False) as compressor:
                with tarfile.open(fileobj=compressor, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                    info = tarfile.TarInfo(MANIFEST_NAME)
                    info.size = len(manifest_bytes)
                    info.mtime = int(datetime.now(UTC).timestamp())
                    info.mode = 0o644
                    tar.addfile(info, io.BytesIO(manifest_bytes))

                    for entry, live in sources:
                        _add_entry(tar, entry, live)

            raw.flush()
            os.fsync(raw.fileno())

        os.replace(temp_path, destination)
        size_bytes = destination.stat().st_size

        return PackResult(archive_path=destination, size_bytes=size_bytes, manifest=manifest)

    except CaptureError:
        temp_path.unlink(missing_ok=True)
        raise
    except Exception as e:
        temp_path.unlink(missing_ok=True)
        raise CaptureError(
            f"Failed to write archive: {e}",
            details={"archive_path": str(destination)},
        ) from e


def _add_entry(tar: tarfile.TarFile, entry: dict, live: Path) -> None:
    info = tarfile.TarInfo(entry["path"])
    info.mtime = entry["mtime"]
    info.mode = entry["mode"]

    if entry["type"] == "dir":
        info.type = tarfile.DIRTYPE
        tar.addfile(info)
        return

    info.size = entry["size"]
    with open(live, "rb") as f:
        reader = _HashingReader(f)
        tar.addfile(info, reader)

    if reader.sha256.hexdigest() != entry["sha256"]:
        raise CaptureError(
            f"Source changed while it was being captured: {entry['path']}",
            details={"path": str(live)},
        )


async def pack_archive(
    roots: List[SourceRoot],
    destination: Path,
    *,
    header: dict,
    zstd_level: int = 9,
) -> PackResult:
    """
    Pack live roots into an archive at ``destination``.

    Roots that do not exist are skipped and listed under ``missing_roots``.

    Args:
        roots: Live roots to capture
        destination: Final archive path
        header: Extra manifest fields (job id, kind, categories, actor, service...)
        zstd_level: zstd compression level

    Returns:
        PackResult with the final path, size and manifest

    Raises:
        CaptureError: If a source cannot be read, nothing exists to capture,
            or the archive cannot be written. The final path is untouched.
    """
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        _executor,
        partial(_pack_sync, list(roots), destination, header, zstd_level),
    )

    logger.info(
        "archive_packed",
        archive_path=str(result.archive_path),
        size=result.size_bytes,
        entries=len(result.manifest["entries"]),
    )
    return result


# ============================================================================
# Reading
# ============================================================================

def _validate_manifest(manifest: object, archive_path: Path) -> dict:
    if not isinstance(manifest, dict):
        raise CorruptArchiveError(
            "Manifest is not an object", details={"archive_path": str(archive_path)}
        )

    for key in ("format_version", "roots", "entries", "categories"):
        if key not in manifest:
            raise CorruptArchiveError(
                f"Manifest is missing {key!r}", details={"archive_path": str(archive_path)}
            )

    version = manifest["format_version"]
    if not isinstance(version, int) or isinstance(version, bool):
        raise CorruptArchiveError(
            f"Invalid archive format version: {version!r}",
            details={"archive_path": str(archive_path)},
        )
    if version > FORMAT_VERSION:
        raise CorruptArchiveError(
            f"Unsupported archive format version: {version}",
            details={"archive_path": str(archive_path)},
        )

    for key in ("roots", "entries", "categories"):
        if not isinstance(manifest[key], list):
            raise CorruptArchiveError(
                f"Manifest field {key!r} is not a list", details={"archive_path": str(archive_path)}
            )

    for category in manifest["categories"]:
        if not _is_category(category):
            raise CorruptArchiveError(
                f"Unknown category in manifest: {category!r}",
                details={"archive_path": str(archive_path)},
            )

    root_names = set()
    for root in manifest["roots"]:
        if (
            not isinstance(root, dict)
            or not is_valid_root_name(root.get("name"))
            or not _is_category(root.get("category"))
        ):
            raise CorruptArchiveError(
                f"Invalid root in manifest: {root!r}", details={"archive_path": str(archive_path)}
            )
        root_names.add(root["name"])

    for entry in manifest["entries"]:
        if not isinstance(entry, dict) or entry.get("type") not in ("file", "dir"):
            raise CorruptArchiveError(
                f"Invalid entry in manifest: {entry!r}", details={"archive_path": str(archive_path)}
            )
        if not _has_valid_entry_fields(entry):
            raise CorruptArchiveError(
                f"Manifest entry has missing or malformed fields: {entry.get('path')!r}",
                details={"archive_path": str(archive_path)},
            )
        _check_member_name(entry.get("path"), archive_path)
        if PurePosixPath(entry["path"]).parts[0] not in root_names:
            raise CorruptArchiveError(
                f"Entry outside of captured roots: {entry['path']}",
                details={"archive_path": str(archive_path)},
            )

    return manifest


def _is_category(value: object) -> bool:
    return isinstance(value, str) and value in _CATEGORY_VALUES


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _has_valid_entry_fields(entry: dict) -> bool:
    if not _is_number(entry.get("mtime")):
        return False
    if "category" in entry and not _is_category(entry["category"]):
        return False
    if "mode" in entry and (not isinstance(entry["mode"], int) or isinstance(entry["mode"], bool)):
        return False

    size = entry.get("size")
    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        return False
    return entry["type"] == "dir" or isinstance(entry.get("sha256"), str)


def _check_member_name(name: object, archive_path: Path) -> None:
    if not isinstance(name, str) or not name:
        raise CorruptArchiveError(
            "Archive member without a name", details={"archive_path": str(archive_path)}
        )
    path = PurePosixPath(name)
    if path.is_absolute() or ".." in path.parts or name.startswith("/"):
        raise CorruptArchiveError(
            f"Unsafe path in archive: {name}", details={"archive_path": str(archive_path)}
        )


def _read_manifest_member(tar: tarfile.TarFile, archive_path: Path) -> dict:
    member = tar.next()
    if member is None or member.name != MANIFEST_NAME or not member.isfile():
        raise CorruptArchiveError(
            "Archive does not start with a manifest",
            details={"archive_path": str(archive_path)},
        )

    fileobj = tar.extractfile(member)
    try:
        manifest = json.loads(fileobj.read().decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptArchiveError(
            f"Manifest cannot be parsed: {e}",
            details={"archive_path": str(archive_path)},
        ) from e

    return _validate_manifest(manifest, archive_path)


def _read_manifest_sync(archive_path: Path) -> dict:
    try:
        with open(archive_path, "rb") as raw:
            dctx = zstd.ZstdDecompressor()
            with dctx.stream_reader(raw, closefd=False) as reader:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    return _read_manifest_member(tar, archive_path)
    except CorruptArchiveError:
        raise
    except (OSError, EOFError, tarfile.TarError, zstd.ZstdError) as e:
        raise CorruptArchiveError(
            f"Cannot read archive: {e}",
            details={"archive_path": str(archive_path)},
        ) from e


async def read_manifest(archive_path: Path) -> dict:
    """
    Read an archive's manifest without extracting its payload.

    Raises:
        CorruptArchiveError: If the archive cannot be read or the manifest is invalid
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, _read_manifest_sync, Path(archive_path))


def _unpack_sync(archive_path: Path, staging_dir: Path) -> dict:
    staging_dir.mkdir(parents=True, exist_ok=True)
    staging_root = staging_dir.resolve()

    try:
        with open(archive_path, "rb") as raw:
            dctx = zstd.ZstdDecompressor()
            with dctx.stream_reader(raw, closefd=False) as reader:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    manifest = _read_manifest_member(tar, archive_path)
                    expected = {entry["path"]: entry for entry in manifest["entries"]}
                    seen = set()

                    # next() rather than iteration: iterating replays members already read
                    while True:
                        member = tar.next()
                        if member is None:
                            break
                        _check_member_name(member.name, archive_path)
                        entry = expected.get(member.name)
                        if entry is None or member.name in seen:
                            raise CorruptArchiveError(
                                f"Archive member not listed in manifest: {member.name}",
                                details={"archive_path": str(archive_path)},
                            )

                        target = (staging_root / member.name).resolve()
                        if not target.is_relative_to(staging_root):
                            raise CorruptArchiveError(
                                f"Unsafe path in archive: {member.name}",
                                details={"archive_path": str(archive_path)},
                            )

                        if member.isdir() and entry["type"] == "dir":
                            target.mkdir(parents=True, exist_ok=True)
                        elif member.isfile() and entry["type"] == "file":
                            _extract_file(tar, member, entry, target, archive_path)
                        else:
                            raise CorruptArchiveError(
                                f"Unexpected member type for {member.name}",
                                details={"archive_path": str(archive_path)},
                            )
                        seen.add(member.name)

                    missing = set(expected) - seen
                    if missing:
                        raise CorruptArchiveError(
                            f"Archive is missing {len(missing)} entries listed in its manifest",
                            details={"archive_path": str(archive_path), "missing": sorted(missing)[:10]},
                        )

                    _restore_dir_metadata(staging_root, manifest)
                    return manifest

    except CorruptArchiveError:
        raise
    except (OSError, EOFError, tarfile.TarError, zstd.ZstdError) as e:
        raise CorruptArchiveError(
            f"Cannot extract archive: {e}",
            details={"archive_path": str(archive_path)},
        ) from e


def _extract_file(
    tar: tarfile.TarFile,
    member: tarfile.TarInfo,
    entry: dict,
    target: Path,
    archive_path: Path,
) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    source = tar.extractfile(member)
    sha256 = hashlib.sha256()
    size = 0

    with open(target, "wb") as out:
        for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
            sha256.update(chunk)
            size += len(chunk)
            out.write(chunk)

    if size != entry["size"] or sha256.hexdigest() != entry["sha256"]:
        raise CorruptArchiveError(
            f"Entry does not match its manifest record: {member.name}",
            details={
                "archive_path": str(archive_path),
                "expected_size": entry["size"],
                "actual_size": size,
            },
        )

    os.chmod(target, entry.get("mode", 0o644))
    os.utime(target, (entry["mtime"], entry["mtime"]))


def _restore_dir_metadata(staging_root: Path, manifest: dict) -> None:
    # Deepest first so setting a child's mtime does not disturb its parent afterwards
    dirs = [e for e in manifest["entries"] if e["type"] == "dir"]
    for entry in sorted(dirs, key=lambda e: e["path"].count("/"), reverse=True):
        target = staging_root / entry["path"]
        os.chmod(target, entry.get("mode", 0o755))
        os.utime(target, (entry["mtime"], entry["mtime"]))


async def unpack_archive(archive_path: Path, staging_dir: Path) -> dict:
    """
    Extract an archive into a staging directory.

    Never writes outside ``staging_dir``. Each file is verified against the
    manifest (size and sha256) as it is extracted.

    Returns:
        The archive manifest

    Raises:
        CorruptArchiveError: If the manifest cannot be parsed or any entry
            does not match its manifest record
    """
    loop = asyncio.get_running_loop()
    manifest = await loop.run_in_executor(
        _executor, _unpack_sync, Path(archive_path), Path(staging_dir)
    )

    logger.info(
        "archive_unpacked",
        archive_path=str(archive_path),
        staging_dir=str(staging_dir),
        entries=len(manifest["entries"]),
    )
    return manifest


# ============================================================================
# Manifest helpers
# ============================================================================

def manifest_entry_set(manifest: dict) -> set:
    """Content identity of a manifest: (path, type, size, sha256) per entry."""
    return {
        (e["path"], e["type"], e["size"], e.get("sha256"))
        for e in manifest["entries"]
    }


def summarize_manifest(manifest: dict) -> dict:
    """
    Summarize a manifest for previews.

    Returns:
        Dict with per-category file counts and byte totals
    """
    categories: dict = {}
    for entry in manifest["entries"]:
        stats = categories.setdefault(entry.get("category", "unknown"), {"files": 0, "bytes": 0})
        if entry["type"] == "file":
            stats["files"] += 1
            stats["bytes"] += entry["size"]

    return {
        "roots": [root["name"] for root in manifest["roots"]],
        "categories": categories,
        "total_files": sum(s["files"] for s in categories.values()),
        "total_bytes": sum(s["bytes"] for s in categories.values()),
    }
