# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Archive Codec - tar+zstd archives with a leading JSON manifest.
"""

from srvbak.archive.codec import (
    ARCHIVE_SUFFIX,
    FORMAT_VERSION,
    MANIFEST_NAME,
    PackResult,
    manifest_entry_set,
    pack_archive,
    read_manifest,
    summarize_manifest,
    unpack_archive,
)

__all__ = [
    "ARCHIVE_SUFFIX",
    "FORMAT_VERSION",
    "MANIFEST_NAME",
    "PackResult",
    "pack_archive",
    "read_manifest",
    "unpack_archive",
    "manifest_entry_set",
    "summarize_manifest",
]
