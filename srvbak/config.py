# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Configuration - Job enumerations and immutable engine configuration.

All configuration is frozen (immutable) after creation to prevent
accidental modification while jobs are running.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Tuple


class SourceCategory(str, Enum):
    """Category of live data a capture can include."""

    PRIMARY_DATA = "primary_data"  # World directories
    EXTENSIONS = "extensions"  # Plugin directories
    CONFIG = "config"  # Server configuration files


class BackupKind(str, Enum):
    """What a backup captures (and what a restore applies)."""

    FULL = "full"
    PRIMARY_DATA = "primary_data"
    EXTENSIONS = "extensions"
    CONFIG = "config"
    MIGRATION = "migration"


class JobStatus(str, Enum):
    """Lifecycle status shared by backup, restore and migration jobs."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RetentionClass(str, Enum):
    """Policy bucket governing how long a successful backup is kept."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    PERMANENT = "permanent"


class MigrationDirection(str, Enum):
    """Direction of a migration job."""

    EXPORT = "export"
    IMPORT = "import"


ALL_CATEGORIES: FrozenSet[SourceCategory] = frozenset(SourceCategory)

KIND_CATEGORIES: Dict[BackupKind, FrozenSet[SourceCategory]] = {
    BackupKind.FULL: ALL_CATEGORIES,
    BackupKind.MIGRATION: ALL_CATEGORIES,
    BackupKind.PRIMARY_DATA: frozenset({SourceCategory.PRIMARY_DATA}),
    BackupKind.EXTENSIONS: frozenset({SourceCategory.EXTENSIONS}),
    BackupKind.CONFIG: frozenset({SourceCategory.CONFIG}),
}

# Swap and capture order: world data first, config last
CATEGORY_ORDER: Tuple[SourceCategory, ...] = (
    SourceCategory.PRIMARY_DATA,
    SourceCategory.EXTENSIONS,
    SourceCategory.CONFIG,
)

DEFAULT_RETENTION_DAYS: Dict[RetentionClass, int | None] = {
    RetentionClass.DAILY: 7,
    RetentionClass.WEEKLY: 30,
    RetentionClass.MONTHLY: 90,
    RetentionClass.PERMANENT: None,
}

DEFAULT_PRIMARY_DATA_PATHS = ("world", "world_nether", "world_the_end")
DEFAULT_EXTENSION_PATHS = ("plugins",)
DEFAULT_CONFIG_PATHS = (
    "server.properties",
    "bukkit.yml",
    "spigot.yml",
    "paper.yml",
    "ops.json",
    "whitelist.json",
    "banned-players.json",
    "banned-ips.json",
)

# Suffixes the restore protocol appends to live roots
OLD_SUFFIX = ".old"
FAILED_SUFFIX = ".failed-"
STAGING_PREFIX = ".srvbak-staging-"


def categories_for(kind: BackupKind) -> FrozenSet[SourceCategory]:
    """Return the source categories implied by a backup kind."""
    return KIND_CATEGORIES[kind]


@dataclass(frozen=True)
class SourceRoot:
    """A top-level live path (directory or file) belonging to one category."""

    category: SourceCategory
    name: str  # Logical path inside the archive
    path: Path  # Live location on disk


def is_valid_root_name(name: str) -> bool:
    """Root names are single path components relative to the server directory."""
    if not isinstance(name, str) or not name or name in (".", ".."):
        return False
    if "/" in name or "\\" in name:
        return False
    if name.endswith(OLD_SUFFIX) or FAILED_SUFFIX in name or name.startswith(STAGING_PREFIX):
        return False
    return True


@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable configuration for the backup engine.

    Paths of each category are names relative to ``server_dir``; the archive
    stores every root under that same name.
    """

    # Required: directory holding the live data set
    server_dir: Path

    # World directories (primary data)
    primary_data_paths: Tuple[str, ...] = DEFAULT_PRIMARY_DATA_PATHS

    # Plugin directories (extensions)
    extension_paths: Tuple[str, ...] = DEFAULT_EXTENSION_PATHS

    # Configuration files or directories
    config_paths: Tuple[str, ...] = DEFAULT_CONFIG_PATHS

    # Job database and finalized archives live here
    vault_path: Path = field(default_factory=lambda: Path("./srvbak_vault"))

    # Where restores stage extracted content; must share a filesystem with server_dir
    staging_dir: Path | None = None

    # Identifies the managed service in manifests and migration bundles
    service_name: str = "minecraft"
    service_version: str = "unknown"

    # zstd level for archives (1-22)
    zstd_level: int = 9

    # Max age in days per retention class; None means never expire
    retention_days: Dict[RetentionClass, int | None] = field(
        default_factory=lambda: dict(DEFAULT_RETENTION_DAYS)
    )

    # Run a retention sweep for every class when the engine starts
    enforce_retention_on_startup: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if self.server_dir is None or str(self.server_dir) == "":
            errors.append("server_dir is required")
        else:
            object.__setattr__(self, "server_dir", Path(self.server_dir))
        object.__setattr__(self, "vault_path", Path(self.vault_path))
        if self.staging_dir is not None:
            object.__setattr__(self, "staging_dir", Path(self.staging_dir))
        for attr in ("primary_data_paths", "extension_paths", "config_paths"):
            object.__setattr__(self, attr, tuple(getattr(self, attr)))
        try:
            object.__setattr__(
                self,
                "retention_days",
                {RetentionClass(k): v for k, v in self.retention_days.items()},
            )
        except ValueError as e:
            errors.append(f"Unknown retention class in retention_days: {e}")

        seen: set = set()
        for label, names in (
            ("primary_data_paths", self.primary_data_paths),
            ("extension_paths", self.extension_paths),
            ("config_paths", self.config_paths),
        ):
            for name in names:
                if not is_valid_root_name(name):
                    errors.append(f"Invalid entry in {label}: {name!r}")
                elif name in seen:
                    errors.append(f"Path listed in more than one category: {name!r}")
                seen.add(name)

        if not 1 <= self.zstd_level <= 22:
            errors.append(f"zstd_level must be between 1 and 22, got {self.zstd_level}")

        for retention_class, days in self.retention_days.items():
            if days is not None and days < 0:
                errors.append(f"retention_days[{retention_class}] must be >= 0, got {days}")
        if self.retention_days.get(RetentionClass.PERMANENT) is not None:
            errors.append("permanent backups cannot have a max age")

        if not self.service_name:
            errors.append("service_name must not be empty")

        if errors:
            from srvbak.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def archives_dir(self) -> Path:
        return self.vault_path / "archives"

    @property
    def db_path(self) -> Path:
        return self.vault_path / "jobs.db"

    @property
    def effective_staging_dir(self) -> Path:
        return self.staging_dir if self.staging_dir is not None else self.server_dir

    def max_age_days(self, retention_class: RetentionClass) -> int | None:
        """Max age for a class; classes missing from the table fall back to the defaults."""
        if retention_class in self.retention_days:
            return self.retention_days[retention_class]
        return DEFAULT_RETENTION_DAYS[retention_class]

    def roots_for(self, categories) -> List[SourceRoot]:
        """
        Return the configured live roots for the given categories.

        Roots are returned in CATEGORY_ORDER, then configuration order.
        """
        names_by_category = {
            SourceCategory.PRIMARY_DATA: self.primary_data_paths,
            SourceCategory.EXTENSIONS: self.extension_paths,
            SourceCategory.CONFIG: self.config_paths,
        }
        roots: List[SourceRoot] = []
        for category in CATEGORY_ORDER:
            if category not in categories:
                continue
            for name in names_by_category[category]:
                roots.append(SourceRoot(category, name, self.server_dir / name))
        return roots

    def with_updates(self, **kwargs) -> "EngineConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return EngineConfig(**current)
