# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for Server Backup Manager.

These helpers centralize wording for common configuration and request errors
so that all modules present consistent, actionable messages.
"""


def explain_missing_server_dir_env() -> str:
    """
    Explain that the server directory environment variable is missing.
    """

    return (
        "Server directory is not configured. "
        "Set the SRVBAK_SERVER_DIR environment variable or pass server_dir=... to create_config()."
    )


def explain_invalid_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "It must be a non-negative integer."
    )


def explain_invalid_kind(value: object) -> str:
    """
    Explain that a backup kind is not one of the known kinds.
    """

    return (
        f"Invalid backup kind: {value!r}. "
        "Expected one of: 'full', 'primary_data', 'extensions', 'config', 'migration'."
    )


def explain_invalid_retention_class(value: object) -> str:
    """
    Explain that a retention class is not one of the known classes.
    """

    return (
        f"Invalid retention class: {value!r}. "
        "Expected one of: 'daily', 'weekly', 'monthly', 'permanent'."
    )


def explain_busy(holder: str | None) -> str:
    """
    Explain that another mutating job holds the single-writer lock.
    """

    return (
        f"Another backup/restore/migration job is in progress ({holder or 'unknown'}). "
        "Retry once it has finished."
    )


def explain_scope_not_captured(scope: str, captured: list[str]) -> str:
    """
    Explain that a restore scope asks for categories the backup never captured.
    """

    return (
        f"Restore scope {scope!r} is not covered by this backup. "
        f"The backup captured: {', '.join(captured) or 'nothing'}."
    )


def explain_stale_siblings(paths: list[str]) -> str:
    """
    Explain that leftovers of an earlier restore block a new one.
    """

    return (
        "Leftovers from an earlier restore are still present: "
        f"{', '.join(paths)}. Move or delete them before restoring again."
    )


def describe_error(error: BaseException) -> str:
    """
    Render an exception as a job error message.
    """

    message = getattr(error, "message", None) or str(error)
    return message or type(error).__name__
