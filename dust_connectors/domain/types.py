from __future__ import annotations

from typing import Literal, get_args


ConnectorProvider = Literal["slack"]
ConnectorPermission = Literal["read", "write", "read_write", "none"]
ConnectorState = Literal["idle", "full_sync", "incremental_sync", "paused", "errored"]
ConnectorSyncStatus = Literal["succeeded", "failed"]
ResourceType = Literal["channel", "folder", "file", "database"]

CONNECTOR_PROVIDERS: tuple[str, ...] = get_args(ConnectorProvider)
CONNECTOR_PERMISSIONS: tuple[str, ...] = get_args(ConnectorPermission)

# Permissions that let the search index hold the resource's content.
READ_PERMISSIONS: frozenset[str] = frozenset({"read", "read_write"})
WRITE_PERMISSIONS: frozenset[str] = frozenset({"write", "read_write"})


def is_connector_provider(value: str) -> bool:
    return value in CONNECTOR_PROVIDERS


def is_connector_permission(value: str) -> bool:
    return value in CONNECTOR_PERMISSIONS


def has_read(permission: str) -> bool:
    return permission in READ_PERMISSIONS
