"""Exceptions raised by the offline sync engine."""
from __future__ import annotations

from typing import Optional


class OfflineSyncError(Exception):
    """Base class for sync engine errors."""


class RemoteError(OfflineSyncError):
    """A replay against the remote store failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class RemoteConnectivityError(RemoteError):
    """The remote store could not be reached (network down, timeout, gateway)."""


class RemoteRejectedError(RemoteError):
    """The remote store refused the write (validation, conflict, stale reference)."""


class DuplicateOperationError(OfflineSyncError):
    """An operation with the same id is already queued."""

    def __init__(self, op_id: str):
        super().__init__(f"Operation {op_id} is already queued")
        self.op_id = op_id


class QueueCorruptedError(OfflineSyncError):
    """The persisted queue cannot be read."""


__all__ = [
    "DuplicateOperationError",
    "OfflineSyncError",
    "QueueCorruptedError",
    "RemoteConnectivityError",
    "RemoteError",
    "RemoteRejectedError",
]
