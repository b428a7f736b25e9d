"""Custom exceptions for disk engine operations.

This module defines the disk half of the backend's error taxonomy. Every
exception carries a stable ``kind`` so frontends can branch on it without
parsing the message.

Exception Hierarchy:
    DeploykitError (base)
        └── StorageError
            ├── DeviceProbeError
            ├── PlanError
            ├── PartitionTableError
            ├── FormatError
            ├── MountError
            │   └── UnmountError
            └── LoopAttachError

Usage:
    from deploykit.storage.exceptions import PlanError

    if root_count != 1:
        raise PlanError("plan must contain exactly one root partition")
"""

from __future__ import annotations

from typing import Any, Optional


class DeploykitError(Exception):
    """Base exception for all backend errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": str(self)}


class StorageError(DeploykitError):
    """Base exception for disk engine errors."""


class DeviceProbeError(StorageError):
    """Block device metadata could not be read."""

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        super().__init__(message)


class PlanError(StorageError):
    """A partition plan does not fit the target disk."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid partition plan: {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "reason": self.reason}


class PartitionTableError(StorageError):
    """Writing or verifying a partition table failed."""

    def __init__(self, message: str, device: Optional[str] = None, restored: bool = True):
        self.device = device
        self.restored = restored
        super().__init__(message)


class FormatError(StorageError):
    """Filesystem creation failed or was refused."""

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        super().__init__(message)


class MountError(StorageError):
    """Mount failed or was refused."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class UnmountError(MountError):
    """A mount point could not be released."""

    def __init__(self, path: str, forced: bool = False, detail: str = ""):
        self.forced = forced
        self.detail = detail
        mode = "forced unmount" if forced else "unmount"
        msg = f"Failed {mode} of {path}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg, path=path)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "forced": self.forced}


class LoopAttachError(StorageError):
    """Attaching or detaching a loop device failed."""

    def __init__(self, message: str, image_path: Optional[str] = None):
        self.image_path = image_path
        super().__init__(message)
