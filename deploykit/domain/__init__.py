"""Domain models for disk planning and install orchestration.

This package contains type-safe domain objects shared by the disk engine,
the install pipeline and the transport.
"""

from __future__ import annotations

from .models import (
    Default,
    ExtraBootloaderFlags,
    FilesystemKind,
    FirmwareMode,
    InstallConfig,
    InstallStep,
    LoopDeviceHandle,
    MountPlan,
    Partition,
    PartitionPlan,
    PartitionRole,
    PartitionSpec,
    PartitionTableKind,
    ProgressState,
    QuirkAction,
    QuirkRule,
    ReplaceInstallStep,
    TargetDisk,
    UserCredentials,
)


__all__ = [
    "Default",
    "ExtraBootloaderFlags",
    "FilesystemKind",
    "FirmwareMode",
    "InstallConfig",
    "InstallStep",
    "LoopDeviceHandle",
    "MountPlan",
    "Partition",
    "PartitionPlan",
    "PartitionRole",
    "PartitionSpec",
    "PartitionTableKind",
    "ProgressState",
    "QuirkAction",
    "QuirkRule",
    "ReplaceInstallStep",
    "TargetDisk",
    "UserCredentials",
]
