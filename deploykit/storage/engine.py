"""Disk engine facade.

The install pipeline talks to disks only through a ``DiskEngine`` instance so
tests can hand it a fake with the same methods.
"""

from __future__ import annotations

from typing import Iterable, Optional, Union

from deploykit.domain.models import (
    FilesystemKind,
    FirmwareMode,
    LoopDeviceHandle,
    Partition,
    PartitionPlan,
    TargetDisk,
)

from . import devices, format as fs_format, loop, mount, partition_table, validation


class DiskEngine:
    def enumerate_disks(self, images: Iterable[str] = ()) -> list[TargetDisk]:
        return devices.enumerate_disks(images)

    def probe(self, device_path: str, identity: Optional[str] = None) -> TargetDisk:
        return devices.probe_disk(device_path, identity)

    def probe_target(self, target: str) -> TargetDisk:
        """Snapshot of a block device or, for a regular file, a disk image."""
        if not target.startswith("/dev/"):
            return devices.probe_image(target)
        return devices.probe_disk(target)

    def validate_plan(
        self,
        disk: TargetDisk,
        plan: PartitionPlan,
        firmware_mode: FirmwareMode = FirmwareMode.EFI,
    ) -> None:
        validation.validate_plan(disk, plan, firmware_mode)

    def apply_partition_table(
        self,
        disk: TargetDisk,
        plan: PartitionPlan,
        firmware_mode: FirmwareMode = FirmwareMode.EFI,
    ) -> list[Partition]:
        return partition_table.apply_partition_table(disk, plan, firmware_mode)

    def format(
        self, partition: Union[Partition, str], filesystem: FilesystemKind, label: Optional[str] = None
    ) -> None:
        fs_format.format_partition(partition, filesystem, label)

    def mount(self, source, target, fstype=None, options=None, bind=False) -> str:
        return mount.mount(source, target, fstype=fstype, options=options, bind=bind)

    def unmount(self, path, forced: bool = False) -> None:
        mount.unmount(path, forced=forced)

    def attach_loop(self, image_path: str) -> LoopDeviceHandle:
        return loop.attach_loop(image_path)

    def detach_loop(self, handle: LoopDeviceHandle) -> None:
        loop.detach_loop(handle)
