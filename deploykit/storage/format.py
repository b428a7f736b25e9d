"""Filesystem creation on freshly partitioned targets.

Supported Filesystems:
    ext4:   Default for root and data partitions
    xfs:    Alternative root filesystem
    btrfs:  Alternative root filesystem
    vfat:   FAT32, required for the EFI system partition
    swap:   Swap signature via mkswap

A partition that is mounted anywhere is never formatted.
"""

from __future__ import annotations

from typing import Optional, Union

from deploykit.domain.models import FilesystemKind, Partition
from deploykit.logging import operation_context

from .command_runners import format_command_failure, run_command
from .exceptions import FormatError
from .mount import mounted_at


def build_mkfs_command(
    node: str, filesystem: FilesystemKind, label: Optional[str] = None
) -> list[str]:
    if filesystem is FilesystemKind.EXT4:
        command = ["mkfs.ext4", "-Fq"]
        if label:
            command.extend(["-L", label])
    elif filesystem is FilesystemKind.VFAT:
        command = ["mkfs.vfat", "-F", "32"]
        if label:
            command.extend(["-n", label[:11].upper()])
    elif filesystem is FilesystemKind.XFS:
        command = ["mkfs.xfs", "-f"]
        if label:
            command.extend(["-L", label[:12]])
    elif filesystem is FilesystemKind.BTRFS:
        command = ["mkfs.btrfs", "-f"]
        if label:
            command.extend(["-L", label])
    elif filesystem is FilesystemKind.SWAP:
        command = ["mkswap"]
        if label:
            command.extend(["-L", label])
    else:
        raise FormatError(f"Unsupported filesystem: {filesystem}", device=node)
    command.append(node)
    return command


def format_partition(
    partition: Union[Partition, str],
    filesystem: FilesystemKind,
    label: Optional[str] = None,
) -> None:
    """Create ``filesystem`` on ``partition``.

    Args:
        partition: Partition (with a node) or a block device node
        filesystem: Filesystem to create
        label: Optional volume label

    Raises:
        FormatError: If the partition is mounted or mkfs fails
    """
    node = partition.node if isinstance(partition, Partition) else partition
    if not node:
        raise FormatError("Partition has no device node")

    mountpoint = mounted_at(node)
    if mountpoint:
        raise FormatError(f"Refusing to format {node}: mounted at {mountpoint}", device=node)

    command = build_mkfs_command(node, filesystem, label)
    with operation_context("format", device=node, filesystem=filesystem.value):
        try:
            result = run_command(command, check=False)
        except FileNotFoundError as error:
            raise FormatError(f"{command[0]} not found", device=node) from error
        if result.returncode != 0:
            raise FormatError(
                format_command_failure(f"Formatting {node} as {filesystem.value} failed", command, result),
                device=node,
            )
