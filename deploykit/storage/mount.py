"""Mount and unmount helpers for the install root.

All commands go through subprocess with argument lists. A mount target must be
an empty directory (or already a mount point); an unmount either succeeds and
is verified against /proc/mounts, or raises ``UnmountError``.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional, Union

from deploykit.domain.models import Partition
from deploykit.logging import LoggerFactory

from .command_runners import command_error_detail, run_command
from .exceptions import MountError, UnmountError


log = LoggerFactory.for_disk()

MOUNTS_PATH = "/proc/mounts"


def _unescape(field: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as octal
    for escaped, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        field = field.replace(escaped, char)
    return field


def read_mounts(mounts_path: Optional[str] = None) -> list[tuple[str, str]]:
    """(source, target) pairs from a mounts table."""
    entries = []
    try:
        with open(mounts_path or MOUNTS_PATH, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1:
                    entries.append((_unescape(parts[0]), _unescape(parts[1])))
    except FileNotFoundError:
        return []
    return entries


def is_mountpoint_active(path: Union[str, Path]) -> bool:
    target = os.path.normpath(str(path))
    if not os.path.exists(MOUNTS_PATH):
        return os.path.ismount(target)
    return any(mounted == target for _source, mounted in read_mounts())


def mounted_at(node: str) -> Optional[str]:
    """Mountpoint of block device ``node``, or None."""
    for source, target in read_mounts():
        if source == node:
            return target
    return None


def mount(
    source: Union[Partition, str],
    target: Union[str, Path],
    fstype: Optional[str] = None,
    options: Optional[str] = None,
    bind: bool = False,
) -> str:
    """Mount ``source`` on ``target``, creating the directory if needed.

    Args:
        source: Partition or device node (or a directory when ``bind``)
        target: Absolute mount point
        fstype: Filesystem type passed with -t
        options: Mount options passed with -o
        bind: Perform a bind mount

    Returns:
        The mount point, as a string

    Raises:
        MountError: If the target is not an empty directory or mount fails
    """
    if isinstance(source, Partition):
        if not source.node:
            raise MountError(f"Partition {source.number} has no device node", path=str(target))
        source = source.node
    target_path = Path(target)
    if not target_path.is_absolute():
        raise MountError(f"Mount target must be absolute: {target_path}", path=str(target_path))
    if target_path.exists():
        if not target_path.is_dir():
            raise MountError(f"Mount target is not a directory: {target_path}", path=str(target_path))
        if any(target_path.iterdir()) and not is_mountpoint_active(target_path):
            raise MountError(
                f"Refusing to mount on non-empty directory {target_path}", path=str(target_path)
            )
    else:
        target_path.mkdir(parents=True)

    command = ["mount"]
    if bind:
        command.append("--bind")
    if fstype:
        command.extend(["-t", fstype])
    if options:
        command.extend(["-o", options])
    command.extend([str(source), str(target_path)])
    try:
        run_command(command)
    except subprocess.CalledProcessError as error:
        raise MountError(
            f"Failed to mount {source} on {target_path}: {command_error_detail(error)}",
            path=str(target_path),
        ) from error
    log.debug(f"Mounted {source} on {target_path}")
    return str(target_path)


def unmount(path: Union[str, Path], forced: bool = False) -> None:
    """Unmount ``path``.

    Forced mode tries ``umount --force`` then ``umount --lazy`` and is meant
    for failure cleanup only. Either way the path must be gone from the mount
    table afterwards.

    Raises:
        UnmountError: If the mount point is still active
    """
    path = str(path)
    if not is_mountpoint_active(path):
        log.debug(f"{path} already unmounted")
        return

    if not forced:
        try:
            run_command(["umount", path])
        except (subprocess.CalledProcessError, OSError) as error:
            raise UnmountError(path, forced=False, detail=command_error_detail(error)) from error
        if is_mountpoint_active(path):
            raise UnmountError(path, forced=False, detail="still mounted after umount")
        log.debug(f"Unmounted {path}")
        return

    detail = "still mounted after forced and lazy umount"
    for command in (["umount", "--force", path], ["umount", "--lazy", path]):
        try:
            run_command(command)
        except (subprocess.CalledProcessError, OSError) as error:
            detail = command_error_detail(error)
            log.warning(f"{' '.join(command)} failed: {detail}")
            continue
        if not is_mountpoint_active(path):
            log.debug(f"Unmounted {path} ({command[1]})")
            return
    raise UnmountError(path, forced=True, detail=detail)
