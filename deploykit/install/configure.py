"""System configuration units applied to the populated target.

Every unit takes the install root as seen from the host and edits files
below it directly, except where the target's own tools are required
(useradd, chpasswd, the initramfs generator), which run through chroot.
Failures raise ``ConfigurationError`` naming the unit.
"""

from __future__ import annotations

import math
import os
import subprocess
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, Union

from deploykit.domain.models import (
    GIB,
    FilesystemKind,
    Partition,
    PartitionRole,
    PartitionSpec,
    valid_full_name,
    valid_hostname,
    valid_locale,
)
from deploykit.logging import LoggerFactory
from deploykit.storage.command_runners import command_error_detail, format_command_failure, run_command

from .chroot import find_in_root, run_in_chroot
from .exceptions import ConfigurationError


log = LoggerFactory.for_install()

PathLike = Union[str, Path]

TIMEZONE_ALIASES = {"Asia/Beijing": "Asia/Shanghai"}
SWAPFILE_PATH = "/swapfile"
MEMINFO_PATH = "/proc/meminfo"


def _target(root: PathLike, path: str) -> Path:
    return Path(root) / path.lstrip("/")


def _write(root: PathLike, path: str, content: str, unit: str, mode: Optional[int] = None) -> None:
    target = _target(root, path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        if mode is not None:
            os.chmod(target, mode)
    except OSError as error:
        raise ConfigurationError(f"Cannot write {path}: {error}", unit=unit) from error


# ==============================================================================
# fstab
# ==============================================================================


def read_uuid(node: str) -> str:
    """Filesystem UUID of ``node`` via blkid."""
    command = ["blkid", "-s", "UUID", "-o", "value", node]
    try:
        result = run_command(command, check=False)
    except FileNotFoundError as error:
        raise ConfigurationError("blkid not found", unit="fstab") from error
    uuid = (result.stdout or "").strip()
    if result.returncode != 0 or not uuid:
        raise ConfigurationError(
            format_command_failure(f"No filesystem UUID for {node}", command, result),
            unit="fstab",
        )
    return uuid


def fstab_entry(spec: str, mount_point: str, fstype: str, options: str, fsck_pass: int) -> str:
    return f"{spec}\t{mount_point}\t{fstype}\t{options}\t0\t{fsck_pass}"


def build_fstab(
    partitions: Iterable[tuple[Partition, PartitionSpec]],
    efi_mount_point: str = "/efi",
    swapfile: Optional[str] = None,
    uuid_lookup: Callable[[str], str] = read_uuid,
) -> str:
    """Render /etc/fstab for the created partitions.

    Root gets fsck pass 1, vfat is mounted nofail, swap never gets checked.
    DATA partitions without a mount point are left out.
    """
    lines = ["# /etc/fstab: static file system information.", "# Generated by deploykit."]
    for partition, spec in partitions:
        if spec.role is PartitionRole.ROOT:
            mount_point, fsck_pass = "/", 1
        elif spec.role is PartitionRole.EFI_SYSTEM:
            mount_point, fsck_pass = efi_mount_point, 2
        elif spec.role is PartitionRole.SWAP:
            mount_point, fsck_pass = "none", 0
        elif spec.mount_point:
            mount_point, fsck_pass = spec.mount_point, 2
        else:
            continue

        if spec.filesystem is FilesystemKind.SWAP:
            options = "sw"
        elif spec.filesystem is FilesystemKind.VFAT:
            options = "defaults,nofail"
        else:
            options = "defaults"
        uuid = uuid_lookup(partition.node or "")
        lines.append(
            fstab_entry(f"UUID={uuid}", mount_point, spec.filesystem.value, options, fsck_pass)
        )

    if swapfile:
        lines.append(fstab_entry(swapfile, "none", "swap", "sw", 0))
    return "\n".join(lines) + "\n"


def write_fstab(root: PathLike, content: str) -> None:
    _write(root, "/etc/fstab", content, unit="fstab")


# ==============================================================================
# Identity and localization
# ==============================================================================


def set_hostname(root: PathLike, hostname: str) -> None:
    if not valid_hostname(hostname):
        raise ConfigurationError(f"Invalid hostname: {hostname!r}", unit="hostname")
    _write(root, "/etc/hostname", f"{hostname}\n", unit="hostname")


def set_locale(root: PathLike, locale: str) -> None:
    if not valid_locale(locale):
        raise ConfigurationError(f"Invalid locale: {locale!r}", unit="locale")
    _write(root, "/etc/locale.conf", f"LANG={locale}\n", unit="locale")


def set_timezone(root: PathLike, zone: str) -> None:
    """Point /etc/localtime at the zone's file inside the target."""
    zone = TIMEZONE_ALIASES.get(zone, zone)
    if not zone or zone.startswith("/") or ".." in zone.split("/"):
        raise ConfigurationError(f"Invalid timezone: {zone!r}", unit="timezone")
    zone_file = f"/usr/share/zoneinfo/{zone}"
    if not _target(root, zone_file).is_file():
        raise ConfigurationError(f"Unknown timezone {zone}: {zone_file} missing in target", unit="timezone")

    localtime = _target(root, "/etc/localtime")
    try:
        localtime.parent.mkdir(parents=True, exist_ok=True)
        if localtime.is_symlink() or localtime.exists():
            localtime.unlink()
        localtime.symlink_to(zone_file)
    except OSError as error:
        raise ConfigurationError(f"Cannot link /etc/localtime: {error}", unit="timezone") from error


def set_rtc_mode(root: PathLike, local_time: bool) -> None:
    mode = "LOCAL" if local_time else "UTC"
    _write(root, "/etc/adjtime", f"0.0 0 0.0\n0\n{mode}\n", unit="rtc")


# ==============================================================================
# Users
# ==============================================================================


def existing_groups(root: PathLike, wanted: Sequence[str]) -> list[str]:
    """Subset of ``wanted`` that exists in the target's /etc/group."""
    try:
        text = _target(root, "/etc/group").read_text(encoding="utf-8")
    except OSError:
        return []
    present = {line.split(":", 1)[0] for line in text.splitlines() if line and not line.startswith("#")}
    return [group for group in wanted if group in present]


def _chpasswd(root: PathLike, username: str, password_hash: str, unit: str) -> None:
    if "\n" in password_hash or ":" in password_hash:
        raise ConfigurationError("Password hash contains invalid characters", unit=unit)
    result = run_in_chroot(root, ["chpasswd", "-e"], input_text=f"{username}:{password_hash}\n")
    if result.returncode != 0:
        raise ConfigurationError(
            format_command_failure(f"Setting password for {username} failed", ["chpasswd", "-e"], result),
            unit=unit,
        )


def add_user(root: PathLike, username: str, password_hash: str, groups: Sequence[str] = ()) -> None:
    command = ["useradd", "-m", "-s", "/bin/bash"]
    present = existing_groups(root, groups)
    if present:
        command.extend(["-G", ",".join(present)])
    command.append(username)
    result = run_in_chroot(root, command)
    if result.returncode != 0:
        raise ConfigurationError(
            format_command_failure(f"Creating user {username} failed", command, result), unit="user"
        )
    _chpasswd(root, username, password_hash, unit="user")


def set_passwd_full_name(passwd: str, username: str, full_name: str) -> str:
    """Return ``passwd`` with the GECOS field of ``username`` replaced."""
    if not valid_full_name(full_name):
        raise ConfigurationError(f"Invalid full name: {full_name!r}", unit="full_name")
    lines = passwd.splitlines()
    for index, line in enumerate(lines):
        fields = line.split(":")
        if fields[0] != username:
            continue
        if len(fields) != 7:
            raise ConfigurationError(f"Malformed passwd entry for {username}", unit="full_name")
        fields[4] = full_name
        lines[index] = ":".join(fields)
        return "\n".join(lines) + "\n"
    raise ConfigurationError(f"User {username} not found in /etc/passwd", unit="full_name")


def set_full_name(root: PathLike, username: str, full_name: str) -> None:
    passwd_path = _target(root, "/etc/passwd")
    try:
        passwd = passwd_path.read_text(encoding="utf-8")
    except OSError as error:
        raise ConfigurationError(f"Cannot read /etc/passwd: {error}", unit="full_name") from error
    _write(root, "/etc/passwd", set_passwd_full_name(passwd, username, full_name), unit="full_name")


def set_root_password(root: PathLike, password_hash: str) -> None:
    _chpasswd(root, "root", password_hash, unit="root_password")


# ==============================================================================
# Swap file
# ==============================================================================


def total_memory(meminfo_path: str = MEMINFO_PATH) -> int:
    """Installed RAM in bytes, from /proc/meminfo."""
    try:
        with open(meminfo_path, "r", encoding="utf-8") as meminfo:
            for line in meminfo:
                if line.startswith("MemTotal:"):
                    return int(line.split()[1]) * 1024
    except (OSError, ValueError, IndexError) as error:
        raise ConfigurationError(f"Cannot read {meminfo_path}: {error}", unit="swapfile") from error
    raise ConfigurationError(f"MemTotal missing from {meminfo_path}", unit="swapfile")


def recommended_swap_size(memory_bytes: int) -> int:
    """Twice the RAM up to 1 GiB, otherwise RAM + round(sqrt(RAM)) GiB."""
    if memory_bytes <= GIB:
        return memory_bytes * 2
    extra_gib = round(math.sqrt(memory_bytes / GIB))
    return memory_bytes + extra_gib * GIB


def create_swapfile(root: PathLike, size_bytes: int) -> str:
    """Allocate and format the swap file; returns its path inside the target."""
    path = _target(root, SWAPFILE_PATH)
    commands = (
        ["fallocate", "-l", str(size_bytes), str(path)],
        ["mkswap", str(path)],
    )
    try:
        run_command(commands[0])
        os.chmod(path, 0o600)
        run_command(commands[1])
    except subprocess.CalledProcessError as error:
        raise ConfigurationError(
            f"Creating swap file failed: {command_error_detail(error)}", unit="swapfile"
        ) from error
    except (FileNotFoundError, OSError) as error:
        raise ConfigurationError(f"Creating swap file failed: {error}", unit="swapfile") from error
    log.info(f"Created {size_bytes} byte swap file")
    return SWAPFILE_PATH


def append_fstab(root: PathLike, line: str) -> None:
    path = _target(root, "/etc/fstab")
    try:
        with open(path, "a", encoding="utf-8") as fstab:
            fstab.write(line + "\n")
    except OSError as error:
        raise ConfigurationError(f"Cannot update /etc/fstab: {error}", unit="swapfile") from error


# ==============================================================================
# initramfs
# ==============================================================================


def refresh_initramfs(root: PathLike, command: Sequence[str]) -> bool:
    """Run the initramfs generator if the target ships it.

    Returns:
        True if the command ran, False if it is not installed in the target
    """
    if not command or not find_in_root(root, command[0]):
        log.info(f"Skipping initramfs refresh: {command[0] if command else 'no command'} not in target")
        return False
    result = run_in_chroot(root, command)
    if result.returncode != 0:
        raise ConfigurationError(
            format_command_failure("initramfs refresh failed", command, result), unit="initramfs"
        )
    return True
