"""Domain model for disk planning and install orchestration.

These frozen dataclasses replace the raw dicts returned by lsblk/sfdisk and
the JSON bodies sent by frontends, so every layer agrees on one shape.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

MIB = 1024 * 1024
GIB = 1024 * MIB

REMAINING = "remaining"

HOSTNAME_PATTERN = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")


def valid_hostname(hostname: str) -> bool:
    return bool(HOSTNAME_PATTERN.match(hostname))


def valid_locale(locale: str) -> bool:
    return bool(locale) and not any(char.isspace() for char in locale)


def valid_full_name(full_name: str) -> bool:
    # GECOS field of /etc/passwd
    return ":" not in full_name and "\n" not in full_name


def partition_node(device_path: str, number: int) -> str:
    """Block node for partition ``number`` of ``device_path``.

    Returns: e.g., "/dev/sda2" or "/dev/nvme0n1p2"
    """
    if device_path[-1:].isdigit():
        return f"{device_path}p{number}"
    return f"{device_path}{number}"


# ==============================================================================
# Enumerations
# ==============================================================================


class PartitionTableKind(Enum):
    """Partition table label as reported by lsblk/sfdisk."""

    NONE = "none"
    MBR = "dos"
    GPT = "gpt"

    @classmethod
    def from_label(cls, label: Optional[str]) -> PartitionTableKind:
        if not label:
            return cls.NONE
        normalized = label.strip().lower()
        if normalized in {"dos", "mbr", "msdos"}:
            return cls.MBR
        if normalized == "gpt":
            return cls.GPT
        raise ValueError(f"Unsupported partition table label: {label}")


class FirmwareMode(Enum):
    BIOS = "bios"
    EFI = "efi"

    @property
    def table_kind(self) -> PartitionTableKind:
        return PartitionTableKind.GPT if self is FirmwareMode.EFI else PartitionTableKind.MBR


class PartitionRole(Enum):
    EFI_SYSTEM = "efi"
    ROOT = "root"
    SWAP = "swap"
    DATA = "data"


class FilesystemKind(Enum):
    EXT4 = "ext4"
    XFS = "xfs"
    BTRFS = "btrfs"
    VFAT = "vfat"
    SWAP = "swap"


DEFAULT_FILESYSTEMS = {
    PartitionRole.EFI_SYSTEM: FilesystemKind.VFAT,
    PartitionRole.ROOT: FilesystemKind.EXT4,
    PartitionRole.SWAP: FilesystemKind.SWAP,
    PartitionRole.DATA: FilesystemKind.EXT4,
}


class InstallStep(Enum):
    """Pipeline stages, in success order, followed by the terminal states."""

    PARTITIONING = "Partitioning"
    FORMATTING = "Formatting"
    MOUNTING = "Mounting"
    POPULATING = "PopulatingRootFilesystem"
    CONFIGURING = "Configuring"
    INSTALLING_BOOTLOADER = "InstallingBootloader"
    UNMOUNTING = "Unmounting"
    FINISHED = "Finished"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (InstallStep.FINISHED, InstallStep.FAILED, InstallStep.CANCELLED)


# ==============================================================================
# Disk Domain
# ==============================================================================


@dataclass(frozen=True)
class Partition:
    """One entry of a partition table."""

    number: int
    start_sector: int
    size_sectors: int
    sector_size: int = 512
    type_code: str = ""
    node: Optional[str] = None
    fstype: Optional[str] = None
    mountpoint: Optional[str] = None
    role: Optional[PartitionRole] = None

    @property
    def size_bytes(self) -> int:
        return self.size_sectors * self.sector_size

    @property
    def start_bytes(self) -> int:
        return self.start_sector * self.sector_size

    @property
    def geometry(self) -> tuple[int, int, int, str]:
        return (self.number, self.start_sector, self.size_sectors, self.type_code.upper())

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "start": self.start_bytes,
            "size": self.size_bytes,
            "type": self.type_code,
            "node": self.node,
            "fstype": self.fstype,
            "mountpoint": self.mountpoint,
            "role": self.role.value if self.role else None,
        }


@dataclass(frozen=True)
class TargetDisk:
    """Snapshot of a disk (or disk image) taken at planning time."""

    identity: str  # device path, or image path for image-backed targets
    device_path: str  # block node that was probed
    size_bytes: int
    sector_size: int = 512
    table_kind: PartitionTableKind = PartitionTableKind.NONE
    partitions: tuple[Partition, ...] = ()
    model: Optional[str] = None
    read_only: bool = False
    busy: bool = False

    @property
    def is_image(self) -> bool:
        return self.identity != self.device_path

    @property
    def size_sectors(self) -> int:
        return self.size_bytes // self.sector_size

    def partition(self, number: int) -> Optional[Partition]:
        for partition in self.partitions:
            if partition.number == number:
                return partition
        return None

    def same_layout(self, other: TargetDisk) -> bool:
        """True when ``other`` describes the same geometry and table."""
        return (
            self.size_bytes == other.size_bytes
            and self.sector_size == other.sector_size
            and self.table_kind == other.table_kind
            and sorted(p.geometry for p in self.partitions)
            == sorted(p.geometry for p in other.partitions)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "device_path": self.device_path,
            "size": self.size_bytes,
            "sector_size": self.sector_size,
            "table": self.table_kind.value,
            "model": self.model,
            "read_only": self.read_only,
            "busy": self.busy,
            "partitions": [p.to_dict() for p in self.partitions],
        }


@dataclass(frozen=True)
class LoopDeviceHandle:
    """An attached loop device backing a disk image."""

    image_path: str
    device_path: str  # e.g., "/dev/loop3"

    def partition_node(self, number: int) -> str:
        return partition_node(self.device_path, number)


# ==============================================================================
# Plan Domain
# ==============================================================================


@dataclass(frozen=True)
class PartitionSpec:
    """A requested partition: what it is for and how large it is."""

    role: PartitionRole
    size: Union[int, str]  # exact bytes, or REMAINING
    filesystem: FilesystemKind
    claims: Optional[int] = None  # existing partition number this spec replaces
    mount_point: Optional[str] = None  # only for DATA partitions

    @property
    def is_remaining(self) -> bool:
        return self.size == REMAINING

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartitionSpec:
        """Build a spec from its JSON form.

        Raises:
            ValueError: On unknown role/filesystem or an unusable size
        """
        if not isinstance(data, dict):
            raise ValueError(f"Partition entry must be an object: {data!r}")
        role = PartitionRole(data["role"])
        size = data.get("size", REMAINING)
        if size != REMAINING:
            if isinstance(size, bool) or not isinstance(size, int):
                raise ValueError(f"Partition size must be bytes or '{REMAINING}': {size!r}")
        filesystem = data.get("filesystem")
        fs_kind = FilesystemKind(filesystem) if filesystem else DEFAULT_FILESYSTEMS[role]
        claims = data.get("claims")
        if claims is not None and not isinstance(claims, int):
            raise ValueError(f"claims must be a partition number: {claims!r}")
        mount_point = data.get("mount_point")
        if mount_point is not None and not str(mount_point).startswith("/"):
            raise ValueError(f"mount_point must be absolute: {mount_point}")
        return cls(
            role=role,
            size=size,
            filesystem=fs_kind,
            claims=claims,
            mount_point=mount_point,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "size": self.size,
            "filesystem": self.filesystem.value,
            "claims": self.claims,
            "mount_point": self.mount_point,
        }


@dataclass(frozen=True)
class PartitionPlan:
    """Ordered partition specs plus the whole-disk wipe switch."""

    specs: tuple[PartitionSpec, ...]
    wipe_disk: bool = False

    def with_role(self, role: PartitionRole) -> list[PartitionSpec]:
        return [spec for spec in self.specs if spec.role is role]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartitionPlan:
        if not isinstance(data, dict):
            raise ValueError("plan must be an object")
        specs = data.get("partitions")
        if not isinstance(specs, list) or not specs:
            raise ValueError("plan.partitions must be a non-empty list")
        return cls(
            specs=tuple(PartitionSpec.from_dict(spec) for spec in specs),
            wipe_disk=bool(data.get("wipe_disk", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "partitions": [spec.to_dict() for spec in self.specs],
            "wipe_disk": self.wipe_disk,
        }


@dataclass(frozen=True)
class MountEntry:
    node: str
    target: Path
    filesystem: FilesystemKind
    role: PartitionRole


@dataclass(frozen=True)
class MountPlan:
    """Where each created partition goes inside the temporary install root.

    Root is always mounted first; every other entry lives beneath it.
    """

    root: Path
    entries: tuple[MountEntry, ...]

    def __post_init__(self) -> None:
        roots = [entry for entry in self.entries if entry.role is PartitionRole.ROOT]
        if len(roots) != 1 or roots[0].target != self.root:
            raise ValueError("mount plan needs exactly one root entry at the install root")
        for entry in self.entries:
            if entry.target != self.root and self.root not in entry.target.parents:
                raise ValueError(f"{entry.target} is outside install root {self.root}")

    def ordered(self) -> list[MountEntry]:
        """Entries in mount order (parents before children)."""
        return sorted(self.entries, key=lambda entry: len(entry.target.parts))

    @classmethod
    def build(
        cls,
        root: Path,
        partitions: list[tuple[Partition, PartitionSpec]],
        efi_mount_point: str = "/efi",
    ) -> MountPlan:
        entries = []
        for partition, spec in partitions:
            if spec.role is PartitionRole.SWAP or partition.node is None:
                continue
            if spec.role is PartitionRole.ROOT:
                target = root
            elif spec.role is PartitionRole.EFI_SYSTEM:
                target = root / efi_mount_point.lstrip("/")
            elif spec.mount_point:
                target = root / spec.mount_point.lstrip("/")
            else:
                continue
            entries.append(MountEntry(partition.node, target, spec.filesystem, spec.role))
        return cls(root=root, entries=tuple(entries))


# ==============================================================================
# Install Domain
# ==============================================================================


@dataclass(frozen=True)
class UserCredentials:
    username: str
    password_hash: str
    full_name: Optional[str] = None
    root_password_hash: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserCredentials:
        if not isinstance(data, dict):
            raise ValueError("user must be an object")
        username = str(data.get("username") or "")
        if not username or ":" in username or "\n" in username:
            raise ValueError(f"Invalid username: {username!r}")
        password_hash = str(data.get("password_hash") or "")
        if not password_hash:
            raise ValueError("user.password_hash is required")
        full_name = data.get("full_name")
        if full_name is not None and (not isinstance(full_name, str) or not valid_full_name(full_name)):
            raise ValueError(f"Invalid full name: {full_name!r}")
        return cls(
            username=username,
            password_hash=password_hash,
            full_name=full_name,
            root_password_hash=data.get("root_password_hash"),
        )


@dataclass(frozen=True)
class InstallConfig:
    """Everything one install attempt needs. Immutable once started."""

    target: str
    plan: PartitionPlan
    locale: str
    timezone: str
    hostname: str
    user: UserCredentials
    firmware_mode: FirmwareMode
    source: str
    bootloader_target: Optional[str] = None
    rtc_as_localtime: bool = False
    swapfile: Union[str, int] = "auto"  # "auto", "disabled" or bytes

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_source: str = "") -> InstallConfig:
        """Build a config from a StartInstall request body.

        Raises:
            ValueError: If a required field is missing or malformed
        """
        try:
            target = data["target"]
            plan = PartitionPlan.from_dict(data["plan"])
            user = UserCredentials.from_dict(data["user"])
            firmware_mode = FirmwareMode(data.get("firmware_mode", "efi"))
        except KeyError as error:
            raise ValueError(f"Missing required field: {error.args[0]}") from error
        for key in ("locale", "timezone", "hostname"):
            if not data.get(key):
                raise ValueError(f"Missing required field: {key}")
        if not valid_hostname(str(data["hostname"])):
            raise ValueError(f"Invalid hostname: {data['hostname']!r}")
        if not valid_locale(str(data["locale"])):
            raise ValueError(f"Invalid locale: {data['locale']!r}")
        swapfile = data.get("swapfile", "auto")
        if swapfile not in ("auto", "disabled") and (
            isinstance(swapfile, bool) or not isinstance(swapfile, int) or swapfile <= 0
        ):
            raise ValueError(f"swapfile must be 'auto', 'disabled' or bytes: {swapfile!r}")
        source = data.get("source") or default_source
        if not source:
            raise ValueError("Missing required field: source")
        if firmware_mode is FirmwareMode.EFI and not plan.with_role(PartitionRole.EFI_SYSTEM):
            raise ValueError("EFI installs need an EFI system partition in the plan")
        return cls(
            target=str(target),
            plan=plan,
            locale=str(data["locale"]),
            timezone=str(data["timezone"]),
            hostname=str(data["hostname"]),
            user=user,
            firmware_mode=firmware_mode,
            source=str(source),
            bootloader_target=data.get("bootloader_target"),
            rtc_as_localtime=bool(data.get("rtc_as_localtime", False)),
            swapfile=swapfile,
        )


@dataclass(frozen=True)
class ProgressState:
    """Immutable progress snapshot handed to readers."""

    step: InstallStep
    percentage: int = 0
    message: str = ""
    terminal: bool = False
    error_kind: Optional[str] = None
    output: Optional[str] = None
    install_id: Optional[str] = None

    @classmethod
    def idle(cls) -> ProgressState:
        return cls(step=InstallStep.PARTITIONING, message="No install started")

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.value,
            "percentage": self.percentage,
            "message": self.message,
            "terminal": self.terminal,
            "error_kind": self.error_kind,
            "output": self.output,
            "install_id": self.install_id,
        }


# ==============================================================================
# Quirk Domain
# ==============================================================================


@dataclass(frozen=True)
class Default:
    """No override: run the standard bootloader procedure."""


@dataclass(frozen=True)
class ExtraBootloaderFlags:
    flags: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ReplaceInstallStep:
    script: Path


QuirkAction = Union[Default, ExtraBootloaderFlags, ReplaceInstallStep]


@dataclass(frozen=True)
class QuirkRule:
    key: str
    action: QuirkAction
    name: str = ""
