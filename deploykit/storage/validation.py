"""Partition plan validation.

Validation is a pure function of the disk snapshot, the plan and the firmware
mode: it never touches the device, so calling it twice with the same inputs
gives the same answer. It raises ``PlanError`` with a human-readable reason
rather than returning a boolean, the same way every check in this module does.

Checks:
    - exactly one root partition, at most one EFI system partition in EFI mode
    - role and filesystem agree (swap role uses swap, EFI uses vfat)
    - fixed sizes are positive multiples of the 1 MiB alignment
    - at most one "remaining" spec, and it must resolve to a usable size
    - the plan fits in the disk minus the alignment reserve
    - MBR limits (4 primary partitions, 2 TiB addressable)
    - existing partitions are only destroyed when claimed or when the whole
      disk is wiped, and a claim never shrinks the partition it replaces
    - no existing partition is mounted
"""

from __future__ import annotations

from deploykit.domain.models import (
    MIB,
    FilesystemKind,
    FirmwareMode,
    PartitionPlan,
    PartitionRole,
    PartitionTableKind,
    TargetDisk,
)

from .exceptions import PlanError


ALIGNMENT = MIB
# 1 MiB leading gap for the primary table, 1 MiB trailing room for the backup GPT
ALIGNMENT_RESERVE = 2 * MIB
MBR_MAX_PARTITIONS = 4
MBR_MAX_DISK_BYTES = 2 * 1024**4

ROOT_FILESYSTEMS = {FilesystemKind.EXT4, FilesystemKind.XFS, FilesystemKind.BTRFS}


def align_down(value: int, alignment: int = ALIGNMENT) -> int:
    return value - (value % alignment)


def resolve_sizes(disk: TargetDisk, plan: PartitionPlan) -> list[int]:
    """Byte size of every spec, with "remaining" resolved.

    "remaining" is the disk capacity minus every other spec minus the
    alignment reserve, aligned down to the alignment boundary.
    """
    fixed = sum(spec.size for spec in plan.specs if not spec.is_remaining)
    remaining = align_down(disk.size_bytes - ALIGNMENT_RESERVE - fixed)
    return [remaining if spec.is_remaining else int(spec.size) for spec in plan.specs]


def _validate_roles(plan: PartitionPlan, firmware_mode: FirmwareMode) -> None:
    roots = plan.with_role(PartitionRole.ROOT)
    if len(roots) != 1:
        raise PlanError(f"plan must contain exactly one root partition (found {len(roots)})")
    if roots[0].filesystem not in ROOT_FILESYSTEMS:
        raise PlanError(f"root filesystem cannot be {roots[0].filesystem.value}")

    efi = plan.with_role(PartitionRole.EFI_SYSTEM)
    if firmware_mode is FirmwareMode.EFI:
        if len(efi) > 1:
            raise PlanError(f"EFI mode allows at most one EFI system partition (found {len(efi)})")
        if efi and efi[0].filesystem is not FilesystemKind.VFAT:
            raise PlanError("EFI system partition must be vfat")

    for spec in plan.specs:
        is_swap_role = spec.role is PartitionRole.SWAP
        is_swap_fs = spec.filesystem is FilesystemKind.SWAP
        if is_swap_role != is_swap_fs:
            raise PlanError(
                f"{spec.role.value} partition cannot use filesystem {spec.filesystem.value}"
            )
        if spec.mount_point and spec.role is not PartitionRole.DATA:
            raise PlanError(f"mount_point is only allowed on data partitions, not {spec.role.value}")


def _validate_sizes(disk: TargetDisk, plan: PartitionPlan) -> None:
    remaining_specs = [spec for spec in plan.specs if spec.is_remaining]
    if len(remaining_specs) > 1:
        raise PlanError("only one partition may use the remaining space")

    for index, spec in enumerate(plan.specs, start=1):
        if spec.is_remaining:
            continue
        if spec.size <= 0:
            raise PlanError(f"partition {index} has non-positive size {spec.size}")
        if spec.size % ALIGNMENT:
            raise PlanError(
                f"partition {index} size {spec.size} is not a multiple of {ALIGNMENT} bytes"
            )

    if ALIGNMENT % disk.sector_size:
        raise PlanError(f"sector size {disk.sector_size} does not divide the alignment")

    usable = disk.size_bytes - ALIGNMENT_RESERVE
    fixed = sum(spec.size for spec in plan.specs if not spec.is_remaining)
    if fixed > usable:
        raise PlanError(
            f"plan needs {fixed} bytes but only {max(usable, 0)} are usable on {disk.identity}"
        )
    if remaining_specs and align_down(usable - fixed) < ALIGNMENT:
        raise PlanError("no space left for the partition using the remaining space")


def _validate_table_kind(disk: TargetDisk, plan: PartitionPlan, firmware_mode: FirmwareMode) -> None:
    if firmware_mode.table_kind is not PartitionTableKind.MBR:
        return
    if len(plan.specs) > MBR_MAX_PARTITIONS:
        raise PlanError(
            f"MBR supports at most {MBR_MAX_PARTITIONS} partitions (plan has {len(plan.specs)})"
        )
    if disk.size_bytes > MBR_MAX_DISK_BYTES:
        raise PlanError("MBR cannot address disks larger than 2 TiB; use EFI mode")


def _validate_existing(disk: TargetDisk, plan: PartitionPlan) -> None:
    for partition in disk.partitions:
        if partition.mountpoint:
            raise PlanError(
                f"partition {partition.number} of {disk.identity} is mounted at {partition.mountpoint}"
            )

    if plan.wipe_disk:
        return

    sizes = resolve_sizes(disk, plan)
    claimed: set[int] = set()
    for spec, size in zip(plan.specs, sizes):
        if spec.claims is None:
            continue
        if spec.claims in claimed:
            raise PlanError(f"partition {spec.claims} is claimed twice")
        existing = disk.partition(spec.claims)
        if existing is None:
            raise PlanError(f"plan claims partition {spec.claims}, which does not exist")
        if size < existing.size_bytes:
            raise PlanError(
                f"plan would shrink partition {spec.claims} "
                f"from {existing.size_bytes} to {size} bytes"
            )
        claimed.add(spec.claims)

    unclaimed = [p.number for p in disk.partitions if p.number not in claimed]
    if unclaimed:
        numbers = ", ".join(str(number) for number in unclaimed)
        raise PlanError(
            f"plan would destroy partition(s) {numbers} it does not claim; "
            "claim them or set wipe_disk"
        )


def validate_plan(
    disk: TargetDisk,
    plan: PartitionPlan,
    firmware_mode: FirmwareMode = FirmwareMode.EFI,
) -> None:
    """Check ``plan`` against ``disk``.

    Args:
        disk: Snapshot of the target
        plan: Requested layout
        firmware_mode: Decides the table kind (GPT for EFI, MBR for BIOS)

    Raises:
        PlanError: With the first violated constraint as reason
    """
    if not plan.specs:
        raise PlanError("plan has no partitions")
    if disk.read_only:
        raise PlanError(f"{disk.identity} is read-only")
    _validate_roles(plan, firmware_mode)
    _validate_sizes(disk, plan)
    _validate_table_kind(disk, plan, firmware_mode)
    _validate_existing(disk, plan)
