"""Atomic partition table application.

The new table is written as one sfdisk script. Before writing, the current
table is dumped; if the write or the read-back verification fails, the dump is
replayed (or the fresh signatures wiped when the disk had no table) so the disk
is left either fully old or fully new.
"""

from __future__ import annotations

from dataclasses import replace

from deploykit.domain.models import (
    FirmwareMode,
    Partition,
    PartitionPlan,
    PartitionRole,
    PartitionTableKind,
    TargetDisk,
    partition_node,
)
from deploykit.logging import operation_context

from .devices import probe_disk
from .exceptions import DeviceProbeError, PartitionTableError, PlanError
from .sfdisk import (
    build_sfdisk_script,
    dump_partition_table,
    read_partition_table,
    restore_partition_table,
    settle_device,
    type_code_for,
    write_partition_table,
)
from .validation import ALIGNMENT, resolve_sizes, validate_plan


def build_layout(
    disk: TargetDisk, plan: PartitionPlan, firmware_mode: FirmwareMode
) -> list[Partition]:
    """Concrete partitions for ``plan``: contiguous, starting at 1 MiB."""
    kind = firmware_mode.table_kind
    sector_size = disk.sector_size
    start = ALIGNMENT // sector_size
    layout = []
    for number, (spec, size) in enumerate(zip(plan.specs, resolve_sizes(disk, plan)), start=1):
        size_sectors = size // sector_size
        layout.append(
            Partition(
                number=number,
                start_sector=start,
                size_sectors=size_sectors,
                sector_size=sector_size,
                type_code=type_code_for(spec.role, kind),
                node=partition_node(disk.device_path, number),
                role=spec.role,
            )
        )
        start += size_sectors
    return layout


def render_layout(layout: list[Partition], kind: PartitionTableKind, sector_size: int) -> str:
    entries = []
    for partition in layout:
        fields = [
            ("start", str(partition.start_sector)),
            ("size", str(partition.size_sectors)),
            ("type", partition.type_code),
        ]
        if kind is PartitionTableKind.MBR and partition.role is PartitionRole.ROOT:
            fields.append(("bootable", ""))
        entries.append((partition.node or "", fields))
    return build_sfdisk_script(kind, sector_size, entries)


def _matches(device_path: str, layout: list[Partition], kind: PartitionTableKind, sector_size: int) -> bool:
    table = read_partition_table(device_path, sector_size)
    if table.kind is not kind:
        return False
    return sorted(p.geometry for p in table.partitions) == sorted(p.geometry for p in layout)


def apply_partition_table(
    disk: TargetDisk,
    plan: PartitionPlan,
    firmware_mode: FirmwareMode = FirmwareMode.EFI,
) -> list[Partition]:
    """Write the table described by ``plan`` onto ``disk``.

    Args:
        disk: Snapshot the plan was validated against
        plan: Requested layout
        firmware_mode: EFI writes GPT, BIOS writes MBR

    Returns:
        The created partitions, with device nodes and roles

    Raises:
        PlanError: If the disk changed since the snapshot or the plan is invalid
        PartitionTableError: If writing failed (the previous table is restored)
    """
    kind = firmware_mode.table_kind
    with operation_context("partition", device=disk.device_path, table=kind.value) as log:
        current = probe_disk(disk.device_path, identity=disk.identity)
        if not current.same_layout(disk):
            raise PlanError(f"{disk.identity} changed since it was inspected; re-validate")
        layout = build_layout(current, plan, firmware_mode)
        if _matches(disk.device_path, layout, kind, disk.sector_size):
            # an identical table claims every partition on the disk
            validate_plan(current, replace(plan, wipe_disk=True), firmware_mode)
            log.info(f"Partition table on {disk.identity} already matches the plan")
            return layout
        validate_plan(current, plan, firmware_mode)

        backup = None
        if current.table_kind is not PartitionTableKind.NONE:
            backup = dump_partition_table(disk.device_path)

        script = render_layout(layout, kind, disk.sector_size)
        log.debug(f"sfdisk script:\n{script}")
        try:
            write_partition_table(disk.device_path, script)
            settle_device(disk.device_path)
            if not _matches(disk.device_path, layout, kind, disk.sector_size):
                raise PartitionTableError(
                    f"Partition table on {disk.device_path} does not match the plan after writing",
                    device=disk.device_path,
                )
        except (PartitionTableError, DeviceProbeError) as error:
            log.error(f"Restoring previous partition table on {disk.device_path}: {error}")
            restore_partition_table(disk.device_path, backup)
            if isinstance(error, PartitionTableError):
                raise
            raise PartitionTableError(
                f"Could not verify new partition table: {error}", device=disk.device_path
            ) from error

        log.info(f"Wrote {len(layout)} partitions to {disk.identity}")
        return layout
