"""sfdisk helpers: read, dump, write and restore whole partition tables.

The table is always handled as a single sfdisk script so a write is one
flush to disk and a restore is the replay of a previous ``--dump``.
"""

from __future__ import annotations

import json
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional

from deploykit.domain.models import Partition, PartitionRole, PartitionTableKind
from deploykit.logging import LoggerFactory

from .command_runners import format_command_failure, run_command
from .exceptions import DeviceProbeError, PartitionTableError


log = LoggerFactory.for_disk()

GPT_TYPE_CODES = {
    PartitionRole.EFI_SYSTEM: "C12A7328-F81F-11D2-BA4B-00A0C93EC93B",
    PartitionRole.ROOT: "0FC63DAF-8483-4772-8E79-3D69D8477DE4",
    PartitionRole.DATA: "0FC63DAF-8483-4772-8E79-3D69D8477DE4",
    PartitionRole.SWAP: "0657FD6D-A4AB-43C4-84E5-0933C84B4F4F",
}

MBR_TYPE_CODES = {
    PartitionRole.EFI_SYSTEM: "ef",
    PartitionRole.ROOT: "83",
    PartitionRole.DATA: "83",
    PartitionRole.SWAP: "82",
}

NO_TABLE_MARKER = "does not contain a recognized partition table"


@dataclass(frozen=True)
class PartitionTable:
    kind: PartitionTableKind
    sector_size: int
    partitions: tuple[Partition, ...] = ()


def type_code_for(role: PartitionRole, kind: PartitionTableKind) -> str:
    if kind is PartitionTableKind.GPT:
        return GPT_TYPE_CODES[role]
    return MBR_TYPE_CODES[role]


def _partition_number(node: str) -> Optional[int]:
    match = re.search(r"(\d+)$", node)
    return int(match.group(1)) if match else None


def read_partition_table(device_path: str, sector_size: int = 512) -> PartitionTable:
    """Read the on-disk table of ``device_path`` with ``sfdisk --json``.

    Raises:
        DeviceProbeError: If sfdisk fails or its output cannot be parsed
    """
    command = ["sfdisk", "--json", device_path]
    result = run_command(command, check=False, log_output=False)
    if result.returncode != 0:
        if NO_TABLE_MARKER in (result.stderr or ""):
            return PartitionTable(PartitionTableKind.NONE, sector_size)
        raise DeviceProbeError(
            format_command_failure("sfdisk could not read partition table", command, result),
            device=device_path,
        )
    if not (result.stdout or "").strip():
        return PartitionTable(PartitionTableKind.NONE, sector_size)
    try:
        table = json.loads(result.stdout)["partitiontable"]
        kind = PartitionTableKind.from_label(table.get("label"))
        table_sector_size = int(table.get("sectorsize") or sector_size)
        partitions = []
        for entry in table.get("partitions", []):
            node = entry["node"]
            number = _partition_number(node)
            if number is None:
                raise ValueError(f"cannot derive partition number from {node}")
            partitions.append(
                Partition(
                    number=number,
                    start_sector=int(entry["start"]),
                    size_sectors=int(entry["size"]),
                    sector_size=table_sector_size,
                    type_code=str(entry.get("type", "")),
                    node=node,
                )
            )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
        raise DeviceProbeError(
            f"Unreadable sfdisk output for {device_path}: {error}", device=device_path
        ) from error
    return PartitionTable(kind, table_sector_size, tuple(partitions))


def dump_partition_table(device_path: str) -> str:
    """Return an ``sfdisk --dump`` script that recreates the current table."""
    command = ["sfdisk", "--dump", device_path]
    result = run_command(command, check=False, log_output=False)
    if result.returncode != 0:
        raise PartitionTableError(
            format_command_failure("Could not back up partition table", command, result),
            device=device_path,
        )
    return result.stdout


def format_sfdisk_line(prefix: str, fields: list[tuple[str, str]]) -> str:
    """Format an sfdisk line from prefix and fields."""
    rendered = []
    for key, value in fields:
        if value:
            rendered.append(f"{key}={value}")
        else:
            rendered.append(key)
    return f"{prefix} : {', '.join(rendered)}"


def build_sfdisk_script(
    kind: PartitionTableKind,
    sector_size: int,
    entries: list[tuple[str, list[tuple[str, str]]]],
) -> str:
    """Render a complete sfdisk script for a fresh table."""
    label = "gpt" if kind is PartitionTableKind.GPT else "dos"
    lines = [
        f"label: {label}",
        "unit: sectors",
        f"sector-size: {sector_size}",
        "",
    ]
    for prefix, fields in entries:
        lines.append(format_sfdisk_line(prefix, fields))
    return "\n".join(lines) + "\n"


def write_partition_table(device_path: str, script: str) -> None:
    """Write ``script`` to ``device_path`` in a single sfdisk run."""
    command = ["sfdisk", device_path]
    try:
        result = run_command(command, check=False, input_text=script)
    except FileNotFoundError as error:
        raise PartitionTableError("sfdisk not found", device=device_path) from error
    if result.returncode != 0:
        raise PartitionTableError(
            format_command_failure("sfdisk failed", command, result),
            device=device_path,
        )


def restore_partition_table(device_path: str, backup: Optional[str]) -> None:
    """Put back the table captured by :func:`dump_partition_table`.

    A ``None`` backup means the disk had no table, so the new signatures are
    wiped instead.
    """
    if backup is None:
        command = ["wipefs", "--all", device_path]
        result = run_command(command, check=False)
    else:
        command = ["sfdisk", device_path]
        result = run_command(command, check=False, input_text=backup)
    if result.returncode != 0:
        raise PartitionTableError(
            format_command_failure("Restoring previous partition table failed", command, result),
            device=device_path,
            restored=False,
        )
    settle_device(device_path)


def settle_device(device_path: str) -> None:
    """Ask the kernel to re-read the table and wait for udev."""
    for cmd in (
        ["partprobe", device_path],
        ["udevadm", "settle", "--timeout=10"],
    ):
        if not shutil.which(cmd[0]):
            continue
        try:
            run_command(cmd, check=True, log_command=False)
        except subprocess.CalledProcessError as error:
            log.warning(f"{cmd[0]} failed for {device_path}: {error}")
