"""Block device discovery using lsblk and sfdisk.

Device Detection:
    lsblk with JSON output and byte sizes gives the disk list, model, read-only
    flag, logical sector size and the current mountpoints/filesystems of each
    partition. Exact partition geometry (start and size in sectors, type code)
    comes from ``sfdisk --json`` so it matches what the partition engine writes.

Filtering Logic:
    Only whole disks that can be install targets are reported:

    1. Name looks like SATA/SCSI (sdX), virtio (vdX), NVMe (nvmeXnY) or MMC
       (mmcblkX)
    2. Not read-only and not zero-sized
    3. Not the disk backing the running live system (found through the
       source of /run/livekit/livemnt or / in /proc/mounts)

Image Targets:
    ``enumerate_disks(images=[...])`` attaches each image as a loop device,
    probes it and detaches it again before returning, so the call has no
    lasting side effects. The image path becomes the disk identity.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Iterable, Optional

from deploykit.domain.models import Partition, PartitionTableKind, TargetDisk
from deploykit.logging import LoggerFactory

from . import device_lock
from .command_runners import format_command_failure, run_command
from .exceptions import DeviceProbeError
from .loop import attach_loop, detach_loop
from .mount import read_mounts
from .sfdisk import read_partition_table


log = LoggerFactory.for_disk()

LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,RO,MOUNTPOINT,FSTYPE,PTTYPE,LOG-SEC"
LIVE_MOUNTPOINTS = ("/run/livekit/livemnt", "/")
DISK_NAME_PATTERNS = (
    re.compile(r"^sd[a-z]+$"),
    re.compile(r"^vd[a-z]+$"),
    re.compile(r"^nvme\d+n\d+$"),
    re.compile(r"^mmcblk\d+$"),
)


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip() in {"1", "true"}
    return bool(value)


def get_children(device: dict) -> list[dict]:
    return device.get("children", []) or []


def get_block_devices(device_path: Optional[str] = None) -> list[dict]:
    """Return lsblk JSON entries, optionally for a single device.

    Raises:
        DeviceProbeError: If lsblk fails or returns invalid JSON
    """
    command = ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS]
    if device_path:
        command.append(device_path)
    try:
        result = run_command(command, check=False, log_output=False, log_command=False)
    except FileNotFoundError as error:
        raise DeviceProbeError("lsblk not found", device=device_path) from error
    if result.returncode != 0:
        raise DeviceProbeError(
            format_command_failure("lsblk failed", command, result), device=device_path
        )
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as error:
        raise DeviceProbeError(f"lsblk returned invalid JSON: {error}", device=device_path) from error
    devices = data.get("blockdevices")
    if not isinstance(devices, list):
        raise DeviceProbeError("lsblk output has no blockdevices list", device=device_path)
    return devices


def is_candidate_name(name: str) -> bool:
    return any(pattern.match(name) for pattern in DISK_NAME_PATTERNS)


def find_live_root_source(mounts_path: Optional[str] = None) -> Optional[str]:
    """Block device the running system was booted from, if any."""
    sources = {target: source for source, target in read_mounts(mounts_path)}
    for mountpoint in LIVE_MOUNTPOINTS:
        source = sources.get(mountpoint)
        if source and source.startswith("/dev/"):
            return source
    return None


def _device_nodes(device: dict) -> set[str]:
    nodes = {device.get("path") or f"/dev/{device.get('name')}"}
    for child in get_children(device):
        nodes |= _device_nodes(child)
    return nodes


def _disk_from_lsblk(device: dict, identity: Optional[str] = None) -> TargetDisk:
    try:
        path = device.get("path") or f"/dev/{device['name']}"
        size_bytes = int(device.get("size") or 0)
        sector_size = int(device.get("log-sec") or 512)
        table_kind = PartitionTableKind.from_label(device.get("pttype"))
    except (KeyError, TypeError, ValueError) as error:
        raise DeviceProbeError(f"Unusable lsblk entry: {error}") from error

    partitions: tuple[Partition, ...] = ()
    if table_kind is not PartitionTableKind.NONE:
        table = read_partition_table(path, sector_size)
        by_node = {child.get("path"): child for child in get_children(device)}
        merged = []
        for partition in table.partitions:
            child = by_node.get(partition.node, {})
            merged.append(
                Partition(
                    number=partition.number,
                    start_sector=partition.start_sector,
                    size_sectors=partition.size_sectors,
                    sector_size=partition.sector_size,
                    type_code=partition.type_code,
                    node=partition.node,
                    fstype=child.get("fstype"),
                    mountpoint=child.get("mountpoint"),
                )
            )
        partitions = tuple(merged)
        table_kind = table.kind

    active = device_lock.get_active_device()
    model = device.get("model")
    return TargetDisk(
        identity=identity or path,
        device_path=path,
        size_bytes=size_bytes,
        sector_size=sector_size,
        table_kind=table_kind,
        partitions=partitions,
        model=model.strip() if model else None,
        read_only=_as_bool(device.get("ro")),
        busy=active is not None and active in {path, identity},
    )


def probe_disk(device_path: str, identity: Optional[str] = None) -> TargetDisk:
    """Fresh snapshot of one disk.

    Raises:
        DeviceProbeError: If the device is missing or not a whole disk
    """
    devices = get_block_devices(device_path)
    if not devices:
        raise DeviceProbeError(f"Device not found: {device_path}", device=device_path)
    device = devices[0]
    if device.get("type") not in ("disk", "loop"):
        raise DeviceProbeError(
            f"{device_path} is a {device.get('type')}, not a whole disk", device=device_path
        )
    return _disk_from_lsblk(device, identity)


def probe_image(image_path: str) -> TargetDisk:
    """Attach ``image_path``, probe it and detach it again."""
    if not Path(image_path).is_file():
        raise DeviceProbeError(f"Image not found: {image_path}", device=image_path)
    handle = attach_loop(image_path)
    try:
        return probe_disk(handle.device_path, identity=image_path)
    finally:
        detach_loop(handle)


def enumerate_disks(images: Iterable[str] = ()) -> list[TargetDisk]:
    """List install target candidates, plus any requested disk images."""
    live_source = find_live_root_source()
    disks = []
    for device in get_block_devices():
        name = device.get("name") or ""
        if device.get("type") != "disk" or not is_candidate_name(name):
            continue
        if live_source and live_source in _device_nodes(device):
            log.debug(f"Skipping {name}: backs the live system ({live_source})")
            continue
        disk = _disk_from_lsblk(device)
        if disk.read_only or disk.size_bytes == 0:
            log.debug(f"Skipping {name}: read-only or empty")
            continue
        disks.append(disk)

    for image in images:
        disks.append(probe_image(image))

    log.debug(
        f"Found {len(disks)} target candidates: "
        + ", ".join(f"{disk.identity} {human_size(disk.size_bytes)}" for disk in disks)
    )
    return disks

