"""
Pytest configuration and shared fixtures for deploykit tests.

This module provides common fixtures and utilities used across all test modules.
"""

import json
import re
import subprocess
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from deploykit.config import settings
from deploykit.domain.models import (
    GIB,
    MIB,
    FilesystemKind,
    FirmwareMode,
    InstallConfig,
    LoopDeviceHandle,
    PartitionPlan,
    PartitionRole,
    PartitionSpec,
    UserCredentials,
)
from deploykit.storage import device_lock, mount
from deploykit.storage.exceptions import FormatError, MountError, UnmountError


# ==============================================================================
# Global State
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_device_lock():
    """
    Auto-use fixture that clears the process-wide device lock.

    The lock is module state, so a test that leaves an install running would
    otherwise make every later start() fail with BusyError.
    """
    with device_lock._lock:
        device_lock._owner = None
        device_lock._active_device = None
    yield
    with device_lock._lock:
        device_lock._owner = None
        device_lock._active_device = None


@pytest.fixture(autouse=True)
def restore_settings():
    """
    Auto-use fixture that puts the in-memory settings back after each test.
    """
    saved = dict(settings.settings_store.values)
    yield
    settings.settings_store.values = saved


@pytest.fixture(autouse=True)
def empty_mount_table(tmp_path, monkeypatch) -> Path:
    """
    Auto-use fixture pointing the mount helpers at an empty mounts table.

    Returns:
        Path of the fake /proc/mounts; tests may append lines to it.
    """
    mounts_file = tmp_path / "proc-mounts"
    mounts_file.write_text("")
    monkeypatch.setattr(mount, "MOUNTS_PATH", str(mounts_file))
    return mounts_file


# ==============================================================================
# Block Device Simulation
# ==============================================================================


PARTITION_LINE = re.compile(r"^(?P<node>\S+)\s*:\s*(?P<fields>.*)$")


class FakeBlockDevice:
    """
    In-memory disk that answers lsblk, sfdisk, wipefs and partprobe.

    Patch it in place of ``run_command`` to exercise the real probing and
    partitioning code without touching a device.
    """

    def __init__(
        self,
        path: str = "/dev/sda",
        size: int = 50 * GIB,
        sector_size: int = 512,
        label: Optional[str] = None,
        partitions: Optional[List[Dict[str, Any]]] = None,
        model: str = "QEMU HARDDISK",
        read_only: bool = False,
    ):
        self.path = path
        self.size = size
        self.sector_size = sector_size
        self.label = label
        self.partitions = list(partitions or [])
        self.model = model
        self.read_only = read_only
        self.fstypes: Dict[str, str] = {}
        self.mountpoints: Dict[str, str] = {}
        self.commands: List[List[str]] = []
        self.fail_write = False
        self.corrupt_write = False
        self.writes = 0

    def node(self, number: int) -> str:
        suffix = "p" if self.path[-1].isdigit() else ""
        return f"{self.path}{suffix}{number}"

    def snapshot(self):
        return (self.label, [dict(p) for p in self.partitions])

    # lsblk ---------------------------------------------------------------

    def lsblk_entry(self) -> Dict[str, Any]:
        children = [
            {
                "name": Path(p["node"]).name,
                "path": p["node"],
                "type": "part",
                "size": p["size"] * self.sector_size,
                "model": None,
                "ro": False,
                "mountpoint": self.mountpoints.get(p["node"]),
                "fstype": self.fstypes.get(p["node"]),
                "pttype": self.label,
                "log-sec": self.sector_size,
            }
            for p in self.partitions
        ]
        entry = {
            "name": Path(self.path).name,
            "path": self.path,
            "type": "loop" if "loop" in self.path else "disk",
            "size": self.size,
            "model": self.model,
            "ro": self.read_only,
            "mountpoint": None,
            "fstype": None,
            "pttype": self.label,
            "log-sec": self.sector_size,
        }
        if children:
            entry["children"] = children
        return entry

    # sfdisk --------------------------------------------------------------

    def sfdisk_json(self) -> str:
        return json.dumps(
            {
                "partitiontable": {
                    "label": self.label,
                    "device": self.path,
                    "unit": "sectors",
                    "sectorsize": self.sector_size,
                    "partitions": [
                        {"node": p["node"], "start": p["start"], "size": p["size"], "type": p["type"]}
                        for p in self.partitions
                    ],
                }
            }
        )

    def dump(self) -> str:
        lines = [f"label: {self.label}", f"device: {self.path}", "unit: sectors", f"sector-size: {self.sector_size}", ""]
        for p in self.partitions:
            lines.append(f"{p['node']} : start={p['start']}, size={p['size']}, type={p['type']}")
        return "\n".join(lines) + "\n"

    def apply_script(self, script: str) -> None:
        label = None
        partitions = []
        for line in script.splitlines():
            line = line.strip()
            if line.startswith("label:"):
                label = line.split(":", 1)[1].strip()
                continue
            match = PARTITION_LINE.match(line)
            if not match or not match.group("node").startswith("/dev/"):
                continue
            fields = {}
            for item in match.group("fields").split(","):
                key, _, value = item.strip().partition("=")
                fields[key.strip()] = value.strip()
            partitions.append(
                {
                    "node": match.group("node"),
                    "start": int(fields["start"]),
                    "size": int(fields["size"]),
                    "type": fields.get("type", ""),
                }
            )
        self.label = label
        self.partitions = partitions

    # command dispatch ----------------------------------------------------

    def run(self, command, check=True, log_output=True, log_command=True, input_text=None, env=None):
        command = list(command)
        self.commands.append(command)
        program = command[0]
        if program == "lsblk":
            return self._result(command, json.dumps({"blockdevices": [self.lsblk_entry()]}))
        if program == "sfdisk" and "--json" in command:
            if self.label is None:
                return self._result(
                    command, "", f"sfdisk: {self.path} does not contain a recognized partition table", 1
                )
            return self._result(command, self.sfdisk_json())
        if program == "sfdisk" and "--dump" in command:
            return self._result(command, self.dump())
        if program == "sfdisk":
            self.writes += 1
            if self.fail_write and self.writes == 1:
                return self._result(command, "", "sfdisk: write failed: Input/output error", 1)
            self.apply_script(input_text or "")
            if self.corrupt_write and self.writes == 1:
                self.partitions = self.partitions[:-1]
            return self._result(command, "")
        if program == "wipefs":
            self.label = None
            self.partitions = []
            return self._result(command, "")
        return self._result(command, "")

    @staticmethod
    def _result(command, stdout, stderr="", returncode=0):
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def fake_disk(mocker) -> FakeBlockDevice:
    """
    Fixture providing an empty 50 GiB disk wired into the disk engine.

    Returns:
        FakeBlockDevice answering every command the engine runs.
    """
    disk = FakeBlockDevice()
    for module in ("devices", "sfdisk"):
        mocker.patch(f"deploykit.storage.{module}.run_command", side_effect=disk.run)
    mocker.patch("deploykit.storage.sfdisk.shutil.which", return_value="/usr/bin/tool")
    return disk


@pytest.fixture
def partitioned_disk(fake_disk) -> FakeBlockDevice:
    """
    Fixture providing the fake disk with an existing two-partition GPT table.

    Returns:
        FakeBlockDevice with 1 GiB + 10 GiB partitions.
    """
    fake_disk.label = "gpt"
    fake_disk.partitions = [
        {"node": "/dev/sda1", "start": 2048, "size": 2097152, "type": "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"},
        {"node": "/dev/sda2", "start": 2099200, "size": 20971520, "type": "0FC63DAF-8483-4772-8E79-3D69D8477DE4"},
    ]
    return fake_disk


# ==============================================================================
# Plan and Config Fixtures
# ==============================================================================


@pytest.fixture
def efi_plan() -> PartitionPlan:
    """
    Fixture providing the standard EFI layout: 512 MiB ESP plus root.

    Returns:
        PartitionPlan with wipe_disk set.
    """
    return PartitionPlan(
        specs=(
            PartitionSpec(PartitionRole.EFI_SYSTEM, 512 * MIB, FilesystemKind.VFAT),
            PartitionSpec(PartitionRole.ROOT, "remaining", FilesystemKind.EXT4),
        ),
        wipe_disk=True,
    )


@pytest.fixture
def install_config(efi_plan, tmp_path) -> InstallConfig:
    """
    Fixture providing a complete EFI install configuration.

    Returns:
        InstallConfig targeting /dev/sda.
    """
    return InstallConfig(
        target="/dev/sda",
        plan=efi_plan,
        locale="en_US.UTF-8",
        timezone="Europe/Berlin",
        hostname="workstation",
        user=UserCredentials(username="alice", password_hash="$6$salt$hash"),
        firmware_mode=FirmwareMode.EFI,
        source=str(tmp_path / "source"),
    )


@pytest.fixture
def install_request() -> Dict[str, Any]:
    """
    Fixture providing a StartInstall request body.

    Returns:
        Dict as sent by a frontend.
    """
    return {
        "target": "/dev/sda",
        "firmware_mode": "efi",
        "plan": {
            "wipe_disk": True,
            "partitions": [
                {"role": "efi", "size": 512 * MIB, "filesystem": "vfat"},
                {"role": "root", "size": "remaining", "filesystem": "ext4"},
            ],
        },
        "locale": "en_US.UTF-8",
        "timezone": "Europe/Berlin",
        "hostname": "workstation",
        "user": {"username": "alice", "password_hash": "$6$salt$hash"},
        "source": "/run/livekit/sysroot.squashfs",
    }


# ==============================================================================
# Pipeline Fakes
# ==============================================================================


class FakeEngine:
    """
    Disk engine stand-in that records calls and tracks what is mounted.

    Set ``fail_on`` to an operation name ("format", "mount", ...) to make it
    raise the matching storage error.
    """

    def __init__(self, disk: Optional[FakeBlockDevice] = None):
        self.disk = disk or FakeBlockDevice()
        self.calls: List[tuple] = []
        self.mounted: List[str] = []
        self.loops: List[LoopDeviceHandle] = []
        self.fail_on: Optional[str] = None
        self.fail_unmount: set = set()
        self.on_call = None
        self._lock = threading.Lock()

    def _record(self, name, *args):
        with self._lock:
            self.calls.append((name, *args))
        if self.on_call is not None:
            self.on_call(name, *args)

    def called(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    def enumerate_disks(self, images=()):
        self._record("enumerate_disks")
        return []

    def probe(self, device_path, identity=None):
        from deploykit.domain.models import PartitionTableKind, TargetDisk

        self._record("probe", device_path, identity)
        return TargetDisk(
            identity=identity or device_path,
            device_path=device_path,
            size_bytes=self.disk.size,
            table_kind=PartitionTableKind.NONE,
        )

    def probe_target(self, target):
        return self.probe(target)

    def validate_plan(self, disk, plan, firmware_mode=FirmwareMode.EFI):
        from deploykit.storage.validation import validate_plan

        validate_plan(disk, plan, firmware_mode)

    def apply_partition_table(self, disk, plan, firmware_mode=FirmwareMode.EFI):
        from deploykit.storage.partition_table import build_layout

        self._record("apply_partition_table", disk.device_path)
        if self.fail_on == "partition":
            from deploykit.storage.exceptions import PartitionTableError

            raise PartitionTableError("sfdisk failed", device=disk.device_path)
        return build_layout(disk, plan, firmware_mode)

    def format(self, partition, filesystem, label=None):
        self._record("format", partition.node, filesystem)
        if self.fail_on == "format":
            raise FormatError(f"mkfs failed on {partition.node}", device=partition.node)

    def mount(self, source, target, fstype=None, options=None, bind=False):
        self._record("mount", str(source), str(target))
        if self.fail_on == "mount":
            raise MountError(f"Failed to mount {source}", path=str(target))
        self.mounted.append(str(target))
        return str(target)

    def unmount(self, path, forced=False):
        self._record("unmount", str(path), forced)
        if str(path) in self.fail_unmount:
            raise UnmountError(str(path), forced=forced, detail="target is busy")
        if str(path) in self.mounted:
            self.mounted.remove(str(path))

    def attach_loop(self, image_path):
        self._record("attach_loop", image_path)
        handle = LoopDeviceHandle(image_path=image_path, device_path="/dev/loop7")
        self.loops.append(handle)
        return handle

    def detach_loop(self, handle):
        self._record("detach_loop", handle.device_path)
        self.loops.remove(handle)


class FakeSystem:
    """
    SystemSetup stand-in: population batches, configuration units and the
    bootloader are recorded instead of executed.
    """

    efi_mount_point = "/efi"

    def __init__(self, engine: FakeEngine, batches=("bin", "etc", "usr")):
        self.engine = engine
        self.batches = list(batches)
        self.copied: List[str] = []
        self.units_run: List[str] = []
        self.bootloader_actions: List[Any] = []
        self.identity = "dmi:svnQEMU:pnStandard PC"
        self.fail_unit: Optional[str] = None
        self.bootloader_error: Optional[Exception] = None
        self.on_batch = None
        self.on_unit = None
        self.on_bootloader = None

    def prepare_source(self, source, tracker):
        return Path(source)

    def plan_batches(self, source_dir):
        return list(self.batches)

    def copy_batch(self, source_dir, target, name):
        self.copied.append(name)
        if self.on_batch is not None:
            self.on_batch(name)

    def finish_population(self, target):
        self.units_run.append("skeleton")

    def setup_bind_mounts(self, tracker, root, firmware_mode):
        created = []
        for source in ("/dev", "/proc", "/sys"):
            created.append(tracker.track_mount(self.engine.mount(source, f"{root}{source}", bind=True)))
        return created

    def configuration_units(self, config, root, partitions):
        def unit(name):
            def run():
                if self.on_unit is not None:
                    self.on_unit(name)
                if self.fail_unit == name:
                    from deploykit.install.exceptions import ConfigurationError

                    raise ConfigurationError(f"{name} failed", unit=name)
                self.units_run.append(name)

            return run

        return [(name, unit(name)) for name in ("fstab", "hostname", "locale", "timezone", "user")]

    def hardware_identity(self):
        return self.identity

    def install_bootloader(self, root, action, config, disk_path):
        self.bootloader_actions.append(action)
        if self.on_bootloader is not None:
            self.on_bootloader(action)
        if self.bootloader_error is not None:
            raise self.bootloader_error
        return "Installation finished. No error reported."


@pytest.fixture
def fake_engine() -> FakeEngine:
    """
    Fixture providing a recording disk engine.

    Returns:
        FakeEngine with an empty 50 GiB disk.
    """
    return FakeEngine()


@pytest.fixture
def fake_system(fake_engine) -> FakeSystem:
    """
    Fixture providing a recording system setup bound to ``fake_engine``.

    Returns:
        FakeSystem with three population batches.
    """
    return FakeSystem(fake_engine)


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """
    Fixture providing a temporary settings file path.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to a temporary settings file.
    """
    settings_dir = tmp_path / "etc" / "deploykit"
    settings_dir.mkdir(parents=True, exist_ok=True)
    return settings_dir / "settings.json"


@pytest.fixture
def sample_settings_data() -> Dict[str, Any]:
    """
    Fixture providing sample settings data.

    Returns:
        Dict with typical settings values.
    """
    return {
        "bootloader_id": "Workstation",
        "server_port": 9000,
        "user_groups": ["wheel", "audio"],
    }


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")
