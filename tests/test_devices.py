"""
Tests for deploykit.storage.devices.

Covers:
- lsblk parsing and error handling
- Candidate filtering (name patterns, live system, read-only)
- probe_disk / probe_image
"""

import json
from unittest.mock import Mock, patch

import pytest

from deploykit.domain.models import GIB, LoopDeviceHandle, PartitionTableKind
from deploykit.storage import device_lock, devices
from deploykit.storage.exceptions import DeviceProbeError


def lsblk_output(*entries):
    return json.dumps({"blockdevices": list(entries)})


class TestHumanSize:
    """Test human_size function."""

    def test_bytes(self):
        assert devices.human_size(512) == "512.0B"

    def test_gigabytes(self):
        assert devices.human_size(50 * GIB) == "50.0GB"

    def test_none(self):
        assert devices.human_size(None) == "0B"


class TestIsCandidateName:
    """Test disk name filtering."""

    @pytest.mark.parametrize("name", ["sda", "sdab", "vda", "nvme0n1", "mmcblk0"])
    def test_accepts_disks(self, name):
        assert devices.is_candidate_name(name)

    @pytest.mark.parametrize("name", ["sda1", "loop0", "sr0", "zram0", "nvme0n1p1", "dm-0"])
    def test_rejects_others(self, name):
        assert not devices.is_candidate_name(name)


class TestGetBlockDevices:
    """Test get_block_devices function."""

    @patch("deploykit.storage.devices.run_command")
    def test_parses_output(self, mock_run):
        mock_run.return_value = Mock(
            returncode=0, stdout=lsblk_output({"name": "sda", "type": "disk"}), stderr=""
        )

        result = devices.get_block_devices()

        assert result == [{"name": "sda", "type": "disk"}]
        assert mock_run.call_args.args[0][:3] == ["lsblk", "-J", "-b"]

    @patch("deploykit.storage.devices.run_command")
    def test_single_device(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout=lsblk_output(), stderr="")

        devices.get_block_devices("/dev/sdb")

        assert mock_run.call_args.args[0][-1] == "/dev/sdb"

    @patch("deploykit.storage.devices.run_command")
    def test_lsblk_failure(self, mock_run):
        mock_run.return_value = Mock(returncode=32, stdout="", stderr="lsblk: /dev/sdz: not a block device")

        with pytest.raises(DeviceProbeError, match="not a block device") as exc_info:
            devices.get_block_devices("/dev/sdz")

        assert exc_info.value.device == "/dev/sdz"

    @patch("deploykit.storage.devices.run_command")
    def test_invalid_json(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="not json", stderr="")

        with pytest.raises(DeviceProbeError, match="invalid JSON"):
            devices.get_block_devices()

    @patch("deploykit.storage.devices.run_command")
    def test_missing_lsblk(self, mock_run):
        mock_run.side_effect = FileNotFoundError("lsblk")

        with pytest.raises(DeviceProbeError, match="lsblk not found"):
            devices.get_block_devices()


class TestProbeDisk:
    """Test probe_disk against FakeBlockDevice."""

    def test_empty_disk(self, fake_disk):
        disk = devices.probe_disk("/dev/sda")

        assert disk.identity == "/dev/sda"
        assert disk.size_bytes == 50 * GIB
        assert disk.table_kind is PartitionTableKind.NONE
        assert disk.partitions == ()
        assert disk.model == "QEMU HARDDISK"
        assert not disk.busy

    def test_partitioned_disk(self, partitioned_disk):
        partitioned_disk.fstypes["/dev/sda2"] = "ext4"
        partitioned_disk.mountpoints["/dev/sda2"] = "/media/data"

        disk = devices.probe_disk("/dev/sda")

        assert disk.table_kind is PartitionTableKind.GPT
        assert [p.number for p in disk.partitions] == [1, 2]
        assert disk.partition(2).fstype == "ext4"
        assert disk.partition(2).mountpoint == "/media/data"
        assert disk.partition(1).size_bytes == GIB

    def test_busy_while_locked(self, fake_disk):
        device_lock.try_acquire("install-1", "/dev/sda")

        assert devices.probe_disk("/dev/sda").busy

    def test_partition_rejected(self, mocker):
        mocker.patch(
            "deploykit.storage.devices.run_command",
            return_value=Mock(
                returncode=0, stdout=lsblk_output({"name": "sda1", "path": "/dev/sda1", "type": "part"}), stderr=""
            ),
        )

        with pytest.raises(DeviceProbeError, match="not a whole disk"):
            devices.probe_disk("/dev/sda1")

    def test_not_found(self, mocker):
        mocker.patch(
            "deploykit.storage.devices.run_command",
            return_value=Mock(returncode=0, stdout=lsblk_output(), stderr=""),
        )

        with pytest.raises(DeviceProbeError, match="not found"):
            devices.probe_disk("/dev/sdq")


class TestProbeImage:
    """Test probe_image function."""

    def test_attaches_probes_and_detaches(self, mocker, fake_disk, tmp_path):
        image = tmp_path / "disk.img"
        image.write_bytes(b"\0" * 1024)
        fake_disk.path = "/dev/loop3"
        fake_disk.size = 8 * GIB
        handle = LoopDeviceHandle(str(image), "/dev/loop3")
        attach = mocker.patch("deploykit.storage.devices.attach_loop", return_value=handle)
        detach = mocker.patch("deploykit.storage.devices.detach_loop")

        disk = devices.probe_image(str(image))

        assert disk.identity == str(image)
        assert disk.device_path == "/dev/loop3"
        assert disk.is_image
        attach.assert_called_once_with(str(image))
        detach.assert_called_once_with(handle)

    def test_detaches_when_probe_fails(self, mocker, tmp_path):
        image = tmp_path / "disk.img"
        image.write_bytes(b"\0")
        handle = LoopDeviceHandle(str(image), "/dev/loop3")
        mocker.patch("deploykit.storage.devices.attach_loop", return_value=handle)
        detach = mocker.patch("deploykit.storage.devices.detach_loop")
        mocker.patch("deploykit.storage.devices.probe_disk", side_effect=DeviceProbeError("gone"))

        with pytest.raises(DeviceProbeError):
            devices.probe_image(str(image))

        detach.assert_called_once_with(handle)

    def test_missing_image(self, tmp_path):
        with pytest.raises(DeviceProbeError, match="Image not found"):
            devices.probe_image(str(tmp_path / "missing.img"))


class TestEnumerateDisks:
    """Test enumerate_disks filtering."""

    def _patch_lsblk(self, mocker, *entries):
        mocker.patch(
            "deploykit.storage.devices.run_command",
            return_value=Mock(returncode=0, stdout=lsblk_output(*entries), stderr=""),
        )

    def _disk(self, name, **overrides):
        entry = {
            "name": name,
            "path": f"/dev/{name}",
            "type": "disk",
            "size": 50 * GIB,
            "model": "Disk",
            "ro": False,
            "pttype": None,
            "log-sec": 512,
        }
        entry.update(overrides)
        return entry

    def test_filters_non_candidates(self, mocker):
        self._patch_lsblk(
            mocker,
            self._disk("sda"),
            self._disk("sr0", type="rom"),
            self._disk("loop0", type="loop"),
            self._disk("sdb", ro=True),
            self._disk("sdc", size=0),
            self._disk("nvme0n1"),
        )

        disks = devices.enumerate_disks()

        assert [disk.device_path for disk in disks] == ["/dev/sda", "/dev/nvme0n1"]

    def test_skips_live_system_disk(self, mocker, empty_mount_table):
        empty_mount_table.write_text("/dev/sdb1 /run/livekit/livemnt iso9660 ro 0 0\n")
        live = self._disk("sdb", children=[{"name": "sdb1", "path": "/dev/sdb1", "type": "part"}])
        self._patch_lsblk(mocker, self._disk("sda"), live)

        disks = devices.enumerate_disks()

        assert [disk.device_path for disk in disks] == ["/dev/sda"]

    def test_includes_images(self, mocker):
        self._patch_lsblk(mocker, self._disk("sda"))
        image_disk = Mock(identity="/srv/a.img", size_bytes=GIB)
        probe = mocker.patch("deploykit.storage.devices.probe_image", return_value=image_disk)

        disks = devices.enumerate_disks(images=["/srv/a.img"])

        assert disks[-1] is image_disk
        probe.assert_called_once_with("/srv/a.img")


class TestFindLiveRootSource:
    """Test find_live_root_source function."""

    def test_prefers_live_mount(self, tmp_path):
        mounts = tmp_path / "mounts"
        mounts.write_text(
            "overlay / overlay rw 0 0\n"
            "/dev/sdb1 /run/livekit/livemnt iso9660 ro 0 0\n"
        )
        assert devices.find_live_root_source(str(mounts)) == "/dev/sdb1"

    def test_root_block_device(self, tmp_path):
        mounts = tmp_path / "mounts"
        mounts.write_text("/dev/nvme0n1p2 / ext4 rw 0 0\n")
        assert devices.find_live_root_source(str(mounts)) == "/dev/nvme0n1p2"

    def test_none(self, tmp_path):
        mounts = tmp_path / "mounts"
        mounts.write_text("overlay / overlay rw 0 0\n")
        assert devices.find_live_root_source(str(mounts)) is None
