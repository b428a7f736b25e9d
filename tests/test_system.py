"""
Tests for deploykit.install.system.SystemSetup.
"""

from dataclasses import replace

import pytest

from deploykit.config import settings
from deploykit.domain.models import (
    GIB,
    MIB,
    Default,
    FilesystemKind,
    PartitionPlan,
    PartitionRole,
    PartitionSpec,
    UserCredentials,
)
from deploykit.install.exceptions import RootFilesystemPopulationError
from deploykit.install.resources import ResourceTracker
from deploykit.install.system import SystemSetup


@pytest.fixture
def system(fake_engine, tmp_path):
    """
    Fixture providing a SystemSetup wired to the recording engine.

    Returns:
        SystemSetup with explicit paths
    """
    return SystemSetup(
        fake_engine,
        source_mount=tmp_path / "source-mount",
        efi_mount_point="/boot/efi",
        bootloader_id="Workstation",
        initramfs_command=["dracut", "--force"],
        user_groups=["wheel"],
        sysfs_root=str(tmp_path / "sys"),
    )


class TestDefaults:
    """Test settings-derived defaults."""

    def test_defaults_from_settings(self, fake_engine, temp_settings_file, monkeypatch):
        temp_settings_file.write_text('{"bootloader_id": "Workstation"}')
        monkeypatch.setattr("deploykit.config.settings.SETTINGS_PATH", temp_settings_file)
        settings.settings_store.values = {}
        settings.load_settings()

        system = SystemSetup(fake_engine)

        assert system.efi_mount_point == "/efi"
        assert system.bootloader_id == "Workstation"
        assert system.initramfs_command == ["update-initramfs", "-u"]


class TestPrepareSource:
    """Test root filesystem source handling."""

    def test_directory_is_used_directly(self, system, tmp_path):
        tracker = ResourceTracker()

        assert system.prepare_source(str(tmp_path), tracker) == tmp_path
        assert tracker.empty

    def test_squashfs_is_mounted_and_tracked(self, system, fake_engine, tmp_path):
        image = tmp_path / "root.squashfs"
        image.write_bytes(b"hsqs" + b"\0" * 16)
        tracker = ResourceTracker()

        source_dir = system.prepare_source(str(image), tracker)

        assert source_dir == tmp_path / "source-mount"
        assert tracker.mounts == [str(tmp_path / "source-mount")]
        assert fake_engine.called("mount") == [("mount", str(image), str(tmp_path / "source-mount"))]

    def test_unsupported_source(self, system, tmp_path):
        other = tmp_path / "root.tar"
        other.write_bytes(b"ustar")

        with pytest.raises(RootFilesystemPopulationError, match="neither"):
            system.prepare_source(str(other), ResourceTracker())


class TestSwapfileSize:
    """Test swap file sizing decisions."""

    def test_disabled(self, system, install_config):
        assert system.swapfile_size(replace(install_config, swapfile="disabled")) is None

    def test_swap_partition_disables_swapfile(self, system, install_config):
        plan = PartitionPlan(
            install_config.plan.specs + (PartitionSpec(PartitionRole.SWAP, GIB, FilesystemKind.SWAP),),
            wipe_disk=True,
        )
        assert system.swapfile_size(replace(install_config, plan=plan)) is None

    def test_explicit_bytes(self, system, install_config):
        assert system.swapfile_size(replace(install_config, swapfile=512 * MIB)) == 512 * MIB

    def test_auto(self, system, install_config, mocker):
        mocker.patch("deploykit.install.configure.total_memory", return_value=4 * GIB)
        assert system.swapfile_size(install_config) == 6 * GIB


class TestConfigurationUnits:
    """Test configuration unit ordering."""

    def test_order(self, system, install_config, tmp_path):
        names = [name for name, _unit in system.configuration_units(install_config, tmp_path, [])]
        assert names == ["fstab", "hostname", "locale", "timezone", "rtc", "user", "swapfile", "initramfs"]

    def test_optional_units(self, system, install_config, tmp_path):
        user = UserCredentials("alice", "$6$a", full_name="Alice", root_password_hash="$6$r")
        config = replace(install_config, user=user)

        names = [name for name, _unit in system.configuration_units(config, tmp_path, [])]

        assert names[6:8] == ["full_name", "root_password"]

    def test_units_are_deferred(self, system, install_config, tmp_path, mocker):
        set_hostname = mocker.patch("deploykit.install.configure.set_hostname")

        units = dict(system.configuration_units(install_config, tmp_path, []))
        set_hostname.assert_not_called()
        units["hostname"]()

        set_hostname.assert_called_once_with(tmp_path, "workstation")

    def test_swapfile_unit_appends_fstab(self, system, install_config, tmp_path, mocker):
        mocker.patch("deploykit.install.configure.total_memory", return_value=GIB)
        create = mocker.patch("deploykit.install.configure.create_swapfile", return_value="/swapfile")
        append = mocker.patch("deploykit.install.configure.append_fstab")

        dict(system.configuration_units(install_config, tmp_path, []))["swapfile"]()

        create.assert_called_once_with(tmp_path, 2 * GIB)
        append.assert_called_once_with(tmp_path, "/swapfile\tnone\tswap\tsw\t0\t0")

    def test_initramfs_unit_uses_configured_command(self, system, install_config, tmp_path, mocker):
        refresh = mocker.patch("deploykit.install.configure.refresh_initramfs")

        dict(system.configuration_units(install_config, tmp_path, []))["initramfs"]()

        refresh.assert_called_once_with(tmp_path, ["dracut", "--force"])


class TestBootloader:
    """Test hardware identity and bootloader delegation."""

    def test_identity_unknown_without_dmi(self, system):
        assert system.hardware_identity() == "unknown"

    def test_install_bootloader_passes_settings(self, system, install_config, tmp_path, mocker):
        install = mocker.patch("deploykit.install.bootloader.install_bootloader", return_value="ok")

        assert system.install_bootloader(tmp_path, Default(), install_config, "/dev/sda") == "ok"

        install.assert_called_once_with(
            tmp_path,
            Default(),
            install_config.firmware_mode,
            "/dev/sda",
            "en_US.UTF-8",
            bootloader_id="Workstation",
            efi_directory="/boot/efi",
            bootloader_target=None,
        )
