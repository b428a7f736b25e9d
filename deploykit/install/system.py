"""System setup facade used by the install pipeline.

Groups population, configuration, chroot and bootloader helpers behind one
object so the pipeline can be driven with a fake in tests.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from deploykit import quirks
from deploykit.config import settings
from deploykit.domain.models import (
    FirmwareMode,
    InstallConfig,
    Partition,
    PartitionRole,
    PartitionSpec,
    QuirkAction,
)
from deploykit.logging import LoggerFactory

from . import bootloader, chroot, configure, rootfs
from .exceptions import RootFilesystemPopulationError
from .resources import ResourceTracker


log = LoggerFactory.for_install()

ConfigurationUnit = tuple[str, Callable[[], None]]


class SystemSetup:
    def __init__(
        self,
        engine,
        source_mount: Optional[Union[str, Path]] = None,
        efi_mount_point: Optional[str] = None,
        bootloader_id: Optional[str] = None,
        initramfs_command: Optional[Sequence[str]] = None,
        user_groups: Optional[Sequence[str]] = None,
        sysfs_root: str = "/sys",
    ) -> None:
        self.engine = engine
        self.source_mount = Path(source_mount) if source_mount else settings.get_path("source_mount")
        self.efi_mount_point = efi_mount_point or settings.get_setting("efi_mount_point", "/efi")
        self.bootloader_id = bootloader_id or settings.get_setting("bootloader_id", "Linux")
        self.initramfs_command = list(
            initramfs_command if initramfs_command is not None
            else settings.get_setting("initramfs_command", [])
        )
        self.user_groups = list(
            user_groups if user_groups is not None else settings.get_setting("user_groups", [])
        )
        self.sysfs_root = sysfs_root

    # Population

    def prepare_source(self, source: str, tracker: ResourceTracker) -> Path:
        """Directory to copy the root filesystem from.

        A squashfs image is loop-mounted read-only and the mount is tracked.
        """
        path = Path(source)
        if path.is_dir():
            return path
        if path.is_file() and rootfs.is_squashfs(path):
            mounted = self.engine.mount(
                str(path), self.source_mount, fstype="squashfs", options="ro,loop"
            )
            tracker.track_mount(mounted)
            return Path(mounted)
        raise RootFilesystemPopulationError(
            f"Root filesystem source {source} is neither a directory nor a squashfs image"
        )

    def plan_batches(self, source_dir: Path) -> list[str]:
        return rootfs.plan_batches(source_dir)

    def copy_batch(self, source_dir: Path, target: Path, name: str) -> None:
        rootfs.copy_batch(source_dir, target, name)

    def finish_population(self, target: Path) -> None:
        rootfs.create_skeleton(target)
        rootfs.sync_filesystems()

    # Configuration

    def setup_bind_mounts(
        self, tracker: ResourceTracker, root: Path, firmware_mode: FirmwareMode
    ) -> list[str]:
        return chroot.setup_bind_mounts(self.engine, tracker, root, firmware_mode)

    def swapfile_size(self, config: InstallConfig) -> Optional[int]:
        if config.swapfile == "disabled" or config.plan.with_role(PartitionRole.SWAP):
            return None
        if config.swapfile == "auto":
            return configure.recommended_swap_size(configure.total_memory())
        return int(config.swapfile)

    def configuration_units(
        self,
        config: InstallConfig,
        root: Path,
        partitions: Sequence[tuple[Partition, PartitionSpec]],
    ) -> list[ConfigurationUnit]:
        """Ordered (name, action) pairs; the pipeline checkpoints between them."""
        user = config.user
        units: list[ConfigurationUnit] = [
            (
                "fstab",
                lambda: configure.write_fstab(
                    root, configure.build_fstab(partitions, self.efi_mount_point)
                ),
            ),
            ("hostname", lambda: configure.set_hostname(root, config.hostname)),
            ("locale", lambda: configure.set_locale(root, config.locale)),
            ("timezone", lambda: configure.set_timezone(root, config.timezone)),
            ("rtc", lambda: configure.set_rtc_mode(root, config.rtc_as_localtime)),
            (
                "user",
                lambda: configure.add_user(
                    root, user.username, user.password_hash, self.user_groups
                ),
            ),
        ]
        if user.full_name:
            units.append(
                ("full_name", lambda: configure.set_full_name(root, user.username, user.full_name))
            )
        if user.root_password_hash:
            units.append(
                ("root_password", lambda: configure.set_root_password(root, user.root_password_hash))
            )
        units.append(("swapfile", lambda: self._swapfile(config, root)))
        units.append(("initramfs", lambda: self._initramfs(root)))
        return units

    def _swapfile(self, config: InstallConfig, root: Path) -> None:
        size = self.swapfile_size(config)
        if size is None:
            log.info("Swap file skipped")
            return
        path = configure.create_swapfile(root, size)
        configure.append_fstab(root, configure.fstab_entry(path, "none", "swap", "sw", 0))

    def _initramfs(self, root: Path) -> None:
        configure.refresh_initramfs(root, self.initramfs_command)

    # Bootloader

    def hardware_identity(self) -> str:
        return quirks.hardware_identity(self.sysfs_root)

    def install_bootloader(
        self, root: Path, action: QuirkAction, config: InstallConfig, disk_path: str
    ) -> str:
        return bootloader.install_bootloader(
            root,
            action,
            config.firmware_mode,
            disk_path,
            config.locale,
            bootloader_id=self.bootloader_id,
            efi_directory=self.efi_mount_point,
            bootloader_target=config.bootloader_target,
        )
