"""Bootloader installation with per-hardware overrides.

Default procedure (inside the target, via chroot):

    BIOS:  grub-install --target=i386-pc <disk>
    EFI:   grub-install --bootloader-id=<id> --efi-directory=/efi
           [--force-extra-removable on non-x86 machines]
    then:  grub-mkconfig -o /boot/grub/grub.cfg

``ExtraBootloaderFlags`` appends its flags to grub-install.
``ReplaceInstallStep`` copies the quirk script into the target and runs it
instead of the default procedure. The script gets no arguments, only
``LANG`` and ``DEPLOYKIT_ROOT`` in its environment; its exit code is the only
signal.
"""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Union

from deploykit.domain.models import (
    Default,
    ExtraBootloaderFlags,
    FirmwareMode,
    QuirkAction,
    ReplaceInstallStep,
)
from deploykit.logging import LoggerFactory

from .chroot import run_in_chroot
from .exceptions import BootloaderInstallError


log = LoggerFactory.for_install()

X86_MACHINES = {"x86_64", "amd64", "i386", "i486", "i586", "i686"}
GRUB_CONFIG = "/boot/grub/grub.cfg"
QUIRK_SCRIPT_PATH = "/tmp/deploykit-quirk"


def combined_output(result: subprocess.CompletedProcess) -> str:
    return "\n".join(part.strip() for part in (result.stdout, result.stderr) if part and part.strip())


def grub_install_command(
    firmware_mode: FirmwareMode,
    disk_path: str,
    bootloader_id: str = "Linux",
    efi_directory: str = "/efi",
    bootloader_target: Optional[str] = None,
    extra_flags: tuple[str, ...] = (),
    machine: Optional[str] = None,
) -> list[str]:
    machine = machine or platform.machine()
    command = ["grub-install"]
    if firmware_mode is FirmwareMode.BIOS:
        command.append(f"--target={bootloader_target or 'i386-pc'}")
    else:
        if bootloader_target:
            command.append(f"--target={bootloader_target}")
        command.extend([f"--bootloader-id={bootloader_id}", f"--efi-directory={efi_directory}"])
        if machine.lower() not in X86_MACHINES:
            command.append("--force-extra-removable")
    command.extend(extra_flags)
    if firmware_mode is FirmwareMode.BIOS:
        command.append(disk_path)
    return command


def _run(root: Union[str, Path], command: list[str], env: dict[str, str]) -> str:
    result = run_in_chroot(root, command, env=env)
    output = combined_output(result)
    if result.returncode != 0:
        raise BootloaderInstallError(
            f"{command[0]} exited with status {result.returncode}", output=output
        )
    return output


def install_default(
    root: Union[str, Path],
    firmware_mode: FirmwareMode,
    disk_path: str,
    lang: str,
    bootloader_id: str = "Linux",
    efi_directory: str = "/efi",
    bootloader_target: Optional[str] = None,
    extra_flags: tuple[str, ...] = (),
) -> str:
    env = {"LANG": lang}
    command = grub_install_command(
        firmware_mode,
        disk_path,
        bootloader_id=bootloader_id,
        efi_directory=efi_directory,
        bootloader_target=bootloader_target,
        extra_flags=extra_flags,
    )
    log.info(f"Installing bootloader: {' '.join(command)}")
    output = _run(root, command, env)
    output_mkconfig = _run(root, ["grub-mkconfig", "-o", GRUB_CONFIG], env)
    return "\n".join(part for part in (output, output_mkconfig) if part)


def run_quirk_script(root: Union[str, Path], script: Path, lang: str) -> str:
    """Run a replacement bootloader script inside the target.

    Raises:
        BootloaderInstallError: If the script cannot be copied or exits non-zero
    """
    inside = Path(root) / QUIRK_SCRIPT_PATH.lstrip("/")
    try:
        inside.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(script, inside)
        os.chmod(inside, 0o755)
    except OSError as error:
        raise BootloaderInstallError(f"Cannot stage quirk script {script}: {error}") from error

    log.info(f"Running quirk script {script} in place of the default bootloader install")
    try:
        return _run(root, [QUIRK_SCRIPT_PATH], {"LANG": lang, "DEPLOYKIT_ROOT": "/"})
    finally:
        inside.unlink(missing_ok=True)


def install_bootloader(
    root: Union[str, Path],
    action: QuirkAction,
    firmware_mode: FirmwareMode,
    disk_path: str,
    lang: str,
    bootloader_id: str = "Linux",
    efi_directory: str = "/efi",
    bootloader_target: Optional[str] = None,
) -> str:
    """Install the bootloader according to ``action``.

    Returns:
        Captured output of the commands that ran
    """
    if isinstance(action, ReplaceInstallStep):
        return run_quirk_script(root, action.script, lang)
    extra_flags = action.flags if isinstance(action, ExtraBootloaderFlags) else ()
    if not isinstance(action, (Default, ExtraBootloaderFlags)):
        raise BootloaderInstallError(f"Unsupported quirk action: {action!r}")
    return install_default(
        root,
        firmware_mode,
        disk_path,
        lang,
        bootloader_id=bootloader_id,
        efi_directory=efi_directory,
        bootloader_target=bootloader_target,
        extra_flags=extra_flags,
    )
