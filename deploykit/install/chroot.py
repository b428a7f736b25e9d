"""Running commands inside the target system.

The backend never chroots itself. Every command that must run in the target
is executed as ``chroot <root> <command>`` after the host's pseudo
filesystems have been bind-mounted into the root.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Mapping, Optional, Sequence, Union

from deploykit.domain.models import FirmwareMode
from deploykit.logging import LoggerFactory
from deploykit.storage.command_runners import run_command

from .resources import ResourceTracker


log = LoggerFactory.for_install()

BIND_MOUNTS = ("/dev", "/proc", "/sys", "/run/udev")
EFIVARS_PATH = "/sys/firmware/efi/efivars"
CHROOT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


def bind_mount_sources(firmware_mode: FirmwareMode) -> list[str]:
    sources = list(BIND_MOUNTS)
    if firmware_mode is FirmwareMode.EFI:
        sources.append(EFIVARS_PATH)
    return sources


def setup_bind_mounts(
    engine,
    tracker: ResourceTracker,
    root: Union[str, Path],
    firmware_mode: FirmwareMode,
) -> list[str]:
    """Bind-mount the host pseudo filesystems into ``root``.

    Sources missing on the host (e.g., efivars on a BIOS boot) are skipped.
    Each mount is tracked so cleanup releases it.

    Returns:
        Mount points created inside ``root``
    """
    created = []
    for source in bind_mount_sources(firmware_mode):
        if not os.path.isdir(source):
            log.debug(f"Skipping bind mount of {source}: not present on host")
            continue
        target = Path(root) / source.lstrip("/")
        created.append(tracker.track_mount(engine.mount(source, target, bind=True)))
    return created


def chroot_command(root: Union[str, Path], command: Sequence[str]) -> list[str]:
    return ["chroot", str(root), *command]


def chroot_env(extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    env = {"PATH": CHROOT_PATH, "LANG": "C.UTF-8", "HOME": "/root"}
    if extra:
        env.update(extra)
    return env


def run_in_chroot(
    root: Union[str, Path],
    command: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    input_text: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run ``command`` inside ``root`` without raising on failure."""
    return run_command(
        chroot_command(root, command),
        check=False,
        input_text=input_text,
        env=chroot_env(env),
    )


def exists_in_root(root: Union[str, Path], path: str) -> bool:
    """True if absolute ``path`` (as seen from inside ``root``) exists."""
    return os.path.lexists(Path(root) / path.lstrip("/"))


def find_in_root(root: Union[str, Path], program: str) -> Optional[str]:
    """Locate ``program`` on the target's PATH."""
    if program.startswith("/"):
        return program if exists_in_root(root, program) else None
    for directory in CHROOT_PATH.split(":"):
        candidate = f"{directory}/{program}"
        if exists_in_root(root, candidate):
            return candidate
    return None
