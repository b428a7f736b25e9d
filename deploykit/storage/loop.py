"""Loop device attachment for image-backed install targets."""

from __future__ import annotations

import subprocess
from pathlib import Path

from deploykit.domain.models import LoopDeviceHandle
from deploykit.logging import LoggerFactory

from .command_runners import command_error_detail, run_command
from .exceptions import LoopAttachError


log = LoggerFactory.for_disk()


def attach_loop(image_path: str, partscan: bool = True) -> LoopDeviceHandle:
    """Attach ``image_path`` to the first free loop device.

    Args:
        image_path: Disk image file
        partscan: Let the kernel create /dev/loopNpM partition nodes

    Returns:
        Handle that must be passed to :func:`detach_loop` exactly once

    Raises:
        LoopAttachError: If the image is missing or losetup fails
    """
    if not Path(image_path).is_file():
        raise LoopAttachError(f"Image not found: {image_path}", image_path=image_path)
    command = ["losetup", "--find", "--show"]
    if partscan:
        command.append("--partscan")
    command.append(image_path)
    try:
        result = run_command(command)
    except (subprocess.CalledProcessError, FileNotFoundError) as error:
        raise LoopAttachError(
            f"Failed to attach {image_path}: {command_error_detail(error)}", image_path=image_path
        ) from error
    device_path = result.stdout.strip()
    if not device_path.startswith("/dev/loop"):
        raise LoopAttachError(
            f"losetup returned unexpected device {device_path!r}", image_path=image_path
        )
    log.info(f"Attached {image_path} to {device_path}")
    return LoopDeviceHandle(image_path=image_path, device_path=device_path)


def detach_loop(handle: LoopDeviceHandle) -> None:
    """Detach a loop device attached by :func:`attach_loop`.

    Raises:
        LoopAttachError: If losetup cannot release the device
    """
    try:
        run_command(["losetup", "--detach", handle.device_path])
    except (subprocess.CalledProcessError, FileNotFoundError) as error:
        raise LoopAttachError(
            f"Failed to detach {handle.device_path}: {command_error_detail(error)}",
            image_path=handle.image_path,
        ) from error
    log.info(f"Detached {handle.device_path} ({handle.image_path})")
