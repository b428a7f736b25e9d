"""Root filesystem population.

The source is either an unpacked system tree (a directory) or a squashfs
image, which is mounted read-only first. Copying is split into one rsync run
per top-level entry of the source so the pipeline can report progress and
honor cancellation between batches.

Pseudo filesystems (dev, proc, sys, run, tmp) are never copied; they are
created empty on the target so the chroot bind mounts have somewhere to go.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Union

from deploykit.logging import LoggerFactory
from deploykit.storage.command_runners import format_command_failure, run_command

from .exceptions import RootFilesystemPopulationError


log = LoggerFactory.for_install()

RSYNC_COMMAND = ["rsync", "-aHAXxSW", "--numeric-ids"]
EMPTY_DIRECTORIES = {"dev": 0o755, "proc": 0o555, "sys": 0o555, "run": 0o755, "tmp": 0o1777}
SKIPPED_ENTRIES = {"lost+found"} | set(EMPTY_DIRECTORIES)


def is_squashfs(path: Union[str, Path]) -> bool:
    """True when ``path`` starts with the squashfs magic ("hsqs")."""
    try:
        with open(path, "rb") as image:
            return image.read(4) == b"hsqs"
    except OSError:
        return False


def plan_batches(source_dir: Union[str, Path]) -> list[str]:
    """Top-level entries of the source that will be copied, in copy order."""
    try:
        names = os.listdir(source_dir)
    except OSError as error:
        raise RootFilesystemPopulationError(
            f"Cannot read root filesystem source {source_dir}: {error}"
        ) from error
    return sorted(name for name in names if name not in SKIPPED_ENTRIES)


def copy_batch(source_dir: Union[str, Path], target: Union[str, Path], name: str) -> None:
    """Copy ``source_dir/name`` into ``target`` preserving ownership, ACLs and xattrs.

    Raises:
        RootFilesystemPopulationError: If rsync fails
    """
    command = RSYNC_COMMAND + [str(Path(source_dir) / name), f"{Path(target)}/"]
    try:
        result = run_command(command, check=False, log_output=False)
    except FileNotFoundError as error:
        raise RootFilesystemPopulationError("rsync not found") from error
    if result.returncode != 0:
        raise RootFilesystemPopulationError(
            format_command_failure(f"Copying {name} failed", command, result)
        )
    log.bind(tags=["install", "rsync"]).debug(f"Copied {name}")


def create_skeleton(target: Union[str, Path]) -> None:
    """Create the empty mount point directories on the target."""
    for name, mode in EMPTY_DIRECTORIES.items():
        path = Path(target) / name
        try:
            path.mkdir(exist_ok=True)
            os.chmod(path, mode)
        except OSError as error:
            raise RootFilesystemPopulationError(f"Cannot create {path}: {error}") from error


def sync_filesystems() -> None:
    try:
        run_command(["sync"], log_command=False)
    except (subprocess.CalledProcessError, FileNotFoundError) as error:
        log.warning(f"sync failed: {error}")
