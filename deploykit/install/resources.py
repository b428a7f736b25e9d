"""Scoped tracking of mounts and loop devices acquired by one install."""

from __future__ import annotations

from deploykit.domain.models import LoopDeviceHandle
from deploykit.logging import LoggerFactory
from deploykit.storage.exceptions import LoopAttachError, StorageError, UnmountError


class ResourceTracker:
    """Stack of mounts and loop devices, released in LIFO order.

    Every mount the pipeline performs is pushed here right after it succeeds,
    so a failure at any point can unwind exactly what was acquired.
    """

    def __init__(self, job_id: str | None = None) -> None:
        self.mounts: list[str] = []
        self.loops: list[LoopDeviceHandle] = []
        self.log = LoggerFactory.for_install(job_id)

    def track_mount(self, path: str) -> str:
        self.mounts.append(str(path))
        return str(path)

    def track_loop(self, handle: LoopDeviceHandle) -> LoopDeviceHandle:
        self.loops.append(handle)
        return handle

    @property
    def empty(self) -> bool:
        return not self.mounts and not self.loops

    def release(self, engine, forced: bool = False) -> list[StorageError]:
        """Unmount every tracked mount (newest first), then detach loops.

        Errors outside the storage taxonomy are reported as ``UnmountError``
        or ``LoopAttachError``, so callers only ever see storage errors.

        Args:
            engine: DiskEngine used for unmount/detach
            forced: Use forced unmounts and keep going past errors

        Returns:
            Errors hit while releasing (always empty when not forced)

        Raises:
            StorageError: On the first failure when not forced
        """
        errors: list[StorageError] = []
        for path in reversed(list(self.mounts)):
            try:
                engine.unmount(path, forced=forced)
            except StorageError as error:
                failure = error
            except Exception as error:
                failure = UnmountError(path, forced=forced, detail=_describe(error))
                failure.__cause__ = error
            else:
                self.mounts.remove(path)
                continue
            if not forced:
                raise failure
            self.log.error(f"Cleanup could not unmount {path}: {failure}")
            errors.append(failure)

        for handle in reversed(list(self.loops)):
            try:
                engine.detach_loop(handle)
            except StorageError as error:
                failure = error
            except Exception as error:
                failure = LoopAttachError(
                    f"Failed to detach {handle.device_path}: {_describe(error)}",
                    image_path=handle.image_path,
                )
                failure.__cause__ = error
            else:
                self.loops.remove(handle)
                continue
            if not forced:
                raise failure
            self.log.error(f"Cleanup could not detach {handle.device_path}: {failure}")
            errors.append(failure)
        return errors


def _describe(error: Exception) -> str:
    return f"{type(error).__name__}: {error}"
