"""Install pipeline state machine.

Success path:

    Partitioning -> Formatting -> Mounting -> PopulatingRootFilesystem
        -> Configuring -> InstallingBootloader -> Unmounting -> Finished

Failed and Cancelled are the other terminal states.

Cancellation:
    ``Installer.cancel()`` only sets a ``threading.Event``. The pipeline looks
    at it at checkpoints: before every step, between partitions while
    formatting and mounting, after each population batch, between
    configuration units and after the bootloader. A step that sees the token
    returns ``StepOutcome.CANCELLED`` instead of raising, and ``run()`` turns
    that into the Cancelled transition. Unmounting has no checkpoints, so a
    cancel arriving during it still ends in Finished.

Failure:
    Any error raised by a step ends the run in Failed. Errors outside the
    backend taxonomy are wrapped in the step's error kind first. Tracked
    mounts are force-unmounted in reverse order and tracked loop devices
    detached; cleanup errors are logged and appended to the terminal message.
    The partition table is never reverted once Partitioning has succeeded.
    If cleanup itself blows up, a terminal state naming what is still held
    is published anyway, so the device lock is always released.

Concurrency:
    The pipeline is a single asyncio task. Every blocking engine or system
    call goes through ``asyncio.to_thread`` so the transport stays
    responsive. The terminal publish and the release of the device lock
    happen together under the installer lock, so a client that sees a
    terminal state may start the next install immediately.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from deploykit.config import settings
from deploykit.domain.models import (
    InstallConfig,
    InstallStep,
    MountPlan,
    Partition,
    PartitionRole,
    PartitionSpec,
    ProgressState,
    TargetDisk,
)
from deploykit.logging import EventLogger, LoggerFactory, ThrottledLogger
from deploykit.quirks import QuirkRegistry
from deploykit.storage import device_lock
from deploykit.storage.engine import DiskEngine
from deploykit.storage.exceptions import (
    DeploykitError,
    FormatError,
    MountError,
    PartitionTableError,
    StorageError,
    UnmountError,
)

from .exceptions import (
    BootloaderInstallError,
    BusyError,
    CancelledByUser,
    ConfigurationError,
    RootFilesystemPopulationError,
)
from .progress import ProgressPublisher
from .resources import ResourceTracker
from .system import SystemSetup


STEP_BANDS = {
    InstallStep.PARTITIONING: (0, 5),
    InstallStep.FORMATTING: (5, 10),
    InstallStep.MOUNTING: (10, 15),
    InstallStep.POPULATING: (15, 75),
    InstallStep.CONFIGURING: (75, 88),
    InstallStep.INSTALLING_BOOTLOADER: (88, 96),
    InstallStep.UNMOUNTING: (96, 99),
}

STEP_MESSAGES = {
    InstallStep.PARTITIONING: "Partitioning disk",
    InstallStep.FORMATTING: "Creating filesystems",
    InstallStep.MOUNTING: "Mounting filesystems",
    InstallStep.POPULATING: "Copying system files",
    InstallStep.CONFIGURING: "Configuring system",
    InstallStep.INSTALLING_BOOTLOADER: "Installing bootloader",
    InstallStep.UNMOUNTING: "Unmounting filesystems",
}


class StepOutcome(Enum):
    CONTINUE = "continue"
    CANCELLED = "cancelled"


def wrap_step_error(step: InstallStep, error: Exception) -> DeploykitError:
    """Map ``error`` into the backend taxonomy for ``step``."""
    if isinstance(error, DeploykitError):
        return error
    detail = f"Unexpected error during {step.value}: {type(error).__name__}: {error}"
    if step is InstallStep.PARTITIONING:
        return PartitionTableError(detail)
    if step is InstallStep.FORMATTING:
        return FormatError(detail)
    if step is InstallStep.MOUNTING:
        return MountError(detail)
    if step is InstallStep.POPULATING:
        return RootFilesystemPopulationError(detail)
    if step is InstallStep.CONFIGURING:
        return ConfigurationError(detail)
    if step is InstallStep.INSTALLING_BOOTLOADER:
        return BootloaderInstallError(detail)
    return UnmountError("install root", detail=detail)


def is_image_target(target: str) -> bool:
    return not target.startswith("/dev/") and Path(target).is_file()


class InstallPipeline:
    """One install attempt. Create a new instance per attempt."""

    def __init__(
        self,
        config: InstallConfig,
        *,
        install_id: str,
        engine,
        system,
        registry: QuirkRegistry,
        publisher: ProgressPublisher,
        cancel_token: threading.Event,
        install_root: Path,
        on_terminal: Optional[Callable[[ProgressState], None]] = None,
    ) -> None:
        self.config = config
        self.install_id = install_id
        self.engine = engine
        self.system = system
        self.registry = registry
        self.publisher = publisher
        self.cancel_token = cancel_token
        self.install_root = Path(install_root)
        self.on_terminal = on_terminal or publisher.publish
        self.log = LoggerFactory.for_install(install_id, target=config.target)
        self.throttled = ThrottledLogger(self.log)
        self.tracker = ResourceTracker(install_id)

        self.step = InstallStep.PARTITIONING
        self.disk: Optional[TargetDisk] = None
        self.device_path = config.target
        self.partitions: list[tuple[Partition, PartitionSpec]] = []
        self.source_dir: Optional[Path] = None
        self.terminated = False

    # Progress helpers

    def _publish(self, fraction: float = 0.0, message: Optional[str] = None) -> None:
        low, high = STEP_BANDS[self.step]
        fraction = max(0.0, min(1.0, fraction))
        self.publisher.publish(
            ProgressState(
                step=self.step,
                percentage=low + int((high - low) * fraction),
                message=message or STEP_MESSAGES[self.step],
                install_id=self.install_id,
            )
        )

    def _enter(self, step: InstallStep) -> None:
        self.step = step
        EventLogger.log_step_changed(self.log, step.value, STEP_BANDS[step][0])
        self._publish()

    def cancelled(self) -> bool:
        return self.cancel_token.is_set()

    # Steps

    async def _partition(self) -> StepOutcome:
        config = self.config
        identity = None
        if is_image_target(config.target):
            handle = await asyncio.to_thread(self.engine.attach_loop, config.target)
            self.tracker.track_loop(handle)
            self.device_path = handle.device_path
            identity = config.target
        self.disk = await asyncio.to_thread(self.engine.probe, self.device_path, identity)
        if self.cancelled():
            return StepOutcome.CANCELLED
        layout = await asyncio.to_thread(
            self.engine.apply_partition_table, self.disk, config.plan, config.firmware_mode
        )
        self.partitions = list(zip(layout, config.plan.specs))
        self._publish(1.0, f"Created {len(layout)} partitions")
        return StepOutcome.CONTINUE

    async def _format(self) -> StepOutcome:
        total = len(self.partitions)
        for index, (partition, spec) in enumerate(self.partitions):
            if self.cancelled():
                return StepOutcome.CANCELLED
            label = "EFI" if spec.role is PartitionRole.EFI_SYSTEM else None
            await asyncio.to_thread(self.engine.format, partition, spec.filesystem, label)
            self._publish((index + 1) / total, f"Formatted {partition.node} as {spec.filesystem.value}")
        return StepOutcome.CONTINUE

    async def _mount(self) -> StepOutcome:
        plan = MountPlan.build(
            self.install_root, self.partitions, efi_mount_point=self.system.efi_mount_point
        )
        entries = plan.ordered()
        for index, entry in enumerate(entries):
            if self.cancelled():
                return StepOutcome.CANCELLED
            mounted = await asyncio.to_thread(
                self.engine.mount, entry.node, entry.target, entry.filesystem.value
            )
            self.tracker.track_mount(mounted)
            self._publish((index + 1) / len(entries), f"Mounted {entry.node} on {entry.target}")
        return StepOutcome.CONTINUE

    async def _populate(self) -> StepOutcome:
        self.source_dir = await asyncio.to_thread(
            self.system.prepare_source, self.config.source, self.tracker
        )
        batches = await asyncio.to_thread(self.system.plan_batches, self.source_dir)
        total = max(len(batches), 1)
        for index, name in enumerate(batches):
            await asyncio.to_thread(self.system.copy_batch, self.source_dir, self.install_root, name)
            self._publish((index + 1) / total, f"Copied /{name}")
            self.throttled.info("populate", f"Copied {index + 1}/{len(batches)} entries")
            if self.cancelled():
                return StepOutcome.CANCELLED
        await asyncio.to_thread(self.system.finish_population, self.install_root)
        return StepOutcome.CONTINUE

    async def _configure(self) -> StepOutcome:
        await asyncio.to_thread(
            self.system.setup_bind_mounts, self.tracker, self.install_root, self.config.firmware_mode
        )
        units = self.system.configuration_units(self.config, self.install_root, self.partitions)
        for index, (name, unit) in enumerate(units):
            if self.cancelled():
                return StepOutcome.CANCELLED
            self.log.debug(f"Configuration unit {name}")
            await asyncio.to_thread(unit)
            self._publish((index + 1) / len(units), f"Configured {name}")
        return StepOutcome.CONTINUE

    async def _bootloader(self) -> StepOutcome:
        identity = await asyncio.to_thread(self.system.hardware_identity)
        action = self.registry.lookup(identity)
        self.log.info(f"Hardware {identity}: bootloader action {type(action).__name__}")
        output = await asyncio.to_thread(
            self.system.install_bootloader, self.install_root, action, self.config, self.device_path
        )
        if output:
            self.log.debug(f"Bootloader output:\n{output}")
        self._publish(1.0, "Bootloader installed")
        if self.cancelled():
            return StepOutcome.CANCELLED
        return StepOutcome.CONTINUE

    async def _unmount(self) -> StepOutcome:
        await asyncio.to_thread(self.tracker.release, self.engine, False)
        self._publish(1.0, "Filesystems unmounted")
        return StepOutcome.CONTINUE

    # Driver

    def _steps(self):
        return [
            (InstallStep.PARTITIONING, self._partition),
            (InstallStep.FORMATTING, self._format),
            (InstallStep.MOUNTING, self._mount),
            (InstallStep.POPULATING, self._populate),
            (InstallStep.CONFIGURING, self._configure),
            (InstallStep.INSTALLING_BOOTLOADER, self._bootloader),
            (InstallStep.UNMOUNTING, self._unmount),
        ]

    async def run(self) -> ProgressState:
        started = time.time()
        EventLogger.log_install_started(
            self.log, self.config.target, self.config.firmware_mode.value
        )
        try:
            return await self._drive(started)
        except Exception as error:
            if self.terminated:
                raise
            self.log.exception(f"Install aborted during {self.step.value}")
            return self._abandon(wrap_step_error(self.step, error), started)
        finally:
            if not self.terminated:
                self._abandon(CancelledByUser(self.step.value), started)

    async def _drive(self, started: float) -> ProgressState:
        try:
            for step, handler in self._steps():
                if self.cancelled():
                    return await self._finish_cancelled(started)
                self._enter(step)
                try:
                    outcome = await handler()
                except Exception as error:
                    return await self._finish_failed(wrap_step_error(step, error), started)
                if outcome is StepOutcome.CANCELLED:
                    return await self._finish_cancelled(started)
        except asyncio.CancelledError:
            await self._finish_cancelled(started)
            raise

        state = ProgressState(
            step=InstallStep.FINISHED,
            percentage=100,
            message="Installation complete",
            terminal=True,
            install_id=self.install_id,
        )
        self._terminate(state)
        EventLogger.log_install_finished(self.log, state.step.value, time.time() - started)
        return state

    def _terminate(self, state: ProgressState) -> None:
        self.terminated = True
        self.on_terminal(state)

    def _abandon(self, error: DeploykitError, started: float) -> ProgressState:
        """Publish a terminal state when cleanup itself could not finish."""
        cancelled = isinstance(error, CancelledByUser)
        message = str(error)
        if not self.tracker.empty:
            leftover = [*self.tracker.mounts, *(h.device_path for h in self.tracker.loops)]
            message += f" (cleanup incomplete: {', '.join(leftover)} still held)"
        state = ProgressState(
            step=InstallStep.CANCELLED if cancelled else InstallStep.FAILED,
            percentage=self.publisher.current().percentage,
            message=message,
            terminal=True,
            error_kind=error.kind,
            install_id=self.install_id,
        )
        self._terminate(state)
        EventLogger.log_install_finished(
            self.log, state.step.value, time.time() - started, error_kind=error.kind
        )
        return state

    async def _cleanup(self) -> list[StorageError]:
        if self.tracker.empty:
            return []
        self.log.info("Releasing mounts and loop devices")
        return await asyncio.to_thread(self.tracker.release, self.engine, True)

    @staticmethod
    def _with_cleanup_errors(message: str, errors: list[StorageError]) -> str:
        if not errors:
            return message
        return f"{message} (cleanup: {'; '.join(str(error) for error in errors)})"

    async def _finish_cancelled(self, started: float) -> ProgressState:
        errors = await self._cleanup()
        cancelled = CancelledByUser(self.step.value)
        state = ProgressState(
            step=InstallStep.CANCELLED,
            percentage=self.publisher.current().percentage,
            message=self._with_cleanup_errors(str(cancelled), errors),
            terminal=True,
            error_kind=cancelled.kind,
            install_id=self.install_id,
        )
        self._terminate(state)
        EventLogger.log_install_finished(self.log, state.step.value, time.time() - started)
        return state

    async def _finish_failed(self, error: DeploykitError, started: float) -> ProgressState:
        self.log.error(f"{self.step.value} failed: {error}")
        errors = await self._cleanup()
        state = ProgressState(
            step=InstallStep.FAILED,
            percentage=self.publisher.current().percentage,
            message=self._with_cleanup_errors(str(error), errors),
            terminal=True,
            error_kind=error.kind,
            output=getattr(error, "output", None) or None,
            install_id=self.install_id,
        )
        self._terminate(state)
        EventLogger.log_install_finished(
            self.log, state.step.value, time.time() - started, error_kind=error.kind
        )
        return state


@dataclass(frozen=True)
class InstallHandle:
    install_id: str
    task: asyncio.Task


class Installer:
    """Single-flight entry point for starting and cancelling installs."""

    def __init__(
        self,
        engine=None,
        system=None,
        registry: Optional[QuirkRegistry] = None,
        publisher: Optional[ProgressPublisher] = None,
        install_root=None,
    ) -> None:
        self.engine = engine or DiskEngine()
        self.system = system or SystemSetup(self.engine)
        self.registry = registry or QuirkRegistry.empty()
        self.publisher = publisher or ProgressPublisher()
        self.install_root = Path(install_root) if install_root else settings.get_path("install_root")
        self._lock = threading.Lock()
        self._handle: Optional[InstallHandle] = None
        self._cancel_token: Optional[threading.Event] = None
        self.log = LoggerFactory.for_install("installer")

    @property
    def active(self) -> Optional[InstallHandle]:
        with self._lock:
            return self._handle

    def start(self, config: InstallConfig) -> InstallHandle:
        """Start an install in the background.

        Must be called from the event loop thread.

        Raises:
            BusyError: If an install is already running
        """
        loop = asyncio.get_running_loop()
        install_id = f"install-{uuid.uuid4().hex[:8]}"
        with self._lock:
            if not device_lock.try_acquire(install_id, config.target):
                raise BusyError(device_lock.get_owner())
            token = threading.Event()
            self.publisher.reset(install_id)
            pipeline = InstallPipeline(
                config,
                install_id=install_id,
                engine=self.engine,
                system=self.system,
                registry=self.registry,
                publisher=self.publisher,
                cancel_token=token,
                install_root=self.install_root,
                on_terminal=lambda state: self._terminal(install_id, state),
            )
            handle = InstallHandle(install_id, loop.create_task(pipeline.run()))
            self._handle = handle
            self._cancel_token = token
        self.log.info(f"Accepted install {install_id} for {config.target}")
        return handle

    def _terminal(self, install_id: str, state: ProgressState) -> None:
        with self._lock:
            self.publisher.publish(state)
            device_lock.release(install_id)
            if self._handle is not None and self._handle.install_id == install_id:
                self._handle = None
                self._cancel_token = None

    def cancel(self, handle: Optional[InstallHandle] = None) -> bool:
        """Request cancellation of the running install.

        Returns:
            True if a running install was signalled
        """
        with self._lock:
            if self._handle is None or self._cancel_token is None:
                return False
            if handle is not None and handle.install_id != self._handle.install_id:
                return False
            if not self._cancel_token.is_set():
                self.log.info(f"Cancellation requested for {self._handle.install_id}")
            self._cancel_token.set()
            return True
