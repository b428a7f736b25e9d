"""Install pipeline exceptions.

Exception Hierarchy:
    DeploykitError (base, see deploykit.storage.exceptions)
        └── InstallError
            ├── RootFilesystemPopulationError
            ├── ConfigurationError
            ├── BootloaderInstallError
            ├── BusyError
            └── CancelledByUser
"""

from __future__ import annotations

from typing import Any, Optional

from deploykit.storage.exceptions import DeploykitError


class InstallError(DeploykitError):
    """Base exception for install pipeline errors."""


class RootFilesystemPopulationError(InstallError):
    """Copying the root filesystem onto the target failed."""


class ConfigurationError(InstallError):
    """Configuring the installed system failed."""

    def __init__(self, message: str, unit: Optional[str] = None):
        self.unit = unit
        super().__init__(message)


class BootloaderInstallError(InstallError):
    """Bootloader installation exited unsuccessfully."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "output": self.output}


class BusyError(InstallError):
    """Another install is already running."""

    def __init__(self, active_install: Optional[str] = None):
        self.active_install = active_install
        msg = "An install is already in progress"
        if active_install:
            msg += f" ({active_install})"
        super().__init__(msg)


class CancelledByUser(InstallError):
    """The install was cancelled by the frontend."""

    def __init__(self, step: str):
        self.step = step
        super().__init__(f"Install cancelled during {step}")
