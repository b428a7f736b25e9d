"""Process-wide exclusive ownership of the install target.

Exactly one install may own a target at a time. The owner token is taken when
an install is accepted and released only when that install reaches a terminal
state; a second claim while one is held fails immediately instead of waiting.

Usage:
    from deploykit.storage import device_lock

    if not device_lock.try_acquire("install-1a2b", "/dev/sda"):
        raise BusyError(device_lock.get_owner())
    try:
        ...
    finally:
        device_lock.release("install-1a2b")

    # In enumeration code:
    busy = device_lock.get_active_device() == disk.device_path
"""

from __future__ import annotations

import threading

from deploykit.logging import LoggerFactory


log = LoggerFactory.for_disk()

# Lock for thread-safe access to ownership state
_lock = threading.Lock()

_owner: str | None = None
_active_device: str | None = None


def try_acquire(owner: str, device: str) -> bool:
    """Claim ``device`` for ``owner`` unless another owner holds the lock.

    Returns:
        True if the claim succeeded, False if an install is already active
    """
    global _owner, _active_device

    with _lock:
        if _owner is not None:
            log.debug(f"Claim by {owner} refused: held by {_owner} ({_active_device})")
            return False
        _owner = owner
        _active_device = device
        log.debug(f"Device {device} claimed by {owner}")
        return True


def release(owner: str) -> None:
    """Release the claim held by ``owner``. Releasing a stale owner is a no-op."""
    global _owner, _active_device

    with _lock:
        if _owner != owner:
            log.warning(f"Release by {owner} ignored: lock held by {_owner}")
            return
        log.debug(f"Device {_active_device} released by {owner}")
        _owner = None
        _active_device = None


def is_operation_active() -> bool:
    """Check if an install currently owns a device."""
    with _lock:
        return _owner is not None


def get_owner() -> str | None:
    with _lock:
        return _owner


def get_active_device() -> str | None:
    """Get the identity of the device currently owned by an install."""
    with _lock:
        return _active_device
