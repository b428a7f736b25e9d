"""Settings storage for backend configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "DEPLOYKIT_SETTINGS_PATH",
        "/etc/deploykit/settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 8743
DEFAULT_INSTALL_ROOT = "/run/deploykit/target"

DEFAULT_SETTINGS: dict[str, Any] = {
    "quirks_dir": "/usr/share/deploykit/quirks",
    "install_root": DEFAULT_INSTALL_ROOT,
    "source_mount": "/run/deploykit/source",
    "rootfs_source": "/run/livekit/sysroot.squashfs",
    "bootloader_id": "Linux",
    "efi_mount_point": "/efi",
    "initramfs_command": ["update-initramfs", "-u"],
    "user_groups": ["audio", "cdrom", "video", "wheel", "plugdev"],
    "server_host": DEFAULT_SERVER_HOST,
    "server_port": DEFAULT_SERVER_PORT,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_path(key: str) -> Path:
    return Path(str(get_setting(key, DEFAULT_SETTINGS.get(key))))


load_settings()
