"""
Tests for deploykit.config.settings module.

This test suite covers:
- Settings loading and saving
- Default settings initialization
- Settings persistence to JSON file
- Path helper (get_path)
- Error handling for corrupted settings files
- Environment variable override for settings path
"""

import importlib
import json
from pathlib import Path

from deploykit.config import settings


class TestLoadSettings:
    """Tests for load_settings() function."""

    def test_load_defaults_when_no_file(self, tmp_path, monkeypatch):
        """Test that default settings are loaded when file doesn't exist."""
        settings_file = tmp_path / "nonexistent" / "settings.json"
        monkeypatch.setattr("deploykit.config.settings.SETTINGS_PATH", settings_file)

        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_load_from_existing_file(self, temp_settings_file, sample_settings_data, monkeypatch):
        """Test loading settings from existing file."""
        temp_settings_file.write_text(json.dumps(sample_settings_data))
        monkeypatch.setattr("deploykit.config.settings.SETTINGS_PATH", temp_settings_file)

        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values["bootloader_id"] == "Workstation"
        assert settings.settings_store.values["server_port"] == 9000
        assert settings.settings_store.values["user_groups"] == ["wheel", "audio"]

    def test_load_merges_with_defaults(self, temp_settings_file, monkeypatch):
        """Test that loaded settings merge with defaults."""
        temp_settings_file.write_text(json.dumps({"efi_mount_point": "/boot/efi"}))
        monkeypatch.setattr("deploykit.config.settings.SETTINGS_PATH", temp_settings_file)

        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values["efi_mount_point"] == "/boot/efi"
        assert settings.settings_store.values["install_root"] == "/run/deploykit/target"

    def test_load_handles_corrupted_json(self, temp_settings_file, monkeypatch):
        """Test handling of corrupted JSON file."""
        temp_settings_file.write_text("{invalid json")
        monkeypatch.setattr("deploykit.config.settings.SETTINGS_PATH", temp_settings_file)

        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_load_handles_non_dict_json(self, temp_settings_file, monkeypatch):
        """Test handling of JSON that's not a dict."""
        temp_settings_file.write_text("[]")
        monkeypatch.setattr("deploykit.config.settings.SETTINGS_PATH", temp_settings_file)

        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_load_does_not_mutate_defaults(self, temp_settings_file, monkeypatch):
        """Test that loading a file leaves DEFAULT_SETTINGS untouched."""
        temp_settings_file.write_text(json.dumps({"bootloader_id": "Other"}))
        monkeypatch.setattr("deploykit.config.settings.SETTINGS_PATH", temp_settings_file)

        settings.load_settings()

        assert settings.DEFAULT_SETTINGS["bootloader_id"] == "Linux"


class TestSaveSettings:
    """Tests for save_settings() function."""

    def test_save_creates_directory(self, tmp_path, monkeypatch):
        """Test that save_settings creates parent directory if needed."""
        settings_file = tmp_path / "new_dir" / "settings.json"
        monkeypatch.setattr("deploykit.config.settings.SETTINGS_PATH", settings_file)

        settings.settings_store.values = {"server_port": 9100}
        settings.save_settings()

        assert json.loads(settings_file.read_text()) == {"server_port": 9100}

    def test_save_formats_json_nicely(self, temp_settings_file, monkeypatch):
        """Test that saved JSON is indented with sorted keys."""
        monkeypatch.setattr("deploykit.config.settings.SETTINGS_PATH", temp_settings_file)

        settings.settings_store.values = {"server_port": 1, "bootloader_id": "Linux"}
        settings.save_settings()

        content = temp_settings_file.read_text()
        assert content.index("bootloader_id") < content.index("server_port")
        assert "\n  " in content


class TestGetSetting:
    """Tests for get_setting() and set_setting()."""

    def test_get_existing_setting(self):
        """Test retrieving a default setting."""
        assert settings.get_setting("efi_mount_point") == "/efi"

    def test_get_with_default(self):
        """Test missing keys return the supplied default."""
        assert settings.get_setting("no_such_key") is None
        assert settings.get_setting("no_such_key", "fallback") == "fallback"

    def test_set_automatically_saves(self, temp_settings_file, monkeypatch):
        """Test that set_setting persists immediately."""
        monkeypatch.setattr("deploykit.config.settings.SETTINGS_PATH", temp_settings_file)

        settings.set_setting("bootloader_id", "Fleet")

        assert settings.get_setting("bootloader_id") == "Fleet"
        assert json.loads(temp_settings_file.read_text())["bootloader_id"] == "Fleet"


class TestGetPath:
    """Tests for get_path()."""

    def test_get_path(self):
        """Test path settings come back as Path objects."""
        assert settings.get_path("install_root") == Path("/run/deploykit/target")

    def test_get_path_falls_back_to_default(self):
        """Test a path removed from the store still resolves to its default."""
        settings.settings_store.values.pop("quirks_dir", None)

        assert settings.get_path("quirks_dir") == Path("/usr/share/deploykit/quirks")


class TestSettingsPath:
    """Tests for SETTINGS_PATH configuration."""

    def test_env_var_override(self, monkeypatch, tmp_path):
        """Test that environment variable can override settings path."""
        custom_path = tmp_path / "custom_settings.json"
        monkeypatch.setenv("DEPLOYKIT_SETTINGS_PATH", str(custom_path))

        try:
            importlib.reload(settings)
            assert settings.SETTINGS_PATH == custom_path
        finally:
            monkeypatch.delenv("DEPLOYKIT_SETTINGS_PATH")
            importlib.reload(settings)

        assert settings.SETTINGS_PATH == Path("/etc/deploykit/settings.json")


class TestDefaultSettings:
    """Tests for DEFAULT_SETTINGS constant."""

    def test_has_required_keys(self):
        """Test that DEFAULT_SETTINGS contains every key the backend reads."""
        for key in (
            "quirks_dir",
            "install_root",
            "source_mount",
            "rootfs_source",
            "bootloader_id",
            "efi_mount_point",
            "initramfs_command",
            "user_groups",
            "server_host",
            "server_port",
        ):
            assert key in settings.DEFAULT_SETTINGS

    def test_server_defaults(self):
        """Test the server listens on loopback by default."""
        assert settings.DEFAULT_SETTINGS["server_host"] == settings.DEFAULT_SERVER_HOST == "127.0.0.1"
        assert isinstance(settings.DEFAULT_SETTINGS["server_port"], int)
