"""Per-hardware overrides for the bootloader step.

Quirk Directory Layout:
    <quirks_dir>/
        asus-xc-kx700m-d4/
            quirk.json
            quirk.bash

quirk.json:
    {
        "match": "dmi:svnASUSTeK COMPUTER INC.:pnXC-KX700M D4",
        "action": "replace",
        "script": "quirk.bash"
    }

    ``action`` is one of "default", "extra-flags" (with a ``flags`` list of
    extra grub-install arguments) or "replace" (with a ``script`` path,
    relative to the entry directory unless absolute).

The registry is built once at startup and never changes afterwards. Lookup
is an exact match on the hardware identity string; anything unknown gets
``Default()``. Malformed entries are logged and skipped so one broken quirk
cannot prevent the backend from starting.
"""

from __future__ import annotations

import json
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union

from deploykit.domain.models import (
    Default,
    ExtraBootloaderFlags,
    QuirkAction,
    QuirkRule,
    ReplaceInstallStep,
)
from deploykit.logging import LoggerFactory


log = LoggerFactory.for_quirk()

QUIRK_FILENAME = "quirk.json"
DMI_DIR = Path("class/dmi/id")
UNKNOWN_IDENTITY = "unknown"


class QuirkEntryError(ValueError):
    """A quirk.json entry cannot be turned into a rule."""


def _read_dmi_field(sysfs_root: Path, name: str) -> Optional[str]:
    try:
        value = (sysfs_root / DMI_DIR / name).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return value or None


def hardware_identity(sysfs_root: Union[str, Path] = "/sys") -> str:
    """Identity string of the running machine.

    Returns:
        "dmi:svn<vendor>:pn<product>", or "unknown" when DMI data is missing
    """
    root = Path(sysfs_root)
    vendor = _read_dmi_field(root, "sys_vendor")
    product = _read_dmi_field(root, "product_name")
    if not vendor or not product:
        log.debug(f"No DMI identity under {root / DMI_DIR}")
        return UNKNOWN_IDENTITY
    return f"dmi:svn{vendor}:pn{product}"


def parse_quirk_entry(data: object, entry_dir: Path) -> QuirkRule:
    """Build a rule from one decoded quirk.json document.

    Raises:
        QuirkEntryError: If a field is missing or invalid
    """
    if not isinstance(data, dict):
        raise QuirkEntryError("quirk.json must contain an object")
    key = data.get("match")
    if not isinstance(key, str) or not key:
        raise QuirkEntryError("'match' must be a non-empty string")

    action_name = data.get("action", "default")
    action: QuirkAction
    if action_name == "default":
        action = Default()
    elif action_name == "extra-flags":
        flags = data.get("flags")
        if not isinstance(flags, list) or not all(isinstance(f, str) and f for f in flags):
            raise QuirkEntryError("'flags' must be a list of non-empty strings")
        action = ExtraBootloaderFlags(tuple(flags))
    elif action_name == "replace":
        script = data.get("script")
        if not isinstance(script, str) or not script:
            raise QuirkEntryError("'script' must be a path")
        script_path = Path(script)
        if not script_path.is_absolute():
            script_path = entry_dir / script_path
        if not script_path.is_file():
            raise QuirkEntryError(f"script {script_path} does not exist")
        action = ReplaceInstallStep(script_path)
    else:
        raise QuirkEntryError(f"unknown action {action_name!r}")

    return QuirkRule(key=key, action=action, name=entry_dir.name)


class QuirkRegistry:
    """Immutable identity -> action table."""

    def __init__(self, rules: Mapping[str, QuirkRule]):
        self._rules = MappingProxyType(dict(rules))

    @classmethod
    def empty(cls) -> QuirkRegistry:
        return cls({})

    @classmethod
    def from_rules(cls, rules: Iterable[QuirkRule]) -> QuirkRegistry:
        table: dict[str, QuirkRule] = {}
        for rule in rules:
            if rule.key in table:
                raise ValueError(f"Duplicate quirk key: {rule.key}")
            table[rule.key] = rule
        return cls(table)

    @classmethod
    def load(cls, directory: Union[str, Path]) -> QuirkRegistry:
        """Load every ``<directory>/<name>/quirk.json``.

        A missing directory yields an empty registry.
        """
        root = Path(directory)
        if not root.is_dir():
            log.warning(f"Quirk directory {root} not found; no quirks loaded")
            return cls.empty()

        table: dict[str, QuirkRule] = {}
        for entry_dir in sorted(path for path in root.iterdir() if path.is_dir()):
            quirk_file = entry_dir / QUIRK_FILENAME
            if not quirk_file.is_file():
                continue
            try:
                data = json.loads(quirk_file.read_text(encoding="utf-8"))
                rule = parse_quirk_entry(data, entry_dir)
            except (OSError, json.JSONDecodeError, QuirkEntryError) as error:
                log.error(f"Skipping quirk {entry_dir.name}: {error}")
                continue
            if rule.key in table:
                log.error(
                    f"Skipping quirk {entry_dir.name}: key {rule.key!r} "
                    f"already defined by {table[rule.key].name}"
                )
                continue
            table[rule.key] = rule
            log.debug(f"Loaded quirk {rule.name} for {rule.key}")

        log.info(f"Loaded {len(table)} quirk(s) from {root}")
        return cls(table)

    def lookup(self, identity: str) -> QuirkAction:
        rule = self._rules.get(identity)
        if rule is None:
            return Default()
        return rule.action

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, identity: object) -> bool:
        return identity in self._rules
