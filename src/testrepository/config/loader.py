"""
testrepository — ``.testr.conf`` loader.

File: src/testrepository/config/loader.py
Last updated: 2026-10-19

Purpose
- Load the effective project config from ``.testr.conf``, ``TESTR_``
  environment variables and CLI overrides.

What should be included in this file
- Precedence logic: CLI > env (TESTR_) > file.
- INI loading via ``configparser`` (``[DEFAULT]`` section, no interpolation).
- Validation of placeholder/option pairs and of ``group_regex``.
- Deterministic JSON dump of the effective config.

Functional requirements
- ``test_command`` is required and non-empty.
- ``$IDOPTION`` requires ``test_id_option``; ``$LISTOPT`` requires
  ``test_list_option``.

Non-functional requirements
- Keep loading deterministic and free of side effects beyond reading files.
"""

from __future__ import annotations

import configparser
import json
import os
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Final

from testrepository.constants import CONFIG_FILENAME, ENV_PREFIX
from testrepository.errors import TestRepositoryError

DEFAULT_CONFIG_FILE: Final[str] = CONFIG_FILENAME
_SECTION: Final[str] = "DEFAULT"


class ConfigLoadError(TestRepositoryError, ValueError):
    """Raised when config cannot be loaded or fails validation."""


@dataclass(frozen=True, slots=True)
class TestrConfig:
    """Effective project configuration."""

    __test__ = False

    test_command: str
    test_id_option: str | None = None
    test_list_option: str | None = None
    test_id_list_default: str | None = None
    test_run_concurrency: str | None = None
    filter_tags: str | None = None
    group_regex: str | None = None
    instance_provision: str | None = None
    instance_execute: str | None = None
    instance_dispose: str | None = None

    @property
    def filter_tag_set(self) -> frozenset[str]:
        if not self.filter_tags:
            return frozenset()
        return frozenset(self.filter_tags.split())

    @property
    def group_pattern(self) -> re.Pattern[str] | None:
        if not self.group_regex:
            return None
        return re.compile(self.group_regex)

    @property
    def uses_instances(self) -> bool:
        return self.instance_provision is not None


CONFIG_KEYS: Final[tuple[str, ...]] = tuple(field.name for field in fields(TestrConfig))


def load_config(
    base_dir: str | Path = ".",
    *,
    config_path: str | Path | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> TestrConfig:
    """Load effective config with deterministic precedence: CLI > env > file."""

    resolved_path = _resolve_config_path(base_dir, config_path)
    env_map = dict(os.environ if environ is None else environ)

    merged: dict[str, str] = dict(_load_ini_file(resolved_path))
    merged.update(_collect_env_overrides(env_map))
    merged.update(_materialize_cli_overrides(cli_overrides or {}))

    return _validate(merged, source=resolved_path)


def load_config_file(path: str | Path) -> TestrConfig:
    """Load config from a specific ``.testr.conf`` path, ignoring env and CLI."""

    resolved = Path(path)
    return _validate(_load_ini_file(resolved), source=resolved)


def dump_effective_config(config: TestrConfig) -> str:
    """Return deterministic JSON dump of the effective config."""

    payload = {key: value for key, value in asdict(config).items() if value is not None}
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _resolve_config_path(base_dir: str | Path, config_path: str | Path | None) -> Path:
    if config_path is not None:
        return Path(config_path)
    return Path(base_dir) / DEFAULT_CONFIG_FILE


def _load_ini_file(path: Path) -> dict[str, str]:
    if not path.exists():
        raise ConfigLoadError(f"no {DEFAULT_CONFIG_FILE} found at {path}")
    if not path.is_file():
        raise ConfigLoadError(f"config path is not a file: {path}")

    parser = configparser.ConfigParser(interpolation=None)
    try:
        with path.open("r", encoding="utf-8") as handle:
            parser.read_file(handle, source=str(path))
    except configparser.Error as exc:
        raise ConfigLoadError(f"invalid {DEFAULT_CONFIG_FILE} at {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    section = parser[_SECTION]
    return {key: section[key] for key in section if key in CONFIG_KEYS}


def _collect_env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key in CONFIG_KEYS:
        env_name = f"{ENV_PREFIX}{key.upper()}"
        if env_name in environ:
            overrides[key] = environ[env_name]
    return overrides


def _materialize_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, str]:
    materialized: dict[str, str] = {}
    for key, value in cli_overrides.items():
        if key not in CONFIG_KEYS:
            raise ConfigLoadError(f"unknown config override {key!r}")
        if value is None:
            continue
        materialized[key] = str(value)
    return materialized


def _validate(values: Mapping[str, str], *, source: Path) -> TestrConfig:
    test_command = values.get("test_command", "").strip()
    if not test_command:
        raise ConfigLoadError(f"no test_command option in {source}")
    if "$IDOPTION" in test_command and not values.get("test_id_option"):
        raise ConfigLoadError("test_command uses $IDOPTION but test_id_option is not configured")
    if "$LISTOPT" in test_command and not values.get("test_list_option"):
        raise ConfigLoadError(
            "test_command uses $LISTOPT but test_list_option is not configured"
        )

    group_regex = values.get("group_regex")
    if group_regex:
        try:
            re.compile(group_regex)
        except re.error as exc:
            raise ConfigLoadError(f"invalid group_regex {group_regex!r}: {exc}") from exc

    optional = {key: values[key] for key in CONFIG_KEYS if key != "test_command" and key in values}
    return TestrConfig(test_command=test_command, **optional)


__all__ = [
    "CONFIG_KEYS",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "TestrConfig",
    "dump_effective_config",
    "load_config",
    "load_config_file",
]
