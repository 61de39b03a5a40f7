"""
testrepository config package public API.

File: src/testrepository/config/__init__.py
Last updated: 2026-10-19

Purpose
- Export ``.testr.conf`` loading entrypoints and the config error type.

Functional requirements
- Support loading from ``.testr.conf`` + ``TESTR_`` env overrides.
- Fail fast with clear load errors.
"""

from testrepository.config.loader import (
    CONFIG_KEYS,
    DEFAULT_CONFIG_FILE,
    ConfigLoadError,
    TestrConfig,
    dump_effective_config,
    load_config,
    load_config_file,
)

__all__ = [
    "CONFIG_KEYS",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "TestrConfig",
    "dump_effective_config",
    "load_config",
    "load_config_file",
]
