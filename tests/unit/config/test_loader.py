"""
testrepository — unit tests for the ``.testr.conf`` loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-19

Purpose
- Validate INI loading, precedence (CLI > env > file) and placeholder checks.

What this test file should cover
- Required ``test_command`` and the ``$IDOPTION``/``$LISTOPT`` pairings.
- ``TESTR_`` environment overrides and CLI overrides.
- Deterministic effective config dumps.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from testrepository.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    load_config_file,
)


def _write_config(directory: Path, text: str) -> Path:
    path = directory / ".testr.conf"
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.unit
def test_loads_default_section(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        "[DEFAULT]\n"
        "test_command=python -m subunit.run $IDOPTION $LISTOPT discover\n"
        "test_id_option=--load-list $IDFILE\n"
        "test_list_option=--list\n"
        "filter_tags=worker-0 flaky\n"
        "group_regex=([^.]+\\.)+\n",
    )

    config = load_config(tmp_path, environ={})

    assert config.test_command.startswith("python -m subunit.run")
    assert config.test_id_option == "--load-list $IDFILE"
    assert config.filter_tag_set == frozenset({"worker-0", "flaky"})
    assert config.group_pattern is not None
    assert config.uses_instances is False


@pytest.mark.unit
def test_percent_signs_are_not_interpolated(tmp_path: Path) -> None:
    _write_config(tmp_path, "[DEFAULT]\ntest_command=printf '%s\\n' a\n")

    assert load_config(tmp_path, environ={}).test_command == "printf '%s\\n' a"


@pytest.mark.unit
def test_precedence_is_cli_then_env_then_file(tmp_path: Path) -> None:
    _write_config(tmp_path, "[DEFAULT]\ntest_command=from-file\nfilter_tags=file\n")

    env_only = load_config(tmp_path, environ={"TESTR_TEST_COMMAND": "from-env"})
    both = load_config(
        tmp_path,
        environ={"TESTR_TEST_COMMAND": "from-env"},
        cli_overrides={"test_command": "from-cli", "group_regex": None},
    )

    assert env_only.test_command == "from-env"
    assert env_only.filter_tags == "file"
    assert both.test_command == "from-cli"
    assert both.group_regex is None


@pytest.mark.unit
def test_explicit_config_path(tmp_path: Path) -> None:
    other = tmp_path / "elsewhere"
    other.mkdir()
    path = _write_config(other, "[DEFAULT]\ntest_command=run\n")

    assert load_config(tmp_path, config_path=path, environ={}).test_command == "run"
    assert load_config_file(path).test_command == "run"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("[DEFAULT]\nfilter_tags=x\n", "no test_command"),
        ("[DEFAULT]\ntest_command=run $IDOPTION\n", "test_id_option"),
        ("[DEFAULT]\ntest_command=run $LISTOPT\n", "test_list_option"),
        ("[DEFAULT]\ntest_command=run\ngroup_regex=(\n", "group_regex"),
        ("test_command=run\n", "invalid"),
    ],
)
def test_invalid_configs_are_rejected(tmp_path: Path, text: str, message: str) -> None:
    _write_config(tmp_path, text)

    with pytest.raises(ConfigLoadError, match=message):
        load_config(tmp_path, environ={})


@pytest.mark.unit
def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="no .testr.conf"):
        load_config(tmp_path, environ={})


@pytest.mark.unit
def test_unknown_cli_override_is_rejected(tmp_path: Path) -> None:
    _write_config(tmp_path, "[DEFAULT]\ntest_command=run\n")

    with pytest.raises(ConfigLoadError, match="unknown config override"):
        load_config(tmp_path, environ={}, cli_overrides={"parallel": 3})


@pytest.mark.unit
def test_effective_config_dump_is_deterministic(tmp_path: Path) -> None:
    _write_config(tmp_path, "[DEFAULT]\ntest_list_option=--list\ntest_command=run $LISTOPT\n")

    first = dump_effective_config(load_config(tmp_path, environ={}))
    second = dump_effective_config(load_config(tmp_path, environ={}))

    assert first == second
    assert json.loads(first) == {"test_command": "run $LISTOPT", "test_list_option": "--list"}
