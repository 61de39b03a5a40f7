"""Unit tests for the times.dbm timing store."""

from __future__ import annotations

import dbm
import math
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

import pytest

from testrepository.repository.timing import TimingStore

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.unit
def test_missing_database_reads_as_empty(tmp_path: Path) -> None:
    store = TimingStore(tmp_path / "times.dbm")

    assert store.get("t") is None
    assert store.get_many(["t", "u"]) == {}
    assert store.snapshot() == {}
    assert len(store) == 0


@pytest.mark.unit
def test_update_overwrites_previous_duration(tmp_path: Path) -> None:
    store = TimingStore(tmp_path / "times.dbm")

    store.update("pkg.test_a", 3.5)
    store.update("pkg.test_a", 1.25)

    assert store.get("pkg.test_a") == pytest.approx(1.25)


@pytest.mark.unit
def test_values_are_stored_as_decimal_text(tmp_path: Path) -> None:
    path = tmp_path / "times.dbm"
    TimingStore(path).update("pkg.test_ü", 1.5)

    with dbm.open(str(path), "r") as db:
        assert db["pkg.test_ü".encode()] == b"1.5"


@pytest.mark.unit
def test_update_many_skips_unusable_durations(tmp_path: Path) -> None:
    store = TimingStore(tmp_path / "times.dbm")

    store.update_many({"ok": 0.5, "nan": math.nan, "negative": -1.0, "inf": math.inf})

    assert store.snapshot() == {"ok": pytest.approx(0.5)}
    assert store.get_many(["ok", "nan", "missing"]) == {"ok": pytest.approx(0.5)}


@pytest.mark.unit
def test_concurrent_updates_are_not_lost(tmp_path: Path) -> None:
    store = TimingStore(tmp_path / "times.dbm")

    def record(index: int) -> None:
        store.update(f"test_{index}", float(index))

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(record, range(64)))

    snapshot = store.snapshot()
    assert len(snapshot) == 64
    assert snapshot["test_63"] == pytest.approx(63.0)
