"""
testrepository — per-test timing database

File: src/testrepository/repository/timing.py
Last updated: 2026-10-19

Purpose
- Persist the most recent observed duration of every test id in
  ``times.dbm`` so the scheduler can weight partitions.

Functional requirements
- Keys are UTF-8 test ids, values are decimal seconds as text; files written
  by other implementations of the repository format stay readable.
- ``update`` overwrites; there is no smoothing.
- Concurrent in-process updates are serialized and never lost.

Non-functional requirements
- The database is opened per operation so external readers never block on a
  long-lived handle.
"""

from __future__ import annotations

import dbm
import importlib
import importlib.util
import logging
import math
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _backend() -> Any:
    # gdbm is the historical on-disk flavour; ``dbm.open`` picks whatever the
    # interpreter defaults to, which is not guaranteed to be gdbm.
    if importlib.util.find_spec("_gdbm") is not None:
        return importlib.import_module("dbm.gnu")
    return dbm


class TimingStore:
    """Test id to last-observed duration mapping, persisted as a dbm file."""

    __slots__ = ("_lock", "_path")

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, test_id: str) -> float | None:
        with self._lock:
            if not self._present():
                return None
            with dbm.open(str(self._path), "r") as db:
                raw = db.get(test_id.encode("utf-8"))
        return _decode_duration(raw)

    def get_many(self, test_ids: Iterable[str]) -> dict[str, float]:
        wanted = list(test_ids)
        with self._lock:
            if not wanted or not self._present():
                return {}
            with dbm.open(str(self._path), "r") as db:
                raw_values = {test_id: db.get(test_id.encode("utf-8")) for test_id in wanted}
        found: dict[str, float] = {}
        for test_id, raw in raw_values.items():
            duration = _decode_duration(raw)
            if duration is not None:
                found[test_id] = duration
        return found

    def update(self, test_id: str, duration: float) -> None:
        self.update_many({test_id: duration})

    def update_many(self, durations: Mapping[str, float]) -> None:
        entries = {
            test_id: _encode_duration(duration)
            for test_id, duration in durations.items()
            if _valid_duration(duration)
        }
        if not entries:
            return
        with self._lock:
            with _backend().open(str(self._path), "c") as db:
                for test_id, value in entries.items():
                    db[test_id.encode("utf-8")] = value
        logger.debug("timing store updated", extra={"updated": len(entries)})

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            if not self._present():
                return {}
            with dbm.open(str(self._path), "r") as db:
                raw_items = [(key, db[key]) for key in db.keys()]
        table: dict[str, float] = {}
        for key, raw in raw_items:
            duration = _decode_duration(raw)
            if duration is not None:
                table[key.decode("utf-8", errors="replace")] = duration
        return table

    def __len__(self) -> int:
        return len(self.snapshot())

    def _present(self) -> bool:
        return dbm.whichdb(str(self._path)) is not None


def _valid_duration(duration: float) -> bool:
    return math.isfinite(duration) and duration >= 0


def _encode_duration(duration: float) -> bytes:
    return repr(float(duration)).encode("ascii")


def _decode_duration(raw: bytes | None) -> float | None:
    if raw is None:
        return None
    try:
        duration = float(raw.decode("ascii"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not _valid_duration(duration):
        return None
    return duration


__all__ = ["TimingStore"]
