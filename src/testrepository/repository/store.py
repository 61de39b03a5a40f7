"""
testrepository — append-only run repository

File: src/testrepository/repository/store.py
Last updated: 2026-10-19

Purpose
- Own the ``.testrepository`` directory: the format marker, the
  ``next-stream`` counter, one subunit v2 file per committed run, the rolling
  ``failing`` stream and the timing database.

Functional requirements
- ``format`` holds ``1\\n`` and ``next-stream`` holds the decimal counter
  followed by a newline; run files are named by decimal id with no gaps.
- A run file is published under its final name in one step and never
  overwritten, so external readers never see a partial run.
- An interrupted commit (run file published, counter not yet advanced) is
  rolled forward on the next open or commit.
- Replacing commits make the run's failing ids the failing set. Partial
  commits add new failures and drop ids that now pass.

Non-functional requirements
- Run payloads are loaded lazily; listing ids never decodes a stream.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from testrepository.constants import (
    FAILING_FILENAME,
    FORMAT_FILENAME,
    FORMAT_VERSION,
    NEXT_STREAM_FILENAME,
    REPOSITORY_DIRNAME,
    TIMES_FILENAME,
)
from testrepository.control_plane.aggregator import fold_events
from testrepository.domain.models import Run, TestResult
from testrepository.errors import (
    AlreadyExistsError,
    EmptyRepositoryError,
    NotARepositoryError,
    RunNotFoundError,
    UnsupportedFormatError,
)
from testrepository.repository.codec import decode_events, encode_results
from testrepository.repository.timing import TimingStore
from testrepository.utils.fs import atomic_write, publish_exclusive

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)


def repository_path(base: Path | str) -> Path:
    return Path(base) / REPOSITORY_DIRNAME


def initialize(base: Path | str, *, filter_tags: Iterable[str] = ()) -> Repository:
    """Create an empty repository under ``base`` and return a handle to it."""

    path = repository_path(base)
    if (path / FORMAT_FILENAME).exists():
        raise AlreadyExistsError(path)
    path.mkdir(parents=True, exist_ok=True)
    atomic_write(path / FORMAT_FILENAME, f"{FORMAT_VERSION}\n")
    atomic_write(path / NEXT_STREAM_FILENAME, "0\n")
    logger.info("repository initialized", extra={"path": str(path)})
    return Repository(path, filter_tags=filter_tags)


def open_repository(base: Path | str, *, filter_tags: Iterable[str] = ()) -> Repository:
    """Open the repository under ``base`` after validating its format marker."""

    path = repository_path(base)
    marker = path / FORMAT_FILENAME
    if not marker.is_file():
        raise NotARepositoryError(path)
    try:
        found = marker.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as exc:
        raise NotARepositoryError(path, f"unreadable format marker ({exc})") from exc
    if found != FORMAT_VERSION:
        raise UnsupportedFormatError(path, found)

    repository = Repository(path, filter_tags=filter_tags)
    repository.recover()
    return repository


def open_or_initialize(
    base: Path | str,
    *,
    force_init: bool = False,
    filter_tags: Iterable[str] = (),
) -> Repository:
    if force_init and not (repository_path(base) / FORMAT_FILENAME).exists():
        return initialize(base, filter_tags=filter_tags)
    return open_repository(base, filter_tags=filter_tags)


class Repository:
    """Handle on one validated repository directory."""

    def __init__(self, path: Path | str, *, filter_tags: Iterable[str] = ()) -> None:
        self._path = Path(path)
        self._filter_tags = frozenset(filter_tags)
        self._timing = TimingStore(self._path / TIMES_FILENAME)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def base_path(self) -> Path:
        return self._path.parent

    @property
    def filter_tags(self) -> frozenset[str]:
        return self._filter_tags

    def timing(self) -> TimingStore:
        return self._timing

    # Counter -----------------------------------------------------------------

    def next_run_id(self) -> int:
        """Id the next commit will receive, skipping over orphaned run files."""

        return self._roll_forward(self._read_counter())

    def count(self) -> int:
        return sum(1 for _ in self.all_runs())

    def recover(self) -> int:
        """Persist a counter rolled forward over an interrupted commit."""

        with self._lock:
            stored = self._read_counter()
            recovered = self._roll_forward(stored)
            if recovered != stored:
                logger.warning(
                    "next-stream counter rolled forward",
                    extra={"stored": stored, "recovered": recovered},
                )
                atomic_write(self._path / NEXT_STREAM_FILENAME, f"{recovered}\n")
            return recovered

    def _read_counter(self) -> int:
        counter_path = self._path / NEXT_STREAM_FILENAME
        try:
            raw = counter_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError as exc:
            raise NotARepositoryError(self._path, "missing next-stream counter") from exc
        try:
            value = int(raw)
        except ValueError as exc:
            raise NotARepositoryError(self._path, f"invalid next-stream counter {raw!r}") from exc
        if value < 0:
            raise NotARepositoryError(self._path, f"invalid next-stream counter {raw!r}")
        return value

    def _roll_forward(self, run_id: int) -> int:
        while self._run_path(run_id).exists():
            run_id += 1
        return run_id

    def _run_path(self, run_id: int) -> Path:
        return self._path / str(run_id)

    # Runs --------------------------------------------------------------------

    def all_runs(self) -> Iterator[int]:
        """Committed run ids in ascending order, without decoding payloads."""

        upper = self.next_run_id()
        for run_id in range(upper):
            if self._run_path(run_id).exists():
                yield run_id

    def get_run(self, run_id: int) -> Run:
        run_path = self._run_path(run_id)
        try:
            payload = run_path.read_bytes()
        except FileNotFoundError as exc:
            raise RunNotFoundError(run_id) from exc
        run = fold_events(
            decode_events(payload, name=str(run_id)),
            payload=payload,
            run_id=run_id,
            filter_tags=self._filter_tags,
        )
        if not any(result.stop_time is not None for result in run.results.values()):
            mtime = datetime.fromtimestamp(run_path.stat().st_mtime, tz=UTC)
            run = replace(run, timestamp=mtime)
        return run

    def latest(self) -> Run:
        upper = self.next_run_id()
        if upper == 0:
            raise EmptyRepositoryError()
        return self.get_run(upper - 1)

    def commit(
        self,
        run: Run,
        *,
        partial: bool | None = None,
        record_timings: bool = True,
    ) -> int:
        """Persist ``run`` under the next id and update the failing set.

        ``partial`` defaults to ``run.partial``. ``record_timings=False`` skips
        the timing update for runs whose durations were recorded as they
        completed. Returns the assigned id.
        """

        is_partial = run.partial if partial is None else partial
        payload = run.payload or encode_results(
            sorted(run.results.values(), key=lambda result: result.test_id)
        )

        with self._lock:
            run_id = self._roll_forward(self._read_counter())
            while True:
                try:
                    publish_exclusive(self._run_path(run_id), payload)
                except FileExistsError:
                    run_id = self._roll_forward(run_id)
                    continue
                break
            atomic_write(self._path / NEXT_STREAM_FILENAME, f"{run_id + 1}\n")
            self._update_failing(run, partial=is_partial)

        if record_timings:
            self._timing.update_many(run.durations)
        logger.info(
            "run committed",
            extra={
                "run_id": run_id,
                "partial": is_partial,
                "tests": len(run.results),
                "failures": len(run.failing_ids),
            },
        )
        return run_id

    # Failing set -------------------------------------------------------------

    def failing_run(self) -> Run:
        """The rolling failing set as a run; empty when nothing is failing."""

        failing_path = self._path / FAILING_FILENAME
        try:
            payload = failing_path.read_bytes()
        except FileNotFoundError:
            return Run(results={}, filter_tags=self._filter_tags)
        return fold_events(
            decode_events(payload, name=FAILING_FILENAME),
            payload=payload,
            filter_tags=self._filter_tags,
        )

    def failing_set(self) -> set[str]:
        return set(self.failing_run().results)

    def _update_failing(self, run: Run, *, partial: bool) -> None:
        failing: dict[str, TestResult] = {}
        if partial:
            failing.update(self.failing_run().results)
        # Tests carrying a filter tag neither enter nor leave the failing set.
        filter_tags = run.filter_tags | self._filter_tags
        for result in run.results.values():
            if result.tags & filter_tags:
                continue
            if result.status.is_failure:
                failing[result.test_id] = result
            elif partial and result.status.is_success:
                failing.pop(result.test_id, None)
        self._write_failing(failing.values())

    def _write_failing(self, results: Iterable[TestResult]) -> None:
        failing_path = self._path / FAILING_FILENAME
        ordered = sorted(results, key=lambda result: result.test_id)
        if not ordered:
            failing_path.unlink(missing_ok=True)
            return
        atomic_write(failing_path, encode_results(ordered))


__all__ = [
    "Repository",
    "initialize",
    "open_or_initialize",
    "open_repository",
    "repository_path",
]
