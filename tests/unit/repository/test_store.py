"""
testrepository — unit tests for the run repository

File: tests/unit/repository/test_store.py
Last updated: 2026-10-19

Purpose
- Validate the on-disk contract of ``.testrepository`` and the commit,
  lookup, failing-set and crash-recovery behavior of ``Repository``.

Functional requirements
- Offline; every test works in its own ``tmp_path``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from testrepository.control_plane.aggregator import fold_events
from testrepository.domain.models import Run, TestResult, TestStatus
from testrepository.errors import (
    AlreadyExistsError,
    EmptyRepositoryError,
    NotARepositoryError,
    RunNotFoundError,
    UnsupportedFormatError,
)
from testrepository.repository.codec import decode_events
from testrepository.repository.store import (
    initialize,
    open_or_initialize,
    open_repository,
    repository_path,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from testrepository.repository.store import Repository

PASS = TestStatus.SUCCESS
FAIL = TestStatus.FAILURE


def _run(stream_builder: Callable[..., bytes], outcomes: dict[str, TestStatus], **kwargs) -> Run:
    payload = stream_builder(outcomes, **kwargs)
    return fold_events(decode_events(payload), payload=payload)


@pytest.mark.unit
def test_initialize_writes_format_marker_and_counter(tmp_path: Path) -> None:
    repository = initialize(tmp_path)

    assert repository.path == tmp_path / ".testrepository"
    assert (repository.path / "format").read_bytes() == b"1\n"
    assert (repository.path / "next-stream").read_bytes() == b"0\n"
    assert repository.count() == 0
    assert list(repository.all_runs()) == []


@pytest.mark.unit
def test_initialize_refuses_existing_repository(tmp_path: Path) -> None:
    initialize(tmp_path)

    with pytest.raises(AlreadyExistsError):
        initialize(tmp_path)


@pytest.mark.unit
def test_open_requires_a_format_marker(tmp_path: Path) -> None:
    with pytest.raises(NotARepositoryError):
        open_repository(tmp_path)


@pytest.mark.unit
def test_open_rejects_unknown_format_version(tmp_path: Path) -> None:
    path = repository_path(tmp_path)
    path.mkdir()
    (path / "format").write_text("2\n", encoding="utf-8")
    (path / "next-stream").write_text("0\n", encoding="utf-8")

    with pytest.raises(UnsupportedFormatError) as excinfo:
        open_repository(tmp_path)

    assert excinfo.value.found == "2"


@pytest.mark.unit
def test_open_or_initialize_only_creates_when_forced(tmp_path: Path) -> None:
    with pytest.raises(NotARepositoryError):
        open_or_initialize(tmp_path)

    repository = open_or_initialize(tmp_path, force_init=True)
    again = open_or_initialize(tmp_path, force_init=True)

    assert repository.path == again.path


@pytest.mark.unit
def test_latest_on_empty_repository_raises(repo: Repository) -> None:
    with pytest.raises(EmptyRepositoryError):
        repo.latest()


@pytest.mark.unit
def test_get_run_unknown_id_raises(repo: Repository) -> None:
    with pytest.raises(RunNotFoundError):
        repo.get_run(5)


@pytest.mark.unit
def test_commit_round_trip_preserves_counts_failures_and_durations(
    repo: Repository,
    stream_builder: Callable[..., bytes],
) -> None:
    run = _run(
        stream_builder,
        {"t0": PASS, "t1": FAIL, "t2": PASS, "t3": TestStatus.SKIPPED},
        durations={"t0": 0.5, "t1": 1.25},
        details={"t1": "Traceback: AssertionError\n"},
    )

    run_id = repo.commit(run)
    stored = repo.latest()

    assert run_id == 0
    assert stored.id == 0
    assert (repo.path / "0").read_bytes() == run.payload
    assert (stored.total, stored.passed, stored.failed, stored.skipped) == (4, 2, 1, 1)
    assert stored.failing_ids == ("t1",)
    assert stored.durations == pytest.approx(run.durations)
    assert "AssertionError" in stored.results["t1"].details()
    assert stored.timestamp == run.timestamp


@pytest.mark.unit
def test_run_ids_are_monotonic_without_gaps(
    repo: Repository,
    stream_builder: Callable[..., bytes],
) -> None:
    ids = []
    for index in range(5):
        ids.append(repo.commit(_run(stream_builder, {f"t{index}": PASS})))
        assert list(repo.all_runs()) == list(range(index + 1))

    assert ids == [0, 1, 2, 3, 4]
    assert repo.next_run_id() == 5
    assert (repo.path / "next-stream").read_text(encoding="utf-8") == "5\n"


@pytest.mark.unit
def test_runs_without_payload_are_encoded_on_commit(repo: Repository) -> None:
    run = Run(
        results={
            "b": TestResult(test_id="b", status=TestStatus.SUCCESS),
            "a": TestResult(test_id="a", status=TestStatus.ERROR),
        }
    )

    repo.commit(run)
    stored = repo.get_run(0)

    assert set(stored.results) == {"a", "b"}
    assert stored.results["a"].status is TestStatus.FAILURE
    assert repo.failing_set() == {"a"}


@pytest.mark.unit
def test_replacing_commit_resets_failing_set(
    repo: Repository,
    stream_builder: Callable[..., bytes],
) -> None:
    repo.commit(_run(stream_builder, {"t0": PASS, "t1": FAIL}))
    repo.commit(_run(stream_builder, {"t2": FAIL}))

    assert repo.failing_set() == {"t2"}


@pytest.mark.unit
def test_partial_commit_adds_new_failures_and_clears_passes(
    repo: Repository,
    stream_builder: Callable[..., bytes],
) -> None:
    repo.commit(_run(stream_builder, {"t0": PASS, "t1": FAIL, "t3": FAIL}))

    repo.commit(_run(stream_builder, {"t1": PASS, "t2": FAIL}), partial=True)

    assert repo.failing_set() == {"t2", "t3"}


@pytest.mark.unit
def test_partial_commit_is_idempotent_for_the_failing_set(
    repo: Repository,
    stream_builder: Callable[..., bytes],
) -> None:
    repo.commit(_run(stream_builder, {"t0": FAIL, "t1": FAIL}))
    partial = _run(stream_builder, {"t1": FAIL})

    repo.commit(partial, partial=True)
    first = repo.failing_set()
    repo.commit(partial, partial=True)

    assert repo.failing_set() == first == {"t0", "t1"}


@pytest.mark.unit
def test_failing_file_is_removed_once_nothing_fails(
    repo: Repository,
    stream_builder: Callable[..., bytes],
) -> None:
    repo.commit(_run(stream_builder, {"t0": FAIL}))
    assert (repo.path / "failing").exists()
    assert repo.failing_run().results["t0"].status is TestStatus.FAILURE

    repo.commit(_run(stream_builder, {"t0": PASS}))

    assert not (repo.path / "failing").exists()
    assert repo.failing_run().total == 0


@pytest.mark.unit
def test_commit_records_durations_in_timing_store(
    repo: Repository,
    stream_builder: Callable[..., bytes],
) -> None:
    repo.commit(_run(stream_builder, {"t0": PASS, "t1": FAIL}, durations={"t0": 2.0, "t1": 0.5}))

    assert repo.timing().get("t0") == pytest.approx(2.0)
    assert repo.timing().get("t1") == pytest.approx(0.5)


@pytest.mark.unit
def test_commit_can_leave_timings_to_the_caller(
    repo: Repository,
    stream_builder: Callable[..., bytes],
) -> None:
    repo.commit(_run(stream_builder, {"t0": PASS}, durations={"t0": 2.0}), record_timings=False)

    assert repo.timing().get("t0") is None
    assert repo.count() == 1


@pytest.mark.unit
def test_open_rolls_counter_forward_over_interrupted_commit(
    tmp_path: Path,
    stream_builder: Callable[..., bytes],
) -> None:
    repository = initialize(tmp_path)
    repository.commit(_run(stream_builder, {"t0": PASS}))
    # Run file renamed into place, counter never advanced.
    (repository.path / "1").write_bytes(stream_builder({"t1": PASS}))

    reopened = open_repository(tmp_path)

    assert (reopened.path / "next-stream").read_text(encoding="utf-8") == "2\n"
    assert list(reopened.all_runs()) == [0, 1]
    assert reopened.commit(_run(stream_builder, {"t2": PASS})) == 2


@pytest.mark.unit
def test_invalid_counter_is_reported_as_not_a_repository(tmp_path: Path) -> None:
    repository = initialize(tmp_path)
    (repository.path / "next-stream").write_text("banana\n", encoding="utf-8")

    with pytest.raises(NotARepositoryError):
        open_repository(tmp_path)


@pytest.mark.unit
def test_filter_tags_exclude_tagged_tests_from_counts(
    tmp_path: Path,
    stream_builder: Callable[..., bytes],
) -> None:
    initialize(tmp_path)
    repository = open_repository(tmp_path, filter_tags={"worker-0"})
    payload = stream_builder({"t0": PASS, "t1": FAIL}, tags={"worker-0"})
    payload += stream_builder({"t2": PASS})
    repository.commit(fold_events(decode_events(payload), payload=payload))

    stored = repository.latest()

    assert stored.total == 1
    assert stored.failed == 0
    assert set(stored.results) == {"t0", "t1", "t2"}
    assert repository.failing_set() == set()
