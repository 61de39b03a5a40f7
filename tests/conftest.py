"""Shared fixtures: tmp repositories, stream builders and in-process workers."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Collection, Mapping, Sequence
from datetime import UTC, datetime, timedelta

import pytest

from testrepository.control_plane.executor import WorkerLaunchError, WorkerOutput
from testrepository.domain.models import Attachment, TestEvent, TestStatus
from testrepository.repository.codec import encode_events
from testrepository.repository.store import Repository, initialize

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
DEFAULT_DURATION = 0.01

Outcome = Callable[[str, frozenset[str]], TestStatus]


def build_events(
    outcomes: Mapping[str, TestStatus],
    durations: Mapping[str, float] | None = None,
    *,
    tags: Collection[str] = (),
    details: Mapping[str, str] | None = None,
) -> list[TestEvent]:
    """inprogress / optional traceback / terminal events for each id, back to back."""

    tag_set = frozenset(tags)
    clock = BASE_TIME
    events: list[TestEvent] = []
    for test_id, status in outcomes.items():
        events.append(
            TestEvent(test_id=test_id, status=TestStatus.RUNNING, timestamp=clock, tags=tag_set)
        )
        text = (details or {}).get(test_id)
        if text is not None:
            events.append(
                TestEvent(
                    test_id=test_id,
                    attachment=Attachment(
                        name="traceback",
                        data=text.encode("utf-8"),
                        content_type="text/x-traceback;charset=utf8",
                    ),
                    eof=True,
                )
            )
        clock = clock + timedelta(seconds=(durations or {}).get(test_id, DEFAULT_DURATION))
        events.append(TestEvent(test_id=test_id, status=status, timestamp=clock, tags=tag_set))
    return events


def build_stream(
    outcomes: Mapping[str, TestStatus],
    durations: Mapping[str, float] | None = None,
    **kwargs: object,
) -> bytes:
    return encode_events(build_events(outcomes, durations, **kwargs))  # type: ignore[arg-type]


class FakeExecutor:
    """In-process worker that answers with real subunit v2 bytes.

    ``outcome(test_id, present)`` decides each status from the full set of ids
    handed to that worker, so interactions between tests can be scripted.
    ``order_sensitive`` passes only the ids that ran before the current one.
    ``preamble`` is written ahead of the subunit bytes, like a runner banner.
    """

    def __init__(
        self,
        *,
        default_ids: Sequence[str] = (),
        outcome: Outcome | None = None,
        durations: Mapping[str, float] | None = None,
        crash_on: Collection[str] = (),
        launch_failures: Collection[str] = (),
        error_on: Collection[str] = (),
        order_sensitive: bool = False,
        preamble: bytes = b"",
    ) -> None:
        self.default_ids = tuple(default_ids)
        self.outcome = outcome
        self.durations = dict(durations or {})
        self.crash_on = frozenset(crash_on)
        self.launch_failures = frozenset(launch_failures)
        self.error_on = frozenset(error_on)
        self.order_sensitive = order_sensitive
        self.preamble = preamble
        self.outputs: dict[int, bytes] = {}
        self.calls: list[tuple[tuple[str, ...] | None, int, str | None]] = []
        self.max_in_flight = 0
        self._in_flight = 0

    async def execute(
        self,
        test_ids: Sequence[str] | None,
        *,
        worker: int,
        instance: str | None = None,
    ) -> WorkerOutput:
        self.calls.append((tuple(test_ids) if test_ids is not None else None, worker, instance))
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            await asyncio.sleep(0)
            ids = list(test_ids) if test_ids is not None else list(self.default_ids)
            if self.launch_failures.intersection(ids):
                raise WorkerLaunchError("fake-runner", "No such file or directory")
            if self.error_on.intersection(ids):
                raise RuntimeError("fake executor exploded")

            present = frozenset(ids)
            outcomes: dict[str, TestStatus] = {}
            returncode = 0
            for position, test_id in enumerate(ids):
                if self.order_sensitive:
                    present = frozenset(ids[:position])
                if test_id in self.crash_on:
                    returncode = -9
                    break
                status = (
                    self.outcome(test_id, present)
                    if self.outcome is not None
                    else TestStatus.SUCCESS
                )
                outcomes[test_id] = status
                if status.is_failure:
                    returncode = 1
            await asyncio.sleep(0)
            stream = self.preamble + build_stream(outcomes, self.durations)
            self.outputs[worker] = stream
            return WorkerOutput(
                stream=stream,
                returncode=returncode,
                stderr=b"Killed\n" if returncode < 0 else b"",
            )
        finally:
            self._in_flight -= 1


class FakeProvisioner:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.provisioned: list[list[str]] = []
        self.disposed: list[list[str]] = []

    async def provision(self, count: int) -> list[str]:
        if self.fail:
            raise WorkerLaunchError("provision", "quota exceeded")
        instances = [f"inst-{index}" for index in range(count)]
        self.provisioned.append(instances)
        return instances

    async def dispose(self, instance_ids: Sequence[str]) -> None:
        self.disposed.append(list(instance_ids))


@pytest.fixture
def repo(tmp_path) -> Repository:
    return initialize(tmp_path)


@pytest.fixture
def stream_builder() -> Callable[..., bytes]:
    return build_stream


@pytest.fixture
def events_builder() -> Callable[..., list[TestEvent]]:
    return build_events


@pytest.fixture
def executor_factory() -> type[FakeExecutor]:
    return FakeExecutor


@pytest.fixture
def provisioner_factory() -> type[FakeProvisioner]:
    return FakeProvisioner
