"""Dataclass domain models for test events, per-test results and runs."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType


class TestStatus(StrEnum):
    """Lifecycle status carried by one test event.

    Values are the subunit v2 status tokens, except ``ERROR`` which has no
    distinct token on the wire and is written as ``fail``.
    """

    __test__ = False

    EXISTS = "exists"
    RUNNING = "inprogress"
    SUCCESS = "success"
    FAILURE = "fail"
    ERROR = "error"
    SKIPPED = "skip"
    XFAIL = "xfail"
    UXSUCCESS = "uxsuccess"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in _FAILURE_STATUSES

    @property
    def is_success(self) -> bool:
        """Statuses that clear a test from the rolling failing-set."""

        return self in _CLEARING_STATUSES

    @property
    def wire_status(self) -> str:
        if self is TestStatus.ERROR:
            return TestStatus.FAILURE.value
        return self.value

    @classmethod
    def from_wire(cls, value: str | None) -> TestStatus | None:
        if value is None or value == "unknown":
            return None
        try:
            return cls(value)
        except ValueError:
            return None


_TERMINAL_STATUSES = frozenset(
    {
        TestStatus.SUCCESS,
        TestStatus.FAILURE,
        TestStatus.ERROR,
        TestStatus.SKIPPED,
        TestStatus.XFAIL,
        TestStatus.UXSUCCESS,
    }
)
_FAILURE_STATUSES = frozenset({TestStatus.FAILURE, TestStatus.ERROR, TestStatus.UXSUCCESS})
_CLEARING_STATUSES = frozenset({TestStatus.SUCCESS, TestStatus.SKIPPED, TestStatus.XFAIL})
_PASSED_STATUSES = frozenset({TestStatus.SUCCESS, TestStatus.XFAIL})


@dataclass(frozen=True, slots=True)
class Attachment:
    """Named byte payload captured for a test, e.g. a traceback or stdout."""

    name: str
    data: bytes
    content_type: str | None = None

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class TestEvent:
    """One lifecycle transition as carried by an event stream.

    Every field is optional: streams may carry bare attachment chunks, tag
    updates or enumeration (``exists``) events.
    """

    __test__ = False

    test_id: str | None = None
    status: TestStatus | None = None
    timestamp: datetime | None = None
    tags: frozenset[str] = frozenset()
    attachment: Attachment | None = None
    eof: bool = False
    route_code: str | None = None


@dataclass(frozen=True, slots=True)
class TestResult:
    """Folded outcome of one test within a run."""

    __test__ = False

    test_id: str
    status: TestStatus
    start_time: datetime | None = None
    stop_time: datetime | None = None
    tags: frozenset[str] = frozenset()
    attachments: Mapping[str, Attachment] = field(default_factory=dict)

    @property
    def duration(self) -> float | None:
        if self.start_time is None or self.stop_time is None:
            return None
        seconds = (self.stop_time - self.start_time).total_seconds()
        return max(seconds, 0.0)

    def details(self) -> str:
        """Concatenated text of every attachment, in insertion order."""

        return "".join(attachment.text() for attachment in self.attachments.values())


@dataclass(frozen=True, slots=True)
class Run:
    """One execution session, immutable once committed.

    ``id`` is ``None`` until the repository assigns one at commit time.
    ``filter_tags`` excludes tests carrying any of those tags from the counts
    and the failing ids while keeping them in ``results`` and the payload.
    """

    results: Mapping[str, TestResult]
    payload: bytes = b""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: int | None = None
    partial: bool = False
    filter_tags: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if self.id is not None and self.id < 0:
            raise ValueError("Run.id must be >= 0")
        if not isinstance(self.results, MappingProxyType):
            object.__setattr__(self, "results", MappingProxyType(dict(self.results)))

    def with_id(self, run_id: int) -> Run:
        return replace(self, id=run_id)

    def counted_results(self) -> list[TestResult]:
        if not self.filter_tags:
            return list(self.results.values())
        return [result for result in self.results.values() if not result.tags & self.filter_tags]

    @property
    def passed(self) -> int:
        return sum(1 for result in self.counted_results() if result.status in _PASSED_STATUSES)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.counted_results() if result.status.is_failure)

    @property
    def skipped(self) -> int:
        return sum(1 for result in self.counted_results() if result.status is TestStatus.SKIPPED)

    @property
    def total(self) -> int:
        return len(self.counted_results())

    @property
    def failing_ids(self) -> tuple[str, ...]:
        return tuple(
            sorted(result.test_id for result in self.counted_results() if result.status.is_failure)
        )

    @property
    def is_failing(self) -> bool:
        return bool(self.failing_ids)

    @property
    def durations(self) -> dict[str, float]:
        table: dict[str, float] = {}
        for test_id, result in self.results.items():
            duration = result.duration
            if duration is not None:
                table[test_id] = duration
        return table

    @property
    def total_duration(self) -> float | None:
        durations = self.durations
        if not durations:
            return None
        return sum(durations.values())

    @property
    def attachments(self) -> dict[str, Mapping[str, Attachment]]:
        return {
            test_id: result.attachments
            for test_id, result in self.results.items()
            if result.attachments
        }


__all__ = [
    "Attachment",
    "Run",
    "TestEvent",
    "TestResult",
    "TestStatus",
]
