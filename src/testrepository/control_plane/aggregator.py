"""
testrepository — result aggregation

File: src/testrepository/control_plane/aggregator.py
Last updated: 2026-10-19

Purpose
- Fold one or more event streams into a single ``Run``.

Functional requirements
- Per-test state machine: not started -> running -> terminal status.
- When one test id receives several terminal events, the last one observed
  wins, within one stream and across workers.
- Attachment chunks continue the previous chunk of the same name until an
  EOF chunk closes it; a chunk for a closed or different name replaces it.
- Each completed test's duration (terminal timestamp minus inprogress
  timestamp) is buffered and written to the timing store in one batch per
  fed stream; ``consume`` does that write off the event loop.

Concurrency
- ``feed`` is serialized by a lock. ``consume`` is the single reader of the
  channel that worker coroutines publish their streams to.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from testrepository.constants import WORKER_TAG_PREFIX
from testrepository.domain.models import Attachment, Run, TestEvent, TestResult, TestStatus

if TYPE_CHECKING:
    from collections.abc import Iterable

    from testrepository.repository.timing import TimingStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StreamMessage:
    """One unit on the aggregation channel.

    ``events is None`` marks the end of that worker's stream.
    """

    worker: int | None
    events: tuple[TestEvent, ...] | None


@dataclass(slots=True)
class _TestState:
    status: TestStatus | None = None
    start_time: datetime | None = None
    stop_time: datetime | None = None
    tags: set[str] = field(default_factory=set)
    chunks: dict[str, bytearray] = field(default_factory=dict)
    content_types: dict[str, str | None] = field(default_factory=dict)
    open_attachment: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status is not None and self.status.is_terminal


class ResultAggregator:
    """Thread-safe fold of test events into per-test results."""

    def __init__(
        self,
        *,
        timing: TimingStore | None = None,
        filter_tags: Iterable[str] = (),
    ) -> None:
        self._timing = timing
        self._filter_tags = frozenset(filter_tags)
        self._lock = threading.Lock()
        self._states: dict[str, _TestState] = {}
        self._event_count = 0
        self._pending_durations: dict[str, float] = {}

    @property
    def event_count(self) -> int:
        return self._event_count

    def feed(self, event: TestEvent, *, worker: int | None = None) -> None:
        with self._lock:
            self._event_count += 1
            if event.test_id is None:
                return
            state = self._states.setdefault(event.test_id, _TestState())
            if worker is not None:
                state.tags.add(f"{WORKER_TAG_PREFIX}{worker}")
            state.tags.update(event.tags)
            if event.attachment is not None:
                _apply_attachment(state, event.attachment, eof=event.eof)
            if event.status is not None:
                completed = _apply_status(state, event.status, event.timestamp, event.test_id)
                if completed is not None:
                    self._pending_durations[completed[0]] = completed[1]

    def feed_all(self, events: Iterable[TestEvent], *, worker: int | None = None) -> None:
        self._feed_many(events, worker=worker)
        self.flush_timings()

    def flush_timings(self) -> None:
        """Write buffered durations to the timing store in one update."""

        with self._lock:
            pending, self._pending_durations = self._pending_durations, {}
        if pending and self._timing is not None:
            self._timing.update_many(pending)

    def _feed_many(self, events: Iterable[TestEvent], *, worker: int | None) -> None:
        for event in events:
            self.feed(event, worker=worker)

    async def consume(self, channel: asyncio.Queue[StreamMessage], *, producers: int) -> None:
        """Drain ``channel`` until every producer has sent its end marker."""

        finished = 0
        while finished < producers:
            message = await channel.get()
            try:
                if message.events is None:
                    finished += 1
                    logger.debug("worker stream closed", extra={"worker": message.worker})
                else:
                    self._feed_many(message.events, worker=message.worker)
                    await asyncio.to_thread(self.flush_timings)
            finally:
                channel.task_done()

    def has_result(self, test_id: str) -> bool:
        with self._lock:
            state = self._states.get(test_id)
            return state is not None and state.terminal

    def results(self) -> dict[str, TestResult]:
        folded: dict[str, TestResult] = {}
        with self._lock:
            for test_id, state in self._states.items():
                status = state.status
                if status is None or not status.is_terminal:
                    continue
                folded[test_id] = _to_result(test_id, state, status)
        return folded

    def enumerated(self) -> list[str]:
        """Ids seen in any event, in first-seen order (``list-tests`` output)."""

        with self._lock:
            return list(self._states)

    def build_run(
        self,
        *,
        payload: bytes = b"",
        partial: bool = False,
        timestamp: datetime | None = None,
        run_id: int | None = None,
    ) -> Run:
        results = self.results()
        if timestamp is None:
            timestamp = _latest_timestamp(results.values())
        if timestamp is None:
            return Run(
                results=results,
                payload=payload,
                id=run_id,
                partial=partial,
                filter_tags=self._filter_tags,
            )
        return Run(
            results=results,
            payload=payload,
            timestamp=timestamp,
            id=run_id,
            partial=partial,
            filter_tags=self._filter_tags,
        )


def _apply_attachment(state: _TestState, attachment: Attachment, *, eof: bool) -> None:
    name = attachment.name
    if state.open_attachment == name and name in state.chunks:
        state.chunks[name].extend(attachment.data)
    else:
        state.chunks.pop(name, None)
        state.chunks[name] = bytearray(attachment.data)
    if attachment.content_type is not None or name not in state.content_types:
        state.content_types[name] = attachment.content_type
    state.open_attachment = None if eof else name


def _apply_status(
    state: _TestState,
    status: TestStatus,
    timestamp: datetime | None,
    test_id: str,
) -> tuple[str, float] | None:
    if status is TestStatus.RUNNING:
        state.start_time = timestamp
        state.stop_time = None
        if not state.terminal:
            state.status = status
        return None
    if status is TestStatus.EXISTS:
        if state.status is None:
            state.status = status
        return None

    if state.terminal and state.status is not status:
        logger.info(
            "conflicting terminal status; last event wins",
            extra={"test_id": test_id, "previous": str(state.status), "current": str(status)},
        )
    state.status = status
    state.stop_time = timestamp
    if state.start_time is None or timestamp is None:
        return None
    duration = (timestamp - state.start_time).total_seconds()
    if duration < 0:
        return None
    return (test_id, duration)


def _to_result(test_id: str, state: _TestState, status: TestStatus) -> TestResult:
    attachments = {
        name: Attachment(name=name, data=bytes(data), content_type=state.content_types.get(name))
        for name, data in state.chunks.items()
    }
    return TestResult(
        test_id=test_id,
        status=status,
        start_time=state.start_time,
        stop_time=state.stop_time,
        tags=frozenset(state.tags),
        attachments=attachments,
    )


def _latest_timestamp(results: Iterable[TestResult]) -> datetime | None:
    stamps = [result.stop_time for result in results if result.stop_time is not None]
    return max(stamps) if stamps else None


def fold_events(
    events: Iterable[TestEvent],
    *,
    payload: bytes = b"",
    run_id: int | None = None,
    filter_tags: Iterable[str] = (),
) -> Run:
    """Fold a single already-decoded stream without timing side effects."""

    aggregator = ResultAggregator(filter_tags=filter_tags)
    aggregator.feed_all(events)
    return aggregator.build_run(payload=payload, run_id=run_id)


__all__ = ["ResultAggregator", "StreamMessage", "fold_events"]
