"""
testrepository — subunit v2 event codec

File: src/testrepository/repository/codec.py
Last updated: 2026-10-19

Purpose
- Translate between subunit v2 byte streams and ``TestEvent`` values.

Functional requirements
- The wire format is owned by ``python-subunit``; this module never frames
  packets itself, so stored payloads stay readable by any other subunit
  consumer.
- Non-subunit bytes interleaved with packets are surfaced as attachment
  events named ``stdout`` instead of being treated as corruption.
- Framing errors (bad CRC, truncated packet) raise ``CorruptRunError``.
"""

from __future__ import annotations

import io
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from typing import IO, Final

import subunit
import testtools

from testrepository.domain.models import Attachment, TestEvent, TestResult, TestStatus
from testrepository.errors import CorruptRunError

NON_SUBUNIT_ATTACHMENT: Final[str] = "stdout"
_PARSER_TEST_ID: Final[str] = "subunit.parser"
_CHUNK_SIZE: Final[int] = 64 * 1024


class _EventCollector(testtools.StreamResult):
    """StreamResult that records every status call as a ``TestEvent``."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[TestEvent] = []
        self.parse_errors: list[str] = []

    def status(
        self,
        test_id: str | None = None,
        test_status: str | None = None,
        test_tags: set[str] | None = None,
        runnable: bool = True,
        file_name: str | None = None,
        file_bytes: bytes | None = None,
        eof: bool = False,
        mime_type: str | None = None,
        route_code: str | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        if test_id == _PARSER_TEST_ID:
            if file_name == "Parser Error" and file_bytes:
                self.parse_errors.append(bytes(file_bytes).decode("utf-8", errors="replace"))
            elif test_status == "fail" and not self.parse_errors:
                self.parse_errors.append("unparseable subunit packet")
            return

        attachment = None
        if file_name is not None:
            attachment = Attachment(
                name=file_name,
                data=bytes(file_bytes or b""),
                content_type=mime_type,
            )
        self.events.append(
            TestEvent(
                test_id=test_id,
                status=TestStatus.from_wire(test_status),
                timestamp=timestamp,
                tags=frozenset(test_tags or ()),
                attachment=attachment,
                eof=eof,
                route_code=route_code,
            )
        )


def read_events(
    source: IO[bytes],
    *,
    name: str = "stream",
    non_subunit_name: str | None = NON_SUBUNIT_ATTACHMENT,
) -> list[TestEvent]:
    """Decode every event from a binary file object until EOF."""

    collector = _EventCollector()
    parser = subunit.ByteStreamToStreamResult(source, non_subunit_name=non_subunit_name)
    collector.startTestRun()
    try:
        parser.run(collector)
    finally:
        collector.stopTestRun()
    if collector.parse_errors:
        raise CorruptRunError(name, collector.parse_errors[0])
    return collector.events


def decode_events(
    payload: bytes,
    *,
    name: str = "stream",
    non_subunit_name: str | None = NON_SUBUNIT_ATTACHMENT,
) -> list[TestEvent]:
    return read_events(io.BytesIO(payload), name=name, non_subunit_name=non_subunit_name)


def encode_events(events: Iterable[TestEvent]) -> bytes:
    """Encode events as subunit v2 packets."""

    buffer = io.BytesIO()
    writer = subunit.StreamResultToBytes(buffer)
    for event in events:
        _write_event(writer, event)
    return buffer.getvalue()


def encode_results(
    results: Iterable[TestResult],
    *,
    extra_tags: frozenset[str] = frozenset(),
    route_code: str | None = None,
) -> bytes:
    """Encode folded results as a minimal, replayable event sequence."""

    return encode_events(_result_events(results, extra_tags=extra_tags, route_code=route_code))


def _result_events(
    results: Iterable[TestResult],
    *,
    extra_tags: frozenset[str],
    route_code: str | None,
) -> Iterator[TestEvent]:
    for result in results:
        tags = result.tags | extra_tags
        yield TestEvent(
            test_id=result.test_id,
            status=TestStatus.RUNNING,
            timestamp=result.start_time,
            tags=tags,
            route_code=route_code,
        )
        for attachment in result.attachments.values():
            yield from _chunk_attachment(result.test_id, attachment, route_code=route_code)
        yield TestEvent(
            test_id=result.test_id,
            status=result.status,
            timestamp=result.stop_time,
            tags=tags,
            route_code=route_code,
        )


def _chunk_attachment(
    test_id: str,
    attachment: Attachment,
    *,
    route_code: str | None,
) -> Iterator[TestEvent]:
    data = attachment.data
    offsets = range(0, max(len(data), 1), _CHUNK_SIZE)
    last = offsets[-1]
    for offset in offsets:
        yield TestEvent(
            test_id=test_id,
            attachment=Attachment(
                name=attachment.name,
                data=data[offset : offset + _CHUNK_SIZE],
                content_type=attachment.content_type,
            ),
            eof=offset == last,
            route_code=route_code,
        )


def _write_event(writer: subunit.StreamResultToBytes, event: TestEvent) -> None:
    file_name = None
    file_bytes = None
    mime_type = None
    if event.attachment is not None:
        file_name = event.attachment.name
        file_bytes = event.attachment.data
        mime_type = event.attachment.content_type
    writer.status(
        test_id=event.test_id,
        test_status=event.status.wire_status if event.status is not None else None,
        test_tags=set(event.tags) if event.tags else None,
        file_name=file_name,
        file_bytes=file_bytes,
        eof=event.eof,
        mime_type=mime_type,
        route_code=event.route_code,
        timestamp=_aware(event.timestamp),
    )


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=UTC)
    return value


__all__ = [
    "NON_SUBUNIT_ATTACHMENT",
    "decode_events",
    "encode_events",
    "encode_results",
    "read_events",
]
