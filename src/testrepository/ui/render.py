"""Output rendering for the testr CLI.

File: src/testrepository/ui/render.py
Last updated: 2026-10-19

Purpose
- Provide a thin rendering layer for command output: run summaries, id
  lists, timing tables and raw subunit bytes.

Functional requirements
- Text goes to the renderer's stream (stdout by default); log records never
  do, so ``--subunit`` output stays a clean byte stream.
- Output is deterministic plain text.
"""

from __future__ import annotations

import sys
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from testrepository.domain.models import Run


class CLIRenderer:
    """Thin CLI output renderer producing plain, deterministic text."""

    def __init__(self, *, stream: IO[str] | None = None) -> None:
        self._stream = stream

    @property
    def stream(self) -> IO[str]:
        return self._stream if self._stream is not None else sys.stdout

    def text(self, line: str) -> None:
        print(line, file=self.stream)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}", file=self.stream)

    def blank(self) -> None:
        print(file=self.stream)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        print(f"\n{title}", file=self.stream)

    def warning(self, text: str) -> None:
        print(f"  Warning: {text}", file=self.stream)

    def items(self, entries: Sequence[str], *, prefix: str = "  ") -> None:
        for entry in entries:
            print(f"{prefix}{entry}", file=self.stream)

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(list(headers))}", file=self.stream)
        print(f"  {'  '.join('-' * w for w in widths)}", file=self.stream)
        for row in rows:
            print(f"  {_pad(list(row))}", file=self.stream)

    def run_summary(self, run: Run, *, label: str = "Test run") -> None:
        """Print the counts block shared by ``last``, ``run`` and ``load``."""

        self.kv(label, run.id if run.id is not None else "(uncommitted)")
        self.kv("Timestamp", run.timestamp.isoformat())
        self.kv("Total tests", run.total)
        self.kv("Passed", run.passed)
        self.kv("Failed", run.failed)
        if run.skipped:
            self.kv("Skipped", run.skipped)
        total_duration = run.total_duration
        if total_duration is not None:
            self.kv("Total time", f"{total_duration:.3f}s")

    def failures(self, run: Run, *, details: bool = True) -> None:
        """Print the attachment text of every failing test, then the id list."""

        failing = run.failing_ids
        if not failing:
            return
        if details:
            for test_id in failing:
                text = run.results[test_id].details().rstrip()
                self.section(f"FAIL: {test_id}")
                if text:
                    self.text(text)
        self.section("Failed tests:")
        self.items(failing)

    def write_bytes(self, data: bytes) -> None:
        """Write raw bytes (a subunit stream) to the underlying binary buffer."""

        stream = self.stream
        stream.flush()
        buffer = getattr(stream, "buffer", None)
        if buffer is None:
            stream.write(data.decode("utf-8", errors="replace"))
            return
        buffer.write(data)
        buffer.flush()


def create_renderer(*, stream: IO[str] | None = None) -> CLIRenderer:
    """Create a CLI renderer writing to ``stream`` (stdout when omitted)."""

    return CLIRenderer(stream=stream)


__all__ = ["CLIRenderer", "create_renderer"]
