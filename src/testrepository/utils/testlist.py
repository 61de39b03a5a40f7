"""Reading and writing newline-separated test id lists (``--load-list``)."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path


def parse_list(content: str | bytes) -> list[str]:
    """Return non-blank, stripped lines in order, dropping duplicates."""

    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    seen: set[str] = set()
    test_ids: list[str] = []
    for line in content.splitlines():
        test_id = line.strip()
        if not test_id or test_id in seen:
            continue
        seen.add(test_id)
        test_ids.append(test_id)
    return test_ids


def parse_list_file(path: Path | str) -> list[str]:
    return parse_list(Path(path).read_bytes())


def write_list(test_ids: Iterable[str]) -> str:
    return "".join(f"{test_id}\n" for test_id in test_ids)


__all__ = ["parse_list", "parse_list_file", "write_list"]
