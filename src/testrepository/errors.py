"""Error hierarchy for repository and run-level failures.

Structural repository errors are fatal and surface before any work starts.
Per-worker and per-test failures are folded into a run's own accounting and
never reach this hierarchy as raised exceptions.
"""

from __future__ import annotations

from pathlib import Path


class TestRepositoryError(Exception):
    """Base class for all errors raised by this package."""

    __test__ = False


class NotARepositoryError(TestRepositoryError):
    """The directory has no usable repository format marker."""

    def __init__(self, path: Path | str, reason: str = "no repository found") -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{reason} at {self.path}")


class UnsupportedFormatError(NotARepositoryError):
    """The format marker exists but names a version this code cannot read."""

    def __init__(self, path: Path | str, found: str) -> None:
        self.found = found
        super().__init__(path, f"unsupported repository format {found!r}")


class AlreadyExistsError(TestRepositoryError):
    """``initialize`` was asked to create a repository where one exists."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        super().__init__(f"repository already exists at {self.path}")


class EmptyRepositoryError(TestRepositoryError):
    """A query needs at least one committed run and there is none."""

    def __init__(self) -> None:
        super().__init__("no test runs in repository")


class RunNotFoundError(TestRepositoryError):
    """The requested run id was never committed or has been removed."""

    def __init__(self, run_id: int) -> None:
        self.run_id = run_id
        super().__init__(f"run {run_id} not found")


class CorruptRunError(TestRepositoryError):
    """A persisted run payload could not be decoded."""

    def __init__(self, name: str, detail: str) -> None:
        self.name = name
        self.detail = detail
        super().__init__(f"run {name} is corrupt: {detail}")


__all__ = [
    "AlreadyExistsError",
    "CorruptRunError",
    "EmptyRepositoryError",
    "NotARepositoryError",
    "RunNotFoundError",
    "TestRepositoryError",
    "UnsupportedFormatError",
]
