"""Stable constants shared by the repository, scheduler and CLI."""

from __future__ import annotations

from typing import Final

# On-disk layout. These values are a compatibility contract with other
# implementations of the same directory format.
REPOSITORY_DIRNAME: Final[str] = ".testrepository"
FORMAT_FILENAME: Final[str] = "format"
FORMAT_VERSION: Final[str] = "1"
NEXT_STREAM_FILENAME: Final[str] = "next-stream"
FAILING_FILENAME: Final[str] = "failing"
TIMES_FILENAME: Final[str] = "times.dbm"

# Configuration.
CONFIG_FILENAME: Final[str] = ".testr.conf"
ENV_PREFIX: Final[str] = "TESTR_"

# Scheduling.
DEFAULT_TEST_WEIGHT: Final[float] = 1.0
WORKER_TAG_PREFIX: Final[str] = "worker-"
WORKER_CRASH_TAG: Final[str] = "testr:worker-crash"

__all__ = [
    "CONFIG_FILENAME",
    "DEFAULT_TEST_WEIGHT",
    "ENV_PREFIX",
    "FAILING_FILENAME",
    "FORMAT_FILENAME",
    "FORMAT_VERSION",
    "NEXT_STREAM_FILENAME",
    "REPOSITORY_DIRNAME",
    "TIMES_FILENAME",
    "WORKER_CRASH_TAG",
    "WORKER_TAG_PREFIX",
]
