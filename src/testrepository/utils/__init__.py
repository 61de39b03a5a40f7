"""Utility exports for filesystem, test-list and concurrency helpers."""

from testrepository.utils.concurrency import BoundedSemaphore, CancellationToken, WorkerPool
from testrepository.utils.fs import atomic_write, publish_exclusive
from testrepository.utils.testlist import parse_list, parse_list_file, write_list

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "atomic_write",
    "parse_list",
    "parse_list_file",
    "publish_exclusive",
    "write_list",
]
