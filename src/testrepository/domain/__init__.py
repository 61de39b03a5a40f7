"""Domain models shared by the repository, aggregator and scheduler."""

from testrepository.domain.models import Attachment, Run, TestEvent, TestResult, TestStatus

__all__ = [
    "Attachment",
    "Run",
    "TestEvent",
    "TestResult",
    "TestStatus",
]
