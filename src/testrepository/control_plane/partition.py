"""Grouping and longest-processing-time-first partitioning of a test universe."""

from __future__ import annotations

import re
import statistics
from dataclasses import dataclass
from typing import TYPE_CHECKING

from testrepository.constants import DEFAULT_TEST_WEIGHT

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


@dataclass(frozen=True, slots=True)
class TestGroup:
    """Ids that must share a worker, with their combined weight."""

    __test__ = False

    key: str
    members: tuple[str, ...]
    weight: float


@dataclass(frozen=True, slots=True)
class WorkerAssignment:
    """Ordered ids bound to one worker for one scheduler run."""

    index: int
    test_ids: tuple[str, ...]
    weight: float = 0.0

    def __post_init__(self) -> None:
        if self.index < 0:
            raise ValueError("index must be >= 0")

    def __len__(self) -> int:
        return len(self.test_ids)


def compile_group_pattern(pattern: str | re.Pattern[str] | None) -> re.Pattern[str] | None:
    if pattern is None or isinstance(pattern, re.Pattern):
        return pattern
    return re.compile(pattern)


def group_key(test_id: str, pattern: re.Pattern[str] | None) -> str:
    """Group label for ``test_id``; the id itself when the pattern does not match.

    A named group ``group`` wins over the first positional group, which wins
    over the whole match.
    """

    if pattern is None:
        return test_id
    match = pattern.match(test_id)
    if match is None:
        return test_id
    if "group" in pattern.groupindex and match.group("group") is not None:
        return match.group("group")
    if pattern.groups >= 1 and match.group(1) is not None:
        return match.group(1)
    return match.group(0)


def group_tests(
    test_ids: Iterable[str],
    pattern: str | re.Pattern[str] | None,
) -> dict[str, list[str]]:
    """Ids keyed by group label; groups and members keep first-seen order."""

    compiled = compile_group_pattern(pattern)
    groups: dict[str, list[str]] = {}
    for test_id in dict.fromkeys(test_ids):
        groups.setdefault(group_key(test_id, compiled), []).append(test_id)
    return groups


def default_weight(durations: Mapping[str, float], universe: Iterable[str] | None = None) -> float:
    """Median known duration over ``universe`` (all known ids when omitted)."""

    if universe is None:
        known = list(durations.values())
    else:
        known = [durations[test_id] for test_id in universe if test_id in durations]
    if not known:
        return DEFAULT_TEST_WEIGHT
    return float(statistics.median(known))


def weigh_groups(
    groups: Mapping[str, list[str]],
    durations: Mapping[str, float],
    *,
    unseen_weight: float,
) -> list[TestGroup]:
    weighted = [
        TestGroup(
            key=key,
            members=tuple(members),
            weight=sum(durations.get(test_id, unseen_weight) for test_id in members),
        )
        for key, members in groups.items()
    ]
    weighted.sort(key=lambda group: (-group.weight, group.key))
    return weighted


def partition(
    universe: Iterable[str],
    durations: Mapping[str, float],
    concurrency: int,
    *,
    group_by: str | re.Pattern[str] | None = None,
) -> list[WorkerAssignment]:
    """Assign groups to ``concurrency`` buckets, heaviest group first.

    Each group goes to the currently lightest bucket (lowest index on ties),
    so the result is deterministic for the same ids and timing data. Within a
    bucket ids keep their order in ``universe``, so a single bucket runs the
    ids exactly as given. Exactly ``concurrency`` assignments are returned;
    some may be empty.
    """

    if concurrency <= 0:
        raise ValueError("concurrency must be > 0")

    test_ids = list(dict.fromkeys(universe))
    position = {test_id: index for index, test_id in enumerate(test_ids)}
    groups = group_tests(test_ids, group_by)
    weighted = weigh_groups(
        groups,
        durations,
        unseen_weight=default_weight(durations, test_ids),
    )

    loads = [0.0] * concurrency
    members: list[list[str]] = [[] for _ in range(concurrency)]
    for group in weighted:
        target = min(range(concurrency), key=lambda index: (loads[index], index))
        members[target].extend(group.members)
        loads[target] += group.weight
    for bucket in members:
        bucket.sort(key=position.__getitem__)

    return [
        WorkerAssignment(index=index, test_ids=tuple(members[index]), weight=loads[index])
        for index in range(concurrency)
    ]


def isolate(
    universe: Iterable[str],
    durations: Mapping[str, float] | None = None,
) -> list[WorkerAssignment]:
    """One assignment per test id, ignoring grouping and weights."""

    table = durations or {}
    unseen = default_weight(table) if table else DEFAULT_TEST_WEIGHT
    return [
        WorkerAssignment(index=index, test_ids=(test_id,), weight=table.get(test_id, unseen))
        for index, test_id in enumerate(sorted(set(universe)))
    ]


__all__ = [
    "TestGroup",
    "WorkerAssignment",
    "compile_group_pattern",
    "default_weight",
    "group_key",
    "group_tests",
    "isolate",
    "partition",
    "weigh_groups",
]
