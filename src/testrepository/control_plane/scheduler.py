"""
testrepository — parallel test scheduler

File: src/testrepository/control_plane/scheduler.py
Last updated: 2026-10-19

Purpose
- Partition a test universe into timing-balanced worker assignments, run
  the workers concurrently, fold their streams into one run and commit it.

Functional requirements
- Grouped ids always share a worker; buckets are filled heaviest group
  first into the lightest bucket.
- Instances, when a provisioner is configured, are provisioned before
  dispatch and disposed exactly once on every exit path.
- A worker that cannot start, is killed, or exits non-zero without
  reporting all of its ids gets ``error`` results for the missing ids. The
  run still completes and commits.
- Commits are all-or-nothing: cancellation stops dispatch, terminates
  in-flight workers and commits nothing.
- The committed payload is each worker's raw output, byte for byte, in
  worker-index order, followed by the synthesized ``error`` events. A
  stream that fails to decode is left out so the stored run stays readable.
  ``worker-N`` tags exist only on the in-memory run.

Concurrency
- Workers publish decoded streams on one channel; a single aggregation
  loop consumes it.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Collection
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from testrepository.constants import WORKER_CRASH_TAG, WORKER_TAG_PREFIX
from testrepository.control_plane.aggregator import ResultAggregator, StreamMessage
from testrepository.control_plane.executor import WorkerLaunchError
from testrepository.control_plane.partition import WorkerAssignment, isolate, partition
from testrepository.domain.models import Attachment, Run, TestEvent, TestResult, TestStatus
from testrepository.errors import CorruptRunError
from testrepository.observability.logging import correlation_scope
from testrepository.repository.codec import decode_events, encode_results
from testrepository.utils.concurrency import CancellationToken, WorkerPool

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Mapping

    from testrepository.control_plane.executor import (
        InstanceProvisioner,
        TestExecutor,
        WorkerOutput,
    )
    from testrepository.repository.store import Repository
    from testrepository.repository.timing import TimingStore

_CRASH_ATTACHMENT = "worker-crash"
_STDERR_TAIL_BYTES = 4096


@dataclass(frozen=True, slots=True)
class SchedulerOptions:
    """Per-invocation knobs for ``Scheduler.run``."""

    concurrency: int = 1
    group_by: str | re.Pattern[str] | None = None
    isolated: bool = False
    partial: bool = False

    def __post_init__(self) -> None:
        if self.concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if isinstance(self.group_by, str):
            object.__setattr__(self, "group_by", re.compile(self.group_by))


@dataclass(frozen=True, slots=True)
class WorkerReport:
    """What happened to one worker."""

    index: int
    test_ids: tuple[str, ...] | None
    instance: str | None = None
    returncode: int | None = None
    crashed: bool = False
    detail: str | None = None
    synthesized: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ScheduleResult:
    """Outcome of one scheduler invocation."""

    run: Run
    run_id: int | None
    assignments: tuple[WorkerAssignment, ...]
    workers: tuple[WorkerReport, ...]

    @property
    def crashed_workers(self) -> tuple[WorkerReport, ...]:
        return tuple(report for report in self.workers if report.crashed)


@dataclass(frozen=True, slots=True)
class UntilFailureResult:
    """Outcome of ``run_until_failure``; ``iteration`` is 1-based."""

    iteration: int
    result: ScheduleResult
    failed: bool


@dataclass(slots=True)
class _WorkerState:
    index: int
    test_ids: tuple[str, ...] | None
    events: tuple[TestEvent, ...] = ()
    instance: str | None = None
    output: WorkerOutput | None = None
    failure: str | None = None


@dataclass(frozen=True, slots=True)
class _InstancePool:
    free: asyncio.Queue[str] | None = None
    error: str | None = None


class Scheduler:
    """Fan a test universe out to workers and fan the results back in."""

    __slots__ = ("_executor", "_filter_tags", "_logger", "_provisioner", "_repository", "_timing")

    def __init__(
        self,
        executor: TestExecutor,
        *,
        repository: Repository | None = None,
        provisioner: InstanceProvisioner | None = None,
        timing: TimingStore | None = None,
        filter_tags: Collection[str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._executor = executor
        self._repository = repository
        self._provisioner = provisioner
        if timing is None and repository is not None:
            timing = repository.timing()
        self._timing = timing
        if filter_tags is None:
            filter_tags = repository.filter_tags if repository is not None else ()
        self._filter_tags = frozenset(filter_tags)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def repository(self) -> Repository | None:
        return self._repository

    def plan(
        self,
        universe: Collection[str],
        options: SchedulerOptions,
    ) -> list[WorkerAssignment]:
        """Non-empty worker assignments for ``universe``."""

        durations: Mapping[str, float] = {}
        if self._timing is not None:
            durations = self._timing.get_many(universe)
        if options.isolated:
            assignments = isolate(universe, durations)
        else:
            assignments = partition(
                universe,
                durations,
                options.concurrency,
                group_by=options.group_by,
            )
        return [assignment for assignment in assignments if assignment.test_ids]

    async def run(
        self,
        universe: Collection[str] | None,
        options: SchedulerOptions | None = None,
        *,
        commit: bool = True,
        cancel_token: CancellationToken | None = None,
    ) -> ScheduleResult:
        """Execute ``universe`` (``None`` runs the command's default set in one worker)."""

        opts = options if options is not None else SchedulerOptions()
        if universe is None:
            assignments: list[WorkerAssignment] = []
            states = [_WorkerState(index=0, test_ids=None)]
        else:
            assignments = self.plan(universe, opts)
            states = [
                _WorkerState(index=assignment.index, test_ids=assignment.test_ids)
                for assignment in assignments
            ]
        self._log_plan(assignments, opts)

        aggregator = ResultAggregator(timing=self._timing, filter_tags=self._filter_tags)
        slots = min(opts.concurrency, len(states)) if states else 0
        if states:
            await self._dispatch(states, slots, aggregator, cancel_token)

        synthesized = self._synthesize_crash_results(states, aggregator)
        # Corrupt streams carry a failure and are replaced by synthesized errors.
        payload = b"".join(
            state.output.stream
            for state in sorted(states, key=lambda item: item.index)
            if state.output is not None and state.failure is None
        )
        if synthesized:
            payload += encode_results(synthesized)

        run = aggregator.build_run(payload=payload, partial=opts.partial)

        run_id: int | None = None
        if commit and self._repository is not None:
            run_id = self._repository.commit(
                run,
                partial=opts.partial,
                record_timings=self._timing is None,
            )
            run = run.with_id(run_id)

        reports = tuple(_report(state, synthesized) for state in states)
        self._logger.info(
            "scheduler_run_complete",
            run_id=run_id,
            tests=run.total,
            failures=run.failed,
            workers=len(states),
            crashed_workers=[report.index for report in reports if report.crashed],
        )
        return ScheduleResult(
            run=run,
            run_id=run_id,
            assignments=tuple(assignments),
            workers=reports,
        )

    async def run_until_failure(
        self,
        universe: Collection[str] | None,
        options: SchedulerOptions | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        max_iterations: int | None = None,
    ) -> UntilFailureResult:
        """Repeat ``run`` until a committed run has failing tests."""

        if max_iterations is not None and max_iterations <= 0:
            raise ValueError("max_iterations must be > 0")
        iteration = 0
        while True:
            iteration += 1
            with correlation_scope(iteration=iteration):
                result = await self.run(universe, options, cancel_token=cancel_token)
            if result.run.is_failing:
                self._logger.info(
                    "scheduler_until_failure_stopped",
                    iteration=iteration,
                    failing=list(result.run.failing_ids),
                )
                return UntilFailureResult(iteration=iteration, result=result, failed=True)
            if max_iterations is not None and iteration >= max_iterations:
                return UntilFailureResult(iteration=iteration, result=result, failed=False)
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

    async def _dispatch(
        self,
        states: list[_WorkerState],
        slots: int,
        aggregator: ResultAggregator,
        cancel_token: CancellationToken | None,
    ) -> None:
        channel: asyncio.Queue[StreamMessage] = asyncio.Queue()
        consumer = asyncio.create_task(aggregator.consume(channel, producers=len(states)))
        try:
            async with self._instances(slots) as instances:
                if instances.error is not None:
                    for state in states:
                        state.failure = instances.error
                        channel.put_nowait(StreamMessage(state.index, None))
                else:
                    pool: WorkerPool[None] = WorkerPool(
                        max_concurrency=slots,
                        cancel_token=cancel_token,
                    )
                    await pool.gather(
                        [self._job(state, channel, instances.free) for state in states]
                    )
            await consumer
        finally:
            if not consumer.done():
                consumer.cancel()
                await asyncio.gather(consumer, return_exceptions=True)

    def _job(
        self,
        state: _WorkerState,
        channel: asyncio.Queue[StreamMessage],
        free_instances: asyncio.Queue[str] | None,
    ) -> Callable[[], Awaitable[None]]:
        async def job() -> None:
            with correlation_scope(worker=state.index):
                await self._work(state, channel, free_instances)

        return job

    async def _work(
        self,
        state: _WorkerState,
        channel: asyncio.Queue[StreamMessage],
        free_instances: asyncio.Queue[str] | None,
    ) -> None:
        instance: str | None = None
        if free_instances is not None:
            instance = await free_instances.get()
            state.instance = instance
        try:
            try:
                state.output = await self._executor.execute(
                    state.test_ids,
                    worker=state.index,
                    instance=instance,
                )
            except WorkerLaunchError as exc:
                state.failure = str(exc)
                self._logger.warning(
                    "scheduler_worker_launch_failed", worker=state.index, detail=exc.detail
                )
                return
            try:
                state.events = tuple(
                    decode_events(state.output.stream, name=f"{WORKER_TAG_PREFIX}{state.index}")
                )
            except CorruptRunError as exc:
                state.failure = str(exc)
                self._logger.warning(
                    "scheduler_worker_stream_corrupt", worker=state.index, detail=exc.detail
                )
                return
            channel.put_nowait(StreamMessage(state.index, state.events))
        finally:
            channel.put_nowait(StreamMessage(state.index, None))
            if free_instances is not None and instance is not None:
                free_instances.put_nowait(instance)

    @asynccontextmanager
    async def _instances(self, count: int) -> AsyncIterator[_InstancePool]:
        if self._provisioner is None or count <= 0:
            yield _InstancePool()
            return
        try:
            instances = await self._provisioner.provision(count)
        except WorkerLaunchError as exc:
            self._logger.error("scheduler_provision_failed", detail=exc.detail)
            yield _InstancePool(error=str(exc))
            return
        free: asyncio.Queue[str] = asyncio.Queue()
        for instance in instances:
            free.put_nowait(instance)
        try:
            yield _InstancePool(free=free)
        finally:
            await self._provisioner.dispose(instances)

    def _synthesize_crash_results(
        self,
        states: list[_WorkerState],
        aggregator: ResultAggregator,
    ) -> list[TestResult]:
        synthesized: list[TestResult] = []
        now = datetime.now(UTC)
        for state in states:
            if state.test_ids is None:
                if _crashed(state, missing=()):
                    self._logger.error(
                        "scheduler_worker_crashed",
                        worker=state.index,
                        detail=_crash_detail(state),
                    )
                continue
            missing = tuple(
                test_id for test_id in state.test_ids if not aggregator.has_result(test_id)
            )
            if not missing or not _crashed(state, missing=missing):
                continue
            detail = _crash_detail(state)
            self._logger.error(
                "scheduler_worker_crashed",
                worker=state.index,
                missing=list(missing),
                detail=detail,
            )
            attachment = Attachment(
                name=_CRASH_ATTACHMENT,
                data=detail.encode("utf-8"),
                content_type="text/plain;charset=utf8",
            )
            tags = frozenset({WORKER_CRASH_TAG, f"{WORKER_TAG_PREFIX}{state.index}"})
            for test_id in missing:
                result = TestResult(
                    test_id=test_id,
                    status=TestStatus.ERROR,
                    stop_time=now,
                    tags=tags,
                    attachments={_CRASH_ATTACHMENT: attachment},
                )
                synthesized.append(result)
                aggregator.feed(
                    TestEvent(
                        test_id=test_id,
                        attachment=attachment,
                        eof=True,
                        tags=tags,
                    )
                )
                aggregator.feed(
                    TestEvent(test_id=test_id, status=TestStatus.ERROR, timestamp=now, tags=tags)
                )
        return synthesized

    def _log_plan(self, assignments: list[WorkerAssignment], options: SchedulerOptions) -> None:
        self._logger.info(
            "scheduler_plan",
            concurrency=options.concurrency,
            isolated=options.isolated,
            grouped=options.group_by is not None,
            buckets=[
                {"index": item.index, "tests": len(item.test_ids), "weight": item.weight}
                for item in assignments
            ],
        )


def _crashed(state: _WorkerState, *, missing: tuple[str, ...]) -> bool:
    if state.failure is not None:
        return True
    output = state.output
    if output is None:
        return True
    if output.killed:
        return True
    return output.returncode != 0 and bool(missing)


def _crash_detail(state: _WorkerState) -> str:
    if state.failure is not None:
        return state.failure
    output = state.output
    if output is None:
        return "worker produced no output"
    detail = f"worker {state.index} exited with status {output.returncode}"
    stderr = output.stderr[-_STDERR_TAIL_BYTES:].decode("utf-8", errors="replace").strip()
    if stderr:
        detail = f"{detail}\n{stderr}"
    return detail


def _report(state: _WorkerState, synthesized: list[TestResult]) -> WorkerReport:
    assigned = set(state.test_ids or ())
    errored = tuple(result.test_id for result in synthesized if result.test_id in assigned)
    output = state.output
    return WorkerReport(
        index=state.index,
        test_ids=state.test_ids,
        instance=state.instance,
        returncode=output.returncode if output is not None else None,
        crashed=bool(errored) or _crashed(state, missing=()),
        detail=_crash_detail(state) if state.failure is not None or errored else None,
        synthesized=errored,
    )


__all__ = [
    "ScheduleResult",
    "Scheduler",
    "SchedulerOptions",
    "UntilFailureResult",
    "WorkerReport",
]
