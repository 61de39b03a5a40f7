"""
testrepository — test isolation analysis

File: src/testrepository/control_plane/isolation.py
Last updated: 2026-10-19

Purpose
- Given a test that fails only alongside others, bisect the rest of the
  universe down to a small set of tests that still makes it fail.

Functional requirements
- Trial order: target alone, then target with the whole universe, then
  halves of the candidate set, then single-element removal.
- Every trial runs its candidates in the caller's order with the target
  last, so a test that leaks state always runs before the test it breaks.
- A target that fails alone is reported as a standalone failure.
- A target that passes with the whole universe raises ``NotReproducedError``.
- A trial with no usable result for the target raises
  ``IndeterminateTrialError`` carrying the bisection state; it is never
  folded into either outcome.

Known limitations
- Single-element removal yields a set that is minimal under removing one
  test at a time, not a global minimum when several interactions overlap.
- Flaky targets are not retried; results reflect the trials observed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from testrepository.constants import WORKER_CRASH_TAG
from testrepository.control_plane.scheduler import SchedulerOptions
from testrepository.errors import TestRepositoryError
from testrepository.observability.logging import correlation_scope

if TYPE_CHECKING:
    from collections.abc import Sequence

    from testrepository.control_plane.scheduler import ScheduleResult, Scheduler


class TrialOutcome(StrEnum):
    """Observed effect of one trial on the target."""

    REPRODUCED = "reproduced"
    NOT_REPRODUCED = "not-reproduced"
    INDETERMINATE = "indeterminate"


class TrialPhase(StrEnum):
    ISOLATION = "isolation"
    TOGETHER = "together"
    BISECT = "bisect"
    REDUCE = "reduce"


class AnalysisKind(StrEnum):
    STANDALONE = "standalone"
    INTERACTION = "interaction"


@dataclass(frozen=True, slots=True)
class Trial:
    """One scheduler invocation made on behalf of an analysis."""

    phase: TrialPhase
    others: tuple[str, ...]
    outcome: TrialOutcome
    run_id: int | None = None


@dataclass(slots=True)
class BisectionState:
    """Working state of one analysis; exposed on ``IndeterminateTrialError``."""

    target: str
    candidates: list[str]
    included: tuple[str, ...] = ()
    excluded: tuple[str, ...] = ()
    trials: list[Trial] = field(default_factory=list)

    def record(self, trial: Trial) -> None:
        self.trials.append(trial)


@dataclass(frozen=True, slots=True)
class IsolationResult:
    """Outcome of ``IsolationAnalyzer.analyze``."""

    target: str
    kind: AnalysisKind
    interacting: tuple[str, ...]
    trials: tuple[Trial, ...]

    @property
    def is_standalone(self) -> bool:
        return self.kind is AnalysisKind.STANDALONE

    @property
    def reproduction(self) -> tuple[str, ...]:
        """Ids to run together to reproduce the failure, target last."""

        return (*self.interacting, self.target)


class NotReproducedError(TestRepositoryError):
    """The target did not fail when run with the whole universe."""

    def __init__(self, target: str, universe_size: int, trials: Sequence[Trial] = ()) -> None:
        self.target = target
        self.universe_size = universe_size
        self.trials = tuple(trials)
        super().__init__(
            f"{target} did not fail when run with {universe_size} other tests; "
            "cannot reproduce the interaction"
        )


class IndeterminateTrialError(TestRepositoryError):
    """A trial produced no usable result for the target."""

    def __init__(self, state: BisectionState, trial: Trial) -> None:
        self.state = state
        self.trial = trial
        super().__init__(
            f"trial ({trial.phase.value}, {len(trial.others)} other tests) gave no usable "
            f"result for {state.target}"
        )


def classify_trial(result: ScheduleResult, target: str) -> TrialOutcome:
    """Map the target's result in ``result`` to a trial outcome."""

    test_result = result.run.results.get(target)
    if test_result is None:
        return TrialOutcome.INDETERMINATE
    if WORKER_CRASH_TAG in test_result.tags:
        return TrialOutcome.INDETERMINATE
    if test_result.status.is_failure:
        return TrialOutcome.REPRODUCED
    if test_result.status.is_success:
        return TrialOutcome.NOT_REPRODUCED
    return TrialOutcome.INDETERMINATE


class IsolationAnalyzer:
    """Localize the tests a target depends on to fail."""

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        record_trials: bool = True,
        logger: Any | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._record_trials = record_trials
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        # Trials run in a single worker and commit as partial runs.
        self._options = SchedulerOptions(concurrency=1, partial=True)

    async def analyze(self, target: str, universe: Sequence[str]) -> IsolationResult:
        with correlation_scope(target=target):
            return await self._analyze(target, universe)

    async def _analyze(self, target: str, universe: Sequence[str]) -> IsolationResult:
        others = [test_id for test_id in dict.fromkeys(universe) if test_id != target]
        state = BisectionState(target=target, candidates=list(others))

        if await self._trial(state, TrialPhase.ISOLATION, ()) is TrialOutcome.REPRODUCED:
            return self._finish(state, AnalysisKind.STANDALONE, ())

        if await self._trial(state, TrialPhase.TOGETHER, others) is not TrialOutcome.REPRODUCED:
            raise NotReproducedError(target, len(others), state.trials)

        while len(state.candidates) > 1:
            middle = len(state.candidates) // 2
            first = tuple(state.candidates[:middle])
            second = tuple(state.candidates[middle:])

            outcome = await self._trial(state, TrialPhase.BISECT, first, excluded=second)
            if outcome is TrialOutcome.REPRODUCED:
                state.candidates = list(first)
                continue
            outcome = await self._trial(state, TrialPhase.BISECT, second, excluded=first)
            if outcome is TrialOutcome.REPRODUCED:
                state.candidates = list(second)
                continue

            await self._reduce(state)
            break

        return self._finish(state, AnalysisKind.INTERACTION, tuple(state.candidates))

    async def _reduce(self, state: BisectionState) -> None:
        """Drop candidates one at a time while the target keeps failing."""

        for candidate in list(state.candidates):
            if len(state.candidates) <= 1:
                break
            remaining = tuple(test_id for test_id in state.candidates if test_id != candidate)
            outcome = await self._trial(
                state, TrialPhase.REDUCE, remaining, excluded=(candidate,)
            )
            if outcome is TrialOutcome.REPRODUCED:
                state.candidates = list(remaining)

    async def _trial(
        self,
        state: BisectionState,
        phase: TrialPhase,
        others: Sequence[str],
        *,
        excluded: Sequence[str] = (),
    ) -> TrialOutcome:
        state.included = tuple(others)
        state.excluded = tuple(excluded)
        with correlation_scope(trial=len(state.trials) + 1):
            result = await self._scheduler.run(
                (*others, state.target),
                self._options,
                commit=self._record_trials,
            )
        outcome = classify_trial(result, state.target)
        trial = Trial(phase=phase, others=tuple(others), outcome=outcome, run_id=result.run_id)
        state.record(trial)
        self._logger.info(
            "isolation_trial",
            phase=phase.value,
            others=len(trial.others),
            candidates=len(state.candidates),
            outcome=outcome.value,
            recorded_run=result.run_id,
        )
        if outcome is TrialOutcome.INDETERMINATE:
            raise IndeterminateTrialError(state, trial)
        return outcome

    def _finish(
        self,
        state: BisectionState,
        kind: AnalysisKind,
        interacting: tuple[str, ...],
    ) -> IsolationResult:
        self._logger.info(
            "isolation_result",
            kind=kind.value,
            interacting=list(interacting),
            trials=len(state.trials),
        )
        return IsolationResult(
            target=state.target,
            kind=kind,
            interacting=interacting,
            trials=tuple(state.trials),
        )


__all__ = [
    "AnalysisKind",
    "BisectionState",
    "IndeterminateTrialError",
    "IsolationAnalyzer",
    "IsolationResult",
    "NotReproducedError",
    "Trial",
    "TrialOutcome",
    "TrialPhase",
    "classify_trial",
]
