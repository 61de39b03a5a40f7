"""Unit tests for isolation bisection."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from testrepository.control_plane.isolation import (
    AnalysisKind,
    IndeterminateTrialError,
    IsolationAnalyzer,
    NotReproducedError,
    TrialOutcome,
    TrialPhase,
)
from testrepository.control_plane.scheduler import Scheduler
from testrepository.domain.models import TestStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Collection

    from testrepository.repository.store import Repository

TARGET = "pkg.test_target"
UNIVERSE = [f"pkg.test_{index:02d}" for index in range(12)] + [TARGET]


def _fails_with(required: Collection[str]) -> Callable[[str, frozenset[str]], TestStatus]:
    needed = frozenset(required)

    def outcome(test_id: str, present: frozenset[str]) -> TestStatus:
        if test_id == TARGET and needed <= present:
            return TestStatus.FAILURE
        return TestStatus.SUCCESS

    return outcome


@pytest.mark.unit
async def test_finds_the_single_interacting_test(repo: Repository, executor_factory) -> None:
    executor = executor_factory(outcome=_fails_with({"pkg.test_06"}))
    analyzer = IsolationAnalyzer(Scheduler(executor, repository=repo))

    result = await analyzer.analyze(TARGET, UNIVERSE)

    assert result.kind is AnalysisKind.INTERACTION
    assert result.interacting == ("pkg.test_06",)
    assert result.reproduction == ("pkg.test_06", TARGET)
    assert [trial.phase for trial in result.trials[:2]] == [
        TrialPhase.ISOLATION,
        TrialPhase.TOGETHER,
    ]
    assert repo.count() == len(result.trials)


@pytest.mark.unit
async def test_trials_run_candidates_in_order_with_the_target_last(executor_factory) -> None:
    def polluted(test_id: str, ran_before: frozenset[str]) -> TestStatus:
        if test_id == "a_target" and "z_polluter" in ran_before:
            return TestStatus.FAILURE
        return TestStatus.SUCCESS

    executor = executor_factory(outcome=polluted, order_sensitive=True)
    analyzer = IsolationAnalyzer(Scheduler(executor))

    result = await analyzer.analyze("a_target", ["z_polluter", "b_other", "a_target"])

    assert result.interacting == ("z_polluter",)
    assert [call[0] for call in executor.calls] == [
        ("a_target",),
        ("z_polluter", "b_other", "a_target"),
        ("z_polluter", "a_target"),
    ]
    assert result.reproduction == executor.calls[-1][0]


@pytest.mark.unit
async def test_finds_a_pair_split_across_halves(repo: Repository, executor_factory) -> None:
    executor = executor_factory(outcome=_fails_with({"pkg.test_02", "pkg.test_09"}))
    analyzer = IsolationAnalyzer(Scheduler(executor, repository=repo))

    result = await analyzer.analyze(TARGET, UNIVERSE)

    assert result.interacting == ("pkg.test_02", "pkg.test_09")
    assert any(trial.phase is TrialPhase.REDUCE for trial in result.trials)


@pytest.mark.unit
async def test_standalone_failure_stops_after_one_trial(executor_factory) -> None:
    executor = executor_factory(outcome=_fails_with(()))
    analyzer = IsolationAnalyzer(Scheduler(executor))

    result = await analyzer.analyze(TARGET, UNIVERSE)

    assert result.is_standalone
    assert result.interacting == ()
    assert len(result.trials) == 1
    assert executor.calls == [((TARGET,), 0, None)]


@pytest.mark.unit
async def test_target_passing_with_everything_is_not_reproduced(executor_factory) -> None:
    executor = executor_factory()
    analyzer = IsolationAnalyzer(Scheduler(executor))

    with pytest.raises(NotReproducedError) as excinfo:
        await analyzer.analyze(TARGET, UNIVERSE)

    assert excinfo.value.universe_size == len(UNIVERSE) - 1
    assert [trial.outcome for trial in excinfo.value.trials] == [
        TrialOutcome.NOT_REPRODUCED,
        TrialOutcome.NOT_REPRODUCED,
    ]


@pytest.mark.unit
async def test_crashed_trial_is_indeterminate_not_a_pass(executor_factory) -> None:
    executor = executor_factory(crash_on={TARGET})
    analyzer = IsolationAnalyzer(Scheduler(executor))

    with pytest.raises(IndeterminateTrialError) as excinfo:
        await analyzer.analyze(TARGET, UNIVERSE)

    assert excinfo.value.trial.phase is TrialPhase.ISOLATION
    assert excinfo.value.trial.outcome is TrialOutcome.INDETERMINATE
    assert excinfo.value.state.target == TARGET
    assert len(excinfo.value.state.candidates) == len(UNIVERSE) - 1


@pytest.mark.unit
async def test_trials_are_not_committed_when_recording_is_off(
    repo: Repository,
    executor_factory,
) -> None:
    executor = executor_factory(outcome=_fails_with({"pkg.test_01"}))
    analyzer = IsolationAnalyzer(Scheduler(executor, repository=repo), record_trials=False)

    result = await analyzer.analyze(TARGET, UNIVERSE)

    assert result.interacting == ("pkg.test_01",)
    assert repo.count() == 0


@pytest.mark.unit
@settings(
    max_examples=40,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
@given(
    size=st.integers(min_value=2, max_value=16),
    data=st.data(),
)
def test_bisection_returns_exactly_the_injected_subset(
    executor_factory,
    size: int,
    data: st.DataObject,
) -> None:
    others = [f"t{index:02d}" for index in range(size)]
    required = data.draw(
        st.sets(st.sampled_from(others), min_size=1, max_size=min(3, size)),
        label="required",
    )
    executor = executor_factory(outcome=_fails_with(required))
    analyzer = IsolationAnalyzer(Scheduler(executor), record_trials=False)

    result = asyncio.run(analyzer.analyze(TARGET, [*others, TARGET]))

    assert set(result.interacting) == required
