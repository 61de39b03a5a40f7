"""Command-line interface router for testr."""

from __future__ import annotations

import argparse
import asyncio
import shlex
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import structlog

from testrepository.config import ConfigLoadError, TestrConfig, load_config
from testrepository.constants import CONFIG_FILENAME
from testrepository.control_plane.aggregator import fold_events
from testrepository.control_plane.executor import (
    CommandExecutor,
    CommandInstanceProvisioner,
    resolve_concurrency,
)
from testrepository.control_plane.isolation import (
    IndeterminateTrialError,
    IsolationAnalyzer,
    IsolationResult,
    NotReproducedError,
)
from testrepository.control_plane.scheduler import ScheduleResult, Scheduler, SchedulerOptions
from testrepository.errors import CorruptRunError
from testrepository.observability.logging import (
    setup_logging,
    shutdown_logging,
    verbosity_to_level,
)
from testrepository.repository.codec import decode_events
from testrepository.repository.store import (
    Repository,
    initialize,
    open_or_initialize,
    open_repository,
)
from testrepository.ui.render import CLIRenderer, create_renderer
from testrepository.utils.testlist import parse_list_file

DEFAULT_SLOWEST_COUNT: Final[int] = 10

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported commands."""

    parser = argparse.ArgumentParser(
        prog="testr",
        description=(
            "testr - keep a repository of test results and act on it.\n\n"
            "Common workflows:\n"
            "  testr init                  Create .testrepository in this directory\n"
            "  testr run -j                Run the suite across all CPUs\n"
            "  testr run --failing         Re-run only what failed\n"
            "  testr last                  Show the latest run\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-d",
        "--here",
        dest="base_dir",
        default=".",
        help="Directory holding .testrepository and .testr.conf (default: current directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help=f"Path to the project config (default: ./{CONFIG_FILENAME}).",
    )
    common.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log progress to stderr; repeat for debug output.",
    )
    common.add_argument(
        "--log-file",
        default=None,
        help="Also append JSON log lines to this file.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # init ----------------------------------------------------------------
    init_parser = subparsers.add_parser(
        "init",
        parents=[common],
        help="Create an empty test repository",
    )
    init_parser.set_defaults(handler=_cmd_init)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run the configured test command and record the results",
        description=(
            "Run tests via test_command from .testr.conf and commit the results.\n\n"
            "Examples:\n"
            "  testr run                        Run the default test set\n"
            "  testr run -j 4                   Four workers balanced by history\n"
            "  testr run --failing              Re-run the failing set (implies --partial)\n"
            "  testr run --until-failure        Repeat until something fails\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument(
        "--failing", action="store_true", help="Run only the tests in the failing set"
    )
    run_parser.add_argument(
        "--partial",
        action="store_true",
        help="Update the failing set instead of replacing it",
    )
    run_parser.add_argument(
        "--force-init",
        action="store_true",
        help="Initialise the repository if it does not exist",
    )
    run_parser.add_argument(
        "--load-list",
        default=None,
        metavar="FILE",
        help="Run only the test ids listed (one per line) in FILE",
    )
    run_parser.add_argument(
        "-j",
        "--parallel",
        nargs="?",
        type=int,
        const=0,
        default=None,
        metavar="N",
        help="Run N workers; without N use test_run_concurrency or the CPU count",
    )
    run_parser.add_argument(
        "--until-failure",
        action="store_true",
        help="Repeat the run until a committed run has failures",
    )
    run_parser.add_argument(
        "--isolated",
        action="store_true",
        help="Run every test in its own worker process",
    )
    run_parser.add_argument(
        "--subunit",
        action="store_true",
        help="Write the committed run as a subunit v2 stream instead of a summary",
    )
    run_parser.set_defaults(handler=_cmd_run)

    # load ----------------------------------------------------------------
    load_parser = subparsers.add_parser(
        "load",
        parents=[common],
        help="Load subunit v2 streams into the repository",
        description=(
            "Read subunit v2 streams from files (or stdin) and commit them as one run.\n\n"
            "Examples:\n"
            "  python -m subunit.run discover | testr load\n"
            "  testr load --partial results.subunit\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    load_parser.add_argument("streams", nargs="*", metavar="FILE", help="Stream files to load")
    load_parser.add_argument(
        "--partial",
        action="store_true",
        help="Update the failing set instead of replacing it",
    )
    load_parser.add_argument(
        "--force-init",
        action="store_true",
        help="Initialise the repository if it does not exist",
    )
    load_parser.set_defaults(handler=_cmd_load)

    # last ----------------------------------------------------------------
    last_parser = subparsers.add_parser(
        "last",
        parents=[common],
        help="Show the results of the latest run",
    )
    last_parser.add_argument(
        "--subunit", action="store_true", help="Write the stored stream unmodified"
    )
    last_parser.set_defaults(handler=_cmd_last)

    # failing -------------------------------------------------------------
    failing_parser = subparsers.add_parser(
        "failing",
        parents=[common],
        help="Show the current failing set",
    )
    failing_parser.add_argument(
        "--list", action="store_true", help="Print bare test ids, one per line"
    )
    failing_parser.add_argument(
        "--subunit", action="store_true", help="Write the failing set as a subunit v2 stream"
    )
    failing_parser.set_defaults(handler=_cmd_failing)

    # stats ---------------------------------------------------------------
    stats_parser = subparsers.add_parser(
        "stats",
        parents=[common],
        help="Show repository statistics",
    )
    stats_parser.set_defaults(handler=_cmd_stats)

    # slowest -------------------------------------------------------------
    slowest_parser = subparsers.add_parser(
        "slowest",
        parents=[common],
        help="Show the slowest tests of the latest run",
    )
    slowest_parser.add_argument(
        "-n",
        "--count",
        type=int,
        default=DEFAULT_SLOWEST_COUNT,
        help=f"Number of tests to show (default: {DEFAULT_SLOWEST_COUNT})",
    )
    slowest_parser.add_argument(
        "--all", dest="show_all", action="store_true", help="Show every timed test"
    )
    slowest_parser.set_defaults(handler=_cmd_slowest)

    # list-tests ----------------------------------------------------------
    list_parser = subparsers.add_parser(
        "list-tests",
        parents=[common],
        help="List the test ids the test command knows about",
    )
    list_parser.set_defaults(handler=_cmd_list_tests)

    # analyze-isolation ---------------------------------------------------
    analyze_parser = subparsers.add_parser(
        "analyze-isolation",
        parents=[common],
        help="Find the tests a target only fails alongside",
        description=(
            "Bisect the test universe down to the tests that make TEST fail.\n\n"
            "Examples:\n"
            "  testr analyze-isolation pkg.tests.test_cache.TestCache.test_hit\n"
            "  testr analyze-isolation TEST --load-list candidates.txt\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    analyze_parser.add_argument("target", metavar="TEST", help="Test id that fails in the suite")
    analyze_parser.add_argument(
        "--load-list",
        default=None,
        metavar="FILE",
        help="Search only the test ids listed in FILE instead of the full listing",
    )
    analyze_parser.set_defaults(handler=_cmd_analyze_isolation)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    handle = setup_logging(
        verbosity_to_level(int(getattr(namespace, "verbose", 0) or 0)),
        log_file=getattr(namespace, "log_file", None),
    )
    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        shutdown_logging(handle)
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    """Compatibility wrapper for main-module wiring."""

    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    repository = initialize(_base_dir(args))
    _get_renderer().text(f"Initialised empty test repository in {repository.path}")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    base_dir = _base_dir(args)
    config = _require_config(args)
    repository = open_or_initialize(
        base_dir,
        force_init=_flag(args, "force_init"),
        filter_tags=config.filter_tag_set,
    )
    renderer = _get_renderer()

    universe: list[str] | None = None
    load_list = getattr(args, "load_list", None)
    if load_list:
        universe = _read_list(load_list)
    if _flag(args, "failing"):
        failing = repository.failing_set()
        if universe is None:
            universe = sorted(failing)
        else:
            universe = [test_id for test_id in universe if test_id in failing]
        if not universe:
            renderer.text("No failing tests to run")
            return 0
    if universe is not None and not universe:
        renderer.text("No tests to run")
        return 0

    concurrency = resolve_concurrency(config, getattr(args, "parallel", None), cwd=base_dir)
    options = SchedulerOptions(
        concurrency=concurrency,
        group_by=config.group_pattern,
        isolated=_flag(args, "isolated"),
        # Re-running the failing set only refreshes the ids it ran.
        partial=_flag(args, "partial") or _flag(args, "failing"),
    )
    executor = CommandExecutor(config, cwd=base_dir)
    scheduler = Scheduler(
        executor,
        repository=repository,
        provisioner=_provisioner(config, base_dir),
    )

    needs_listing = universe is None and (options.concurrency > 1 or options.isolated)
    if needs_listing:
        _require_listing(config, "parallel or isolated runs")

    async def _execute() -> tuple[ScheduleResult, int | None]:
        ids = universe
        if needs_listing:
            ids = await executor.list_tests()
        if _flag(args, "until_failure"):
            outcome = await scheduler.run_until_failure(ids, options)
            return outcome.result, outcome.iteration
        return await scheduler.run(ids, options), None

    result, iterations = asyncio.run(_execute())
    run = result.run

    if _flag(args, "subunit"):
        renderer.write_bytes(run.payload)
        return 0

    if iterations is not None:
        renderer.kv("Iterations", iterations)
    renderer.text(f"Ran {run.total} test(s) as run {result.run_id}")
    renderer.run_summary(run)
    for report in result.crashed_workers:
        detail = (report.detail or "").splitlines()
        renderer.warning(
            f"worker {report.index} crashed; {len(report.synthesized)} test(s) marked as error"
            + (f" ({detail[0]})" if detail else "")
        )
    renderer.failures(run, details=False)

    if run.failed:
        renderer.text(f"{run.failed} test(s) failed")
        return 1
    exit_codes = [report.returncode for report in result.workers if report.returncode]
    if exit_codes:
        renderer.text(f"Test command exited with status {exit_codes[0]}")
        return 1
    renderer.text("All tests passed")
    return 0


def _cmd_load(args: argparse.Namespace) -> int:
    base_dir = _base_dir(args)
    config = _optional_config(args)
    filter_tags = config.filter_tag_set if config is not None else frozenset()
    repository = open_or_initialize(
        base_dir,
        force_init=_flag(args, "force_init"),
        filter_tags=filter_tags,
    )

    streams: list[str] = list(getattr(args, "streams", None) or [])
    chunks: list[bytes] = []
    if streams:
        for stream_path in streams:
            try:
                chunks.append(Path(stream_path).read_bytes())
            except OSError as exc:
                raise CLIError(f"cannot read stream {stream_path}: {exc}", exit_code=2) from exc
    else:
        chunks.append(sys.stdin.buffer.read())
    payload = b"".join(chunks)

    run = fold_events(
        decode_events(payload, name="load"),
        payload=payload,
        filter_tags=filter_tags,
    )
    run_id = repository.commit(run, partial=_flag(args, "partial"))
    run = run.with_id(run_id)

    renderer = _get_renderer()
    renderer.text(f"Loaded {run.total} test(s) as run {run_id}")
    if run.failed:
        renderer.text(f"{run.failed} test(s) failed")
        return 1
    return 0


def _cmd_last(args: argparse.Namespace) -> int:
    repository = _open(args)
    run = repository.latest()
    renderer = _get_renderer()

    if _flag(args, "subunit"):
        renderer.write_bytes(run.payload)
        return 0

    renderer.run_summary(run)
    renderer.failures(run)
    return 1 if run.failed else 0


def _cmd_failing(args: argparse.Namespace) -> int:
    repository = _open(args)
    failing = repository.failing_run()
    renderer = _get_renderer()

    if _flag(args, "subunit"):
        renderer.write_bytes(failing.payload)
        return 0

    test_ids = sorted(failing.results)
    if _flag(args, "list"):
        renderer.items(test_ids, prefix="")
    elif not test_ids:
        renderer.text("No failing tests")
    else:
        renderer.text(f"{len(test_ids)} failing test(s):")
        renderer.items(test_ids)
    return 1 if test_ids else 0


def _cmd_stats(args: argparse.Namespace) -> int:
    repository = _open(args)
    renderer = _get_renderer()

    run_ids = list(repository.all_runs())
    total_tests = 0
    for run_id in run_ids:
        try:
            total_tests += repository.get_run(run_id).total
        except CorruptRunError as exc:
            logger.warning("stats_run_unreadable", run_id=run_id, detail=exc.detail)

    renderer.text("Repository Statistics:")
    renderer.items([f"Total test runs: {len(run_ids)}"])
    if run_ids:
        latest = repository.latest()
        renderer.items(
            [
                f"Latest run: {latest.id}",
                f"Tests in latest run: {latest.total}",
                f"Failures in latest run: {latest.failed}",
            ]
        )
    renderer.items([f"Total tests executed: {total_tests}"])
    return 0


def _cmd_slowest(args: argparse.Namespace) -> int:
    repository = _open(args)
    run = repository.latest()
    renderer = _get_renderer()

    timed = sorted(run.durations.items(), key=lambda item: (-item[1], item[0]))
    if not timed:
        renderer.text("No timing information available")
        return 0

    count = getattr(args, "count", DEFAULT_SLOWEST_COUNT)
    if count is None or count < 0:
        raise CLIError("--count must be >= 0", exit_code=2)
    shown = timed if _flag(args, "show_all") else timed[:count]
    total = sum(duration for _, duration in timed)

    renderer.text(f"Slowest {len(shown)} test(s) (total time: {total:.3f}s):")
    renderer.table(
        ["Test id", "Runtime (s)", "Share"],
        [
            [
                test_id,
                f"{duration:.3f}",
                f"{(duration / total * 100.0) if total > 0 else 0.0:5.1f}%",
            ]
            for test_id, duration in shown
        ],
    )
    return 0


def _cmd_list_tests(args: argparse.Namespace) -> int:
    config = _require_config(args)
    executor = CommandExecutor(config, cwd=_base_dir(args))
    test_ids = asyncio.run(executor.list_tests())

    renderer = _get_renderer()
    if not test_ids:
        renderer.text("No tests found")
    else:
        renderer.items(test_ids, prefix="")
    return 0


def _cmd_analyze_isolation(args: argparse.Namespace) -> int:
    base_dir = _base_dir(args)
    config = _require_config(args)
    repository = open_repository(base_dir, filter_tags=config.filter_tag_set)
    target = _require_str(getattr(args, "target", None), "target")
    executor = CommandExecutor(config, cwd=base_dir)
    scheduler = Scheduler(
        executor,
        repository=repository,
        provisioner=_provisioner(config, base_dir),
    )
    analyzer = IsolationAnalyzer(scheduler)
    renderer = _get_renderer()

    load_list = getattr(args, "load_list", None)
    universe: list[str] | None = _read_list(load_list) if load_list else None
    if universe is None:
        _require_listing(config, "analyze-isolation")

    async def _analyze() -> IsolationResult:
        ids = universe if universe is not None else await executor.list_tests()
        return await analyzer.analyze(target, ids)

    try:
        result = asyncio.run(_analyze())
    except NotReproducedError as exc:
        renderer.text(
            f"{exc.target} passed when run with all {exc.universe_size} other test(s); "
            "no isolation issue found."
        )
        return 0
    except IndeterminateTrialError as exc:
        raise CLIError(
            f"{exc}; {len(exc.state.candidates)} candidate test(s) remained after "
            f"{len(exc.state.trials)} trial(s)",
            exit_code=2,
        ) from exc

    renderer.kv("Trials", len(result.trials))
    if result.is_standalone:
        renderer.text(
            f"{result.target} fails when run alone; this is not an isolation issue."
        )
        return 1

    renderer.section(
        f"Found {len(result.interacting)} test(s) that interact with {result.target}:"
    )
    renderer.items(list(result.interacting), prefix="  - ")
    renderer.section("To reproduce the failure, run:")
    listing = " ".join(shlex.quote(test_id) for test_id in result.reproduction)
    renderer.text(f"  printf '%s\\n' {listing} > isolation.list")
    renderer.text("  testr run --load-list isolation.list")
    return 1


# ---------------------------------------------------------------------------
# Helpers - config, repository, output
# ---------------------------------------------------------------------------


def _base_dir(args: argparse.Namespace) -> Path:
    raw = _require_str(getattr(args, "base_dir", None), "base_dir")
    candidate = Path(raw).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"not a directory: {candidate}", exit_code=2)
    return candidate


def _require_config(args: argparse.Namespace) -> TestrConfig:
    return load_config(
        _base_dir(args),
        config_path=_optional_str(getattr(args, "config_path", None)),
    )


def _optional_config(args: argparse.Namespace) -> TestrConfig | None:
    """Config when one exists; ``load`` works without a test command."""

    config_path = _optional_str(getattr(args, "config_path", None))
    if config_path is None and not (_base_dir(args) / CONFIG_FILENAME).exists():
        return None
    return load_config(_base_dir(args), config_path=config_path)


def _require_listing(config: TestrConfig, purpose: str) -> None:
    if not config.test_list_option:
        raise ConfigLoadError(f"{purpose} needs test_list_option to enumerate tests")


def _open(args: argparse.Namespace) -> Repository:
    config = _optional_config(args)
    filter_tags = config.filter_tag_set if config is not None else frozenset()
    return open_repository(_base_dir(args), filter_tags=filter_tags)


def _provisioner(config: TestrConfig, base_dir: Path) -> CommandInstanceProvisioner | None:
    if not config.uses_instances:
        return None
    return CommandInstanceProvisioner(config, cwd=base_dir)


def _read_list(path: str) -> list[str]:
    try:
        return parse_list_file(path)
    except (OSError, UnicodeDecodeError) as exc:
        raise CLIError(f"cannot read test list {path}: {exc}", exit_code=2) from exc


def _get_renderer() -> CLIRenderer:
    return create_renderer()


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=2)
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=2)
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    value = getattr(args, name, False)
    return bool(value)


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
