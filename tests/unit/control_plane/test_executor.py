"""Unit tests for shell workers, listings and instance commands."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from testrepository.config.loader import TestrConfig
from testrepository.control_plane.executor import (
    CommandExecutor,
    CommandInstanceProvisioner,
    WorkerLaunchError,
    parse_listing,
    render_command,
    resolve_concurrency,
    run_shell,
)
from testrepository.domain.models import TestEvent, TestStatus
from testrepository.repository.codec import encode_events


@pytest.mark.unit
def test_build_command_expands_id_placeholders() -> None:
    config = TestrConfig(
        test_command="runner $IDOPTION $LISTOPT",
        test_id_option="--load-list $IDFILE",
        test_list_option="--list",
    )
    executor = CommandExecutor(config, cwd=".")

    command = executor.build_command(["a", "b"], id_file=Path("/tmp/ids.list"))

    assert command == "runner --load-list /tmp/ids.list "
    assert executor.build_command(None, list_only=True) == "runner  --list"


@pytest.mark.unit
def test_build_command_uses_default_id_list_only_for_the_default_set() -> None:
    config = TestrConfig(test_command="runner $IDLIST", test_id_list_default="discover")
    executor = CommandExecutor(config, cwd=".")

    assert executor.build_command(None) == "runner discover"
    assert executor.build_command(["x.y"]) == "runner x.y"


@pytest.mark.unit
def test_render_command_leaves_unknown_placeholders() -> None:
    assert render_command("$COMMAND on $HOST", {"COMMAND": "go"}) == "go on $HOST"


@pytest.mark.unit
def test_listing_prefers_subunit_exists_events() -> None:
    stream = encode_events(
        [
            TestEvent(test_id="pkg.b", status=TestStatus.EXISTS),
            TestEvent(test_id="pkg.a", status=TestStatus.EXISTS),
            TestEvent(test_id="pkg.b", status=TestStatus.EXISTS),
        ]
    )

    assert parse_listing(stream) == ["pkg.b", "pkg.a"]


@pytest.mark.unit
def test_listing_falls_back_to_plain_lines() -> None:
    assert parse_listing(b"pkg.one\n\npkg.two\n") == ["pkg.one", "pkg.two"]


@pytest.mark.unit
def test_listing_with_invalid_utf8_is_decoded_with_replacement() -> None:
    listed = parse_listing(b"pkg.one\npkg.\xff\xfe\npkg.two\n")

    assert listed == ["pkg.one", "pkg.\ufffd\ufffd", "pkg.two"]


@pytest.mark.unit
async def test_execute_writes_an_id_file_for_the_worker(tmp_path: Path) -> None:
    executor = CommandExecutor(TestrConfig(test_command="cat $IDFILE && echo $IDFILE"), cwd=tmp_path)

    output = await executor.execute(["pkg.a", "pkg.b"], worker=0)

    assert output.returncode == 0
    *ids, id_file = output.stream.decode("utf-8").splitlines()
    assert ids == ["pkg.a", "pkg.b"]
    assert not Path(id_file).exists()


@pytest.mark.unit
async def test_execute_wraps_the_command_for_an_instance(tmp_path: Path) -> None:
    config = TestrConfig(
        test_command="run $IDLIST",
        instance_provision="unused",
        instance_execute="echo $INSTANCE_ID: $COMMAND",
    )
    executor = CommandExecutor(config, cwd=tmp_path)

    output = await executor.execute(["pkg.a"], worker=1, instance="inst-7")

    assert output.stream == b"inst-7: run pkg.a\n"


@pytest.mark.unit
async def test_instance_without_execute_template_cannot_launch(tmp_path: Path) -> None:
    config = TestrConfig(test_command="run", instance_provision="unused")
    executor = CommandExecutor(config, cwd=tmp_path)

    with pytest.raises(WorkerLaunchError):
        await executor.execute(["pkg.a"], worker=0, instance="inst-0")


@pytest.mark.unit
async def test_list_tests_runs_the_listing_command(tmp_path: Path) -> None:
    listing = tmp_path / "listing.txt"
    listing.write_text("pkg.one\npkg.two\n", encoding="utf-8")
    config = TestrConfig(test_command="cat $LISTOPT", test_list_option=str(listing))

    assert await CommandExecutor(config, cwd=tmp_path).list_tests() == ["pkg.one", "pkg.two"]


@pytest.mark.unit
async def test_failed_listing_raises_with_stderr(tmp_path: Path) -> None:
    config = TestrConfig(test_command="echo nope >&2; exit 3 $LISTOPT", test_list_option="")

    with pytest.raises(WorkerLaunchError, match="nope"):
        await CommandExecutor(config, cwd=tmp_path).list_tests()


@pytest.mark.unit
async def test_run_shell_kills_the_process_on_cancellation(tmp_path: Path) -> None:
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(run_shell("sleep 30", cwd=tmp_path), timeout=0.2)


@pytest.mark.unit
async def test_provisioner_reads_instance_ids_and_disposes_them(tmp_path: Path) -> None:
    config = TestrConfig(
        test_command="run",
        instance_provision="for i in $(seq 1 $INSTANCE_COUNT); do echo inst-$i; done",
        instance_dispose="echo $INSTANCE_IDS > disposed.txt",
    )
    provisioner = CommandInstanceProvisioner(config, cwd=tmp_path)

    instances = await provisioner.provision(2)
    await provisioner.dispose(instances)

    assert instances == ["inst-1", "inst-2"]
    assert (tmp_path / "disposed.txt").read_text(encoding="utf-8") == "inst-1 inst-2\n"


@pytest.mark.unit
@pytest.mark.parametrize("command", ["exit 4", "echo only-one"])
async def test_provisioning_failures_raise_launch_errors(tmp_path: Path, command: str) -> None:
    config = TestrConfig(test_command="run", instance_provision=command)

    with pytest.raises(WorkerLaunchError):
        await CommandInstanceProvisioner(config, cwd=tmp_path).provision(2)


@pytest.mark.unit
def test_provisioner_requires_a_provision_command(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        CommandInstanceProvisioner(TestrConfig(test_command="run"), cwd=tmp_path)


@pytest.mark.unit
def test_resolve_concurrency(tmp_path: Path) -> None:
    assert resolve_concurrency(None, None, cwd=tmp_path) == 1
    assert resolve_concurrency(None, 3, cwd=tmp_path) == 3
    assert resolve_concurrency(None, 0, cwd=tmp_path) == (os.cpu_count() or 1)
    configured = TestrConfig(test_command="run", test_run_concurrency="echo 5")
    assert resolve_concurrency(configured, 0, cwd=tmp_path) == 5

    with pytest.raises(ValueError):
        resolve_concurrency(None, -1, cwd=tmp_path)


@pytest.mark.unit
def test_resolve_concurrency_rejects_non_integer_output(tmp_path: Path) -> None:
    config = TestrConfig(test_command="run", test_run_concurrency="echo many")

    with pytest.raises(WorkerLaunchError, match="many"):
        resolve_concurrency(config, 0, cwd=tmp_path)
