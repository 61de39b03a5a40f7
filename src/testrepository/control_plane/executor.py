"""
testrepository — worker execution

File: src/testrepository/control_plane/executor.py
Last updated: 2026-10-19

Purpose
- The capability the scheduler needs from a worker: given test ids, produce
  an event stream. The shipped implementation shells out to the configured
  ``test_command``, optionally wrapped by ``instance_execute``.
- Provisioning and disposal of external instances.

Functional requirements
- Placeholders: ``$IDOPTION``, ``$IDFILE``, ``$IDLIST``, ``$LISTOPT`` for
  the test command; ``$INSTANCE_COUNT``, ``$INSTANCE_IDS``,
  ``$INSTANCE_ID``, ``$COMMAND``, ``$FILES`` for instance commands.
- A command that cannot be spawned raises ``WorkerLaunchError``; the
  scheduler turns that into per-test ``error`` results.
- Cancelling an in-flight worker kills its process before re-raising.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from testrepository.domain.models import TestStatus
from testrepository.errors import TestRepositoryError
from testrepository.repository.codec import NON_SUBUNIT_ATTACHMENT, decode_events
from testrepository.utils.testlist import parse_list, write_list

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from testrepository.config.loader import TestrConfig

logger = logging.getLogger(__name__)


class WorkerLaunchError(TestRepositoryError):
    """A worker process or instance command could not be started."""

    def __init__(self, command: str, detail: str) -> None:
        self.command = command
        self.detail = detail
        super().__init__(f"failed to launch {command!r}: {detail}")


@dataclass(frozen=True, slots=True)
class WorkerOutput:
    """Captured output of one finished worker."""

    stream: bytes
    returncode: int
    stderr: bytes = b""

    @property
    def killed(self) -> bool:
        """Terminated by a signal rather than exiting on its own."""

        return self.returncode < 0


@runtime_checkable
class TestExecutor(Protocol):
    """Given a set of test ids, produce an event stream."""

    __test__ = False

    async def execute(
        self,
        test_ids: Sequence[str] | None,
        *,
        worker: int,
        instance: str | None = None,
    ) -> WorkerOutput: ...


@runtime_checkable
class InstanceProvisioner(Protocol):
    async def provision(self, count: int) -> list[str]: ...

    async def dispose(self, instance_ids: Sequence[str]) -> None: ...


def render_command(template: str, variables: Mapping[str, str]) -> str:
    return Template(template).safe_substitute(variables)


async def run_shell(
    command: str,
    *,
    cwd: Path,
    env: Mapping[str, str] | None = None,
) -> WorkerOutput:
    """Run ``command`` through the shell and capture its output."""

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise WorkerLaunchError(command, str(exc)) from exc

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise
    returncode = process.returncode if process.returncode is not None else -1
    return WorkerOutput(stream=stdout, returncode=returncode, stderr=stderr)


class CommandExecutor:
    """Runs the configured ``test_command`` in a shell, one process per worker."""

    def __init__(
        self,
        config: TestrConfig,
        *,
        cwd: Path | str,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._config = config
        self._cwd = Path(cwd)
        self._env = env

    @property
    def config(self) -> TestrConfig:
        return self._config

    def build_command(
        self,
        test_ids: Sequence[str] | None,
        *,
        list_only: bool = False,
        id_file: Path | None = None,
    ) -> str:
        """Expand the test command for ``test_ids`` (``None`` means the default set)."""

        config = self._config
        variables: dict[str, str] = {"LISTOPT": "", "IDOPTION": "", "IDLIST": "", "IDFILE": ""}
        if list_only:
            variables["LISTOPT"] = config.test_list_option or ""

        if test_ids:
            variables["IDLIST"] = " ".join(test_ids)
            if id_file is not None:
                variables["IDFILE"] = str(id_file)
            if config.test_id_option:
                variables["IDOPTION"] = render_command(config.test_id_option, variables)
        elif test_ids is None and config.test_id_list_default:
            variables["IDLIST"] = config.test_id_list_default

        return render_command(config.test_command, variables)

    async def execute(
        self,
        test_ids: Sequence[str] | None,
        *,
        worker: int,
        instance: str | None = None,
    ) -> WorkerOutput:
        with _id_file(test_ids or ()) as id_file:
            command = self.build_command(test_ids, id_file=id_file)
            if instance is not None:
                command = self._wrap_for_instance(command, instance, id_file)
            logger.debug(
                "launching worker",
                extra={
                    "worker": worker,
                    "command": command,
                    "tests": len(test_ids) if test_ids is not None else "all",
                },
            )
            output = await run_shell(command, cwd=self._cwd, env=self._env)
        logger.debug(
            "worker exited",
            extra={"worker": worker, "returncode": output.returncode, "bytes": len(output.stream)},
        )
        return output

    async def list_tests(self) -> list[str]:
        """Enumerate the test ids the configured command knows about."""

        command = self.build_command(None, list_only=True)
        output = await run_shell(command, cwd=self._cwd, env=self._env)
        if output.returncode != 0:
            detail = f"listing exited with {output.returncode}"
            stderr = output.stderr.decode("utf-8", errors="replace").strip()
            if stderr:
                detail = f"{detail}: {stderr}"
            raise WorkerLaunchError(command, detail)
        return parse_listing(output.stream)

    def _wrap_for_instance(self, command: str, instance: str, id_file: Path | None) -> str:
        template = self._config.instance_execute
        if not template:
            raise WorkerLaunchError(command, "instance_provision is set but instance_execute is not")
        return render_command(
            template,
            {
                "INSTANCE_ID": instance,
                "COMMAND": command,
                "FILES": str(id_file) if id_file is not None else "",
            },
        )


class CommandInstanceProvisioner:
    """Provision and dispose instances with the configured shell commands."""

    def __init__(
        self,
        config: TestrConfig,
        *,
        cwd: Path | str,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not config.instance_provision:
            raise ValueError("instance_provision is not configured")
        self._config = config
        self._cwd = Path(cwd)
        self._env = env

    async def provision(self, count: int) -> list[str]:
        template = self._config.instance_provision or ""
        command = render_command(template, {"INSTANCE_COUNT": str(count)})
        output = await run_shell(command, cwd=self._cwd, env=self._env)
        if output.returncode != 0:
            raise WorkerLaunchError(command, f"provisioning exited with {output.returncode}")
        instance_ids = output.stream.decode("utf-8", errors="replace").split()
        if len(instance_ids) < count:
            raise WorkerLaunchError(
                command, f"requested {count} instances, provisioned {len(instance_ids)}"
            )
        logger.info("instances provisioned", extra={"instances": instance_ids[:count]})
        return instance_ids[:count]

    async def dispose(self, instance_ids: Sequence[str]) -> None:
        template = self._config.instance_dispose
        if not template or not instance_ids:
            return
        command = render_command(template, {"INSTANCE_IDS": " ".join(instance_ids)})
        output = await run_shell(command, cwd=self._cwd, env=self._env)
        if output.returncode != 0:
            logger.error(
                "instance disposal failed",
                extra={"instances": list(instance_ids), "returncode": output.returncode},
            )
        else:
            logger.info("instances disposed", extra={"instances": list(instance_ids)})


def parse_listing(stream: bytes) -> list[str]:
    """Test ids from a listing: subunit ``exists`` events, else plain lines."""

    events = decode_events(stream, name="list-tests")
    seen: set[str] = set()
    test_ids: list[str] = []
    text = bytearray()
    for event in events:
        if event.test_id is None:
            if event.attachment is not None and event.attachment.name == NON_SUBUNIT_ATTACHMENT:
                text.extend(event.attachment.data)
            continue
        if event.status not in (None, TestStatus.EXISTS) or event.test_id in seen:
            continue
        seen.add(event.test_id)
        test_ids.append(event.test_id)
    if test_ids:
        return test_ids
    return parse_list(bytes(text))


def resolve_concurrency(
    config: TestrConfig | None,
    requested: int | None,
    *,
    cwd: Path | str,
) -> int:
    """Worker count for ``-j``: ``None`` is serial, ``0`` asks the config or the CPU count."""

    if requested is None:
        return 1
    if requested < 0:
        raise ValueError("concurrency must be >= 0")
    if requested > 0:
        return requested

    if config is not None and config.test_run_concurrency:
        command = config.test_run_concurrency
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise WorkerLaunchError(command, str(exc)) from exc
        try:
            value = int(completed.stdout.strip())
        except ValueError as exc:
            raise WorkerLaunchError(
                command, f"expected an integer, got {completed.stdout.strip()!r}"
            ) from exc
        if value > 0:
            return value
    return os.cpu_count() or 1


@contextlib.contextmanager
def _id_file(test_ids: Sequence[str]) -> Iterator[Path | None]:
    if not test_ids:
        yield None
        return
    handle = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", prefix="testr-ids-", suffix=".list", delete=False
    )
    path = Path(handle.name)
    try:
        with handle:
            handle.write(write_list(test_ids))
        yield path
    finally:
        path.unlink(missing_ok=True)


__all__ = [
    "CommandExecutor",
    "CommandInstanceProvisioner",
    "InstanceProvisioner",
    "TestExecutor",
    "WorkerLaunchError",
    "WorkerOutput",
    "parse_listing",
    "render_command",
    "resolve_concurrency",
    "run_shell",
]
