"""Subprocess runner for wrapped task commands."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from typing import IO

from imi.queue.errors import ProcessError

SUMMARY_MAX_CHARS = 500
TIMEOUT_EXIT_CODE = 124

COMMAND_PLACEHOLDERS = ("task_id", "goal_id", "agent_id", "title", "db_path")


@dataclass(slots=True)
class CommandRunRequest:
    """One wrapped command invocation for a leased task."""

    command_template: str
    values: dict[str, str]
    env: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    cwd: str | None = None


@dataclass(slots=True)
class CommandRunResult:
    exit_code: int
    timed_out: bool
    stdout: str
    stderr: str

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def summary_line(self) -> str | None:
        """Last non-empty stdout line, truncated."""

        for line in reversed(self.stdout.splitlines()):
            text = line.strip()
            if text:
                return text[:SUMMARY_MAX_CHARS]
        return None

    def stderr_tail(self, max_chars: int = 300) -> str:
        return self.stderr.strip()[-max_chars:]


def build_run_args(*, command_template: str, values: dict[str, str]) -> list[str]:
    """Render a command template into argv with shell-quoted placeholder values."""

    stripped = command_template.strip()
    if not stripped:
        raise ProcessError("Runner command template is empty.")
    try:
        rendered = stripped.format(
            **{name: shlex.quote(values.get(name, "")) for name in COMMAND_PLACEHOLDERS},
        )
    except (KeyError, IndexError) as error:
        raise ProcessError(f"Unsupported command template placeholder: {error}") from error
    except ValueError as error:
        raise ProcessError(f"Malformed command template: {error}") from error

    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise ProcessError(f"Malformed command template: {error}") from error
    if not argv:
        raise ProcessError("Runner command template rendered empty command.")
    return argv


def run_command(request: CommandRunRequest) -> CommandRunResult:
    """Run the rendered command to completion, polling until it exits."""

    run_args = build_run_args(command_template=request.command_template, values=request.values)
    env = os.environ.copy()
    env.update(request.env)

    with (
        tempfile.TemporaryFile("w+", encoding="utf-8") as stdout_handle,
        tempfile.TemporaryFile("w+", encoding="utf-8") as stderr_handle,
    ):
        try:
            exit_code, timed_out = _run_subprocess(
                run_args=run_args,
                env=env,
                cwd=request.cwd,
                timeout_seconds=request.timeout_seconds,
                stdout_handle=stdout_handle,
                stderr_handle=stderr_handle,
            )
        except FileNotFoundError as error:
            raise ProcessError(f"Runner command not found: {run_args[0]}") from error
        except OSError as error:
            raise ProcessError(f"Runner command failed to start: {error}") from error
        stdout_handle.seek(0)
        stderr_handle.seek(0)
        return CommandRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            stdout=stdout_handle.read(),
            stderr=stderr_handle.read(),
        )


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: str | None,
    timeout_seconds: float | None,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd or None,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False
        if timeout_seconds is not None and time.monotonic() - start_monotonic >= timeout_seconds:
            terminate_process(process)
            return TIMEOUT_EXIT_CODE, True
        time.sleep(0.1)


def terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
