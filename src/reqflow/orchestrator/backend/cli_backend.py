"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path

from reqflow.orchestrator.backend.base import AgentRunRequest, AgentRunResult

TIMEOUT_EXIT_CODE = 124


class AgentRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Execute an agent command with stdout/stderr redirected to per-role log files."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        if not request.argv:
            raise AgentRunError("Agent command is empty.", transient=False)

        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        env = os.environ.copy()
        env.update(request.env)

        try:
            with (
                request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                return _run_subprocess_with_shutdown(
                    run_args=request.argv,
                    cwd=request.cwd,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                    stdout_path=request.stdout_path,
                    stderr_path=request.stderr_path,
                )
        except FileNotFoundError as error:
            raise AgentRunError(
                f"Agent command not found: {request.argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentRunError(
                f"Agent failed to start: {error}",
                transient=True,
            ) from error


def read_tail(path: Path, max_chars: int) -> str:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return text[-max_chars:]


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle,
    stderr_handle,
    shutdown_requested,
    graceful_shutdown_seconds: int | None,
    stdout_path: Path,
    stderr_path: Path,
) -> AgentRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None

    while True:
        returncode = process.poll()
        if returncode is not None:
            return AgentRunResult(
                exit_code=returncode,
                timed_out=False,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        now = time.monotonic()
        if timeout_seconds > 0 and now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return AgentRunResult(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        # Without a graceful deadline an in-flight agent always runs to completion.
        if (
            graceful_shutdown_seconds is not None
            and shutdown_requested is not None
            and shutdown_requested()
        ):
            if shutdown_deadline is None:
                shutdown_deadline = now + max(0, graceful_shutdown_seconds)
            if now >= shutdown_deadline:
                _terminate_process(process)
                return AgentRunResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
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
