"""Runner-side shell checks: mandatory QA commands and the deterministic E2E suite."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from reqflow.config import Settings
from reqflow.orchestrator.backend.cli_backend import TIMEOUT_EXIT_CODE
from reqflow.orchestrator.gates import (
    E2E_FULL_GATE_FILE,
    Finding,
    Gate,
    compact_text,
    write_gate,
)

logger = logging.getLogger(__name__)

MANDATORY_CHECK_SUMMARY = "Mandatory QA check failed"


@dataclass(slots=True)
class CommandResult:
    """Captured outcome of one shell command."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def details(self) -> str:
        parts = [f"command: {self.command}", f"exit code: {self.exit_code}"]
        if self.timed_out:
            parts.append("timed out")
        output = compact_text(self.stderr or self.stdout, 500)
        if output:
            parts.append(f"output: {output}")
        return " | ".join(parts)


ShellRunner = Callable[..., CommandResult]


def run_shell(
    command: str,
    *,
    cwd: Path,
    timeout_seconds: int | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run ``command`` through a login bash shell and capture its output."""

    merged_env = os.environ.copy()
    merged_env.update(env or {})
    try:
        completed = subprocess.run(  # noqa: S603
            ["bash", "-lc", command],  # noqa: S607
            cwd=cwd,
            env=merged_env,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout_seconds if timeout_seconds and timeout_seconds > 0 else None,
            check=False,
        )
    except subprocess.TimeoutExpired as error:
        return CommandResult(
            command=command,
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=_as_text(error.stdout),
            stderr=_as_text(error.stderr),
            timed_out=True,
        )
    except OSError as error:
        return CommandResult(command=command, exit_code=127, stderr=str(error))
    return CommandResult(
        command=command,
        exit_code=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )


def parse_env_pairs(pairs: Iterable[str]) -> dict[str, str]:
    """Turn ``KEY=VALUE`` strings into a mapping; entries without ``=`` are ignored."""

    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if sep and key.strip():
            env[key.strip()] = value
    return env


def mandatory_check_gate(result: CommandResult) -> Gate:
    return Gate(
        status="fail",
        summary=f"{MANDATORY_CHECK_SUMMARY}: {compact_text(result.command, 200)}",
        blocking_findings=[
            Finding(
                severity="P1",
                title=f"mandatory check failed: {result.command}",
                details=result.details(),
            ),
        ],
    )


@dataclass(slots=True)
class E2eOutcome:
    """``gate`` is ``None`` when the suite was skipped."""

    gate: Gate | None
    stage: str = ""
    commands_run: int = 0

    @property
    def skipped(self) -> bool:
        return self.gate is None


class CheckRunner:
    """Runs configured shell commands from ``repo_root`` and turns them into gates."""

    def __init__(
        self,
        *,
        settings: Settings,
        runner: ShellRunner | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or run_shell
        self.log = logger_ or logger

    @property
    def repo_root(self) -> Path:
        return self.settings.paths.repo_root or self.settings.paths.agents_root

    def run_mandatory_checks(self) -> Gate | None:
        """Run ``qa.mandatory_checks`` in order; return a fail gate for the first failure."""

        qa = self.settings.qa
        for command in qa.mandatory_checks:
            self.log.info("Mandatory check: %s", command)
            result = self.runner(
                command,
                cwd=self.repo_root,
                timeout_seconds=qa.check_timeout_seconds,
            )
            if not result.ok:
                self.log.warning("Mandatory check failed: %s", result.details())
                return mandatory_check_gate(result)
        return None

    def run_e2e(self, *, test_mode: bool) -> E2eOutcome:
        """Run setup, healthchecks, and the test command; teardown always runs.

        The resulting gate is also written to ``e2e-full-gate.json``.
        """

        e2e = self.settings.e2e
        required = test_mode and e2e.required_in_test_mode
        if not e2e.enabled:
            if required:
                return self._finish(
                    self._config_failure("e2e is disabled but required in test mode"),
                    stage="config",
                )
            return E2eOutcome(gate=None)
        if not (test_mode or e2e.run_on_full_completion or required):
            return E2eOutcome(gate=None)
        if not e2e.test_command.strip():
            return self._finish(self._config_failure("e2e.test_command is empty"), stage="config")

        cwd = e2e.working_dir or self.repo_root
        env = parse_env_pairs(e2e.env)
        commands_run = 0
        failure: tuple[str, CommandResult] | None = None

        plan = [
            *(("setup", command) for command in e2e.setup_commands),
            *(("healthcheck", command) for command in e2e.healthcheck_commands),
            ("test", e2e.test_command),
        ]
        for stage, command in plan:
            result = self._run(stage, command, cwd=cwd, env=env)
            commands_run += 1
            if not result.ok:
                failure = (stage, result)
                break

        if e2e.teardown_command.strip():
            teardown = self._run("teardown", e2e.teardown_command, cwd=cwd, env=env)
            commands_run += 1
            if not teardown.ok and failure is None:
                failure = ("teardown", teardown)

        if failure is not None:
            stage, result = failure
            gate = Gate(
                status="fail",
                summary=f"Deterministic E2E {stage} failed",
                blocking_findings=[
                    Finding(
                        severity="P1",
                        title=f"Deterministic E2E {stage} failed",
                        details=result.details(),
                    ),
                ],
            )
            return self._finish(gate, stage=stage, commands_run=commands_run)

        gate = Gate(
            status="pass",
            summary=f"Deterministic E2E full regression passed ({commands_run} command(s)).",
        )
        return self._finish(gate, stage="test", commands_run=commands_run)

    def _run(self, stage: str, command: str, *, cwd: Path, env: dict[str, str]) -> CommandResult:
        self.log.info("E2E %s: %s", stage, command)
        return self.runner(
            command,
            cwd=cwd,
            timeout_seconds=self.settings.e2e.timeout_seconds,
            env=env,
        )

    def _config_failure(self, details: str) -> Gate:
        return Gate(
            status="fail",
            summary="Deterministic E2E config failed",
            blocking_findings=[
                Finding(severity="P1", title="Deterministic E2E config failed", details=details),
            ],
        )

    def _finish(self, gate: Gate, *, stage: str, commands_run: int = 0) -> E2eOutcome:
        write_gate(self.settings.paths.gates_dir / E2E_FULL_GATE_FILE, gate)
        if not gate.passed:
            self.log.warning("%s", gate.summary)
        return E2eOutcome(gate=gate, stage=stage, commands_run=commands_run)


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
