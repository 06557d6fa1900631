"""Runs external agents with retries, failure classification, and pause handling."""

from __future__ import annotations

import logging
import shlex
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from reqflow.config import Settings
from reqflow.orchestrator.backend import (
    AgentBackend,
    AgentRunError,
    AgentRunRequest,
)
from reqflow.orchestrator.backend.cli_backend import read_tail
from reqflow.orchestrator.failure_classifier import (
    FailureClassification,
    classify_invocation_failure,
)
from reqflow.orchestrator.models import FailureClass
from reqflow.orchestrator.pause import PauseController, PauseState

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 120_000


@dataclass(slots=True)
class InvocationResult:
    """Outcome of one agent invocation including all retries."""

    role: str
    command: str
    ok: bool
    exit_code: int | None = None
    stderr: str = ""
    timed_out: bool = False
    aborted: bool = False
    paused: bool = False
    attempts: int = 0
    pause_state: PauseState | None = None
    classification: FailureClassification | None = None

    @property
    def interrupted(self) -> bool:
        return self.aborted or self.paused

    def failure_reason(self) -> str:
        if self.ok:
            return "ok"
        if self.aborted:
            return "stop requested"
        if self.paused:
            return "global pause active"
        if self.timed_out:
            return "timed out"
        if self.classification is not None:
            return self.classification.reason_code
        return f"exit code {self.exit_code}"


def sleep_with_stop(
    seconds: float,
    stop_requested: Callable[[], bool],
    *,
    step: float = 0.1,
) -> None:
    deadline = time.monotonic() + seconds
    while not stop_requested() and time.monotonic() < deadline:
        time.sleep(min(step, max(0.0, deadline - time.monotonic())))


class AgentInvoker:
    """Invoke agent roles configured in ``Settings.agents`` from ``agents_root``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        backend: AgentBackend,
        pause: PauseController,
        stop_requested: Callable[[], bool] | None = None,
        sleeper: Callable[[float], None] | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.pause = pause
        self.stop_requested = stop_requested or (lambda: False)
        self._sleeper = sleeper
        self.log = logger_ or logger

    def invoke(  # noqa: C901
        self,
        role: str,
        args: Sequence[str] = (),
        *,
        max_retries: int | None = None,
        timeout_seconds: int | None = None,
        extra_env: Mapping[str, str] | None = None,
    ) -> InvocationResult:
        """Run ``role`` until it exits 0, fails for good, pauses, or stop is requested.

        Only timeouts and transient-looking failures are retried; a usage-limit
        failure activates the global pause instead of retrying.
        """

        retries = self.settings.loops.max_retries if max_retries is None else max_retries
        timeout = timeout_seconds or self.settings.loops.agent_timeout_seconds
        argv = [*self.settings.agents.command_for(role), *args]
        command = shlex.join(argv)
        log_dir = self.settings.paths.logs_dir
        attempt = 0

        while True:
            if self.stop_requested():
                return InvocationResult(
                    role=role,
                    command=command,
                    ok=False,
                    aborted=True,
                    attempts=attempt,
                )
            active_pause = self.pause.active()
            if active_pause is not None:
                return InvocationResult(
                    role=role,
                    command=command,
                    ok=False,
                    paused=True,
                    attempts=attempt,
                    pause_state=active_pause,
                )

            attempt += 1
            self.log.info("Running %s (attempt %d/%d): %s", role, attempt, retries + 1, command)
            request = AgentRunRequest(
                role=role,
                argv=argv,
                cwd=self.settings.paths.agents_root,
                timeout_seconds=timeout,
                stdout_path=log_dir / f"{role}.stdout.log",
                stderr_path=log_dir / f"{role}.stderr.log",
                env=dict(extra_env or {}),
                shutdown_requested=self.stop_requested,
                graceful_shutdown_seconds=self.settings.loops.graceful_shutdown_seconds,
            )
            try:
                run = self.backend.run(request)
            except AgentRunError as error:
                classification = FailureClassification(
                    failure_class=FailureClass.START_FAILED,
                    reason_code=f"{role}_start_failed",
                    matched_rule="transient_start" if error.transient else "start_failed",
                    matched_pattern=None,
                )
                result = InvocationResult(
                    role=role,
                    command=command,
                    ok=False,
                    stderr=str(error),
                    attempts=attempt,
                    classification=classification,
                )
                if error.transient and attempt <= retries:
                    self._backoff(role, attempt, str(error))
                    continue
                self.log.error("%s failed to start: %s", role, error)
                return result

            if run.exit_code == 0 and not run.timed_out:
                return InvocationResult(
                    role=role,
                    command=command,
                    ok=True,
                    exit_code=0,
                    attempts=attempt,
                )

            stderr = read_tail(run.stderr_path, STDERR_TAIL_CHARS)
            classification = classify_invocation_failure(
                role=role,
                exit_code=run.exit_code,
                timed_out=run.timed_out,
                stderr=stderr,
            )
            result = InvocationResult(
                role=role,
                command=command,
                ok=False,
                exit_code=run.exit_code,
                stderr=stderr,
                timed_out=run.timed_out,
                attempts=attempt,
                classification=classification,
            )
            if classification.pauses:
                result.paused = True
                result.pause_state = self.pause.activate_from_text(stderr, source=role)
                return result
            if classification.retryable and attempt <= retries and not self.stop_requested():
                self._backoff(role, attempt, classification.reason_code)
                continue

            self.log.warning(
                "%s failed after %d attempt(s): %s",
                role,
                attempt,
                classification.to_log_details(role=role),
            )
            return result

    def compute_retry_delay(self, *, attempt: int) -> float:
        return self.settings.loops.retry_delay_seconds * (2 ** max(attempt - 1, 0))

    def _backoff(self, role: str, attempt: int, reason: str) -> None:
        delay = self.compute_retry_delay(attempt=attempt)
        self.log.warning(
            "%s attempt %d failed (%s); retrying in %.1fs",
            role,
            attempt,
            reason,
            delay,
        )
        if self._sleeper is not None:
            self._sleeper(delay)
        else:
            sleep_with_stop(delay, self.stop_requested)
