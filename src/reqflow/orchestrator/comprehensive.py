"""Comprehensive regression over the released queue.

The composer runs the final verification gates in a fixed order and caches a
signature of ``released`` so an unchanged release is not re-verified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from reqflow.config import Settings
from reqflow.orchestrator.checks import CheckRunner
from reqflow.orchestrator.downstream import DownstreamStages
from reqflow.orchestrator.gate_engine import GateEngine
from reqflow.orchestrator.gates import (
    QA_POST_BUNDLE_GATE_FILE,
    SEC_FINAL_GATE_FILE,
    UAT_FULL_GATE_FILE,
    UX_FINAL_GATE_FILE,
    Gate,
    compact_text,
)
from reqflow.orchestrator.models import Queue
from reqflow.orchestrator.state import JsonStateFile
from reqflow.orchestrator.store import WorkItemStore

logger = logging.getLogger(__name__)

COMPREHENSIVE_STATE_FILE = "comprehensive-test-state.json"
STEP_ORDER = ("qa-full", "ux-final", "sec-final", "qa-final", "e2e-full", "uat-full")

ALREADY_PASSED = "already-passed"
NO_SIGNATURE = "no-signature"


class _NotRun(Exception):
    """Internal signal: a step was paused or stopped before producing a verdict."""


@dataclass(slots=True)
class StepResult:
    name: str
    status: str
    summary: str = ""


@dataclass(slots=True)
class ComprehensiveResult:
    """``status`` is one of passed, failed, skipped, or not-run."""

    status: str
    reason: str
    signature: str = ""
    steps: list[StepResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status == "passed"


class ComprehensiveTestComposer:
    """Sequence the final gates and apply them with strict or advisory semantics."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        store: WorkItemStore,
        downstream: DownstreamStages,
        gate_engine: GateEngine,
        checks: CheckRunner,
        clock: Callable[[], datetime] | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.downstream = downstream
        self.gate_engine = gate_engine
        self.checks = checks
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.log = logger_ or logger
        self._state = JsonStateFile(
            settings.paths.quality_dir / COMPREHENSIVE_STATE_FILE,
            logger_=self.log,
        )

    def maybe_run(
        self,
        *,
        reason: str,
        force: bool = False,
        non_mutating: bool = False,
        test_mode: bool = False,
    ) -> ComprehensiveResult:
        """Run the sequence unless ``released`` is empty or already passed as-is.

        In mutating strict mode the first failing step routes ``released`` and
        ends the run. Non-mutating runs finish every step and only record the
        first failure.
        """

        signature = self.store.queue_signature(Queue.RELEASED)
        if not signature:
            return ComprehensiveResult(status="skipped", reason=NO_SIGNATURE)
        state = self._state.load()
        if not force and state.get("lastPassSignature") == signature:
            self.log.info("Comprehensive test skipped: released content already passed")
            return ComprehensiveResult(
                status="skipped",
                reason=ALREADY_PASSED,
                signature=signature,
            )

        strict = self.settings.delivery_quality.strict_gate and not non_mutating
        self.log.info(
            "Comprehensive test start (trigger=%s, %s%s)",
            reason,
            "strict" if strict else "advisory",
            ", non-mutating" if non_mutating else "",
        )
        result = ComprehensiveResult(status="passed", reason="passed", signature=signature)
        first_failure = ""
        runners: dict[str, Callable[[], Gate | None]] = {
            "qa-full": self._run_mandatory_checks,
            "ux-final": lambda: self._run_agent_gate(
                "ux", ["--auto", "--final-pass"], "UX final gate", UX_FINAL_GATE_FILE
            ),
            "sec-final": lambda: self._run_agent_gate(
                "sec", ["--auto", "--final-pass"], "SEC final gate", SEC_FINAL_GATE_FILE
            ),
            "qa-final": lambda: self._run_agent_gate(
                "qa", ["--auto", "--final-pass"], "QA gate", QA_POST_BUNDLE_GATE_FILE
            ),
            "e2e-full": lambda: self._run_e2e(test_mode=test_mode),
            "uat-full": lambda: self._run_agent_gate(
                "uat",
                ["--auto", "--full-regression", "--source-queue", "released"],
                "UAT gate",
                UAT_FULL_GATE_FILE,
            ),
        }

        for step in STEP_ORDER:
            try:
                gate = runners[step]()
            except _NotRun:
                result.steps.append(StepResult(name=step, status="not-run"))
                result.status = "not-run"
                result.reason = f"{step}-not-run"
                self._record(state, trigger=reason, outcome=result.reason)
                return result
            if gate is None:
                result.steps.append(StepResult(name=step, status="skipped"))
                continue

            result.steps.append(StepResult(name=step, status=gate.status, summary=gate.summary))
            self.gate_engine.apply_by_policy(step, Queue.RELEASED, gate, strict=strict)
            if gate.passed:
                self.gate_engine.record_pass(step, self.store.bundle_key(Queue.RELEASED))
                continue

            failure = f"{step}-failed"
            self.log.warning("Comprehensive %s: %s", failure, compact_text(gate.summary, 200))
            if strict:
                self.gate_engine.handle_strict_failure(step, Queue.RELEASED, gate)
                result.status = "failed"
                result.reason = failure
                self._record(state, trigger=reason, outcome=failure, failure=signature)
                return result
            first_failure = first_failure or failure

        if first_failure:
            result.status = "failed"
            result.reason = first_failure
            self._record(state, trigger=reason, outcome=first_failure, failure=signature)
        else:
            self._record(state, trigger=reason, outcome="passed", passed=signature)
        self.log.info("Comprehensive test finished: %s", result.reason)
        return result

    def _run_mandatory_checks(self) -> Gate | None:
        qa = self.settings.qa
        if not (qa.run_checks_in_runner and qa.mandatory_checks):
            return None
        gate = self.checks.run_mandatory_checks()
        if gate is not None:
            return gate
        return Gate(
            status="pass",
            summary=f"Mandatory QA checks passed ({len(qa.mandatory_checks)} command(s)).",
        )

    def _run_agent_gate(self, role: str, args: list[str], label: str, file_name: str) -> Gate:
        run = self.downstream.run_gate_agent(
            role,
            args,
            label=label,
            path=self.settings.paths.gates_dir / file_name,
        )
        if run.gate is None:
            raise _NotRun(label)
        return run.gate

    def _run_e2e(self, *, test_mode: bool) -> Gate | None:
        return self.checks.run_e2e(test_mode=test_mode).gate

    def _record(
        self,
        state: dict[str, object],
        *,
        trigger: str,
        outcome: str,
        passed: str | None = None,
        failure: str | None = None,
    ) -> None:
        state["lastRunAt"] = self._clock().isoformat()
        state["lastTrigger"] = trigger
        state["lastReason"] = outcome
        if passed is not None:
            state["lastPassSignature"] = passed
        if failure is not None:
            state["lastFailureSignature"] = failure
            state["lastFailureReason"] = outcome
        self._state.save(state)
