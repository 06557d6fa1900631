"""Downstream batch stages: UX, SEC, bundle gates, deploy, and post-release scans."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from reqflow.config import Settings
from reqflow.orchestrator.checks import CheckRunner
from reqflow.orchestrator.gate_engine import GateEngine
from reqflow.orchestrator.gates import (
    BUNDLE_GATE_FILE,
    QA_POST_BUNDLE_GATE_FILE,
    UAT_BUNDLE_GATE_FILE,
    Gate,
    compact_text,
    gate_from_invocation,
    write_gate,
    write_pending_gate,
)
from reqflow.orchestrator.invoker import AgentInvoker, InvocationResult
from reqflow.orchestrator.models import Queue
from reqflow.orchestrator.store import WorkItemStore

logger = logging.getLogger(__name__)

MAINT_DECISION_FILE = "post-deploy-decision.json"


@dataclass(slots=True)
class GateRun:
    """A gate agent run; ``gate`` is ``None`` when the run was paused or stopped."""

    gate: Gate | None
    invocation: InvocationResult | None = None

    @property
    def interrupted(self) -> bool:
        return self.gate is None


@dataclass(slots=True)
class StepOutcome:
    """Result of one downstream step."""

    name: str
    progressed: bool = False
    interrupted: bool = False
    gate: Gate | None = None
    signature: str | None = None


@dataclass(slots=True)
class DownstreamSummary:
    progressed: bool = False
    interrupted: bool = False
    released_signature: str | None = None
    maint_signature: str | None = None


class DownstreamStages:
    """Batch stages that act on a whole queue at once."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        store: WorkItemStore,
        invoker: AgentInvoker,
        gate_engine: GateEngine,
        checks: CheckRunner,
        stop_requested: Callable[[], bool] | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.invoker = invoker
        self.gate_engine = gate_engine
        self.checks = checks
        self.stop_requested = stop_requested or (lambda: False)
        self.log = logger_ or logger

    @property
    def gates_dir(self) -> Path:
        return self.settings.paths.gates_dir

    def run_gate_agent(  # noqa: PLR0913
        self,
        role: str,
        args: Sequence[str],
        *,
        label: str,
        path: Path,
        severity: str = "P1",
        file_flag: str = "--gate-file",
    ) -> GateRun:
        """Write the pending sentinel, run the agent, and read back a definitive verdict."""

        write_pending_gate(path)
        invocation = self.invoker.invoke(role, [*args, file_flag, str(path)])
        if invocation.interrupted:
            # No verdict was produced; drop the sentinel instead of leaving it behind.
            path.unlink(missing_ok=True)
            self.log.info("%s not run: %s", label, invocation.failure_reason())
            return GateRun(gate=None, invocation=invocation)
        gate = gate_from_invocation(label, path, invocation, severity=severity)
        self.log.info("%s %s: %s", label, gate.status, compact_text(gate.summary, 200))
        return GateRun(gate=gate, invocation=invocation)

    def run_full(
        self,
        *,
        test_mode: bool,
        released_signature: str,
        maint_signature: str,
    ) -> DownstreamSummary:
        """Run every downstream step in order, stopping at the first interruption."""

        summary = DownstreamSummary()
        steps: list[Callable[[], StepOutcome]] = [
            self.run_ux_batch,
            self.run_sec_batch,
            self.run_qa_bundle_gate,
            self.run_uat_bundle_gate,
            lambda: self.run_deploy(test_mode=test_mode),
        ]
        if not test_mode:
            steps.append(lambda: self.run_qa_post_bundle(released_signature))
            steps.append(lambda: self.run_maint_post_deploy(maint_signature))

        for step in steps:
            if self.stop_requested():
                summary.interrupted = True
                break
            outcome = step()
            summary.progressed = summary.progressed or outcome.progressed
            if outcome.name == "qa-post" and outcome.signature is not None:
                summary.released_signature = outcome.signature
            if outcome.name == "maint" and outcome.signature is not None:
                summary.maint_signature = outcome.signature
            if outcome.interrupted:
                summary.interrupted = True
                break
        return summary

    def run_ux_batch(self) -> StepOutcome:
        moved = self.store.move_all(
            Queue.QA,
            Queue.UX,
            notes=["Delivery runner: route QA queue to UX bundle pass"],
        )
        if moved:
            self.log.info("UX bundle intake moved qa->ux: %d", moved)
        if self.store.count(Queue.UX) == 0:
            return StepOutcome(name="ux", progressed=moved > 0)

        self.log.info("UX batch start")
        result = self.invoker.invoke("ux", ["--auto", "--batch"])
        if result.interrupted:
            return StepOutcome(name="ux", progressed=moved > 0, interrupted=True)
        if not result.ok:
            self._fail_batch("UX", Queue.UX, result)
            return StepOutcome(name="ux", progressed=True)

        normalized = self.store.move_all(
            Queue.DEPLOY,
            Queue.SEC,
            notes=["Delivery runner: normalize UX pass queue deploy->sec"],
        )
        if normalized:
            self.log.info("UX normalize moved deploy->sec: %d", normalized)
        self.store.move_all(
            Queue.UX,
            Queue.SEC,
            notes=["Delivery runner: UX output fallback -> sec"],
        )
        return StepOutcome(name="ux", progressed=True)

    def run_sec_batch(self) -> StepOutcome:
        if self.store.count(Queue.SEC) == 0:
            return StepOutcome(name="sec")

        self.log.info("SEC batch start")
        result = self.invoker.invoke("sec", ["--auto", "--batch"])
        if result.interrupted:
            return StepOutcome(name="sec", interrupted=True)
        if not result.ok:
            self._fail_batch("SEC", Queue.SEC, result)
            return StepOutcome(name="sec", progressed=True)

        normalized = self.store.move_all(
            Queue.UX,
            Queue.QA,
            notes=["Delivery runner: normalize SEC pass queue ux->qa"],
        )
        if normalized:
            self.log.info("SEC normalize moved ux->qa: %d", normalized)
        self.store.move_all(
            Queue.SEC,
            Queue.QA,
            notes=["Delivery runner: SEC output fallback -> qa"],
        )
        return StepOutcome(name="sec", progressed=True)

    def run_qa_bundle_gate(self) -> StepOutcome:
        if self.store.count(Queue.QA) == 0:
            return StepOutcome(name="qa")

        quality = self.settings.delivery_quality
        strict = quality.strict_gate and quality.require_qa_pass
        path = self.gates_dir / BUNDLE_GATE_FILE
        bundle_key = self.store.bundle_key(Queue.QA)

        if strict and self.settings.qa.run_checks_in_runner:
            check_gate = self.checks.run_mandatory_checks()
            if check_gate is not None:
                write_gate(path, check_gate)
                self.gate_engine.apply_by_policy("qa", Queue.QA, check_gate, strict=True)
                self.gate_engine.handle_strict_failure("qa", Queue.QA, check_gate)
                return StepOutcome(name="qa", progressed=True, gate=check_gate)

        self.log.info("QA bundle gate start (%s)", "strict" if strict else "advisory")
        run = self.run_gate_agent(
            "qa",
            ["--auto", "--batch-tests", "--batch-queue", "qa"],
            label="QA gate",
            path=path,
        )
        if run.gate is None:
            return StepOutcome(name="qa", interrupted=True)
        gate = run.gate

        if not strict:
            self.gate_engine.apply_outcomes("qa", Queue.QA, gate)
            self.store.move_all(
                Queue.QA,
                Queue.DEPLOY,
                notes=[_queue_note("Delivery runner: QA advisory", gate, "continue to deploy")],
            )
            return StepOutcome(name="qa", progressed=True, gate=gate)

        self.gate_engine.apply_by_policy("qa", Queue.QA, gate, strict=True)
        if gate.passed:
            self.gate_engine.record_pass("qa", bundle_key)
            self.store.move_all(
                Queue.QA,
                Queue.DEPLOY,
                notes=["Delivery runner: QA strict pass -> continue to deploy"],
            )
        else:
            self.gate_engine.handle_strict_failure("qa", Queue.QA, gate)
        return StepOutcome(name="qa", progressed=True, gate=gate)

    def run_uat_bundle_gate(self) -> StepOutcome:
        if self.store.count(Queue.DEPLOY) == 0:
            return StepOutcome(name="uat")

        quality = self.settings.delivery_quality
        strict = quality.strict_gate and quality.require_uat_pass
        bundle_key = self.store.bundle_key(Queue.DEPLOY)
        self.log.info("UAT bundle gate start (%s)", "strict" if strict else "advisory")
        run = self.run_gate_agent(
            "uat",
            ["--auto", "--batch", "--source-queue", "deploy"],
            label="UAT gate",
            path=self.gates_dir / UAT_BUNDLE_GATE_FILE,
        )
        if run.gate is None:
            return StepOutcome(name="uat", interrupted=True)
        gate = run.gate

        if not strict:
            self.gate_engine.apply_outcomes("uat", Queue.DEPLOY, gate)
            self.log.info(_queue_note("UAT advisory", gate, "continue to deploy"))
            return StepOutcome(name="uat", progressed=True, gate=gate)

        self.gate_engine.apply_by_policy("uat", Queue.DEPLOY, gate, strict=True)
        if gate.passed:
            self.gate_engine.record_pass("uat", bundle_key)
        else:
            self.gate_engine.handle_strict_failure("uat", Queue.DEPLOY, gate)
        return StepOutcome(name="uat", progressed=True, gate=gate)

    def run_deploy(self, *, test_mode: bool) -> StepOutcome:
        if self.store.count(Queue.DEPLOY) == 0:
            return StepOutcome(name="deploy")

        bundle_ids = self.store.bundle_ids(Queue.DEPLOY)
        if test_mode:
            note = "Delivery runner: test mode release without deploy agent"
        else:
            self.log.info("DEPLOY bundle start")
            result = self.invoker.invoke("deploy", ["--auto", "--batch"])
            if result.interrupted:
                return StepOutcome(name="deploy", interrupted=True)
            if not result.ok:
                self._fail_batch("DEPLOY", Queue.DEPLOY, result)
                return StepOutcome(name="deploy", progressed=True)
            note = "Delivery runner: deploy bundle released"

        released = self.store.move_all(Queue.DEPLOY, Queue.RELEASED, notes=[note])
        for bundle_id in bundle_ids:
            self.gate_engine.reset_bundle(bundle_id)
        self.log.info("Released %d requirement(s) from bundle(s) %s", released, bundle_ids)
        return StepOutcome(name="deploy", progressed=True)

    def run_qa_post_bundle(self, last_signature: str, *, force: bool = False) -> StepOutcome:
        """QA final pass over ``released``; runs only when its content changed."""

        signature = self.store.queue_signature(Queue.RELEASED)
        if not signature:
            return StepOutcome(name="qa-post", signature="")
        if signature == last_signature and not force:
            return StepOutcome(name="qa-post", signature=signature)

        self.log.info("QA post-bundle final pass start")
        run = self.run_gate_agent(
            "qa",
            ["--auto", "--final-pass"],
            label="QA gate",
            path=self.gates_dir / QA_POST_BUNDLE_GATE_FILE,
        )
        if run.gate is None:
            return StepOutcome(name="qa-post", interrupted=True)
        self.gate_engine.apply_outcomes("qa-post", Queue.RELEASED, run.gate)
        return StepOutcome(
            name="qa-post",
            progressed=True,
            gate=run.gate,
            signature=self.store.queue_signature(Queue.RELEASED),
        )

    def run_maint_post_deploy(self, last_signature: str) -> StepOutcome:
        signature = self.store.queue_signature(Queue.RELEASED)
        if not signature:
            return StepOutcome(name="maint", signature="")
        if signature == last_signature:
            return StepOutcome(name="maint", signature=signature)

        self.log.info("MAINT post-deploy hygiene scan start")
        run = self.run_gate_agent(
            "maint",
            ["--auto", "--post-deploy"],
            label="MAINT hygiene scan",
            path=self.settings.paths.runtime_root / "maint" / MAINT_DECISION_FILE,
            severity="P2",
            file_flag="--decision-file",
        )
        if run.gate is None:
            return StepOutcome(name="maint", interrupted=True)
        self.gate_engine.apply_outcomes("maint", Queue.RELEASED, run.gate)
        return StepOutcome(
            name="maint",
            progressed=True,
            gate=run.gate,
            signature=self.store.queue_signature(Queue.RELEASED),
        )

    def _fail_batch(self, label: str, queue: Queue, result: InvocationResult) -> None:
        reason = result.failure_reason()
        moved = self.store.move_all(
            queue,
            Queue.BLOCKED,
            notes=[f"Delivery runner: {label} batch failed", f"- reason: {reason} -> blocked"],
        )
        self.log.warning("%s batch failed (%s); moved %d item(s) to blocked", label, reason, moved)


def _queue_note(prefix: str, gate: Gate, action: str) -> str:
    if gate.passed:
        return f"{prefix} pass -> {action}"
    return f"{prefix} fail -> {action} (summary: {compact_text(gate.summary, 250)})"
