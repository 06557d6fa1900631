"""Controllers for delivery CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from reqflow.config import Settings
from reqflow.orchestrator.admission import BundleAdmission
from reqflow.orchestrator.backend import AgentBackend, CliAgentBackend
from reqflow.orchestrator.checks import CheckRunner
from reqflow.orchestrator.classifier import HeuristicRoutingClassifier
from reqflow.orchestrator.comprehensive import ComprehensiveTestComposer
from reqflow.orchestrator.control import (
    ControlPlane,
    DeliveryOptions,
    IntakeLoop,
    OperatorControls,
    format_status_line,
    normalize_mode,
)
from reqflow.orchestrator.downstream import DownstreamStages
from reqflow.orchestrator.followups import FollowupWriter
from reqflow.orchestrator.gate_engine import GateEngine
from reqflow.orchestrator.intake import IntakePlanner
from reqflow.orchestrator.invoker import AgentInvoker
from reqflow.orchestrator.loop_guard import INTAKE_STATE_FILE, LoopGuard
from reqflow.orchestrator.misroute import MisrouteRecovery
from reqflow.orchestrator.pause import PAUSE_STATE_FILE, PauseController
from reqflow.orchestrator.stages import StageRunner
from reqflow.orchestrator.store import WorkItemStore

ROOT_LOGGER_NAME = "reqflow"


@dataclass(slots=True)
class DeliverCommand:
    """CLI input for the delivery loop."""

    agents_root: Path | None
    mode: str | None
    once: bool
    force: bool
    verbose: bool
    min_bundle: int | None
    max_bundle: int | None


@dataclass(slots=True)
class IntakeCommand:
    """CLI input for the planning loop."""

    agents_root: Path | None
    once: bool
    verbose: bool = True


@dataclass(slots=True)
class StatusCommand:
    agents_root: Path | None


@dataclass(slots=True)
class ComprehensiveCommand:
    """CLI input for a one-off comprehensive regression."""

    agents_root: Path | None
    force: bool
    non_mutating: bool


@dataclass(slots=True)
class Runtime:
    """Wired components sharing one store, pause file, and stop flag."""

    settings: Settings
    store: WorkItemStore
    pause: PauseController
    invoker: AgentInvoker
    gate_engine: GateEngine
    stages: StageRunner
    downstream: DownstreamStages
    composer: ComprehensiveTestComposer
    admission: BundleAdmission


def build_runtime(
    settings: Settings,
    *,
    stop_requested: Callable[[], bool],
    backend: AgentBackend | None = None,
    sleeper: Callable[[float], None] | None = None,
) -> Runtime:
    store = WorkItemStore(settings.paths.requirements_root)
    store.ensure_queues()
    pause = PauseController(settings.paths.runtime_root / PAUSE_STATE_FILE)
    invoker = AgentInvoker(
        settings=settings,
        backend=backend or CliAgentBackend(),
        pause=pause,
        stop_requested=stop_requested,
        sleeper=sleeper,
    )
    classifier = HeuristicRoutingClassifier(settings.arch_routing)
    gate_engine = GateEngine(
        store=store,
        settings=settings.delivery_quality,
        state_dir=settings.paths.quality_dir,
        followups=FollowupWriter(store),
    )
    checks = CheckRunner(settings=settings)
    stages = StageRunner(
        settings=settings,
        store=store,
        invoker=invoker,
        classifier=classifier,
        misroute=MisrouteRecovery(store, classifier),
        stop_requested=stop_requested,
    )
    downstream = DownstreamStages(
        settings=settings,
        store=store,
        invoker=invoker,
        gate_engine=gate_engine,
        checks=checks,
        stop_requested=stop_requested,
    )
    composer = ComprehensiveTestComposer(
        settings=settings,
        store=store,
        downstream=downstream,
        gate_engine=gate_engine,
        checks=checks,
    )
    admission = BundleAdmission(
        store=store,
        force_underfilled_after_cycles=settings.loops.force_underfilled_after_cycles,
        runtime_root=settings.paths.runtime_root,
        vision_mode=settings.intake.default_mode == "vision",
    )
    return Runtime(
        settings=settings,
        store=store,
        pause=pause,
        invoker=invoker,
        gate_engine=gate_engine,
        stages=stages,
        downstream=downstream,
        composer=composer,
        admission=admission,
    )


class DeliveryCliController:
    """Resolve settings, wire components, and render command results as lines."""

    def __init__(
        self,
        *,
        backend_factory: Callable[[], AgentBackend] | None = None,
        sleeper: Callable[[float], None] | None = None,
        stdin: TextIO | None = None,
    ) -> None:
        self.backend_factory = backend_factory or CliAgentBackend
        self.sleeper = sleeper
        self.stdin = stdin

    def deliver(self, command: DeliverCommand) -> list[str]:
        settings = Settings.from_env(agents_root=command.agents_root)
        settings.validate()
        mode = normalize_mode(command.mode or settings.loops.delivery_mode)
        min_bundle = command.min_bundle or settings.loops.bundle_min_size
        max_bundle = max(min_bundle, command.max_bundle or settings.loops.bundle_max_size)
        options = DeliveryOptions(
            mode=mode,
            once=command.once,
            force=command.force,
            min_bundle=min_bundle,
            max_bundle=max_bundle,
        )

        controls = self._controls(verbose=command.verbose)
        runtime = build_runtime(
            settings,
            stop_requested=controls.stop_requested,
            backend=self.backend_factory(),
            sleeper=self.sleeper,
        )
        controls.status_line = lambda: format_status_line(runtime.store)
        plane = ControlPlane(
            store=runtime.store,
            pause=runtime.pause,
            admission=runtime.admission,
            stages=runtime.stages,
            downstream=runtime.downstream,
            composer=runtime.composer,
            stop_requested=controls.stop_requested,
            poll_seconds=settings.loops.delivery_poll_seconds,
            idle_wait_seconds=settings.loops.idle_wait_seconds,
            vision_mode=runtime.admission.vision_mode,
            sleeper=self.sleeper,
        )

        with controls.signal_handlers():
            controls.start_keypress_reader()
            try:
                cycles = plane.run(options)
            finally:
                controls.close()

        lines = [
            f"Delivery finished: mode={mode} cycles={cycles} "
            f"bundle min={min_bundle} max={max_bundle}",
        ]
        if controls.stop_reason:
            lines.append(f"Stop reason: {controls.stop_reason}")
        lines.append(f"Queues: {format_status_line(runtime.store)}")
        return lines

    def intake(self, command: IntakeCommand) -> list[str]:
        settings = Settings.from_env(agents_root=command.agents_root)
        settings.validate()
        controls = self._controls(verbose=command.verbose)
        runtime = build_runtime(
            settings,
            stop_requested=controls.stop_requested,
            backend=self.backend_factory(),
            sleeper=self.sleeper,
        )
        guard = LoopGuard(
            settings.paths.runtime_root / INTAKE_STATE_FILE,
            enabled=settings.intake.idempotence_enabled,
            cooldown_cycles=settings.intake.loop_cooldown_cycles,
        )
        planner = IntakePlanner(
            settings=settings,
            store=runtime.store,
            invoker=runtime.invoker,
            classifier=HeuristicRoutingClassifier(settings.arch_routing),
            guard=guard,
            stop_requested=controls.stop_requested,
        )
        loop = IntakeLoop(
            planner=planner,
            store=runtime.store,
            pause=runtime.pause,
            stop_requested=controls.stop_requested,
            poll_seconds=settings.loops.po_poll_seconds,
            sleeper=self.sleeper,
        )
        with controls.signal_handlers():
            results = loop.run(once=command.once)

        processed = sum(result.processed for result in results)
        lines = [f"Intake finished: cycles={len(results)} processed={processed}"]
        for result in results:
            for outcome in result.outcomes:
                target = outcome.target.value if outcome.target else "-"
                flags = [
                    flag
                    for flag, enabled in (
                        ("skipped", outcome.skipped),
                        ("paused", outcome.paused),
                        ("stale", outcome.stale),
                    )
                    if enabled
                ]
                suffix = f" ({', '.join(flags)})" if flags else ""
                lines.append(f"  {outcome.name}: {outcome.source.value} -> {target}{suffix}")
        lines.append(f"Queues: {format_status_line(runtime.store)}")
        return lines

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(agents_root=command.agents_root)
        store = WorkItemStore(settings.paths.requirements_root)
        lines = [format_status_line(store)]
        state = PauseController(settings.paths.runtime_root / PAUSE_STATE_FILE).active()
        if state is not None:
            lines.append(state.status_line())
        return lines

    def pause_show(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(agents_root=command.agents_root)
        state = PauseController(settings.paths.runtime_root / PAUSE_STATE_FILE).active()
        if state is None:
            return ["No active pause."]
        lines = [state.status_line()]
        if state.raw_excerpt:
            lines.extend(f"  {line}" for line in state.raw_excerpt.splitlines())
        return lines

    def pause_clear(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(agents_root=command.agents_root)
        cleared = PauseController(settings.paths.runtime_root / PAUSE_STATE_FILE).clear()
        return ["Pause cleared." if cleared else "No active pause."]

    def comprehensive(self, command: ComprehensiveCommand) -> list[str]:
        settings = Settings.from_env(agents_root=command.agents_root)
        settings.validate()
        controls = self._controls(verbose=True)
        runtime = build_runtime(
            settings,
            stop_requested=controls.stop_requested,
            backend=self.backend_factory(),
            sleeper=self.sleeper,
        )
        with controls.signal_handlers():
            result = runtime.composer.maybe_run(
                reason="manual",
                force=command.force,
                non_mutating=command.non_mutating,
            )
        lines = [f"Comprehensive test: {result.status} ({result.reason})"]
        for step in result.steps:
            summary = f": {step.summary}" if step.summary else ""
            lines.append(f"  {step.name} {step.status}{summary}")
        return lines

    def _controls(self, *, verbose: bool) -> OperatorControls:
        return OperatorControls(
            verbose=verbose,
            log_target=logging.getLogger(ROOT_LOGGER_NAME),
            stdin=self.stdin,
        )
