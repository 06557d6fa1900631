"""Drain loops for the architecture-review and implementation stages."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from reqflow.config import Settings
from reqflow.orchestrator.classifier import RoutingClassifier, normalize_scope
from reqflow.orchestrator.invoker import AgentInvoker, InvocationResult
from reqflow.orchestrator.misroute import MisrouteRecovery
from reqflow.orchestrator.models import Queue, WorkItem
from reqflow.orchestrator.store import WorkItemStore

logger = logging.getLogger(__name__)

FRESH_THREAD_ENV = "REQFLOW_FRESH_THREAD"


class Reconciliation(str, Enum):
    """What happened to an item after its stage agent ran."""

    HANDED_OFF = "handed_off"
    DOWNGRADED = "downgraded"
    STILL_IN_STAGE = "still_in_stage"
    RECOVERED = "recovered"
    VANISHED = "vanished"


@dataclass(slots=True, frozen=True)
class StageSpec:
    """Static routing table of one drainable stage."""

    label: str
    role: str
    source: Queue
    next_queue: Queue
    clarify_fallback: Queue
    misroute_excluded: frozenset[Queue]

    @property
    def expected(self) -> tuple[Queue, ...]:
        return (self.next_queue, Queue.TO_CLARIFY, Queue.HUMAN_DECISION)


ARCH_STAGE = StageSpec(
    label="ARCH",
    role="arch",
    source=Queue.ARCH,
    next_queue=Queue.DEV,
    clarify_fallback=Queue.DEV,
    misroute_excluded=frozenset({Queue.ARCH, Queue.DEV, Queue.TO_CLARIFY, Queue.HUMAN_DECISION}),
)
DEV_STAGE = StageSpec(
    label="DEV",
    role="dev",
    source=Queue.DEV,
    next_queue=Queue.QA,
    clarify_fallback=Queue.BLOCKED,
    misroute_excluded=frozenset({Queue.DEV, Queue.QA, Queue.TO_CLARIFY, Queue.HUMAN_DECISION}),
)


@dataclass(slots=True)
class StageSummary:
    """Counters for one drain pass."""

    processed: int = 0
    handed_off: int = 0
    bypassed: int = 0
    fallbacks: int = 0
    recovered: int = 0
    interrupted: bool = False
    touched: list[str] = field(default_factory=list)


class StageRunner:
    """Pulls queue heads one at a time and reconciles where the agent left them."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        store: WorkItemStore,
        invoker: AgentInvoker,
        classifier: RoutingClassifier,
        misroute: MisrouteRecovery,
        stop_requested: Callable[[], bool] | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.invoker = invoker
        self.classifier = classifier
        self.misroute = misroute
        self.stop_requested = stop_requested or (lambda: False)
        self.log = logger_ or logger

    def run_arch(self) -> StageSummary:
        """Drain ``arch``; bypass, invoke, or fall back to ``dev`` for every item."""

        summary = StageSummary()
        spec = ARCH_STAGE
        while not self.stop_requested():
            item = self._next_item(spec, summary)
            if item is None:
                break

            meta = self.store.read_metadata(item)
            text = self.store.read_text(item)
            decision = self.classifier.arch_decision(meta if text else None, text)
            if not decision.required:
                self.log.info("ARCH bypass for %s: %s", item.name, decision.reason)
                self.store.move(
                    item,
                    Queue.DEV,
                    notes=["- ARCH bypass", f"- reason: {decision.reason}"],
                )
                summary.bypassed += 1
                continue

            result = self.invoker.invoke(
                spec.role,
                ["--auto", "--requirement", str(item.path)],
                max_retries=self.settings.arch_routing.max_retries,
            )
            if result.interrupted:
                summary.interrupted = True
                break
            self._finish(spec, item, result, summary, failure_target=Queue.DEV)
        return summary

    def run_dev(self) -> StageSummary:
        """Drain ``dev`` with same-thread and fresh-thread recovery retries."""

        summary = StageSummary()
        spec = DEV_STAGE
        dev = self.settings.dev
        failure_target = Queue(dev.failure_route)
        plan: list[tuple[str, dict[str, str]]] = [("initial", {})]
        plan += [("same-thread", {})] * max(0, dev.same_thread_retries)
        plan += [("fresh-thread", {FRESH_THREAD_ENV: "1"})] * max(0, dev.fresh_thread_retries)

        while not self.stop_requested():
            item = self._next_item(spec, summary)
            if item is None:
                break

            role = self.dev_role(self.store.read_metadata(item))
            result: InvocationResult | None = None
            settled = False
            for index, (kind, env) in enumerate(plan):
                if index > 0:
                    self.log.warning(
                        "DEV did not hand off %s; %s retry (%d/%d)",
                        item.name,
                        kind,
                        index,
                        len(plan) - 1,
                    )
                result = self.invoker.invoke(
                    role,
                    ["--auto", "--requirement", str(item.path)],
                    max_retries=0,
                    timeout_seconds=dev.run_timeout_seconds,
                    extra_env=env,
                )
                if result.interrupted:
                    break
                outcome = self._reconcile(spec, item, summary)
                if outcome != Reconciliation.STILL_IN_STAGE:
                    settled = True
                    break

            if result is not None and result.interrupted:
                summary.interrupted = True
                break
            if not settled and result is not None:
                self._fallback(spec, item, result, summary, failure_target=failure_target)
        return summary

    def dev_role(self, meta: dict[str, str]) -> str:
        routing = self.settings.dev.routing
        scope = normalize_scope(meta)
        if routing.mode == "split":
            if scope == "frontend" and routing.use_fe:
                return "dev-fe"
            if scope == "backend" and routing.use_be:
                return "dev-be"
        if routing.use_fs:
            return "dev-fs"
        if scope == "frontend" and routing.use_fe:
            return "dev-fe"
        if scope == "backend" and routing.use_be:
            return "dev-be"
        return "dev"

    def _next_item(self, spec: StageSpec, summary: StageSummary) -> WorkItem | None:
        item = self.store.head(spec.source)
        if item is None:
            return None
        if item.name in summary.touched:
            # A move left the head in place; stop instead of spinning on it.
            self.log.error(
                "%s could not move %s out of %s",
                spec.label,
                item.name,
                spec.source.value,
            )
            return None
        summary.touched.append(item.name)
        summary.processed += 1
        return item

    def _finish(
        self,
        spec: StageSpec,
        item: WorkItem,
        result: InvocationResult,
        summary: StageSummary,
        *,
        failure_target: Queue,
    ) -> None:
        if self._reconcile(spec, item, summary) == Reconciliation.STILL_IN_STAGE:
            self._fallback(spec, item, result, summary, failure_target=failure_target)

    def _reconcile(
        self,
        spec: StageSpec,
        item: WorkItem,
        summary: StageSummary,
    ) -> Reconciliation:
        """Check the expected successor queues first, then misroute recovery."""

        landed = self.store.find_in(item.name, spec.expected)
        if landed is not None:
            if item.path.exists():
                self.store.remove_stale_duplicate(
                    item,
                    reason=f"{spec.label} handed off to {landed.queue.value}",
                )
            summary.handed_off += 1
            if landed.queue == Queue.TO_CLARIFY and not self._has_evidence(landed):
                self.store.move(
                    landed,
                    spec.clarify_fallback,
                    notes=[
                        f"- {spec.label} clarify without business clarification evidence",
                        f"- route: {spec.clarify_fallback.value}",
                    ],
                )
                return Reconciliation.DOWNGRADED
            return Reconciliation.HANDED_OFF

        if item.path.exists():
            return Reconciliation.STILL_IN_STAGE

        recovered = self.misroute.recover(
            item.name,
            stage_label=spec.label,
            excluded=spec.misroute_excluded,
            default_target=spec.next_queue,
            clarify_fallback=spec.clarify_fallback,
        )
        if recovered is None:
            self.log.warning("%s item %s disappeared from every queue", spec.label, item.name)
            return Reconciliation.VANISHED
        summary.recovered += 1
        return Reconciliation.RECOVERED

    def _fallback(
        self,
        spec: StageSpec,
        item: WorkItem,
        result: InvocationResult,
        summary: StageSummary,
        *,
        failure_target: Queue,
    ) -> None:
        summary.fallbacks += 1
        if result.ok:
            target = spec.next_queue
            notes = [
                f"- {spec.label} output fallback: agent left the item in {spec.source.value}",
                f"- route: {target.value}",
            ]
        else:
            target = failure_target
            notes = [
                f"- {spec.label} failed - {result.failure_reason()} - "
                f"fallback: continue with {target.value.upper()}",
            ]
        self.log.warning("%s fallback for %s -> %s", spec.label, item.name, target.value)
        self.store.move(item, target, notes=notes)

    def _has_evidence(self, item: WorkItem) -> bool:
        return self.classifier.has_business_clarification_evidence(
            self.store.read_metadata(item),
            self.store.read_text(item),
        )
