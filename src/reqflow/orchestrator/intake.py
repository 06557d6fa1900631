"""Planning intake: route clarification, input, refinement, and backlog items.

Each candidate is handed to the ``po`` agent, whose decision file is parsed
into a typed decision and then passed through routing guards that keep
items from parking in clarification or escalation queues without a reason.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from reqflow.config import Settings
from reqflow.orchestrator.classifier import RoutingClassifier
from reqflow.orchestrator.decisions import (
    BlockDecision,
    ClarifyDecision,
    Decision,
    PassDecision,
    parse_decision_file,
)
from reqflow.orchestrator.invoker import AgentInvoker
from reqflow.orchestrator.loop_guard import LoopGuard, content_hash, item_key
from reqflow.orchestrator.models import Queue, WorkItem
from reqflow.orchestrator.store import WorkItemStore

logger = logging.getLogger(__name__)

INTAKE_ORDER: tuple[Queue, ...] = (
    Queue.TO_CLARIFY,
    Queue.HUMAN_INPUT,
    Queue.REFINEMENT,
    Queue.BACKLOG,
)
# A same-named file in any of these makes a clarification/input copy stale.
STALE_DUPLICATE_QUEUES: tuple[Queue, ...] = (
    Queue.ARCH,
    Queue.SELECTED,
    Queue.BACKLOG,
    Queue.REFINEMENT,
    Queue.WONT_DO,
    Queue.HUMAN_DECISION,
    Queue.DEV,
    Queue.QA,
    Queue.SEC,
    Queue.UX,
    Queue.DEPLOY,
    Queue.RELEASED,
)
INFERRED_TARGET_REPLACES = frozenset({Queue.REFINEMENT, Queue.TO_CLARIFY, Queue.HUMAN_DECISION})

CLARIFICATION_HEADING = "Clarification Needed"
HUMAN_DECISION_HEADING = "Human Decision"

_ID_SANITIZE_RE = re.compile(r"[^A-Za-z0-9_-]+")


@dataclass(slots=True)
class IntakeOutcome:
    """Where one intake pass left an item."""

    name: str
    source: Queue
    target: Queue | None = None
    skipped: bool = False
    paused: bool = False
    stale: bool = False
    created: list[WorkItem] = field(default_factory=list)


@dataclass(slots=True)
class IntakeCycleResult:
    cycle: int
    outcomes: list[IntakeOutcome] = field(default_factory=list)
    paused: bool = False

    @property
    def processed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.target is not None)


class IntakePlanner:
    """One intake cycle at a time, with the loop guard consulted per item."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        store: WorkItemStore,
        invoker: AgentInvoker,
        classifier: RoutingClassifier,
        guard: LoopGuard,
        stop_requested: Callable[[], bool] | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.invoker = invoker
        self.classifier = classifier
        self.guard = guard
        self.stop_requested = stop_requested or (lambda: False)
        self.log = logger_ or logger

    def run_cycle(self) -> IntakeCycleResult:
        cycle = self.guard.next_cycle()
        result = IntakeCycleResult(cycle=cycle)
        for item in self.pick_candidates(self.settings.intake.max_per_cycle):
            if self.stop_requested():
                break
            outcome = self.process(item)
            result.outcomes.append(outcome)
            if outcome.paused:
                result.paused = True
                break
        return result

    def pick_candidates(self, limit: int) -> list[WorkItem]:
        """One item per queue in intake order first, then round-robin across queues.

        Items on loop-guard cooldown are passed over so they do not use up a slot.
        """

        per_queue = [
            [item for item in self.store.list_queue(queue) if not self._on_cooldown(item)]
            for queue in INTAKE_ORDER
        ]
        picked: list[WorkItem] = []
        depth = 0
        while len(picked) < limit and any(depth < len(items) for items in per_queue):
            for items in per_queue:
                if depth < len(items) and len(picked) < limit:
                    picked.append(items[depth])
            depth += 1
        return picked

    def process(self, item: WorkItem) -> IntakeOutcome:
        """Run the ``po`` agent on one item and route it by the parsed decision."""

        outcome = IntakeOutcome(name=item.name, source=item.queue)
        if self._drop_stale_duplicate(item):
            outcome.stale = True
            return outcome

        decision_path = self.settings.paths.decisions_dir / f"{item.path.stem}.decision.json"
        decision_path.parent.mkdir(parents=True, exist_ok=True)
        decision_path.unlink(missing_ok=True)

        result = self.invoker.invoke(
            "po",
            [
                "--auto",
                "--mode",
                "intake",
                "--requirement",
                str(item.path),
                "--decision-file",
                str(decision_path),
            ],
        )
        if result.interrupted:
            outcome.paused = result.paused
            self.log.info("PO intake not run for %s: %s", item.name, result.failure_reason())
            return outcome

        current = self.store.locate(item.name)
        if current is None:
            self.log.warning("Intake item vanished during PO run: %s", item.name)
            return outcome

        decision = parse_decision_file(
            decision_path,
            fallback_status="pass" if result.ok else "clarify",
            label="PO",
        )
        notes: list[str] = []
        if not result.ok:
            notes += [
                "PO runner: execution failure",
                f"- reason: {result.failure_reason()}",
            ]

        target, guard_notes = self.choose_target(decision, source=item.queue)
        notes += guard_notes
        notes += [
            "PO runner routing",
            f"- status: {decision.raw_status or 'unknown'}",
            f"- target: {target.value}",
        ]
        moved = self._move_with_fallback(current, target, notes)
        outcome.target = moved.queue if moved is not None else None

        if moved is not None and moved.queue == Queue.TO_CLARIFY:
            self._write_clarification_request(moved, decision)
        if moved is not None and moved.queue == Queue.HUMAN_DECISION:
            self._write_human_decision_request(moved, decision)

        requirements = list(decision.new_requirements)
        if item.queue == Queue.TO_CLARIFY and target == Queue.BACKLOG and not requirements:
            requirements = [self._fallback_followup(current, decision)]
            if moved is not None:
                self.store.append_audit_section(
                    moved,
                    [
                        "PO runner follow-up guard",
                        "- no follow-up requirement emitted; created one refinement item",
                    ],
                )
        outcome.created = self.write_refinement_items(item.name, requirements)

        if moved is not None:
            meta = self.store.read_metadata(moved)
            self.guard.record(
                item_key(meta.get("id", ""), moved.name),
                content_hash(self.store.read_text(moved)),
                item.queue.value,
                moved.queue.value,
            )
        return outcome

    def choose_target(self, decision: Decision, *, source: Queue) -> tuple[Queue, list[str]]:
        """Apply routing guards; returns the target queue and the audit lines explaining it."""

        notes: list[str] = []
        explicit = decision.target_queue
        if explicit is not None:
            target = explicit
        elif decision.wont_do:
            target = Queue.WONT_DO
            notes += [
                "PO runner wont-do guard",
                "- duplicate, already-implemented, or invalid requirement signal",
            ]
        elif isinstance(decision, PassDecision):
            target = Queue.SELECTED
        elif isinstance(decision, BlockDecision):
            target = Queue.HUMAN_DECISION
        else:
            target = Queue.TO_CLARIFY

        if explicit is None and target in INFERRED_TARGET_REPLACES:
            inferred = self.classifier.infer_target(_decision_text(decision))
            if inferred is not None and inferred != target:
                notes += [f"- inferred target {inferred.value} from decision text"]
                target = inferred

        hard_conflict = decision.hard_vision_conflict
        if target == Queue.TO_CLARIFY and not hard_conflict and not _actionable(decision):
            target = Queue.BACKLOG if source == Queue.TO_CLARIFY else Queue.REFINEMENT
            notes += [
                "PO runner clarify contract guard",
                "- to-clarify requested without question and recommendation; routed decisively",
            ]
        if source == Queue.TO_CLARIFY and target == Queue.TO_CLARIFY:
            target = Queue.BACKLOG
            notes += [
                "PO runner decisiveness guard",
                "- item was already in to-clarify; routed to backlog",
            ]
        if target == Queue.HUMAN_DECISION and not hard_conflict:
            target = Queue.SELECTED
            notes += [
                "PO runner escalation guard",
                "- escalation without hard vision conflict; routed to selected",
            ]
        return target, notes

    def write_refinement_items(
        self,
        parent_name: str,
        requirements: list[dict[str, object]],
    ) -> list[WorkItem]:
        created: list[WorkItem] = []
        for index, requirement in enumerate(requirements, start=1):
            raw_id = str(requirement.get("id") or f"{parent_name.rsplit('.', 1)[0]}-{index}")
            item_id = _ID_SANITIZE_RE.sub("-", raw_id).strip("-").upper() or f"REQ-{index}"
            name = f"{item_id}.md"
            if self.store.locate(name) is not None:
                self.log.info("Refinement item %s already exists; skipped", name)
                continue
            title = str(requirement.get("title") or item_id).strip()
            goal = str(
                requirement.get("goal") or requirement.get("summary") or title,
            ).strip()
            lines = [
                "---",
                f"id: {item_id}",
                f"title: {title}",
                f"status: {Queue.REFINEMENT.value}",
                f"source: po-intake:{parent_name}",
            ]
            score = requirement.get("business_score")
            if score is not None:
                lines.append(f"business_score: {score}")
            lines += ["---", "", f"# {title}", "", "## Goal", goal, ""]
            created.append(self.store.write_item(Queue.REFINEMENT, name, "\n".join(lines)))
        if created:
            self.log.info("Created %d refinement item(s) from %s", len(created), parent_name)
        return created

    def _on_cooldown(self, item: WorkItem) -> bool:
        meta = self.store.read_metadata(item)
        skip = self.guard.should_skip(
            item_key(meta.get("id", ""), item.name),
            content_hash(self.store.read_text(item)),
            item.queue.value,
        )
        if skip:
            self.log.info("Loop cooldown skip %s (cycle %d)", item.name, self.guard.cycle)
        return skip

    def _drop_stale_duplicate(self, item: WorkItem) -> bool:
        if item.queue not in (Queue.TO_CLARIFY, Queue.HUMAN_INPUT):
            return False
        canonical = self.store.find_in(item.name, STALE_DUPLICATE_QUEUES)
        if canonical is None:
            return False
        self.store.remove_stale_duplicate(
            item,
            reason=f"canonical copy in {canonical.queue.value}",
        )
        return True

    def _move_with_fallback(
        self,
        item: WorkItem,
        target: Queue,
        notes: list[str],
    ) -> WorkItem | None:
        try:
            return self.store.move(item, target, notes=notes)
        except OSError as error:
            self.log.warning("Move of %s to %s failed: %s", item.name, target.value, error)
        return self.store.move(
            item,
            Queue.TO_CLARIFY,
            notes=[
                "PO runner routing fallback",
                f"- failed to move to {target.value}, forced to to-clarify",
            ],
        )

    def _write_clarification_request(self, item: WorkItem, decision: Decision) -> None:
        question = ""
        recommendation = ""
        if isinstance(decision, ClarifyDecision):
            question = decision.question
            recommendation = decision.recommendation
        self.store.upsert_section(
            item,
            CLARIFICATION_HEADING,
            [
                f"- Question: {question or 'What concrete decision is still required?'}",
                "- Recommended default: "
                + (recommendation or "Adopt the minimal vision-aligned default and continue."),
            ],
        )

    def _write_human_decision_request(self, item: WorkItem, decision: Decision) -> None:
        proposal = decision.summary or (decision.findings[0] if decision.findings else "")
        self.store.upsert_section(
            item,
            HUMAN_DECISION_HEADING,
            [
                "- Question: Do you approve this proposal so delivery can continue?",
                f"- Proposal: {proposal or 'Approve the minimal vision-aligned assumption.'}",
                "- If approved: move this file to `human-input` with your decision note.",
            ],
        )

    def _fallback_followup(self, item: WorkItem, decision: Decision) -> dict[str, object]:
        meta = self.store.read_metadata(item)
        source_id = meta.get("id") or item.path.stem
        title = meta.get("title") or source_id
        goal = decision.summary or (decision.findings[0] if decision.findings else "")
        return {
            "id": f"{source_id}-FOLLOWUP",
            "title": f"{title} follow-up",
            "goal": goal or f"Clarify the unresolved open point for {title}.",
        }


def _actionable(decision: Decision) -> bool:
    return isinstance(decision, ClarifyDecision) and decision.actionable


def _decision_text(decision: Decision) -> str:
    return "\n".join([decision.summary, *decision.findings])
