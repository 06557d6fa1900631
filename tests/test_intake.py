from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from conftest import ScriptedBackend, write_gate_file
from reqflow.orchestrator.classifier import HeuristicRoutingClassifier
from reqflow.orchestrator.decisions import (
    BlockDecision,
    ClarifyDecision,
    PassDecision,
)
from reqflow.orchestrator.intake import CLARIFICATION_HEADING, IntakePlanner
from reqflow.orchestrator.loop_guard import INTAKE_STATE_FILE, LoopGuard
from reqflow.orchestrator.models import Queue

pytestmark = [
    allure.epic("Planning Intake"),
    allure.feature("PO Routing"),
]


@pytest.fixture()
def make_planner(settings, store, make_invoker):
    def _make(backend: ScriptedBackend) -> IntakePlanner:
        guard = LoopGuard(
            settings.paths.runtime_root / INTAKE_STATE_FILE,
            cooldown_cycles=settings.intake.loop_cooldown_cycles,
        )
        return IntakePlanner(
            settings=settings,
            store=store,
            invoker=make_invoker(backend),
            classifier=HeuristicRoutingClassifier(settings.arch_routing),
            guard=guard,
        )

    return _make


def _decide(payload: dict[str, object]):
    return lambda request: write_gate_file(request, payload)


ACTIONABLE = ClarifyDecision(question="Which currency?", recommendation="EUR")
WEAK = ClarifyDecision()


@pytest.mark.parametrize(
    ("decision", "source", "expected"),
    [
        (PassDecision(), Queue.BACKLOG, Queue.SELECTED),
        (PassDecision(wont_do=True), Queue.BACKLOG, Queue.WONT_DO),
        (PassDecision(target_queue=Queue.BACKLOG), Queue.REFINEMENT, Queue.BACKLOG),
        (BlockDecision(reason="conflict"), Queue.BACKLOG, Queue.SELECTED),
        (BlockDecision(hard_vision_conflict=True), Queue.BACKLOG, Queue.HUMAN_DECISION),
        (WEAK, Queue.REFINEMENT, Queue.REFINEMENT),
        (WEAK, Queue.TO_CLARIFY, Queue.BACKLOG),
        (ACTIONABLE, Queue.BACKLOG, Queue.TO_CLARIFY),
        (ACTIONABLE, Queue.TO_CLARIFY, Queue.BACKLOG),
        (ClarifyDecision(hard_vision_conflict=True), Queue.BACKLOG, Queue.TO_CLARIFY),
        (ClarifyDecision(summary="This is obsolete"), Queue.BACKLOG, Queue.WONT_DO),
    ],
)
def test_choose_target_guards(make_planner, decision, source, expected) -> None:
    target, _ = make_planner(ScriptedBackend()).choose_target(decision, source=source)

    assert target == expected


def test_escalation_guard_explains_itself(make_planner) -> None:
    _, notes = make_planner(ScriptedBackend()).choose_target(
        BlockDecision(reason="unsure"),
        source=Queue.REFINEMENT,
    )

    assert "PO runner escalation guard" in notes


def test_process_routes_by_decision_and_writes_new_requirements(
    settings,
    store,
    make_item,
    make_planner,
) -> None:
    make_item(Queue.REFINEMENT, "REQ-1.md", id="REQ-1", title="Export")
    backend = ScriptedBackend(
        {
            "po": _decide(
                {
                    "status": "pass",
                    "new_requirements": [
                        {"id": "REQ 1 csv", "title": "CSV export", "business_score": 40},
                    ],
                },
            ),
        },
    )
    planner = make_planner(backend)

    outcome = planner.process(store.locate("REQ-1.md"))

    assert outcome.target == Queue.SELECTED
    assert [item.name for item in outcome.created] == ["REQ-1-CSV.md"]
    created = store.read_metadata(outcome.created[0])
    assert created["status"] == "refinement"
    assert created["business_score"] == "40"
    argv = backend.calls[0].argv
    assert argv[argv.index("--mode") + 1] == "intake"
    assert "PO runner routing" in store.read_text(store.locate("REQ-1.md"))
    assert planner.guard.record_for("REQ-1").last_target_queue == "selected"


def test_actionable_clarify_writes_question_section(store, make_item, make_planner) -> None:
    make_item(Queue.BACKLOG, "REQ-2.md")
    backend = ScriptedBackend(
        {
            "po": _decide(
                {"status": "clarify", "question": "Which SSO?", "recommended_default": "Okta"},
            ),
        },
    )

    outcome = make_planner(backend).process(store.locate("REQ-2.md"))

    assert outcome.target == Queue.TO_CLARIFY
    text = store.read_text(store.locate("REQ-2.md"))
    assert f"## {CLARIFICATION_HEADING}" in text
    assert "- Question: Which SSO?" in text
    assert "- Recommended default: Okta" in text


def test_clarified_item_to_backlog_gets_fallback_followup(store, make_item, make_planner):
    make_item(Queue.TO_CLARIFY, "REQ-3.md", id="REQ-3", title="Invoices")
    backend = ScriptedBackend({"po": _decide({"status": "clarify"})})

    outcome = make_planner(backend).process(store.locate("REQ-3.md"))

    assert outcome.target == Queue.BACKLOG
    assert [item.name for item in outcome.created] == ["REQ-3-FOLLOWUP.md"]
    assert "PO runner follow-up guard" in store.read_text(store.locate("REQ-3.md"))


def test_failed_po_run_without_decision_file_goes_to_refinement(store, make_item, make_planner):
    make_item(Queue.REFINEMENT, "REQ-4.md")
    backend = ScriptedBackend({"po": lambda _: (1, "TypeError")})

    outcome = make_planner(backend).process(store.locate("REQ-4.md"))

    assert outcome.target == Queue.REFINEMENT
    text = store.read_text(store.locate("REQ-4.md"))
    assert "PO runner: execution failure" in text
    assert "- reason: po_exit_1" in text


def test_stale_clarification_copy_is_dropped(store, make_item, make_planner) -> None:
    make_item(Queue.SELECTED, "REQ-5.md")
    stale = make_item(Queue.TO_CLARIFY, "REQ-5.md")
    backend = ScriptedBackend()

    outcome = make_planner(backend).process(stale)

    assert outcome.stale is True
    assert backend.calls == []
    assert not stale.path.exists()


def test_paused_po_run_ends_cycle(make_item, make_planner, pause) -> None:
    make_item(Queue.TO_CLARIFY, "REQ-6.md")
    make_item(Queue.BACKLOG, "REQ-7.md")
    pause.activate(
        reason="usage_limit",
        source="dev",
        resume_after=datetime.now(tz=UTC) + timedelta(minutes=5),
    )

    result = make_planner(ScriptedBackend()).run_cycle()

    assert result.paused is True
    assert len(result.outcomes) == 1
    assert result.processed == 0


def test_pick_candidates_round_robins_intake_queues(make_item, make_planner) -> None:
    make_item(Queue.BACKLOG, "B-1.md")
    make_item(Queue.BACKLOG, "B-2.md")
    make_item(Queue.REFINEMENT, "R-1.md")
    make_item(Queue.TO_CLARIFY, "C-1.md")
    make_item(Queue.HUMAN_INPUT, "H-1.md")

    picked = make_planner(ScriptedBackend()).pick_candidates(4)

    assert [item.name for item in picked] == ["C-1.md", "H-1.md", "R-1.md", "B-1.md"]


def test_repeated_no_progress_outcome_triggers_cooldown(settings) -> None:
    path = settings.paths.runtime_root / INTAKE_STATE_FILE
    guard = LoopGuard(path, cooldown_cycles=3)
    for _ in range(3):
        guard.next_cycle()
        record = guard.record("REQ-8", "hash", "backlog", "backlog")

    assert record.repeat_count == 2
    assert record.skip_until_cycle == 6

    reloaded = LoopGuard(path, cooldown_cycles=3)
    skipped = []
    for _ in range(4):
        reloaded.next_cycle()
        skipped.append(reloaded.should_skip("REQ-8", "hash", "backlog"))
    assert skipped == [True, True, True, False]
    assert reloaded.should_skip("REQ-8", "edited", "backlog") is False


def test_disabled_guard_never_skips(settings) -> None:
    guard = LoopGuard(settings.paths.runtime_root / INTAKE_STATE_FILE, enabled=False)
    for _ in range(3):
        guard.next_cycle()
        guard.record("REQ-9", "hash", "backlog", "backlog")

    assert guard.record_for("REQ-9") is None
    assert guard.should_skip("REQ-9", "hash", "backlog") is False


def test_guard_treats_zero_cooldown_as_one_cycle(settings) -> None:
    guard = LoopGuard(settings.paths.runtime_root / INTAKE_STATE_FILE, cooldown_cycles=0)

    assert guard.cooldown_cycles == 1
