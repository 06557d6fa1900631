from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from reqflow.config import DeliveryQualitySettings
from reqflow.orchestrator.followups import FollowupWriter, select_manual_uat
from reqflow.orchestrator.gate_engine import GateEngine
from reqflow.orchestrator.gates import gate_from_payload
from reqflow.orchestrator.models import Queue

pytestmark = [
    allure.epic("Quality Gates"),
    allure.feature("Strict Policy & Follow-ups"),
]

FIXED_NOW = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


@pytest.fixture()
def followups(store) -> FollowupWriter:
    return FollowupWriter(store, clock=lambda: FIXED_NOW)


@pytest.fixture()
def make_engine(store, settings, followups):
    def _make(**overrides) -> GateEngine:
        quality = DeliveryQualitySettings(**overrides)
        return GateEngine(
            store=store,
            settings=quality,
            state_dir=settings.paths.quality_dir,
            followups=followups,
        )

    return _make


FAIL = gate_from_payload({"status": "fail", "summary": "Checkout regression"})


def test_strict_failures_route_to_dev_until_max_then_block(store, make_item, make_engine) -> None:
    engine = make_engine(max_fix_cycles=2)
    item = make_item(Queue.QA, "REQ-1.md", bundle_id="B-7")

    targets = []
    for _ in range(3):
        outcome = engine.handle_strict_failure("qa", Queue.QA, FAIL)
        targets.append(outcome.target)
        moved = store.locate(item.name)
        if moved.queue == Queue.DEV:
            store.move(moved, Queue.QA)

    assert targets == [Queue.DEV, Queue.DEV, Queue.BLOCKED]
    assert engine.attempts("qa", "B-7") == 3
    text = store.read_text(store.locate(item.name))
    assert "Delivery runner: strict quality gate" in text
    assert "- QA strict fail attempt 3/2 max attempts reached -> blocked" in text


def test_attempt_counter_is_capped(make_item, make_engine, store) -> None:
    engine = make_engine(max_fix_cycles=0)
    make_item(Queue.QA, "REQ-2.md", bundle_id="B-1")

    first = engine.handle_strict_failure("qa", Queue.QA, FAIL)
    store.move(store.locate("REQ-2.md"), Queue.QA)
    second = engine.handle_strict_failure("qa", Queue.QA, FAIL)

    assert first.target == second.target == Queue.BLOCKED
    assert engine.attempts("qa", "B-1") == 1


def test_rework_disabled_blocks_immediately(make_item, make_engine, store) -> None:
    engine = make_engine(route_to_dev_on_fail=False)
    make_item(Queue.UX, "REQ-3.md")

    outcome = engine.handle_strict_failure("ux", Queue.UX, FAIL)

    assert outcome.target == Queue.BLOCKED
    assert outcome.bundle_key == "ux:no-bundle"
    assert "rework disabled" in store.read_text(store.locate("REQ-3.md"))


def test_record_pass_and_bundle_reset_clear_counters(make_item, make_engine) -> None:
    engine = make_engine()
    make_item(Queue.QA, "REQ-4.md", bundle_id="B-2")
    engine.handle_strict_failure("qa", Queue.QA, FAIL)
    make_item(Queue.QA, "REQ-5.md", bundle_id="B-2")
    engine.handle_strict_failure("uat", Queue.QA, FAIL)

    engine.record_pass("qa", "B-2")
    assert engine.attempts("qa", "B-2") is None
    assert engine.attempts("uat", "B-2") == 1

    engine.reset_bundle("B-2")
    assert engine.attempts("uat", "B-2") is None


def test_strict_gate_emits_followups_only_on_pass_by_default(store, make_engine) -> None:
    failing = gate_from_payload({"status": "fail", "findings": ["P1: Crash on save"]})
    passing = gate_from_payload({"status": "pass", "findings": ["P3: Copy tweak"]})

    assert make_engine().apply_by_policy("QA", Queue.QA, failing, strict=True) == []
    assert len(make_engine().apply_by_policy("QA", Queue.QA, passing, strict=True)) == 1
    advisory = make_engine().apply_by_policy("UAT", Queue.QA, failing, strict=False)
    assert [item.queue for item in advisory] == [Queue.SELECTED]
    on_fail = make_engine(emit_followups_on_fail=True)
    # The same findings were already written by the advisory call.
    assert on_fail.apply_by_policy("UAT", Queue.QA, failing, strict=True) == []


def test_followups_split_by_severity_and_dedupe(store, followups) -> None:
    gate = gate_from_payload(
        {"status": "pass", "findings": ["P0: Data loss on retry", "P2: Tooltip overlaps"]},
    )

    created = followups.write_for_gate("UX final gate", Queue.UX, gate)

    assert [item.queue for item in created] == [Queue.SELECTED, Queue.BACKLOG]
    hotfix = store.read_metadata(created[0])
    assert hotfix["business_score"] == "100"
    assert hotfix["review_risk"] == "high"
    assert created[0].name.startswith("REQ-UX-FINAL-GATE-HOTFIX-20260302100000-")
    assert store.read_metadata(created[1])["business_score"] == "60"
    assert "- P2: Tooltip overlaps" in store.read_text(created[1])

    assert followups.write_for_gate("UX final gate", Queue.UX, gate) == []


def test_manual_uat_package_requires_critical_non_automatable_checks(store, followups) -> None:
    checks = [
        {
            "title": "Card payment in production",
            "severity": "P1",
            "business_critical": "true",
            "automation_feasibility": "manual-only",
            "steps": ["Open checkout", "Pay with a real card"],
        },
        {"title": "Nice to have", "severity": "P3", "business_critical": True},
        {"title": "Automatable", "severity": "P0", "business_critical": "yes"},
    ]
    assert [check["title"] for check in select_manual_uat(checks)] == [
        "Card payment in production",
    ]

    gate = gate_from_payload({"status": "pass", "manual_uat": checks})
    created = followups.write_for_gate("UAT", Queue.QA, gate)

    assert [item.queue for item in created] == [Queue.HUMAN_DECISION]
    text = store.read_text(created[0])
    assert "## Manual UAT Check 1: Card payment in production" in text
    assert "- Steps: Open checkout; Pay with a real card" in text
    assert "- Evidence: Screenshot or short recording" in text
    assert followups.write_for_gate("UAT", Queue.QA, gate) == []
