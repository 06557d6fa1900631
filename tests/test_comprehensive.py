from __future__ import annotations

import json

import allure
import pytest

from conftest import ScriptedBackend, write_gate_file
from reqflow.orchestrator.checks import CheckRunner, CommandResult
from reqflow.orchestrator.comprehensive import (
    ALREADY_PASSED,
    COMPREHENSIVE_STATE_FILE,
    NO_SIGNATURE,
    ComprehensiveTestComposer,
)
from reqflow.orchestrator.downstream import DownstreamStages
from reqflow.orchestrator.followups import FollowupWriter
from reqflow.orchestrator.gate_engine import GateEngine
from reqflow.orchestrator.models import Queue

pytestmark = [
    allure.epic("Quality Gates"),
    allure.feature("Comprehensive Regression"),
]

PASS = {"status": "pass", "summary": "ok"}


def _gate(payload):
    return lambda request: write_gate_file(request, payload)


def _passing_backend(**overrides) -> ScriptedBackend:
    handlers = {role: _gate(PASS) for role in ("ux", "sec", "qa", "uat")}
    handlers.update(overrides)
    return ScriptedBackend(handlers)


@pytest.fixture()
def make_composer(settings, store, make_invoker):
    def _make(backend: ScriptedBackend, *, shell=None) -> ComprehensiveTestComposer:
        engine = GateEngine(
            store=store,
            settings=settings.delivery_quality,
            state_dir=settings.paths.quality_dir,
            followups=FollowupWriter(store),
        )
        checks = CheckRunner(settings=settings, runner=shell)
        downstream = DownstreamStages(
            settings=settings,
            store=store,
            invoker=make_invoker(backend),
            gate_engine=engine,
            checks=checks,
        )
        return ComprehensiveTestComposer(
            settings=settings,
            store=store,
            downstream=downstream,
            gate_engine=engine,
            checks=checks,
        )

    return _make


def test_empty_released_is_skipped(make_composer) -> None:
    result = make_composer(ScriptedBackend()).maybe_run(reason="manual")

    assert result.status == "skipped"
    assert result.reason == NO_SIGNATURE


def test_passing_run_is_cached_until_released_changes(settings, make_item, make_composer):
    make_item(Queue.RELEASED, "REQ-1.md")
    backend = _passing_backend()
    composer = make_composer(backend)

    first = composer.maybe_run(reason="vision-complete")

    assert first.passed is True
    assert [(step.name, step.status) for step in first.steps] == [
        ("qa-full", "skipped"),
        ("ux-final", "pass"),
        ("sec-final", "pass"),
        ("qa-final", "pass"),
        ("e2e-full", "skipped"),
        ("uat-full", "pass"),
    ]
    assert backend.roles() == ["ux", "sec", "qa", "uat"]
    state_path = settings.paths.quality_dir / COMPREHENSIVE_STATE_FILE
    state = json.loads(state_path.read_text(encoding="utf-8"))
    assert state["lastPassSignature"] == first.signature
    assert state["lastTrigger"] == "vision-complete"

    second = composer.maybe_run(reason="vision-complete")
    assert second.reason == ALREADY_PASSED
    assert len(backend.calls) == 4

    forced = composer.maybe_run(reason="manual", force=True)
    assert forced.passed is True
    assert len(backend.calls) == 8


def test_strict_failure_routes_released_and_stops(store, make_item, make_composer) -> None:
    make_item(Queue.RELEASED, "REQ-1.md", bundle_id="B-1")
    backend = _passing_backend(sec=_gate({"status": "fail", "summary": "XSS in profile"}))

    result = make_composer(backend).maybe_run(reason="vision-complete")

    assert result.status == "failed"
    assert result.reason == "sec-final-failed"
    assert backend.roles() == ["ux", "sec"]
    assert store.locate("REQ-1.md").queue == Queue.DEV
    assert store.count(Queue.RELEASED) == 0


def test_non_mutating_run_finishes_every_step(store, make_item, make_composer) -> None:
    make_item(Queue.RELEASED, "REQ-1.md")
    backend = _passing_backend(ux=_gate({"status": "fail", "findings": ["P3: Misaligned"]}))

    result = make_composer(backend).maybe_run(reason="test-mode", non_mutating=True)

    assert result.status == "failed"
    assert result.reason == "ux-final-failed"
    assert backend.roles() == ["ux", "sec", "qa", "uat"]
    assert store.count(Queue.RELEASED) == 1
    assert store.count(Queue.BACKLOG) == 1


def test_mandatory_checks_run_first(settings, make_item, make_composer) -> None:
    settings.qa.mandatory_checks = ("npm test",)
    make_item(Queue.RELEASED, "REQ-1.md")
    commands = []

    def shell(command, **_):
        commands.append(command)
        return CommandResult(command=command, exit_code=0)

    result = make_composer(_passing_backend(), shell=shell).maybe_run(reason="manual")

    assert commands == ["npm test"]
    assert result.steps[0].status == "pass"
    assert result.steps[0].summary == "Mandatory QA checks passed (1 command(s))."


def test_stopped_step_reports_not_run(settings, make_item, make_invoker, store) -> None:
    make_item(Queue.RELEASED, "REQ-1.md")
    engine = GateEngine(
        store=store,
        settings=settings.delivery_quality,
        state_dir=settings.paths.quality_dir,
        followups=FollowupWriter(store),
    )
    checks = CheckRunner(settings=settings)
    backend = ScriptedBackend()
    downstream = DownstreamStages(
        settings=settings,
        store=store,
        invoker=make_invoker(backend, stop_requested=lambda: True),
        gate_engine=engine,
        checks=checks,
    )
    composer = ComprehensiveTestComposer(
        settings=settings,
        store=store,
        downstream=downstream,
        gate_engine=engine,
        checks=checks,
    )

    result = composer.maybe_run(reason="manual")

    assert result.status == "not-run"
    assert result.reason == "ux-final-not-run"
    assert backend.calls == []


def test_advisory_pass_clears_attempt_counter_left_by_strict_run(
    settings,
    store,
    make_item,
    make_composer,
) -> None:
    make_item(Queue.RELEASED, "REQ-1.md", bundle_id="B-1")
    failing = make_composer(_passing_backend(sec=_gate({"status": "fail", "summary": "XSS"})))
    failing.maybe_run(reason="vision-complete")
    assert failing.gate_engine.attempts("sec-final", "B-1") == 1

    store.move_all(Queue.DEV, Queue.RELEASED)
    settings.delivery_quality.strict_gate = False
    composer = make_composer(_passing_backend())

    result = composer.maybe_run(reason="manual", force=True)

    assert result.passed is True
    assert composer.gate_engine.attempts("sec-final", "B-1") is None
