"""Strict and advisory gate policy with per-bundle attempt accounting."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from reqflow.config import DeliveryQualitySettings
from reqflow.orchestrator.followups import FollowupWriter
from reqflow.orchestrator.gates import Gate, compact_text
from reqflow.orchestrator.models import Queue, WorkItem
from reqflow.orchestrator.state import JsonStateFile
from reqflow.orchestrator.store import WorkItemStore

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"
BUNDLE_GATES = ("qa", "uat")


@dataclass(slots=True)
class StrictFailureOutcome:
    """Where a strict gate failure sent the source queue."""

    gate_name: str
    bundle_key: str
    attempt: int
    max_fix_cycles: int
    target: Queue
    moved: int


def attempt_key(gate_name: str, bundle_key: str) -> str:
    return f"{gate_name.lower()}:{bundle_key}"


class GateEngine:
    """Applies gate verdicts: follow-ups, rework routing, and escalation."""

    def __init__(
        self,
        *,
        store: WorkItemStore,
        settings: DeliveryQualitySettings,
        state_dir: Path,
        followups: FollowupWriter,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.followups = followups
        self.log = logger_ or logger
        self._state = JsonStateFile(state_dir / STATE_FILE_NAME, logger_=self.log)

    def attempts(self, gate_name: str, bundle_key: str) -> int | None:
        value = self._load_attempts().get(attempt_key(gate_name, bundle_key))
        return int(value) if value is not None else None

    def apply_outcomes(self, label: str, source_queue: Queue, gate: Gate) -> list[WorkItem]:
        return self.followups.write_for_gate(label, source_queue, gate)

    def apply_by_policy(
        self,
        label: str,
        source_queue: Queue,
        gate: Gate,
        *,
        strict: bool,
    ) -> list[WorkItem]:
        """Advisory gates always emit follow-ups; strict ones only on pass unless configured."""

        if not strict or gate.passed or self.settings.emit_followups_on_fail:
            return self.apply_outcomes(label, source_queue, gate)
        return []

    def record_pass(self, gate_name: str, bundle_key: str) -> None:
        attempts = self._load_attempts()
        if attempts.pop(attempt_key(gate_name, bundle_key), None) is not None:
            self._save_attempts(attempts)

    def reset_bundle(self, bundle_id: str) -> None:
        attempts = self._load_attempts()
        removed = [attempts.pop(attempt_key(gate, bundle_id), None) for gate in BUNDLE_GATES]
        if any(value is not None for value in removed):
            self._save_attempts(attempts)

    def handle_strict_failure(
        self,
        gate_name: str,
        source_queue: Queue,
        gate: Gate,
    ) -> StrictFailureOutcome:
        """Count a strict failure and route the whole source queue.

        Attempts up to ``max_fix_cycles`` go back to ``dev`` for rework; the
        next one goes to ``blocked`` and the counter stops at ``max_fix_cycles + 1``.
        """

        bundle_key = self.store.bundle_key(source_queue)
        key = attempt_key(gate_name, bundle_key)
        max_fix = max(0, self.settings.max_fix_cycles)
        attempts = self._load_attempts()
        attempt = min(int(attempts.get(key, 0)) + 1, max_fix + 1)
        attempts[key] = attempt
        self._save_attempts(attempts)

        summary = compact_text(gate.summary, 200)
        label = gate_name.upper()
        if self.settings.route_to_dev_on_fail and attempt <= max_fix:
            target = Queue.DEV
            note = f"- {label} strict fail attempt {attempt}/{max_fix} -> dev (summary: {summary})"
        elif not self.settings.route_to_dev_on_fail:
            target = Queue.BLOCKED
            note = f"- {label} strict fail, rework disabled -> blocked (summary: {summary})"
        else:
            target = Queue.BLOCKED
            note = (
                f"- {label} strict fail attempt {attempt}/{max_fix} max attempts reached "
                f"-> blocked (summary: {summary})"
            )

        moved = self.store.move_all(
            source_queue,
            target,
            notes=["Delivery runner: strict quality gate", note],
        )
        self.log.warning(
            "%s strict gate failed for %s (attempt %d/%d); moved %d item(s) to %s",
            label,
            bundle_key,
            attempt,
            max_fix,
            moved,
            target.value,
        )
        return StrictFailureOutcome(
            gate_name=gate_name,
            bundle_key=bundle_key,
            attempt=attempt,
            max_fix_cycles=max_fix,
            target=target,
            moved=moved,
        )

    def _load_attempts(self) -> dict[str, int]:
        raw = self._state.load().get("attempts")
        if not isinstance(raw, dict):
            return {}
        attempts: dict[str, int] = {}
        for key, value in raw.items():
            try:
                attempts[str(key)] = int(value)
            except (TypeError, ValueError):
                continue
        return attempts

    def _save_attempts(self, attempts: dict[str, int]) -> None:
        self._state.save({"attempts": attempts})
