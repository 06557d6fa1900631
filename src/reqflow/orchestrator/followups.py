"""Follow-up requirements generated from gate findings."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from reqflow.orchestrator.classifier import is_truthy
from reqflow.orchestrator.gates import (
    HIGH_SEVERITIES,
    Finding,
    Gate,
    normalize_severity,
    stable_hash,
)
from reqflow.orchestrator.models import Queue, WorkItem
from reqflow.orchestrator.store import WorkItemStore

logger = logging.getLogger(__name__)

FOLLOWUP_LOOKUP_QUEUES: tuple[Queue, ...] = (
    Queue.SELECTED,
    Queue.BACKLOG,
    Queue.ARCH,
    Queue.DEV,
    Queue.QA,
    Queue.SEC,
    Queue.UX,
    Queue.DEPLOY,
    Queue.TO_CLARIFY,
    Queue.HUMAN_DECISION,
    Queue.HUMAN_INPUT,
    Queue.BLOCKED,
)
MANUAL_UAT_LOOKUP_QUEUES: tuple[Queue, ...] = (Queue.HUMAN_DECISION, Queue.HUMAN_INPUT)

NON_AUTOMATABLE_VALUES = frozenset(
    {"none", "manual-only", "not-automatable", "no", "cannot-automate", "unavailable"},
)
_AUTOMATION_KEYS = ("automation_feasibility", "automation", "automatable")

_MANUAL_DEFAULTS = {
    "preconditions": "Production-like environment with the released build deployed.",
    "steps": "Walk through the affected user flow end to end.",
    "expected": "The flow completes and matches the documented business behavior.",
    "fail_if": "Observed behavior deviates from the expected outcome.",
    "evidence": "Screenshot or short recording of the final state.",
    "question": "Does the flow behave correctly for real users?",
    "recommendation": "Approve if the check passes; otherwise open a fix requirement.",
}


def source_slug(label: str) -> str:
    return re.sub(r"[^A-Z0-9]+", "-", label.upper()).strip("-") or "GATE"


def findings_fingerprint(label: str, source_queue: Queue, findings: Iterable[Finding]) -> str:
    canonical = sorted(finding.dedup_key() for finding in findings)
    return stable_hash(label.lower(), source_queue.value, *canonical)


def is_non_automatable(item: dict[str, object]) -> bool:
    for key in _AUTOMATION_KEYS:
        value = str(item.get(key) or "").strip().lower()
        if value in NON_AUTOMATABLE_VALUES:
            return True
    return item.get("can_auto_fix") is False or str(item.get("can_auto_fix")).lower() == "false"


def select_manual_uat(items: Iterable[dict[str, object]]) -> list[dict[str, object]]:
    """Keep business-critical P0/P1 checks that cannot be automated."""

    selected = []
    for item in items:
        severity = normalize_severity(item.get("severity") or item.get("priority"), "P2")
        if severity not in HIGH_SEVERITIES:
            continue
        if not is_truthy(item.get("business_critical")):
            continue
        if not is_non_automatable(item):
            continue
        selected.append(item)
    return selected


class FollowupWriter:
    """Write deduplicated follow-up items into planning and human queues."""

    def __init__(
        self,
        store: WorkItemStore,
        *,
        clock: Callable[[], datetime] | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.log = logger_ or logger

    def write_for_gate(self, label: str, source_queue: Queue, gate: Gate) -> list[WorkItem]:
        high, lower = gate.split_findings()
        created: list[WorkItem] = []
        if high:
            item = self._write_findings_item(
                label,
                source_queue,
                gate,
                high,
                target=Queue.SELECTED,
                kind="HOTFIX",
                score=100,
                risk="high",
            )
            if item is not None:
                created.append(item)
        if lower:
            item = self._write_findings_item(
                label,
                source_queue,
                gate,
                lower,
                target=Queue.BACKLOG,
                kind="FOLLOWUP",
                score=60,
                risk="medium",
            )
            if item is not None:
                created.append(item)
        manual = select_manual_uat(gate.manual_uat)
        if manual:
            item = self._write_manual_uat(label, source_queue, manual)
            if item is not None:
                created.append(item)
        return created

    def _write_findings_item(  # noqa: PLR0913
        self,
        label: str,
        source_queue: Queue,
        gate: Gate,
        findings: list[Finding],
        *,
        target: Queue,
        kind: str,
        score: int,
        risk: str,
    ) -> WorkItem | None:
        fingerprint = findings_fingerprint(label, source_queue, findings)
        existing = self._find_fingerprint(
            "followup_fingerprint",
            fingerprint,
            FOLLOWUP_LOOKUP_QUEUES,
        )
        if existing is not None:
            self.log.info("Follow-up for %s already exists: %s", label, existing.path)
            return None

        slug = source_slug(label)
        item_id = f"REQ-{slug}-{kind}-{self._stamp()}-{fingerprint[:6]}"
        title = f"{label} {kind.lower()}: {findings[0].title}"
        lines = [
            "---",
            f"id: {item_id}",
            f"title: {title}",
            f"status: {target.value}",
            f"source: {slug.lower()}-gate",
            "implementation_scope: fullstack",
            f"business_score: {score}",
            f"review_risk: {risk}",
            f"followup_fingerprint: {fingerprint}",
            "---",
            "",
            f"# {title}",
            "",
            "## Goal",
            f"Resolve the findings reported by the {label} so the gate passes.",
            "",
            "## Scope",
            f"- Source queue: {source_queue.value}",
            f"- Gate summary: {gate.summary}",
            "",
            "## Task Outline",
            "- Reproduce each finding listed below.",
            "- Fix the root cause in the implementation.",
            "- Add or update automated tests covering the fix.",
            "",
            "## Acceptance Criteria",
            "- Every listed finding is resolved or explicitly waived.",
            f"- The {label} passes on the next run.",
            "",
            f"## {slug} Findings",
            *[f"- {finding.render()}" for finding in findings],
            "",
            "## Flow Routing Notes",
            f"- Created from {label} findings (source queue: {source_queue.value})",
        ]
        item = self.store.write_item(target, f"{item_id}.md", "\n".join(lines) + "\n")
        self.log.info("Created %s follow-up %s in %s", label, item_id, target.value)
        return item

    def _write_manual_uat(
        self,
        label: str,
        source_queue: Queue,
        checks: list[dict[str, object]],
    ) -> WorkItem | None:
        canonical = sorted(_check_text(check, "title") for check in checks)
        fingerprint = stable_hash("manual-uat", label.lower(), source_queue.value, *canonical)
        existing = self._find_fingerprint(
            "manual_uat_fingerprint",
            fingerprint,
            MANUAL_UAT_LOOKUP_QUEUES,
        )
        if existing is not None:
            self.log.info("Manual UAT package already pending: %s", existing.path)
            return None

        item_id = f"REQ-MANUAL-UAT-{self._stamp()}-{fingerprint[:6]}"
        lines = [
            "---",
            f"id: {item_id}",
            f"title: Manual UAT required after {label}",
            f"status: {Queue.HUMAN_DECISION.value}",
            f"source: {source_slug(label).lower()}-gate",
            "needs_human_decision: true",
            "clarification_type: business",
            f"manual_uat_fingerprint: {fingerprint}",
            "---",
            "",
            f"# Manual UAT required after {label}",
            "",
            "Business-critical checks below cannot be automated. Run them and record the outcome.",
        ]
        for index, check in enumerate(checks, start=1):
            lines.extend(
                [
                    "",
                    f"## Manual UAT Check {index}: {_check_text(check, 'title')}",
                    f"- Preconditions: {_check_text(check, 'preconditions')}",
                    f"- Steps: {_check_text(check, 'steps')}",
                    f"- Expected: {_check_text(check, 'expected')}",
                    f"- Fail if: {_check_text(check, 'fail_if')}",
                    f"- Evidence: {_check_text(check, 'evidence')}",
                    f"- Question: {_check_text(check, 'question')}",
                    f"- Recommendation: {_check_text(check, 'recommendation')}",
                ],
            )
        lines.extend(["", "## Flow Routing Notes", f"- Created from {label} manual_uat entries"])
        text = "\n".join(lines) + "\n"
        item = self.store.write_item(Queue.HUMAN_DECISION, f"{item_id}.md", text)
        self.log.info("Created manual UAT package %s", item_id)
        return item

    def _find_fingerprint(
        self,
        key: str,
        fingerprint: str,
        queues: Iterable[Queue],
    ) -> WorkItem | None:
        for queue in queues:
            for item in self.store.list_queue(queue):
                if self.store.read_metadata(item).get(key) == fingerprint:
                    return item
        return None

    def _stamp(self) -> str:
        return self._clock().strftime("%Y%m%d%H%M%S")


_CHECK_ALIASES = {
    "title": ("title", "summary", "name"),
    "expected": ("expected", "expected_result"),
    "fail_if": ("fail_if", "failure_criteria"),
}


def _check_text(check: dict[str, object], key: str) -> str:
    for alias in _CHECK_ALIASES.get(key, (key,)):
        value = check.get(alias)
        if isinstance(value, list):
            joined = "; ".join(str(part).strip() for part in value if str(part).strip())
            if joined:
                return joined
        elif value is not None and str(value).strip():
            return str(value).strip()
    if key == "title":
        return "Unnamed manual check"
    return _MANUAL_DEFAULTS[key]
