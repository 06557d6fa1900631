"""Typed agent decisions and the adapter for legacy decision JSON files."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from reqflow.orchestrator.classifier import is_truthy, normalize_status
from reqflow.orchestrator.models import Queue

logger = logging.getLogger(__name__)

WONT_DO_STATUSES = frozenset(
    {
        "wont-do",
        "won't-do",
        "wont_do",
        "wontdo",
        "skip",
        "noop",
        "duplicate",
        "already-implemented",
        "already_implemented",
        "invalid",
        "reject",
        "rejected",
    },
)
_WONT_DO_FLAGS = ("wont_do", "wontDo", "redundant", "already_implemented", "alreadyImplemented")
_HARD_CONFLICT_FLAGS = ("hard_vision_conflict", "hardVisionConflict", "vision_conflict_hard")
_QUESTION_KEYS = (
    "clarify_question",
    "question",
    "required_input",
    "requiredInput",
    "missing_input",
    "missingInput",
)
_RECOMMENDATION_KEYS = (
    "recommended_default",
    "recommendedDefault",
    "proposal",
    "default_decision",
    "defaultDecision",
)
_TARGET_KEYS = ("target_queue", "targetQueue", "target", "next_queue", "nextQueue")


@dataclass(slots=True)
class Decision:
    """Fields common to every decision kind."""

    summary: str = ""
    findings: list[str] = field(default_factory=list)
    new_requirements: list[dict[str, object]] = field(default_factory=list)
    target_queue: Queue | None = None
    wont_do: bool = False
    hard_vision_conflict: bool = False
    raw_status: str = ""


@dataclass(slots=True)
class PassDecision(Decision):
    """The agent considers the item ready for its next stage."""


@dataclass(slots=True)
class ClarifyDecision(Decision):
    """The agent needs an answer; both fields may be empty for weak requests."""

    question: str = ""
    recommendation: str = ""

    @property
    def actionable(self) -> bool:
        return bool(self.question.strip() and self.recommendation.strip())


@dataclass(slots=True)
class BlockDecision(Decision):
    """The agent refuses to continue."""

    reason: str = ""


def parse_queue(raw: object) -> Queue | None:
    value = str(raw or "").strip().lower().replace("_", "-")
    if not value:
        return None
    aliases = {"human-decision": Queue.HUMAN_DECISION, "clarify": Queue.TO_CLARIFY}
    if value in aliases:
        return aliases[value]
    try:
        return Queue(value)
    except ValueError:
        return None


def decision_from_legacy_payload(
    payload: Mapping[str, object],
    *,
    fallback_status: str = "clarify",
) -> Decision:
    """Adapt a loosely-typed decision map into a typed decision.

    Legacy agents write free-form JSON: statuses have many spellings, the
    clarify question and recommendation live under several aliases, and when
    they are missing they are inferred from the summary or findings that
    contain a question mark.
    """

    raw_status = str(payload.get("status") or fallback_status).strip().lower()
    summary = str(payload.get("summary") or "").strip()
    findings = [
        str(item).strip() for item in _as_list(payload.get("findings")) if str(item).strip()
    ]
    new_requirements = [
        item for item in _as_list(payload.get("new_requirements")) if isinstance(item, dict)
    ]
    wont_do = raw_status in WONT_DO_STATUSES or any(
        is_truthy(payload.get(key)) for key in _WONT_DO_FLAGS
    )
    common = {
        "summary": summary,
        "findings": findings,
        "new_requirements": new_requirements,
        "target_queue": parse_queue(_first_text(payload, _TARGET_KEYS)),
        "wont_do": wont_do,
        "hard_vision_conflict": any(is_truthy(payload.get(key)) for key in _HARD_CONFLICT_FLAGS),
        "raw_status": raw_status,
    }

    if wont_do:
        return PassDecision(**common)

    status = normalize_status(raw_status)
    if status == "pass":
        return PassDecision(**common)
    if status == "block":
        reason = str(payload.get("reason") or summary or (findings[0] if findings else ""))
        return BlockDecision(reason=reason, **common)
    return ClarifyDecision(
        question=_infer_question(payload, summary, findings),
        recommendation=_infer_recommendation(payload, summary, findings),
        **common,
    )


def parse_decision_file(
    path: Path,
    *,
    fallback_status: str = "clarify",
    label: str = "agent",
) -> Decision:
    """Read a decision file; missing or invalid JSON yields a fallback decision."""

    if not path.is_file():
        return decision_from_legacy_payload(
            {"status": fallback_status, "summary": f"{label} wrote no decision file"},
            fallback_status=fallback_status,
        )
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as error:
        logger.warning("Invalid decision file %s: %s", path, error)
        payload = None
    if not isinstance(payload, dict):
        return decision_from_legacy_payload(
            {"status": fallback_status, "summary": f"{label} wrote an invalid decision file"},
            fallback_status=fallback_status,
        )
    return decision_from_legacy_payload(payload, fallback_status=fallback_status)


def _infer_question(payload: Mapping[str, object], summary: str, findings: list[str]) -> str:
    explicit = _first_text(payload, _QUESTION_KEYS)
    if explicit:
        return explicit
    if "?" in summary:
        return summary
    return next((finding for finding in findings if "?" in finding), "")


def _infer_recommendation(payload: Mapping[str, object], summary: str, findings: list[str]) -> str:
    explicit = _first_text(payload, _RECOMMENDATION_KEYS)
    if explicit:
        return explicit
    if summary:
        return summary
    return findings[0] if findings else ""


def _first_text(payload: Mapping[str, object], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = str(payload.get(key) or "").strip()
        if value:
            return value
    return ""


def _as_list(value: object) -> list[object]:
    if isinstance(value, list):
        return value
    return []
