"""Routing heuristics over work-item metadata and text.

Everything here is a heuristic, not a guarantee: keyword lists and regular
expressions recognize a fixed phrase set and are kept behind the
``RoutingClassifier`` protocol so a different classifier can be swapped in.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from reqflow.config import ArchRoutingSettings
from reqflow.orchestrator.models import Queue

TRUTHY_VALUES = frozenset({"1", "true", "yes", "y"})

PASS_STATUSES = frozenset({"pass", "ok", "done", "success", "released", "deploy"})
BLOCK_STATUSES = frozenset({"block", "blocked", "fail", "failed", "security-block"})
CLARIFY_STATUSES = frozenset(
    {
        "clarify",
        "to-clarify",
        "human-decision-needed",
        "human decision needed",
        "question",
        "rework",
        "todo",
        "to-do",
        "to_do",
        "improve",
    },
)

BUSINESS_DECISION_FLAGS: tuple[str, ...] = (
    "needs_human_decision",
    "business_decision_needed",
    "product_decision_needed",
    "needs_po_decision",
)
CLARIFICATION_TYPE_KEYS: tuple[str, ...] = ("clarification_type", "clarify_type", "decision_type")
BUSINESS_CLARIFICATION_TOKENS = frozenset({"business", "product", "domain", "stakeholder"})

_TOKEN_SPLIT_RE = re.compile(r"[,\s|/]+")
_QUESTION_HEADING_RE = re.compile(
    r"(^|\n)##\s*(open questions?|questions? for (human|po|product)|human decision needed)\b",
    re.IGNORECASE,
)
_QUESTION_PHRASE_RE = re.compile(
    r"question for (human|po|product|stakeholder)|business decision|product decision"
    r"|required stakeholder decision",
    re.IGNORECASE,
)
_QUESTION_SHAPE_RE = re.compile(r"\?\s*(\n|$)")

_TARGET_HINTS: tuple[tuple[re.Pattern[str], Queue], ...] = (
    (re.compile(r"\b(wont[- ]?do|won't do|not needed|obsolete)\b", re.IGNORECASE), Queue.WONT_DO),
    (
        re.compile(r"\b(needs? human decision|human-decision-needed)\b", re.IGNORECASE),
        Queue.HUMAN_DECISION,
    ),
    (re.compile(r"\b(ready for delivery|move to selected)\b", re.IGNORECASE), Queue.SELECTED),
    (re.compile(r"\b(move to backlog|defer(red)? to backlog)\b", re.IGNORECASE), Queue.BACKLOG),
)


def is_truthy(value: object) -> bool:
    return str(value or "").strip().lower() in TRUTHY_VALUES


def normalize_status(raw: str) -> str:
    """Collapse free-form status text into pass, block, clarify, or unknown."""

    status = raw.strip().lower()
    if status in PASS_STATUSES:
        return "pass"
    if status in BLOCK_STATUSES:
        return "block"
    if status in CLARIFY_STATUSES:
        return "clarify"
    return "unknown"


def normalize_scope(meta: Mapping[str, str]) -> str:
    raw = (
        meta.get("implementation_scope") or meta.get("dev_scope") or meta.get("scope") or ""
    ).strip().lower()
    if raw in {"frontend", "fe", "ui", "web"}:
        return "frontend"
    if raw in {"backend", "be", "api", "server"}:
        return "backend"
    return "fullstack"


def split_tokens(raw: str) -> set[str]:
    return {token for token in _TOKEN_SPLIT_RE.split(raw.strip().lower()) if token}


@dataclass(slots=True)
class ArchDecision:
    """Whether the architecture stage runs for one item, and why."""

    required: bool
    reason: str


class RoutingClassifier(Protocol):
    """Swappable routing heuristics used by delivery and intake loops."""

    def has_business_clarification_evidence(self, meta: Mapping[str, str], text: str) -> bool:
        """Return True when a clarify route carries explicit business evidence."""

    def arch_decision(self, meta: Mapping[str, str] | None, text: str) -> ArchDecision:
        """Decide whether the architecture-review stage is required."""

    def infer_target(self, text: str) -> Queue | None:
        """Infer a routing target from free text, if any phrase is recognized."""


class HeuristicRoutingClassifier:
    """Phrase and flag based classifier.

    Arch trigger precedence is explicit flags, then scope, then review risk,
    then review-scope tokens, then keyword match.
    """

    def __init__(self, arch_settings: ArchRoutingSettings | None = None) -> None:
        self.arch_settings = arch_settings or ArchRoutingSettings()

    def has_business_clarification_evidence(self, meta: Mapping[str, str], text: str) -> bool:
        if any(is_truthy(meta.get(flag)) for flag in BUSINESS_DECISION_FLAGS):
            return True
        for key in CLARIFICATION_TYPE_KEYS:
            if split_tokens(meta.get(key, "")) & BUSINESS_CLARIFICATION_TOKENS:
                return True
        has_cue = bool(_QUESTION_HEADING_RE.search(text) or _QUESTION_PHRASE_RE.search(text))
        return has_cue and bool(_QUESTION_SHAPE_RE.search(text))

    def arch_decision(self, meta: Mapping[str, str] | None, text: str) -> ArchDecision:
        settings = self.arch_settings
        mode = settings.routing_mode
        if mode == "always":
            return ArchDecision(required=True, reason="routing mode always")
        if mode == "never":
            return ArchDecision(required=False, reason="routing mode never")
        if meta is None:
            return ArchDecision(required=True, reason="metadata unavailable")

        for raw_flag in settings.trigger_frontmatter_flags:
            flag = raw_flag.strip().lower().replace("-", "_")
            if flag and is_truthy(meta.get(flag)):
                return ArchDecision(required=True, reason=f"flag {flag}")

        scope = normalize_scope(meta)
        if scope in {value.lower() for value in settings.require_for_scopes}:
            return ArchDecision(required=True, reason=f"scope {scope}")

        risk = meta.get("review_risk", "").strip().lower()
        if risk and risk in {value.lower() for value in settings.require_for_review_risk}:
            return ArchDecision(required=True, reason=f"review_risk {risk}")

        review_scope = split_tokens(meta.get("review_scope", ""))
        wanted_scopes = {value.lower() for value in settings.require_for_review_scope}
        matched_scope = review_scope & wanted_scopes
        if matched_scope:
            return ArchDecision(
                required=True,
                reason=f"review_scope {','.join(sorted(matched_scope))}",
            )

        keyword = match_keyword(text, settings.trigger_keywords)
        if keyword is not None:
            return ArchDecision(required=True, reason=f"keyword {keyword}")
        return ArchDecision(required=False, reason="no arch trigger matched")

    def infer_target(self, text: str) -> Queue | None:
        for pattern, queue in _TARGET_HINTS:
            if pattern.search(text):
                return queue
        return None


def match_keyword(text: str, keywords: tuple[str, ...]) -> str | None:
    """Multi-word keywords match as substrings, single words on word boundaries."""

    lowered = text.lower()
    for raw in keywords:
        keyword = raw.strip().lower()
        if not keyword:
            continue
        if " " in keyword:
            if keyword in lowered:
                return keyword
        elif re.search(rf"\b{re.escape(keyword)}\b", lowered):
            return keyword
    return None
