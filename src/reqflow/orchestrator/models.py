"""Domain models and front-matter helpers for queue work items."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class Queue(str, Enum):
    """Fixed queue set; values are folder names and status strings."""

    REFINEMENT = "refinement"
    BACKLOG = "backlog"
    SELECTED = "selected"
    ARCH = "arch"
    DEV = "dev"
    QA = "qa"
    SEC = "sec"
    UX = "ux"
    DEPLOY = "deploy"
    RELEASED = "released"
    TO_CLARIFY = "to-clarify"
    HUMAN_DECISION = "human-decision-needed"
    HUMAN_INPUT = "human-input"
    WONT_DO = "wont-do"
    BLOCKED = "blocked"


class FailureClass(str, Enum):
    """Normalized agent failure classes used by retry and pause policy."""

    USAGE_LIMIT = "usage_limit"
    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    START_FAILED = "start_failed"


STATUS_LINE_ORDER: tuple[Queue, ...] = (
    Queue.REFINEMENT,
    Queue.BACKLOG,
    Queue.SELECTED,
    Queue.ARCH,
    Queue.DEV,
    Queue.QA,
    Queue.UX,
    Queue.SEC,
    Queue.DEPLOY,
    Queue.RELEASED,
    Queue.TO_CLARIFY,
    Queue.HUMAN_DECISION,
    Queue.HUMAN_INPUT,
    Queue.BLOCKED,
)
DOWNSTREAM_QUEUES: tuple[Queue, ...] = (Queue.QA, Queue.UX, Queue.SEC, Queue.DEPLOY)
PLANNING_QUEUES: tuple[Queue, ...] = (Queue.ARCH, Queue.DEV)

AUDIT_HEADING = "Flow Routing Notes"

_FRONT_MATTER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---(?:\r?\n|$)", re.DOTALL)


@dataclass(slots=True)
class WorkItem:
    """Handle to one requirement file in a queue folder."""

    path: Path
    queue: Queue

    @property
    def name(self) -> str:
        return self.path.name


def normalize_key(key: str) -> str:
    return key.strip().lower().replace("-", "_")


def parse_front_matter(text: str) -> dict[str, str]:
    """Parse a leading ``---`` block of ``key: value`` lines.

    Keys are lower-cased with dashes mapped to underscores, surrounding quotes
    are stripped from values, and comments or malformed lines are skipped.
    """

    match = _FRONT_MATTER_RE.match(text)
    if match is None:
        return {}

    meta: dict[str, str] = {}
    for raw_line in match.group(1).splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, value = line.split(":", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        meta[normalize_key(key)] = value
    return meta


def set_front_matter_field(text: str, key: str, value: str) -> str:
    """Replace or append ``key`` in the front matter, creating the block if absent."""

    rendered = f"{key}: {value}"
    match = _FRONT_MATTER_RE.match(text)
    if match is None:
        return f"---\n{rendered}\n---\n{text}"

    target = normalize_key(key)
    lines = match.group(1).splitlines()
    replaced = False
    for index, raw_line in enumerate(lines):
        stripped = raw_line.strip()
        if stripped.startswith("#") or ":" not in stripped:
            continue
        if normalize_key(stripped.split(":", 1)[0]) == target:
            lines[index] = rendered
            replaced = True
            break
    if not replaced:
        lines.append(rendered)

    block = "\n".join(lines)
    return f"---\n{block}\n---\n{text[match.end():]}"


def _find_section(lines: list[str], heading: str) -> tuple[int, int] | None:
    title = f"## {heading}"
    for start, line in enumerate(lines):
        if line.strip() != title:
            continue
        end = start + 1
        while end < len(lines) and not lines[end].startswith("## "):
            end += 1
        return start, end
    return None


def _join(lines: list[str]) -> str:
    return "\n".join(lines).rstrip("\n") + "\n"


def upsert_markdown_section(text: str, heading: str, lines: list[str]) -> str:
    """Replace the body of ``## heading`` or append a new section."""

    existing = text.splitlines()
    section = [f"## {heading}", *lines]
    span = _find_section(existing, heading)
    if span is None:
        return f"{text.rstrip()}\n\n{_join(section)}"

    start, end = span
    rest = existing[end:]
    return _join(existing[:start] + section + ([""] + rest if rest else []))


def append_markdown_section(text: str, heading: str, lines: list[str]) -> str:
    """Append ``lines`` under ``## heading``.

    Appending a block identical to the current tail of the section is a no-op,
    so replaying the same transition keeps the file content unchanged.
    """

    if not lines:
        return text

    existing = text.splitlines()
    span = _find_section(existing, heading)
    if span is None:
        return f"{text.rstrip()}\n\n{_join([f'## {heading}', *lines])}"

    start, end = span
    body = existing[start + 1 : end]
    while body and not body[-1].strip():
        body.pop()
    if len(body) >= len(lines) and body[len(body) - len(lines) :] == list(lines):
        return text

    rest = existing[end:]
    return _join(existing[: start + 1] + body + list(lines) + ([""] + rest if rest else []))
