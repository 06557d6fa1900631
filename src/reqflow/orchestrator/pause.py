"""Global pause state driven by provider usage limits."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

logger = logging.getLogger(__name__)

PAUSE_STATE_FILE = "pause-state.json"
DEFAULT_PAUSE_MINUTES = 20
_EXCERPT_LINES = 6
_EXCERPT_MAX_CHARS = 1_200

LIMIT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"usage limit", re.IGNORECASE), "usage_limit"),
    (re.compile(r"rate limit", re.IGNORECASE), "rate_limit"),
    (re.compile(r"insufficient[_ -]?quota", re.IGNORECASE), "insufficient_quota"),
    (re.compile(r"quota exceeded", re.IGNORECASE), "quota_exceeded"),
    (re.compile(r"too many requests", re.IGNORECASE), "too_many_requests"),
    (re.compile(r"try again at", re.IGNORECASE), "retry_later"),
)
_TRY_AGAIN_RE = re.compile(
    r"try again at\s+(\d{1,2})(?::(\d{2}))?\s*([ap]\.?m\.?)?",
    re.IGNORECASE,
)


@dataclass(slots=True)
class PauseState:
    """Persisted pause document plus the computed remaining time."""

    active: bool
    reason: str
    source: str
    created_at: datetime
    updated_at: datetime
    resume_after: datetime
    raw_excerpt: str = ""
    remaining_ms: int = 0

    def to_payload(self) -> dict[str, object]:
        return {
            "active": self.active,
            "reason": self.reason,
            "source": self.source,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "resumeAfter": self.resume_after.isoformat(),
            "rawExcerpt": self.raw_excerpt,
        }

    def status_line(self) -> str:
        minutes = max(1, -(-self.remaining_ms // 60_000))
        return (
            f"global pause active reason={self.reason} source={self.source} "
            f"resume_after={self.resume_after.isoformat()} remaining~{minutes}m"
        )


def detect_limit_reason(text: str) -> str | None:
    for pattern, reason in LIMIT_PATTERNS:
        if pattern.search(text):
            return reason
    return None


def parse_try_again_time(text: str, *, now: datetime) -> datetime | None:
    """Resolve ``try again at 3:15 PM`` to the next such wall-clock time after ``now``."""

    match = _TRY_AGAIN_RE.search(text)
    if match is None:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").replace(".", "").lower()
    if minute > 59:
        return None
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    elif hour > 23:
        return None

    local_now = now.astimezone()
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate += timedelta(days=1)
    return candidate.astimezone(UTC)


def build_excerpt(text: str) -> str:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return " | ".join(lines[-_EXCERPT_LINES:])[:_EXCERPT_MAX_CHARS]


class PauseController:
    """Reads and writes ``pause-state.json``; expired pauses clear themselves."""

    def __init__(
        self,
        path: Path,
        *,
        clock: Callable[[], datetime] | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.path = path
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.log = logger_ or logger

    def now(self) -> datetime:
        return self._clock()

    def active(self) -> PauseState | None:
        state = self._read()
        if state is None or not state.active:
            return None
        remaining = state.resume_after - self.now()
        if remaining <= timedelta(0):
            self.clear()
            self.log.info("Global pause expired (reason=%s); resuming", state.reason)
            return None
        state.remaining_ms = int(remaining.total_seconds() * 1000)
        return state

    def activate_from_text(self, text: str, *, source: str) -> PauseState | None:
        """Activate a pause when ``text`` carries a usage-limit signal."""

        reason = detect_limit_reason(text)
        if reason is None:
            return None
        now = self.now()
        resume_after = parse_try_again_time(text, now=now) or (
            now + timedelta(minutes=DEFAULT_PAUSE_MINUTES)
        )
        return self.activate(
            reason=reason,
            source=source,
            resume_after=resume_after,
            excerpt=build_excerpt(text),
        )

    def activate(
        self,
        *,
        reason: str,
        source: str,
        resume_after: datetime,
        excerpt: str = "",
    ) -> PauseState:
        now = self.now()
        existing = self._read()
        if existing is not None and existing.active and existing.resume_after > resume_after:
            reason = existing.reason
            resume_after = existing.resume_after
            excerpt = existing.raw_excerpt
        state = PauseState(
            active=True,
            reason=reason,
            source=source,
            created_at=existing.created_at if existing is not None and existing.active else now,
            updated_at=now,
            resume_after=resume_after,
            raw_excerpt=excerpt,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(state.to_payload(), indent=2) + "\n", encoding="utf-8")
        state.remaining_ms = max(0, int((resume_after - now).total_seconds() * 1000))
        self.log.warning(state.status_line())
        return state

    def clear(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink(missing_ok=True)
        return True

    def wait_seconds(self, state: PauseState, poll_seconds: float) -> float:
        return min(max(1.0, state.remaining_ms / 1000), poll_seconds)

    def _read(self) -> PauseState | None:
        if not self.path.is_file():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            return PauseState(
                active=bool(payload.get("active")),
                reason=str(payload.get("reason") or "unknown"),
                source=str(payload.get("source") or "unknown"),
                created_at=_parse_time(payload.get("createdAt")),
                updated_at=_parse_time(payload.get("updatedAt")),
                resume_after=_parse_time(payload.get("resumeAfter")),
                raw_excerpt=str(payload.get("rawExcerpt") or ""),
            )
        except (OSError, ValueError, TypeError, AttributeError) as error:
            self.log.warning("Ignoring unreadable pause state %s: %s", self.path, error)
            return None


def _parse_time(value: object) -> datetime:
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
