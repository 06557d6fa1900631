from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure

from reqflow.orchestrator.pause import (
    DEFAULT_PAUSE_MINUTES,
    PauseController,
    detect_limit_reason,
    parse_try_again_time,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Global Pause"),
]

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_detect_limit_reason_recognizes_quota_phrases() -> None:
    assert detect_limit_reason("ERROR: Quota exceeded for project") == "quota_exceeded"
    assert detect_limit_reason("insufficient_quota") == "insufficient_quota"
    assert detect_limit_reason("segmentation fault") is None


def test_parse_try_again_time_rolls_over_to_next_day() -> None:
    local_now = NOW.astimezone()
    earlier = (local_now - timedelta(hours=1)).strftime("%H:%M")

    resume = parse_try_again_time(f"try again at {earlier}", now=NOW)

    assert resume is not None
    assert NOW < resume <= NOW + timedelta(days=1)
    assert parse_try_again_time("try again at 25:00", now=NOW) is None
    assert parse_try_again_time("no hint here", now=NOW) is None


def test_activate_from_text_defaults_to_twenty_minutes(tmp_path: Path) -> None:
    clock = _Clock(NOW)
    controller = PauseController(tmp_path / "pause-state.json", clock=clock)

    state = controller.activate_from_text("429 Too Many Requests", source="qa")

    assert state is not None
    assert state.reason == "too_many_requests"
    assert state.resume_after == NOW + timedelta(minutes=DEFAULT_PAUSE_MINUTES)
    payload = json.loads((tmp_path / "pause-state.json").read_text(encoding="utf-8"))
    assert payload["active"] is True
    assert payload["source"] == "qa"
    assert controller.activate_from_text("plain failure", source="qa") is None


def test_activate_keeps_later_resume_time(tmp_path: Path) -> None:
    clock = _Clock(NOW)
    controller = PauseController(tmp_path / "pause-state.json", clock=clock)
    controller.activate(reason="usage_limit", source="dev", resume_after=NOW + timedelta(hours=2))

    state = controller.activate(
        reason="rate_limit",
        source="qa",
        resume_after=NOW + timedelta(minutes=5),
    )

    assert state.reason == "usage_limit"
    assert state.resume_after == NOW + timedelta(hours=2)


def test_active_pause_expires_and_clears_file(tmp_path: Path) -> None:
    clock = _Clock(NOW)
    path = tmp_path / "pause-state.json"
    controller = PauseController(path, clock=clock)
    controller.activate(reason="usage_limit", source="po", resume_after=NOW + timedelta(minutes=3))

    active = controller.active()
    assert active is not None
    assert active.remaining_ms == 180_000
    assert controller.wait_seconds(active, 20.0) == 20.0
    assert "global pause active reason=usage_limit" in active.status_line()

    clock.now = NOW + timedelta(minutes=3, seconds=1)
    assert controller.active() is None
    assert not path.exists()


def test_wait_seconds_is_at_least_one_second(tmp_path: Path) -> None:
    clock = _Clock(NOW)
    controller = PauseController(tmp_path / "pause-state.json", clock=clock)
    state = controller.activate(
        reason="usage_limit",
        source="po",
        resume_after=NOW + timedelta(milliseconds=200),
    )

    assert controller.wait_seconds(state, 20.0) == 1.0


def test_unreadable_pause_file_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "pause-state.json"
    path.write_text("{not json", encoding="utf-8")

    assert PauseController(path).active() is None
    assert PauseController(path).clear() is True
    assert PauseController(path).clear() is False
