from __future__ import annotations

import errno
from pathlib import Path

import allure
import pytest

from reqflow.orchestrator.models import (
    AUDIT_HEADING,
    Queue,
    append_markdown_section,
    parse_front_matter,
    set_front_matter_field,
    upsert_markdown_section,
)
from reqflow.orchestrator.store import WorkItemStore

pytestmark = [
    allure.epic("Delivery Pipeline"),
    allure.feature("Queue Store"),
]


def test_parse_front_matter_normalizes_keys_and_strips_quotes() -> None:
    text = "---\nID: REQ-1\nbusiness-score: '80'\n# comment\nbroken line\n---\nbody\n"

    assert parse_front_matter(text) == {"id": "REQ-1", "business_score": "80"}
    assert parse_front_matter("no front matter") == {}


def test_set_front_matter_field_replaces_appends_and_creates() -> None:
    text = "---\nid: REQ-1\nstatus: backlog\n---\nbody\n"

    replaced = set_front_matter_field(text, "status", "selected")
    assert "status: selected" in replaced
    assert "status: backlog" not in replaced

    appended = set_front_matter_field(text, "bundle_id", "B-1")
    assert parse_front_matter(appended)["bundle_id"] == "B-1"
    assert appended.endswith("body\n")

    created = set_front_matter_field("plain body\n", "status", "dev")
    assert created.startswith("---\nstatus: dev\n---\n")


def test_append_markdown_section_is_idempotent_for_identical_tail() -> None:
    text = "body\n"
    once = append_markdown_section(text, AUDIT_HEADING, ["- moved to dev"])
    twice = append_markdown_section(once, AUDIT_HEADING, ["- moved to dev"])

    assert once == twice
    assert once.count(f"## {AUDIT_HEADING}") == 1

    extended = append_markdown_section(twice, AUDIT_HEADING, ["- moved to qa"])
    assert extended.index("- moved to dev") < extended.index("- moved to qa")


def test_upsert_markdown_section_replaces_body_and_keeps_following_sections() -> None:
    text = "# Title\n\n## Clarification Needed\n- old\n\n## Other\n- keep\n"

    updated = upsert_markdown_section(text, "Clarification Needed", ["- new"])

    assert "- old" not in updated
    assert "- new" in updated
    assert "## Other\n- keep" in updated


def test_list_queue_ignores_hidden_files_and_sorts_by_name(store: WorkItemStore) -> None:
    directory = store.queue_dir(Queue.BACKLOG)
    for name in ("b.md", "a.md", ".hidden.md"):
        (directory / name).write_text("x", encoding="utf-8")
    (directory / "nested").mkdir()

    assert [item.name for item in store.list_queue(Queue.BACKLOG)] == ["a.md", "b.md"]
    assert store.head(Queue.BACKLOG).name == "a.md"
    assert store.count(Queue.BACKLOG) == 2


def test_move_stamps_status_and_audit_notes(store: WorkItemStore, make_item) -> None:
    item = make_item(Queue.SELECTED, "REQ-1.md", id="REQ-1", status="selected")

    moved = store.move(item, Queue.ARCH, notes=["- route: arch intake"])

    assert moved is not None
    assert moved.queue == Queue.ARCH
    assert not item.path.exists()
    text = store.read_text(moved)
    assert parse_front_matter(text)["status"] == "arch"
    assert f"## {AUDIT_HEADING}\n- route: arch intake" in text


def test_move_into_queue_holding_same_name_drops_stale_source(
    store: WorkItemStore,
    make_item,
) -> None:
    source = make_item(Queue.DEV, "REQ-2.md", body="stale copy")
    make_item(Queue.QA, "REQ-2.md", body="canonical copy")

    moved = store.move(source, Queue.QA, notes=["- should not be written"])

    assert moved is not None and moved.queue == Queue.QA
    assert not source.path.exists()
    canonical = store.read_text(moved)
    assert "canonical copy" in canonical
    assert "should not be written" not in canonical


def test_move_across_devices_copies_then_removes_source(
    store: WorkItemStore,
    make_item,
    monkeypatch,
) -> None:
    item = make_item(Queue.DEV, "REQ-4.md", id="REQ-4", status="dev")
    renames: list[Path] = []

    def cross_device_rename(self, target):
        renames.append(Path(target))
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr(Path, "rename", cross_device_rename)

    moved = store.move(item, Queue.QA, notes=["- route: qa"])

    assert renames == [store.queue_dir(Queue.QA) / "REQ-4.md"]
    assert moved is not None and moved.queue == Queue.QA
    assert moved.path.is_file()
    assert not item.path.exists()
    text = store.read_text(moved)
    assert parse_front_matter(text)["status"] == "qa"
    assert f"## {AUDIT_HEADING}\n- route: qa" in text
    holders = [queue for queue in Queue if (store.queue_dir(queue) / "REQ-4.md").exists()]
    assert holders == [Queue.QA]


def test_move_reraises_other_rename_errors(store: WorkItemStore, make_item, monkeypatch):
    item = make_item(Queue.DEV, "REQ-5.md")

    def denied_rename(self, target):
        raise PermissionError(errno.EACCES, "Permission denied")

    monkeypatch.setattr(Path, "rename", denied_rename)

    with pytest.raises(PermissionError):
        store.move(item, Queue.QA)
    assert item.path.is_file()
    assert not (store.queue_dir(Queue.QA) / "REQ-5.md").exists()


def test_move_of_missing_source_returns_none(store: WorkItemStore, make_item) -> None:
    item = make_item(Queue.DEV, "REQ-3.md")
    item.path.unlink()

    assert store.move(item, Queue.QA) is None


def test_business_score_falls_back_through_keys(store: WorkItemStore, make_item) -> None:
    first = make_item(Queue.SELECTED, "a.md", business_score="70")
    second = make_item(Queue.SELECTED, "b.md", business_score="n/a", priority_score="12.5")
    third = make_item(Queue.SELECTED, "c.md")

    assert store.business_score(first) == 70
    assert store.business_score(second) == 12.5
    assert store.business_score(third) == 0


def test_bundle_key_reflects_single_mixed_and_missing_bundles(
    store: WorkItemStore,
    make_item,
) -> None:
    assert store.bundle_key(Queue.QA) == "qa:no-bundle"

    make_item(Queue.QA, "a.md", bundle_id="BUNDLE-1")
    assert store.bundle_key(Queue.QA) == "BUNDLE-1"

    make_item(Queue.QA, "b.md", bundle_id="BUNDLE-0")
    assert store.bundle_key(Queue.QA) == "mixed:BUNDLE-0+BUNDLE-1"


def test_queue_signature_and_snapshot_track_content(store: WorkItemStore, make_item) -> None:
    assert store.queue_signature(Queue.RELEASED) == ""
    before = store.snapshot_hash()

    make_item(Queue.RELEASED, "REQ-9.md")

    assert store.queue_signature(Queue.RELEASED).startswith("REQ-9.md|")
    assert store.snapshot_hash() != before
