"""Directory-backed queue store for requirement work items."""

from __future__ import annotations

import errno
import hashlib
import logging
import shutil
from collections.abc import Iterable, Sequence
from pathlib import Path

from reqflow.orchestrator.models import (
    AUDIT_HEADING,
    Queue,
    WorkItem,
    append_markdown_section,
    parse_front_matter,
    set_front_matter_field,
    upsert_markdown_section,
)

logger = logging.getLogger(__name__)


class WorkItemStore:
    """Queue folders under one requirements root; file presence is membership."""

    def __init__(self, root: Path, *, logger_: logging.Logger | None = None) -> None:
        self.root = root
        self.log = logger_ or logger

    def queue_dir(self, queue: Queue) -> Path:
        return self.root / queue.value

    def ensure_queues(self) -> None:
        for queue in Queue:
            self.queue_dir(queue).mkdir(parents=True, exist_ok=True)

    def list_queue(self, queue: Queue) -> list[WorkItem]:
        """Return regular, non-hidden files ordered by filename."""

        directory = self.queue_dir(queue)
        if not directory.is_dir():
            return []
        return [
            WorkItem(path=path, queue=queue)
            for path in sorted(directory.iterdir(), key=lambda entry: entry.name)
            if path.is_file() and not path.name.startswith(".")
        ]

    def count(self, queue: Queue) -> int:
        return len(self.list_queue(queue))

    def counts(self) -> dict[Queue, int]:
        return {queue: self.count(queue) for queue in Queue}

    def head(self, queue: Queue) -> WorkItem | None:
        items = self.list_queue(queue)
        return items[0] if items else None

    def find_in(self, name: str, queues: Iterable[Queue]) -> WorkItem | None:
        for queue in queues:
            candidate = self.queue_dir(queue) / name
            if candidate.is_file():
                return WorkItem(path=candidate, queue=queue)
        return None

    def locate(self, name: str) -> WorkItem | None:
        return self.find_in(name, Queue)

    def read_text(self, item: WorkItem | Path) -> str:
        path = item.path if isinstance(item, WorkItem) else item
        try:
            return path.read_text(encoding="utf-8")
        except OSError:
            return ""

    def read_metadata(self, item: WorkItem | Path) -> dict[str, str]:
        return parse_front_matter(self.read_text(item))

    def patch_metadata(self, item: WorkItem, key: str, value: str) -> None:
        text = self.read_text(item)
        item.path.write_text(set_front_matter_field(text, key, value), encoding="utf-8")

    def append_audit_section(
        self,
        item: WorkItem,
        lines: Sequence[str],
        *,
        heading: str = AUDIT_HEADING,
    ) -> None:
        if not lines:
            return
        text = self.read_text(item)
        updated = append_markdown_section(text, heading, list(lines))
        if updated != text:
            item.path.write_text(updated, encoding="utf-8")

    def upsert_section(self, item: WorkItem, heading: str, lines: Sequence[str]) -> None:
        text = self.read_text(item)
        item.path.write_text(upsert_markdown_section(text, heading, list(lines)), encoding="utf-8")

    def move(
        self,
        item: WorkItem,
        target: Queue,
        *,
        status: str | None = None,
        notes: Sequence[str] = (),
    ) -> WorkItem | None:
        """Move ``item`` into ``target`` after stamping status and audit notes.

        Returns the item at its new location, or ``None`` when the source is gone.
        A same-named file already in ``target`` marks the source as a stale
        replay: the source is discarded and the target is left untouched.
        """

        source = item.path
        if not source.is_file():
            return None

        target_dir = self.queue_dir(target)
        target_dir.mkdir(parents=True, exist_ok=True)
        destination = target_dir / source.name
        if destination.exists() and destination.resolve() != source.resolve():
            source.unlink(missing_ok=True)
            self.log.info("Dropped stale duplicate %s; %s already holds it", source, target.value)
            return WorkItem(path=destination, queue=target)

        self.append_audit_section(item, notes)
        self.patch_metadata(item, "status", status or target.value)
        if destination == source:
            return item

        try:
            source.rename(destination)
        except OSError as error:
            if error.errno != errno.EXDEV:
                raise
            shutil.copy2(source, destination)
            source.unlink()
        return WorkItem(path=destination, queue=target)

    def move_all(
        self,
        source: Queue,
        target: Queue,
        *,
        status: str | None = None,
        notes: Sequence[str] = (),
    ) -> int:
        moved = 0
        for item in self.list_queue(source):
            if self.move(item, target, status=status, notes=notes) is not None:
                moved += 1
        return moved

    def write_item(self, queue: Queue, name: str, text: str) -> WorkItem:
        directory = self.queue_dir(queue)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_text(text, encoding="utf-8")
        return WorkItem(path=path, queue=queue)

    def remove_stale_duplicate(self, item: WorkItem, *, reason: str) -> None:
        try:
            item.path.unlink(missing_ok=True)
        except OSError as error:
            self.log.warning(
                "Could not remove stale duplicate %s (%s): %s",
                item.path,
                reason,
                error,
            )
            return
        self.log.info("Removed stale duplicate %s: %s", item.path, reason)

    def business_score(self, item: WorkItem) -> float:
        meta = self.read_metadata(item)
        for key in ("business_score", "priority_score", "score"):
            raw = meta.get(key, "").strip()
            if not raw:
                continue
            try:
                return float(raw)
            except ValueError:
                continue
        return 0.0

    def bundle_ids(self, queue: Queue) -> list[str]:
        ids = {
            self.read_metadata(item).get("bundle_id", "").strip()
            for item in self.list_queue(queue)
        }
        return sorted(value for value in ids if value)

    def bundle_key(self, queue: Queue) -> str:
        """Key attempt counters by the bundle currently sitting in ``queue``."""

        ids = self.bundle_ids(queue)
        if not ids:
            return f"{queue.value}:no-bundle"
        if len(ids) == 1:
            return ids[0]
        return "mixed:" + "+".join(ids)

    def queue_signature(self, queue: Queue) -> str:
        rows = []
        for item in self.list_queue(queue):
            stat = item.path.stat()
            rows.append(f"{item.name}|{stat.st_size}|{int(stat.st_mtime * 1000)}")
        return "\n".join(rows)

    def snapshot_hash(self) -> str:
        """Hash of every queue's listing, used to detect idle cycles."""

        digest = hashlib.sha1()  # noqa: S324
        for queue in Queue:
            digest.update(f"[{queue.value}]\n".encode())
            digest.update(self.queue_signature(queue).encode())
        return digest.hexdigest()
