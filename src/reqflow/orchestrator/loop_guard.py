"""Intake idempotence: detect repeated no-progress outcomes and cool items down."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from reqflow.orchestrator.state import JsonStateFile

logger = logging.getLogger(__name__)

INTAKE_STATE_FILE = "intake-state.json"
REPEAT_THRESHOLD = 2

_PAYLOAD_KEYS = {
    "last_hash": "lastHash",
    "last_source_queue": "lastSourceQueue",
    "last_target_queue": "lastTargetQueue",
    "last_processed_cycle": "lastProcessedCycle",
    "repeat_count": "repeatCount",
    "skip_until_cycle": "skipUntilCycle",
}
_TEXT_FIELDS = frozenset({"last_hash", "last_source_queue", "last_target_queue"})


def content_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()  # noqa: S324


def item_key(item_id: str, file_name: str) -> str:
    return (item_id.strip() or file_name).upper()


@dataclass(slots=True)
class ItemRecord:
    """Last intake outcome seen for one item."""

    last_hash: str = ""
    last_source_queue: str = ""
    last_target_queue: str = ""
    last_processed_cycle: int = 0
    repeat_count: int = 0
    skip_until_cycle: int = 0

    @classmethod
    def from_payload(cls, raw: object) -> ItemRecord:
        if not isinstance(raw, dict):
            return cls()
        record = cls()
        for name, key in _PAYLOAD_KEYS.items():
            value = raw.get(key)
            if name in _TEXT_FIELDS:
                setattr(record, name, str(value or ""))
                continue
            try:
                setattr(record, name, max(0, int(value or 0)))
            except (TypeError, ValueError):
                setattr(record, name, 0)
        return record

    def to_payload(self) -> dict[str, object]:
        return {key: getattr(self, name) for name, key in _PAYLOAD_KEYS.items()}


class LoopGuard:
    """Persisted cycle counter plus per-item outcome records.

    Three identical (hash, source, target) outcomes in a row put the item on
    cooldown for the next ``cooldown_cycles`` intake passes. A cooldown below
    one cycle is treated as one; ``Settings.validate`` rejects such values.
    """

    def __init__(
        self,
        path: Path,
        *,
        enabled: bool = True,
        cooldown_cycles: int = 3,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.enabled = enabled
        self.cooldown_cycles = max(1, cooldown_cycles)
        self.log = logger_ or logger
        self._file = JsonStateFile(path, logger_=self.log)
        self._cycle = 0
        self._items: dict[str, ItemRecord] = {}
        self.load()

    @property
    def cycle(self) -> int:
        return self._cycle

    def load(self) -> None:
        payload = self._file.load()
        try:
            self._cycle = max(0, int(payload.get("cycle") or 0))
        except (TypeError, ValueError):
            self._cycle = 0
        raw_items = payload.get("items")
        items = raw_items if isinstance(raw_items, dict) else {}
        self._items = {str(key): ItemRecord.from_payload(value) for key, value in items.items()}

    def save(self) -> None:
        self._file.save(
            {
                "cycle": self._cycle,
                "items": {key: record.to_payload() for key, record in sorted(self._items.items())},
            },
        )

    def next_cycle(self) -> int:
        self._cycle += 1
        self.save()
        return self._cycle

    def record_for(self, key: str) -> ItemRecord | None:
        return self._items.get(key)

    def should_skip(self, key: str, digest: str, source_queue: str) -> bool:
        if not self.enabled:
            return False
        record = self._items.get(key)
        if record is None:
            return False
        return (
            record.last_hash == digest
            and record.last_source_queue == source_queue
            and self._cycle > 0
            and self._cycle <= record.skip_until_cycle
        )

    def record(self, key: str, digest: str, source_queue: str, target_queue: str) -> ItemRecord:
        """Store the outcome of one pass and start a cooldown on repeated outcomes."""

        previous = self._items.get(key) or ItemRecord()
        same = (
            previous.last_hash == digest
            and previous.last_source_queue == source_queue
            and previous.last_target_queue == target_queue
        )
        record = ItemRecord(
            last_hash=digest,
            last_source_queue=source_queue,
            last_target_queue=target_queue,
            last_processed_cycle=self._cycle,
            repeat_count=previous.repeat_count + 1 if same else 0,
            skip_until_cycle=previous.skip_until_cycle,
        )
        if record.repeat_count >= REPEAT_THRESHOLD:
            cooldown_end = self._cycle + self.cooldown_cycles
            record.skip_until_cycle = max(record.skip_until_cycle, cooldown_end)
            self.log.info(
                "Loop cooldown %s until cycle %d after repeated %s->%s",
                key,
                record.skip_until_cycle,
                source_queue,
                target_queue,
            )
        if self.enabled:
            self._items[key] = record
            self.save()
        return record
