"""Small JSON documents holding runner state under ``.runtime``."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class JsonStateFile:
    """Load-modify-save JSON document; unreadable content starts fresh."""

    def __init__(self, path: Path, *, logger_: logging.Logger | None = None) -> None:
        self.path = path
        self.log = logger_ or logger

    def load(self) -> dict[str, Any]:
        if not self.path.is_file():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as error:
            self.log.warning("Resetting unreadable state file %s: %s", self.path, error)
            return {}
        if not isinstance(payload, dict):
            self.log.warning("Resetting malformed state file %s: expected an object", self.path)
            return {}
        return payload

    def save(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(tmp_path, self.path)
