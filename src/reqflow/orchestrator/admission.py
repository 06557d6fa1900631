"""Bundle admission from ``selected`` into the delivery pipeline."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from reqflow.orchestrator.models import DOWNSTREAM_QUEUES, PLANNING_QUEUES, Queue, WorkItem
from reqflow.orchestrator.store import WorkItemStore

logger = logging.getLogger(__name__)

VISION_DECISION_FILE = "po-vision.decision.json"


@dataclass(slots=True)
class VisionDecision:
    """Latest product-vision verdict written by the planning agent."""

    status: str = ""
    vision_complete: bool = False
    changed_requirements: int | None = None

    @property
    def passed(self) -> bool:
        return self.status == "pass"


@dataclass(slots=True)
class AdmissionResult:
    """Outcome of one admission attempt."""

    started: bool
    underfilled_cycles: int
    bundle_id: str = ""
    admitted: list[WorkItem] = field(default_factory=list)
    reason: str = ""
    trigger: str = ""


def read_vision_decision(runtime_root: Path) -> VisionDecision:
    path = runtime_root / VISION_DECISION_FILE
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return VisionDecision()
    if not isinstance(payload, dict):
        return VisionDecision()

    changed: int | None = None
    for key in ("new_requirements", "updated_requirements"):
        value = payload.get(key)
        if isinstance(value, list):
            changed = (changed or 0) + len(value)
    return VisionDecision(
        status=str(payload.get("status") or "").strip().lower(),
        vision_complete=bool(payload.get("vision_complete")),
        changed_requirements=changed,
    )


class BundleAdmission:
    """Admit one bundle at a time, ordered by business score.

    The under-filled counter lives on the instance: it counts consecutive
    cycles in which ``selected`` held fewer than ``min_bundle`` items.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: WorkItemStore,
        force_underfilled_after_cycles: int,
        runtime_root: Path,
        vision_mode: bool = False,
        clock: Callable[[], datetime] | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.force_after = force_underfilled_after_cycles
        self.runtime_root = runtime_root
        self.vision_mode = vision_mode
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.log = logger_ or logger
        self.underfilled_cycles = 0

    def planning_busy(self) -> bool:
        return any(self.store.count(queue) > 0 for queue in PLANNING_QUEUES)

    def downstream_busy(self) -> bool:
        return any(self.store.count(queue) > 0 for queue in DOWNSTREAM_QUEUES)

    def pipeline_busy(self) -> bool:
        return self.planning_busy() or self.downstream_busy()

    def vision_forces_underfilled(self) -> bool:
        """Final drain: the vision is done, so waiting for a fuller bundle is pointless."""

        if not self.vision_mode:
            return False
        decision = read_vision_decision(self.runtime_root)
        if not decision.passed:
            return False
        if decision.vision_complete:
            return True
        return decision.changed_requirements == 0 and self.store.count(Queue.SELECTED) > 0

    def try_start(
        self,
        *,
        min_bundle: int,
        max_bundle: int,
        force_underfilled: bool = False,
        forced: bool = False,
    ) -> AdmissionResult:
        """Start one bundle from ``selected``.

        An under-filled bundle starts when the starvation counter is exhausted,
        when the vision final drain asks for it (``force_underfilled``), or when
        the operator forced the run (``forced``).
        """

        if self.pipeline_busy():
            return AdmissionResult(
                started=False,
                underfilled_cycles=self.underfilled_cycles,
                reason="pipeline busy",
            )

        available = self.store.count(Queue.SELECTED)
        if available == 0:
            self.underfilled_cycles = 0
            return AdmissionResult(started=False, underfilled_cycles=0, reason="selected empty")

        starved = self.underfilled_cycles >= self.force_after
        if available < min_bundle and not (starved or force_underfilled or forced):
            self.underfilled_cycles += 1
            self.log.info(
                "Waiting for fuller bundle: selected=%d min=%d (cycle %d/%d)",
                available,
                min_bundle,
                self.underfilled_cycles,
                self.force_after,
            )
            return AdmissionResult(
                started=False,
                underfilled_cycles=self.underfilled_cycles,
                reason="underfilled",
            )
        trigger = ""
        if available < min_bundle:
            if forced:
                trigger = "forced"
            elif force_underfilled:
                trigger = "vision final drain"
            else:
                trigger = "starvation override"
            self.log.info(
                "Starting underfilled bundle (%s): selected=%d min=%d",
                trigger,
                available,
                min_bundle,
            )

        picked = self.choose(max_bundle)
        bundle_id = self.new_bundle_id()
        admitted: list[WorkItem] = []
        for item in picked:
            self.store.patch_metadata(item, "bundle_id", bundle_id)
            moved = self.store.move(
                item,
                Queue.ARCH,
                notes=[
                    "Delivery runner: bundle intake by business score",
                    f"- bundle size target max={max_bundle}",
                    "- route: arch intake",
                ],
            )
            if moved is not None:
                admitted.append(moved)

        self.underfilled_cycles = 0
        self.log.info("Bundle %s started with %d requirement(s)", bundle_id, len(admitted))
        return AdmissionResult(
            started=bool(admitted),
            underfilled_cycles=0,
            bundle_id=bundle_id,
            admitted=admitted,
            reason="started",
            trigger=trigger,
        )

    def choose(self, max_bundle: int) -> list[WorkItem]:
        """Highest business score first; filename breaks ties."""

        scored = [
            (self.store.business_score(item), item)
            for item in self.store.list_queue(Queue.SELECTED)
        ]
        scored.sort(key=lambda pair: (-pair[0], pair[1].name))
        return [item for _, item in scored[: max(0, max_bundle)]]

    def new_bundle_id(self) -> str:
        now = self._clock()
        return f"BUNDLE-{now:%Y%m%d-%H%M%S}-{now.microsecond // 1000:03d}"
