"""Recovery for items an agent left outside every expected queue."""

from __future__ import annotations

import logging
from collections.abc import Collection

from reqflow.orchestrator.classifier import RoutingClassifier, normalize_status
from reqflow.orchestrator.models import Queue, WorkItem
from reqflow.orchestrator.store import WorkItemStore

logger = logging.getLogger(__name__)

MISROUTE_SEARCH_ORDER: tuple[Queue, ...] = (
    Queue.SELECTED,
    Queue.BACKLOG,
    Queue.REFINEMENT,
    Queue.HUMAN_INPUT,
    Queue.WONT_DO,
    Queue.QA,
    Queue.UX,
    Queue.SEC,
    Queue.DEPLOY,
    Queue.RELEASED,
    Queue.BLOCKED,
)


class MisrouteRecovery:
    """Find a misplaced item and re-derive its destination from its own status."""

    def __init__(
        self,
        store: WorkItemStore,
        classifier: RoutingClassifier,
        *,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.log = logger_ or logger

    def find(self, name: str, *, excluded: Collection[Queue]) -> WorkItem | None:
        return self.store.find_in(
            name,
            (queue for queue in MISROUTE_SEARCH_ORDER if queue not in excluded),
        )

    def recover(
        self,
        name: str,
        *,
        stage_label: str,
        excluded: Collection[Queue],
        default_target: Queue,
        clarify_fallback: Queue,
    ) -> WorkItem | None:
        """Move a misrouted item; ``clarify`` is honored only with business evidence."""

        found = self.find(name, excluded=excluded)
        if found is None:
            return None

        meta = self.store.read_metadata(found)
        raw_status = meta.get("status", "")
        status = normalize_status(raw_status)
        if status == "clarify":
            text = self.store.read_text(found)
            if self.classifier.has_business_clarification_evidence(meta, text):
                target = Queue.TO_CLARIFY
                reason = "clarify status with business clarification evidence"
            else:
                target = clarify_fallback
                reason = "clarify status without business clarification evidence"
        else:
            target = default_target
            reason = f"status {raw_status or 'missing'}"

        self.log.warning(
            "%s misroute: %s found in %s; routing to %s (%s)",
            stage_label,
            name,
            found.queue.value,
            target.value,
            reason,
        )
        return self.store.move(
            found,
            target,
            notes=[
                f"- {stage_label} misroute recovery: found in {found.queue.value}",
                f"- reason: {reason} -> {target.value}",
            ],
        )
