"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from reqflow.config import Settings
from reqflow.orchestrator.backend import AgentRunRequest, AgentRunResult
from reqflow.orchestrator.invoker import AgentInvoker
from reqflow.orchestrator.models import Queue, WorkItem
from reqflow.orchestrator.pause import PAUSE_STATE_FILE, PauseController
from reqflow.orchestrator.store import WorkItemStore

Handler = Callable[[AgentRunRequest], "int | tuple[int, str] | None"]


class ScriptedBackend:
    """Fake ``AgentBackend``: per-role handlers move files the way a real agent would.

    A handler returns an exit code, ``(exit_code, stderr)``, or ``None`` for 0.
    A list of handlers is consumed one call at a time; the last one repeats.
    """

    def __init__(self, handlers: dict[str, Handler | list[Handler]] | None = None) -> None:
        self.handlers = dict(handlers or {})
        self.calls: list[AgentRunRequest] = []

    def roles(self) -> list[str]:
        return [call.role for call in self.calls]

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        self.calls.append(request)
        handler = self.handlers.get(request.role)
        if isinstance(handler, list):
            handler = handler.pop(0) if len(handler) > 1 else handler[0]
        outcome = handler(request) if handler is not None else None
        if outcome is None:
            exit_code, stderr = 0, ""
        elif isinstance(outcome, tuple):
            exit_code, stderr = outcome
        else:
            exit_code, stderr = outcome, ""
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.write_text(stderr, encoding="utf-8")
        request.stdout_path.write_text("", encoding="utf-8")
        return AgentRunResult(
            exit_code=exit_code,
            timed_out=False,
            stdout_path=request.stdout_path,
            stderr_path=request.stderr_path,
        )


def arg_after(request: AgentRunRequest, flag: str) -> str:
    index = request.argv.index(flag)
    return request.argv[index + 1]


def write_gate_file(request: AgentRunRequest, payload: dict[str, object]) -> None:
    flag = "--decision-file" if "--decision-file" in request.argv else "--gate-file"
    path = Path(arg_after(request, flag))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


def move_requirement(request: AgentRunRequest, target: Queue) -> None:
    source = Path(arg_after(request, "--requirement"))
    # <requirements_root>/<queue>/<file>
    destination = source.parent.parent / target.value / source.name
    destination.parent.mkdir(parents=True, exist_ok=True)
    source.rename(destination)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    repo = tmp_path / "repo"
    repo.mkdir()
    built = Settings.from_dict(
        {
            "paths": {"repo_root": str(repo)},
            "loops": {"retry_delay_seconds": 0.0, "delivery_poll_seconds": 1.0},
            "intake": {"default_mode": "intake"},
        },
        base_dir=tmp_path,
    )
    built.validate()
    return built


@pytest.fixture()
def store(settings: Settings) -> WorkItemStore:
    queue_store = WorkItemStore(settings.paths.requirements_root)
    queue_store.ensure_queues()
    return queue_store


@pytest.fixture()
def make_item(store: WorkItemStore) -> Callable[..., WorkItem]:
    def _make(
        queue: Queue,
        name: str,
        body: str = "Requirement body.",
        **meta: object,
    ) -> WorkItem:
        lines = ["---", *(f"{key}: {value}" for key, value in meta.items()), "---", "", body]
        return store.write_item(queue, name, "\n".join(lines) + "\n")

    return _make


@pytest.fixture()
def pause(settings: Settings) -> PauseController:
    return PauseController(settings.paths.runtime_root / PAUSE_STATE_FILE)


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def make_invoker(
    settings: Settings,
    pause: PauseController,
    sleeps: list[float],
) -> Callable[..., AgentInvoker]:
    def _make(
        backend: ScriptedBackend,
        *,
        stop_requested: Callable[[], bool] | None = None,
    ) -> AgentInvoker:
        return AgentInvoker(
            settings=settings,
            backend=backend,
            pause=pause,
            stop_requested=stop_requested,
            sleeper=sleeps.append,
        )

    return _make
