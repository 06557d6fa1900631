"""Top-level delivery loop with operator controls, global pause, and idle backoff."""

from __future__ import annotations

import _thread
import logging
import os
import select
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TextIO

from reqflow.orchestrator.admission import BundleAdmission, read_vision_decision
from reqflow.orchestrator.comprehensive import ComprehensiveResult, ComprehensiveTestComposer
from reqflow.orchestrator.downstream import DownstreamStages
from reqflow.orchestrator.intake import IntakeCycleResult, IntakePlanner
from reqflow.orchestrator.invoker import sleep_with_stop
from reqflow.orchestrator.models import (
    DOWNSTREAM_QUEUES,
    PLANNING_QUEUES,
    STATUS_LINE_ORDER,
    Queue,
)
from reqflow.orchestrator.pause import PauseController
from reqflow.orchestrator.stages import StageRunner
from reqflow.orchestrator.store import WorkItemStore

logger = logging.getLogger(__name__)

FORCED_EXIT_CODE = 130
MODE_ALIASES = {
    "full": "full",
    "fast": "fast",
    "dev-only": "fast",
    "test": "test",
    "regression": "test",
    "uat": "test",
    "quality": "test",
}
IDLE_QUEUES_FOR_COMPLETION: tuple[Queue, ...] = (
    Queue.REFINEMENT,
    Queue.BACKLOG,
    Queue.SELECTED,
    Queue.TO_CLARIFY,
    Queue.HUMAN_INPUT,
    Queue.HUMAN_DECISION,
    *PLANNING_QUEUES,
    *DOWNSTREAM_QUEUES,
)


class ForcedStop(Exception):
    """Raised when the operator asks to stop a second time."""


def normalize_mode(raw: str) -> str:
    mode = MODE_ALIASES.get(raw.strip().lower().replace("_", "-"))
    if mode is None:
        raise ValueError(f"Unsupported delivery mode: {raw!r}")
    return mode


def format_status_line(store: WorkItemStore) -> str:
    return " ".join(f"{queue.value}={store.count(queue)}" for queue in STATUS_LINE_ORDER)


class OperatorControls:
    """Stop flag, verbose toggle, and single-key commands on a TTY.

    The keypress reader is the only extra thread and it touches nothing but
    these flags and the log level.
    """

    def __init__(
        self,
        *,
        verbose: bool,
        log_target: logging.Logger,
        status_line: Callable[[], str] | None = None,
        stdin: TextIO | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self.verbose = verbose
        self.log_target = log_target
        self.status_line = status_line or (lambda: "")
        self.stdin = stdin if stdin is not None else sys.stdin
        self.echo = echo or (lambda message: print(message, flush=True))
        self.stop_count = 0
        self.stop_reason: str | None = None
        self.forced = False
        self._closed = threading.Event()
        self._reader: threading.Thread | None = None
        self._restore_terminal: Callable[[], None] | None = None
        self.apply_log_level()

    def stop_requested(self) -> bool:
        return self.stop_count > 0

    def request_stop(self, reason: str) -> None:
        """First request stops gracefully; a second one forces exit 130."""

        self.stop_count += 1
        if self.stop_count == 1:
            self.stop_reason = reason
            self.echo(f"DELIVERY: stop requested ({reason})")
            return
        self.forced = True
        self.echo("DELIVERY: force stop")
        if threading.current_thread() is threading.main_thread():
            raise ForcedStop(reason)
        _thread.interrupt_main()

    def apply_log_level(self) -> None:
        self.log_target.setLevel(logging.INFO if self.verbose else logging.WARNING)

    def toggle_verbose(self) -> None:
        self.verbose = not self.verbose
        self.apply_log_level()
        self.echo(f"MODE: verbose={self.verbose}")

    def handle_key(self, key: str) -> None:
        key = key.lower()
        if key == "v":
            self.toggle_verbose()
        elif key == "s":
            self.echo(f"STATUS: {self.status_line()}")
        elif key == "q":
            self.request_stop("q")

    @contextmanager
    def signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            if self.forced:
                raise ForcedStop("interrupt")
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass

    def start_keypress_reader(self) -> bool:
        """Read single keys from a TTY stdin on a daemon thread; no-op otherwise."""

        if os.name != "posix" or not self.stdin.isatty():
            return False

        import termios
        import tty

        fd = self.stdin.fileno()
        saved = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        self._restore_terminal = lambda: termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        self._reader = threading.Thread(
            target=self._read_keys,
            args=(fd,),
            daemon=True,
            name="reqflow-keys",
        )
        self._reader.start()
        return True

    def close(self) -> None:
        self._closed.set()
        if self._restore_terminal is not None:
            self._restore_terminal()
            self._restore_terminal = None

    def _read_keys(self, fd: int) -> None:
        while not self._closed.is_set():
            ready, _, _ = select.select([fd], [], [], 0.2)
            if not ready:
                continue
            data = os.read(fd, 1)
            if not data:
                return
            self.handle_key(data.decode("utf-8", errors="ignore"))


@dataclass(slots=True)
class DeliveryOptions:
    """Per-run options resolved from the CLI."""

    mode: str = "full"
    once: bool = False
    force: bool = False
    min_bundle: int = 5
    max_bundle: int = 20


@dataclass(slots=True)
class CycleReport:
    bundle_started: bool = False
    interrupted: bool = False
    comprehensive: ComprehensiveResult | None = None


class ControlPlane:
    """Cooperative delivery loop: admit, drain arch and dev, then run downstream."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: WorkItemStore,
        pause: PauseController,
        admission: BundleAdmission,
        stages: StageRunner,
        downstream: DownstreamStages,
        composer: ComprehensiveTestComposer,
        stop_requested: Callable[[], bool],
        poll_seconds: float,
        idle_wait_seconds: float,
        vision_mode: bool = False,
        sleeper: Callable[[float], None] | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.pause = pause
        self.admission = admission
        self.stages = stages
        self.downstream = downstream
        self.composer = composer
        self.stop_requested = stop_requested
        self.poll_seconds = max(1.0, poll_seconds)
        self.idle_wait = max(self.poll_seconds, idle_wait_seconds)
        self.vision_mode = vision_mode
        self._sleeper = sleeper
        self.log = logger_ or logger
        released = store.queue_signature(Queue.RELEASED)
        self.released_signature = released
        self.maint_signature = released

    def run(self, options: DeliveryOptions) -> int:
        """Loop until stop (or one cycle with ``once``); returns the number of cycles run."""

        self.log.info(
            "mode=%s bundle min=%d max=%d",
            options.mode,
            options.min_bundle,
            options.max_bundle,
        )
        cycles = 0
        while not self.stop_requested():
            state = self.pause.active()
            if state is not None:
                self.log.warning("DELIVERY: %s", state.status_line())
                if options.once:
                    break
                self._sleep(self.pause.wait_seconds(state, self.poll_seconds))
                continue

            before = self.store.snapshot_hash()
            self.run_cycle(options)
            cycles += 1
            if options.once or self.stop_requested():
                break
            if self.store.snapshot_hash() == before:
                self._sleep(self.idle_seconds(options.mode))
        return cycles

    def run_cycle(self, options: DeliveryOptions) -> CycleReport:
        report = CycleReport()
        admission = self.admission.try_start(
            min_bundle=options.min_bundle,
            max_bundle=options.max_bundle,
            force_underfilled=self.admission.vision_forces_underfilled(),
            forced=options.force,
        )
        report.bundle_started = admission.started

        for drain in (self.stages.run_arch, self.stages.run_dev):
            if self.stop_requested():
                report.interrupted = True
                return report
            if drain().interrupted:
                report.interrupted = True
                return report

        if options.mode == "fast" or self.admission.planning_busy() or self.stop_requested():
            return report

        test_mode = options.mode == "test"
        summary = self.downstream.run_full(
            test_mode=test_mode,
            released_signature=self.released_signature,
            maint_signature=self.maint_signature,
        )
        if summary.released_signature is not None:
            self.released_signature = summary.released_signature
        if summary.maint_signature is not None:
            self.maint_signature = summary.maint_signature
        if summary.interrupted or self.stop_requested():
            report.interrupted = True
            return report

        report.comprehensive = self._maybe_comprehensive(test_mode=test_mode)
        return report

    def idle_seconds(self, mode: str) -> float:
        """Long wait when nothing is queued for delivery, the poll interval otherwise."""

        front_idle = all(
            self.store.count(queue) == 0 for queue in (Queue.SELECTED, *PLANNING_QUEUES)
        )
        if front_idle and (mode == "fast" or not self.admission.downstream_busy()):
            return self.idle_wait
        return self.poll_seconds

    def _maybe_comprehensive(self, *, test_mode: bool) -> ComprehensiveResult | None:
        if self.store.count(Queue.RELEASED) == 0:
            return None
        if test_mode:
            if self.admission.pipeline_busy():
                return None
            return self.composer.maybe_run(reason="test-mode", non_mutating=True, test_mode=True)
        if not self.vision_mode:
            return None
        decision = read_vision_decision(self.admission.runtime_root)
        if not (decision.passed and decision.vision_complete):
            return None
        if any(self.store.count(queue) > 0 for queue in IDLE_QUEUES_FOR_COMPLETION):
            return None
        return self.composer.maybe_run(reason="vision-complete")

    def _sleep(self, seconds: float) -> None:
        if self._sleeper is not None:
            self._sleeper(seconds)
        else:
            sleep_with_stop(seconds, self.stop_requested)


class IntakeLoop:
    """Repeat intake cycles until stopped, backing off when nothing moved."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        planner: IntakePlanner,
        store: WorkItemStore,
        pause: PauseController,
        stop_requested: Callable[[], bool],
        poll_seconds: float,
        sleeper: Callable[[float], None] | None = None,
        logger_: logging.Logger | None = None,
    ) -> None:
        self.planner = planner
        self.store = store
        self.pause = pause
        self.stop_requested = stop_requested
        self.poll_seconds = max(1.0, poll_seconds)
        self._sleeper = sleeper
        self.log = logger_ or logger

    def run(self, *, once: bool = False) -> list[IntakeCycleResult]:
        results: list[IntakeCycleResult] = []
        while not self.stop_requested():
            state = self.pause.active()
            if state is not None:
                self.log.warning("INTAKE: %s", state.status_line())
                if once:
                    break
                self._sleep(self.pause.wait_seconds(state, self.poll_seconds))
                continue

            before = self.store.snapshot_hash()
            result = self.planner.run_cycle()
            results.append(result)
            self.log.info(
                "Intake cycle %d: processed=%d paused=%s",
                result.cycle,
                result.processed,
                result.paused,
            )
            if once or self.stop_requested():
                break
            if result.paused or self.store.snapshot_hash() == before:
                self._sleep(self.poll_seconds)
        return results

    def _sleep(self, seconds: float) -> None:
        if self._sleeper is not None:
            self._sleeper(seconds)
        else:
            sleep_with_stop(seconds, self.stop_requested)
