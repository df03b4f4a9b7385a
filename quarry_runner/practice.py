"""
Practice session - per-lesson controller for the code buffer, the console
output and the editing/running/success/failed/advanced lifecycle.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from .config import get_settings
from .errors import InvalidTransitionError, QuarryRunnerError, SessionClosedError
from .models import ModuleDescriptor, Phase, RunOutcome
from .orchestrator import ExecutionOrchestrator
from .static_check import step_progress

logger = logging.getLogger(__name__)

TERMINAL_READY = "> Terminal ready..."

# States from which the student may edit, reset or start a run
_INTERACTIVE = (Phase.EDITING, Phase.FAILED, Phase.SUCCESS)


class PracticeSession:
    """
    One student working on one module.

    Runs never interleave: run() while a run is in flight is a no-op. A run
    whose result arrives after the session moved on (left, or superseded) is
    discarded without touching state.
    """

    def __init__(
        self,
        module: ModuleDescriptor,
        orchestrator: ExecutionOrchestrator,
        *,
        saved_code: Optional[str] = None,
        on_complete: Optional[Callable[[str, str], Any]] = None,
        on_navigate: Optional[Callable[[str], Any]] = None,
        on_save: Optional[Callable[[str, str], Any]] = None,
        max_output_lines: Optional[int] = None,
    ):
        self.module = module
        self.orchestrator = orchestrator
        self.on_complete = on_complete
        self.on_navigate = on_navigate
        self.on_save = on_save
        self.max_output_lines = max_output_lines or get_settings().MAX_OUTPUT_LINES

        self.code = saved_code if saved_code is not None else module.initial_code
        self._starting_code = self.code
        self.phase = Phase.EDITING
        self.output: list[str] = [TERMINAL_READY]
        self.last_outcome: Optional[RunOutcome] = None
        self.engine_error: Optional[str] = None
        self.latest_run_id = 0
        self.closed = False
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------
    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosedError(f"Session for module {self.module.id} is closed")

    def _require(self, action: str, *phases: Phase) -> None:
        self._ensure_open()
        if self.phase not in phases:
            raise InvalidTransitionError(f"Cannot {action} while {self.phase.value}")

    def _is_stale(self, run_id: int) -> bool:
        return self.closed or run_id != self.latest_run_id

    # ------------------------------------------------------------------
    # Console
    # ------------------------------------------------------------------
    def _write(self, *lines: str) -> None:
        self.output.extend(lines)
        overflow = len(self.output) - self.max_output_lines
        if overflow > 0:
            del self.output[:overflow]

    def clear_output(self) -> None:
        self._ensure_open()
        self.output = [TERMINAL_READY]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self.phase == Phase.RUNNING

    @property
    def can_advance(self) -> bool:
        return self.phase == Phase.SUCCESS and not self.closed

    @property
    def step_progress(self) -> list[bool]:
        return step_progress(self.code, self.module.step_requirements)

    def hint(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.module.hints):
            return self.module.hints[index]
        return None

    def edit(self, code: str) -> None:
        self._require("edit", *_INTERACTIVE)
        self.code = code
        self.phase = Phase.EDITING

    def reset(self) -> None:
        """Restore the module's starting template. Repeating it changes nothing."""
        self._require("reset", *_INTERACTIVE)
        self.code = self.module.initial_code
        self.phase = Phase.EDITING

    async def run(self) -> Optional[RunOutcome]:
        """
        Run the current buffer through the orchestrator.

        Returns the outcome, or None when the request was ignored (already
        running) or its result went stale. Infrastructure errors leave the
        session failed with engine_error set and are re-raised.
        """
        self._ensure_open()
        if self.phase == Phase.RUNNING:
            logger.info(f"Run ignored for module {self.module.id}: a run is already in flight")
            return None
        self._require("run", *_INTERACTIVE)

        self.latest_run_id += 1
        run_id = self.latest_run_id
        code = self.code
        self.phase = Phase.RUNNING
        self.engine_error = None
        self._write(f"> Executing {self.module.source_name}...", "---")

        try:
            outcome = await self.orchestrator.run(self.module, code)
        except QuarryRunnerError as e:
            if self._is_stale(run_id):
                logger.debug(f"Dropping engine error for stale run {run_id}: {e}")
                return None
            self._fail_run(str(e))
            raise
        except BaseException as e:
            # Cancelled or crashed mid-run; never leave the session stuck running
            if not self._is_stale(run_id):
                logger.error(f"Run {run_id} of module {self.module.id} aborted: {e!r}")
                self._fail_run(str(e) or type(e).__name__)
            raise

        if self._is_stale(run_id):
            logger.debug(f"Discarding stale result for run {run_id} of module {self.module.id}")
            return None

        self.last_outcome = outcome
        self._write(*(entry.message for entry in outcome.logs))
        self.phase = Phase.SUCCESS if outcome.success else Phase.FAILED
        return outcome

    def _fail_run(self, message: str) -> None:
        self.phase = Phase.FAILED
        self.engine_error = message
        self._write(f"❌ Engine error: {message}")

    def advance(self) -> None:
        """Acknowledge a passing run: record completion, then move on."""
        self._require("advance", Phase.SUCCESS)
        self.phase = Phase.ADVANCED
        if self.on_complete is not None:
            self._fire("on_complete", self.on_complete, self.module.id, self.code)
        if self.on_navigate is not None:
            self._fire("on_navigate", self.on_navigate, "next")

    def leave(self, signal: str = "syllabus") -> None:
        """Navigate away. Any run still in flight is abandoned."""
        self._ensure_open()
        self.latest_run_id += 1
        self.closed = True
        if self.on_save is not None and self.code != self._starting_code:
            self._fire("on_save", self.on_save, self.module.id, self.code)
        if self.on_navigate is not None:
            self._fire("on_navigate", self.on_navigate, signal)

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------
    def _fire(self, name: str, callback: Callable[..., Any], *args: Any) -> None:
        """Invoke a collaborator without letting its failure reach the student."""
        try:
            result = callback(*args)
        except Exception as e:
            logger.error(f"{name} failed for module {self.module.id}: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(lambda t: self._callback_done(name, t))

    def _callback_done(self, name: str, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{name} failed for module {self.module.id}: {error}")
