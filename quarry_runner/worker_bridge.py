"""
Worker Bridge - owns the sandbox worker process and multiplexes execution
requests over it by correlation ID.

Features:
- Spawns the worker and tracks its one-time ready signal
- Promise-style execute() that resolves exactly once per request
- Backup timeout independent of the worker's own timer
- Crash detection with transparent restart and re-dispatch
- Security event log and execution statistics for the dashboard
"""
import asyncio
import json
import logging
import os
import sys
import tempfile
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .config import Settings, get_settings
from .errors import WorkerUnavailableError
from .models import ExecutionRequest, ExecutionResult

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024
MAX_SECURITY_EVENTS = 500


def build_worker_command(settings: Settings) -> list[str]:
    return [
        sys.executable, "-B", "-m", "quarry_runner.worker.executor",
        "--memory-limit-mb", str(settings.WORKER_MEMORY_LIMIT_MB),
        "--max-log-lines", str(settings.MAX_LOG_LINES),
        "--max-line-length", str(settings.MAX_LINE_LENGTH),
    ]


def _worker_env() -> dict[str, str]:
    # Only what the interpreter needs; nothing from the host environment leaks in
    return {
        "PATH": os.environ.get("PATH", ""),
        "PYTHONPATH": str(Path(__file__).resolve().parent.parent),
        "PYTHONDONTWRITEBYTECODE": "1",
        "PYTHONUNBUFFERED": "1",
        "PYTHONIOENCODING": "utf-8",
        "LANG": "C.UTF-8",
    }


class WorkerProcess:
    """One sandbox worker child process and its reader tasks."""

    def __init__(
        self,
        name: str,
        command: list[str],
        on_message: Callable[["WorkerProcess", dict], None],
        on_exit: Callable[["WorkerProcess", Optional[int]], None],
    ):
        self.name = name
        self.command = command
        self._on_message = on_message
        self._on_exit = on_exit
        self.process: Optional[asyncio.subprocess.Process] = None
        self.ready = asyncio.Event()
        self.exited = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._terminating = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None and not self.exited.is_set()

    async def start(self) -> None:
        self.process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_worker_env(),
            cwd=tempfile.gettempdir(),
            start_new_session=True,
            limit=STREAM_LIMIT,
        )
        self._tasks = [
            asyncio.create_task(self._read_messages()),
            asyncio.create_task(self._drain_stderr()),
        ]
        logger.info(f"Started worker {self.name} (pid {self.pid})")

    async def wait_ready(self, timeout: float) -> bool:
        """Wait for the ready signal, giving up early if the process exits."""
        waiters = [asyncio.create_task(self.ready.wait()), asyncio.create_task(self.exited.wait())]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        return self.ready.is_set() and self.alive

    async def send(self, request: ExecutionRequest) -> None:
        assert self.process is not None and self.process.stdin is not None
        line = request.model_dump_json(by_alias=True) + "\n"
        self.process.stdin.write(line.encode("utf-8"))
        await self.process.stdin.drain()

    async def _read_messages(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        try:
            while True:
                line = await self.process.stdout.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except ValueError:
                    logger.warning(f"Discarding malformed message from {self.name}")
                    continue
                if isinstance(message, dict):
                    self._on_message(self, message)
        except ValueError as e:
            # Line longer than STREAM_LIMIT; the channel can no longer be trusted
            logger.error(f"Protocol error from {self.name}: {e}")
            self.process.kill()
        except Exception as e:
            logger.error(f"Reader for {self.name} failed: {e}")

        returncode = await self.process.wait()
        self.exited.set()
        if not self._terminating:
            self._on_exit(self, returncode)

    async def _drain_stderr(self) -> None:
        assert self.process is not None and self.process.stderr is not None
        try:
            while True:
                line = await self.process.stderr.readline()
                if not line:
                    break
                logger.info(f"[{self.name}] {line.decode('utf-8', errors='replace').rstrip()}")
        except ValueError:
            pass

    async def terminate(self) -> None:
        self._terminating = True
        if self.process is not None and self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()
        self.exited.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []


@dataclass
class PendingCall:
    """A request waiting for its worker response."""
    request: ExecutionRequest
    future: asyncio.Future
    start_time: float
    timeout_handle: Optional[asyncio.TimerHandle] = None
    process: Optional[WorkerProcess] = None


class WorkerBridge:
    """
    Host-side proxy for the sandbox worker.

    The bridge imposes no ordering between concurrent execute() calls; callers
    that need one run at a time (a practice session) serialize on their side.
    """

    def __init__(self, settings: Optional[Settings] = None, command: Optional[list[str]] = None):
        self.settings = settings or get_settings()
        self.command = command or build_worker_command(self.settings)
        self.per_run = self.settings.per_run_isolation

        self._worker: Optional[WorkerProcess] = None
        self._pending: dict[int, PendingCall] = {}
        self._last_id = 0
        self._spawned = 0
        self._lock = asyncio.Lock()
        self.fault: Optional[str] = None

        # Dashboard/tracking support
        self._event_callbacks: list[Callable[[dict], Any]] = []
        self.security_events: deque[dict] = deque(maxlen=MAX_SECURITY_EVENTS)
        self._execution_history: deque[dict] = deque(maxlen=100)

        # Statistics
        self.stats = {
            "total_executions": 0,
            "total_exec_time_ms": 0,
            "success_count": 0,
            "timeouts": 0,
            "crashes": 0,
            "restarts": 0,
        }

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def add_event_callback(self, callback: Callable[[dict], Any]) -> None:
        """Add a callback to be notified of worker events."""
        self._event_callbacks.append(callback)

    def remove_event_callback(self, callback: Callable[[dict], Any]) -> None:
        """Remove an event callback."""
        if callback in self._event_callbacks:
            self._event_callbacks.remove(callback)

    def _record_event(self, event: str, data: Optional[dict] = None) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "data": data or {},
        }
        self.security_events.append(entry)
        if event in ("worker_error", "worker_timeout", "worker_init_failed"):
            logger.warning(f"[SECURITY] {event}: {entry['data']}")
        else:
            logger.info(f"[SECURITY] {event}: {entry['data']}")

        for callback in self._event_callbacks:
            try:
                result = callback(entry)
                if asyncio.iscoroutine(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.warning(f"Error in event callback: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_ready(self) -> bool:
        if self.per_run:
            return self.fault is None
        return self._worker is not None and self._worker.alive and self._worker.ready.is_set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def initialize(self) -> None:
        """Spawn the worker. Readiness arrives later through its ready signal."""
        if self.per_run:
            return
        async with self._lock:
            if self._worker is not None and self._worker.alive:
                return
            self._worker = await self._spawn()

    async def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        if timeout is None:
            timeout = self.settings.WORKER_READY_TIMEOUT_MS / 1000
        if self.per_run:
            return self.fault is None
        if self._worker is None:
            await self.initialize()
        assert self._worker is not None
        return await self._worker.wait_ready(timeout)

    async def _spawn(self) -> WorkerProcess:
        self._spawned += 1
        worker = WorkerProcess(
            f"quarry-worker-{self._spawned}",
            self.command,
            self._handle_message,
            self._handle_exit,
        )
        try:
            await worker.start()
        except OSError as e:
            self.fault = f"Worker failed to start: {e}"
            self._record_event("worker_init_failed", {"message": str(e)})
            raise WorkerUnavailableError(self.fault) from e
        return worker

    async def _ready_worker(self) -> WorkerProcess:
        ready_timeout = self.settings.WORKER_READY_TIMEOUT_MS / 1000
        if self.per_run:
            worker = await self._spawn()
            if await worker.wait_ready(ready_timeout):
                return worker
            await worker.terminate()
        else:
            # Second attempt covers a worker that died while we were waiting on it
            for _ in range(2):
                await self.initialize()
                assert self._worker is not None
                worker = self._worker
                if await worker.wait_ready(ready_timeout):
                    return worker
                if worker.alive:
                    break

        self.fault = "Worker did not become ready"
        self._record_event("worker_init_failed", {"message": self.fault, "worker": worker.name})
        raise WorkerUnavailableError(self.fault)

    async def terminate(self) -> None:
        """Tear down worker(s) and resolve anything still outstanding."""
        workers = {call.process for call in self._pending.values() if call.process is not None}
        if self._worker is not None:
            workers.add(self._worker)
        self._worker = None

        for worker in workers:
            await worker.terminate()

        for call in list(self._pending.values()):
            self._resolve(call, ExecutionResult.failure("Worker terminated", "Execution cancelled: worker terminated"))

        if workers:
            self._record_event("worker_terminated", {"workers": sorted(w.name for w in workers)})

    async def restart(self) -> bool:
        """Manual retry affordance for a faulted engine."""
        await self.terminate()
        self.fault = None
        self.stats["restarts"] += 1
        self._record_event("worker_restarted", {"reason": "manual"})
        if self.per_run:
            return True
        await self.initialize()
        return await self.wait_until_ready()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute(
        self,
        code: str,
        *,
        timeout_ms: Optional[int] = None,
        expected_output: Optional[str] = None,
        stdin: str = "",
    ) -> ExecutionResult:
        """
        Run code in the sandbox worker.

        Resolves with a timed-out result if the worker does not answer within
        timeout + backup buffer. Raises WorkerUnavailableError only when the
        request cannot be dispatched at all.
        """
        timeout_ms = timeout_ms or self.settings.EXEC_TIMEOUT_MS
        self._last_id += 1
        request = ExecutionRequest(
            id=self._last_id,
            code=code,
            timeout=timeout_ms,
            stdin=stdin,
            expected_output=expected_output,
        )
        call = PendingCall(
            request=request,
            future=asyncio.get_running_loop().create_future(),
            start_time=time.monotonic(),
        )

        worker = await self._ready_worker()
        self._pending[request.id] = call
        await self._dispatch(worker, call)

        try:
            result = await call.future
        finally:
            # Covers a caller that was cancelled while waiting
            self._pending.pop(request.id, None)
            if call.timeout_handle is not None:
                call.timeout_handle.cancel()
            if self.per_run:
                await worker.terminate()

        self._record_execution(call, result)
        return result

    async def _dispatch(self, worker: WorkerProcess, call: PendingCall) -> None:
        loop = asyncio.get_running_loop()
        call.process = worker
        backup_s = (call.request.timeout + self.settings.backup_buffer_ms) / 1000
        call.timeout_handle = loop.call_later(backup_s, self._on_backup_timeout, call.request.id)
        try:
            await worker.send(call.request)
        except (BrokenPipeError, ConnectionResetError) as e:
            # The exit handler or the backup timer will settle this call
            logger.warning(f"Could not send request {call.request.id} to {worker.name}: {e}")

    def _resolve(self, call: PendingCall, result: ExecutionResult) -> None:
        self._pending.pop(call.request.id, None)
        if call.timeout_handle is not None:
            call.timeout_handle.cancel()
            call.timeout_handle = None
        if not call.future.done():
            call.future.set_result(result)

    def _calls_on(self, worker: WorkerProcess) -> list[PendingCall]:
        return sorted(
            (call for call in self._pending.values() if call.process is worker),
            key=lambda call: call.request.id,
        )

    def _handle_message(self, worker: WorkerProcess, message: dict) -> None:
        kind = message.get("type")
        if kind == "ready":
            worker.ready.set()
            self.fault = None
            self._record_event("worker_initialized", {"worker": worker.name, "pid": worker.pid})
            return

        request_id = message.get("id")
        call = self._pending.get(request_id)
        if call is None:
            logger.warning(f"Received response for unknown request: {request_id}")
            return

        if kind == "error":
            error = message.get("error") or "Worker error"
            result = ExecutionResult.failure(error, f"Worker error: {error}")
        else:
            try:
                result = ExecutionResult.model_validate(message)
            except ValidationError as e:
                logger.error(f"Malformed response for request {request_id}: {e}")
                result = ExecutionResult.failure("Malformed worker response", "Worker error: malformed response")
        self._resolve(call, result)

    def _on_backup_timeout(self, request_id: int) -> None:
        call = self._pending.get(request_id)
        if call is None:
            return

        worker = call.process
        calls = self._calls_on(worker) if worker is not None else []
        was_running = bool(calls) and calls[0] is call

        self.stats["timeouts"] += 1
        self._record_event("worker_timeout", {
            "id": request_id,
            "timeout": call.request.timeout,
            "worker": worker.name if worker else None,
        })
        self._resolve(call, ExecutionResult.failure(
            "Worker timeout",
            f"Worker timeout after {call.request.timeout}ms",
            timed_out=True,
        ))

        # Worker never answered the request it was running, so it is wedged
        if was_running and worker is not None and worker.alive and not self.per_run:
            asyncio.ensure_future(self._recover(worker, f"unresponsive on request {request_id}"))

    def _handle_exit(self, worker: WorkerProcess, returncode: Optional[int]) -> None:
        self.stats["crashes"] += 1
        self.fault = f"Worker process exited (code {returncode})"
        self._record_event("worker_error", {"message": self.fault, "worker": worker.name})

        calls = self._calls_on(worker)
        if calls:
            # Requests run one at a time, so the oldest outstanding one was running
            self._resolve(calls[0], ExecutionResult.failure(
                "Worker crashed",
                "Worker crashed while running this code",
            ))

        if self.per_run:
            for call in calls[1:]:
                self._resolve(call, ExecutionResult.failure("Engine unavailable"))
            return
        asyncio.ensure_future(self._recover(worker, self.fault))

    async def _recover(self, failed: WorkerProcess, reason: str) -> None:
        """Replace a dead or wedged worker and re-dispatch what it still owed."""
        async with self._lock:
            await failed.terminate()
            orphans = self._calls_on(failed)
            if failed is self._worker:
                self._worker = None

            if not self.settings.WORKER_AUTO_RESTART:
                for call in orphans:
                    self._resolve(call, ExecutionResult.failure(
                        "Engine unavailable",
                        "Engine unavailable: restart the worker to continue",
                    ))
                return

            # A concurrent execute() may already have spawned the replacement
            if self._worker is None or not self._worker.alive:
                self.stats["restarts"] += 1
                self._record_event("worker_restarted", {"reason": reason})
                try:
                    self._worker = await self._spawn()
                except WorkerUnavailableError:
                    for call in orphans:
                        self._resolve(call, ExecutionResult.failure("Engine unavailable"))
                    return
            worker = self._worker

        if not orphans:
            return
        if not await worker.wait_ready(self.settings.WORKER_READY_TIMEOUT_MS / 1000):
            for call in orphans:
                self._resolve(call, ExecutionResult.failure("Engine unavailable"))
            return
        for call in orphans:
            if call.request.id in self._pending:
                if call.timeout_handle is not None:
                    call.timeout_handle.cancel()
                await self._dispatch(worker, call)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def _record_execution(self, call: PendingCall, result: ExecutionResult) -> None:
        duration_ms = int((time.monotonic() - call.start_time) * 1000)
        self.stats["total_executions"] += 1
        self.stats["total_exec_time_ms"] += duration_ms
        if result.success:
            self.stats["success_count"] += 1
        self._execution_history.append({
            "execution_id": call.request.id,
            "worker": call.process.name if call.process else None,
            "duration_ms": duration_ms,
            "success": result.success,
            "timed_out": result.timed_out,
        })

    def status(self) -> dict:
        return {
            "ready": self.is_ready,
            "fault": self.fault,
            "pid": self._worker.pid if self._worker else None,
            "pending": self.pending_count,
            "isolation": "per_run" if self.per_run else "reuse",
        }

    def get_stats(self) -> dict:
        """Get execution statistics."""
        total = self.stats["total_executions"]
        return {
            **self.stats,
            "avg_exec_time_ms": self.stats["total_exec_time_ms"] / total if total > 0 else 0,
            "success_rate": self.stats["success_count"] / total * 100 if total > 0 else 0,
        }

    def get_execution_history(self, limit: int = 50) -> list[dict]:
        """Get recent execution history."""
        return list(reversed(list(self._execution_history)[-limit:]))

    def get_security_events(self, limit: int = 100) -> list[dict]:
        return list(self.security_events)[-limit:]


# Global bridge instance
_bridge: Optional[WorkerBridge] = None


async def get_bridge() -> WorkerBridge:
    """Get or create the global worker bridge."""
    global _bridge

    if _bridge is None:
        _bridge = WorkerBridge()
        await _bridge.initialize()

    return _bridge


async def shutdown_bridge() -> None:
    """Shutdown the global worker bridge."""
    global _bridge

    if _bridge is not None:
        await _bridge.terminate()
        _bridge = None
