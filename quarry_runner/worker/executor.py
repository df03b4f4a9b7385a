"""
Worker executor - runs as an isolated child process of the worker bridge.
Receives execution requests as JSON lines on stdin and answers each one with
exactly one JSON line on a private copy of the original stdout.
"""
import argparse
import builtins
import importlib.machinery
import io
import json
import logging
import os
import resource
import signal
import socket
import sys
import time
import traceback
from typing import Optional, TextIO

from pydantic import ValidationError

from ..models import ExecutionRequest, ExecutionResult, LogEntry
from ..output import contains_ignoring_whitespace
from ..static_check import FORBIDDEN_MODULES

logger = logging.getLogger(__name__)

SOURCE_NAME = "main.py"
TIMER_REPEAT_S = 0.1
DEFAULT_TIMEOUT_MS = 5000

# Modules students commonly use; loaded once so each run does not pay for them
PRELOADED_MODULES = (
    "math", "random", "string", "re", "json", "itertools", "functools",
    "collections", "datetime", "decimal", "fractions", "statistics",
    "heapq", "bisect", "time",
)


class ExecutionTimeout(BaseException):
    """Raised inside student code when the execution time limit runs out."""


_armed = False

# Taken before any student code runs; every run's builtins start from here
_PRISTINE_BUILTINS = dict(builtins.__dict__)


def _in_student_code(frame) -> bool:
    while frame is not None:
        if frame.f_code.co_filename == SOURCE_NAME:
            return True
        frame = frame.f_back
    return False


def _on_alarm(signum, frame):
    # Only interrupt student frames so wrap-up after exec() cannot be cut short
    if _armed and _in_student_code(frame):
        raise ExecutionTimeout()


def _arm(timeout_ms: int) -> None:
    global _armed
    signal.signal(signal.SIGALRM, _on_alarm)
    _armed = True
    # Keep firing so student code that swallows one timeout still gets stopped
    signal.setitimer(signal.ITIMER_REAL, max(timeout_ms, 1) / 1000, TIMER_REPEAT_S)


def _disarm() -> None:
    global _armed
    _armed = False
    signal.setitimer(signal.ITIMER_REAL, 0)


class _CaptureStream(io.TextIOBase):
    def __init__(self, capture: "CapturedOutput", kind: str):
        self._capture = capture
        self._kind = kind

    def writable(self) -> bool:
        return True

    def write(self, text) -> int:
        text = str(text)
        self._capture.feed(self._kind, text)
        return len(text)


class CapturedOutput:
    """Ordered, bounded buffer of console lines produced by one run."""

    def __init__(self, max_lines: int, max_line_length: int):
        self.max_lines = max_lines
        self.max_line_length = max_line_length
        self.logs: list[LogEntry] = []
        self.truncated = False
        self._partial = {"log": "", "error": ""}

    def stream(self, kind: str) -> _CaptureStream:
        return _CaptureStream(self, kind)

    def feed(self, kind: str, text: str) -> None:
        if self.truncated:
            return
        *lines, rest = (self._partial[kind] + text).split("\n")
        for line in lines:
            self._append(kind, line)
        if len(rest) > self.max_line_length:
            rest = rest[:self.max_line_length + 1]
        self._partial[kind] = rest

    def flush(self) -> None:
        for kind, rest in self._partial.items():
            if rest:
                self._append(kind, rest)
            self._partial[kind] = ""

    def add(self, kind: str, message: str) -> None:
        """Append a status line; these are kept even past the line cap."""
        self.logs.append(LogEntry(type=kind, message=message))

    def _append(self, kind: str, message: str) -> None:
        if self.truncated:
            return
        if len(self.logs) >= self.max_lines:
            self.truncated = True
            self.add("error", f"❌ Output truncated after {self.max_lines} lines")
            return
        if len(message) > self.max_line_length:
            message = message[:self.max_line_length] + "…"
        self.logs.append(LogEntry(type=kind, message=message))


def _blocked(name: str):
    def _raise(*args, **kwargs):
        raise PermissionError(f"{name}() is disabled in sandbox mode for security")
    return _raise


def _sandbox_builtins(stdin: io.StringIO) -> dict:
    """Fresh builtins for one run: no files, no debugger, guarded imports."""
    real_import = _PRISTINE_BUILTINS["__import__"]

    def _input(prompt=""):
        if prompt:
            sys.stdout.write(str(prompt))
        line = stdin.readline()
        if not line:
            raise EOFError("EOF when reading a line")
        return line.rstrip("\n")

    def _exit(code=None):
        raise SystemExit(code)

    def _import(name, globals=None, locals=None, fromlist=(), level=0):
        if level == 0 and name.split(".")[0] in FORBIDDEN_MODULES:
            raise ImportError(f"Module '{name}' is disabled in sandbox mode for security")
        return real_import(name, globals, locals, fromlist, level)

    safe = dict(_PRISTINE_BUILTINS)
    safe.update(
        __import__=_import,
        input=_input,
        open=_blocked("open"),
        breakpoint=_blocked("breakpoint"),
        help=_blocked("help"),
        exit=_exit,
        quit=_exit,
    )
    return safe


def _restore_builtins(snapshot: dict) -> None:
    """Undo anything a run wrote into the real builtins module."""
    current = builtins.__dict__
    for name in set(current) - set(snapshot):
        del current[name]
    for name, value in snapshot.items():
        if current.get(name) is not value:
            current[name] = value


def _describe_exception(exc: BaseException) -> str:
    if isinstance(exc, SyntaxError):
        detail = f"{type(exc).__name__}: {exc.msg}"
        lineno = exc.lineno
    else:
        detail = traceback.format_exception_only(type(exc), exc)[-1].strip()
        lineno = None
        for frame in traceback.extract_tb(exc.__traceback__):
            if frame.filename == SOURCE_NAME:
                lineno = frame.lineno
    return f"{detail} (line {lineno})" if lineno else detail


def execute_code(
    code: str,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    stdin: str = "",
    expected_output: Optional[str] = None,
    max_lines: int = 1000,
    max_line_length: int = 10000,
) -> ExecutionResult:
    """Execute code in a blank scope with captured output and a time limit."""
    capture = CapturedOutput(max_lines, max_line_length)
    stdin_buffer = io.StringIO(stdin)
    scope = {"__name__": "__main__", "__builtins__": _sandbox_builtins(stdin_buffer)}
    success = False
    error = None
    timed_out = False

    loaded_modules = set(sys.modules)
    saved_builtins = dict(builtins.__dict__)
    saved_streams = (sys.stdin, sys.stdout, sys.stderr)
    start_time = time.monotonic()
    try:
        sys.stdin, sys.stdout, sys.stderr = stdin_buffer, capture.stream("log"), capture.stream("error")
        _arm(timeout_ms)
        exec(compile(code, SOURCE_NAME, "exec"), scope)
        success = True
    except ExecutionTimeout:
        timed_out = True
    except BaseException as exc:
        # Describing may call student __str__ or __eq__, still under the timer
        try:
            if isinstance(exc, SystemExit) and (exc.code is None or exc.code == 0):
                success = True
            elif isinstance(exc, SystemExit):
                error = f"SystemExit: {exc.code}"
            else:
                error = _describe_exception(exc)
        except ExecutionTimeout:
            timed_out = True
        except BaseException:
            error = type(exc).__name__
    finally:
        # The timer never fires outside student frames, so none of this is interrupted
        _disarm()
        scope.clear()
        sys.stdin, sys.stdout, sys.stderr = saved_streams
        _restore_builtins(saved_builtins)
        for name in set(sys.modules) - loaded_modules:
            sys.modules.pop(name, None)

    execution_time = int((time.monotonic() - start_time) * 1000)
    capture.flush()

    if timed_out:
        error = "Execution timeout"
        capture.add("error", f"❌ Code execution exceeded {timeout_ms}ms timeout (likely infinite loop)")
    elif error:
        capture.add("error", f"❌ {error}")

    result = ExecutionResult(
        success=success,
        logs=capture.logs,
        error=error,
        timed_out=timed_out,
        execution_time=execution_time,
        truncated=capture.truncated,
    )

    if expected_output and not timed_out:
        result.test_passed = contains_ignoring_whitespace(result.stdout, expected_output)
        if result.test_passed:
            result.logs.append(LogEntry(type="success", message="✅ TEST PASSED."))
        else:
            result.logs.append(LogEntry(type="error", message=f'❌ Expected "{expected_output}" but got something else.'))

    return result


def _blocked_socket(*args, **kwargs):
    raise RuntimeError("Network is disabled in sandbox")


# Audit events that reach outside the interpreter: processes, network, filesystem changes
DENIED_AUDIT_EVENTS = frozenset({
    "os.system", "os.exec", "os.posix_spawn", "os.spawn", "os.fork", "os.forkpty",
    "os.kill", "os.killpg", "subprocess.Popen", "pty.spawn",
    "socket.__new__", "socket.connect", "socket.bind", "socket.getaddrinfo",
    "os.remove", "os.rename", "os.rmdir", "os.mkdir", "os.chmod", "os.chown",
    "os.truncate", "os.symlink", "os.link", "os.utime", "os.chdir",
    "os.putenv", "os.unsetenv", "shutil.rmtree", "mmap.__new__",
    "ctypes.dlopen", "ctypes.dlsym",
})

_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC
# Only the files imports are loaded from may be read
IMPORTABLE_SUFFIXES = tuple(importlib.machinery.all_suffixes()) + (".pyc",)


def _import_roots() -> tuple:
    """Directories imports are served from; the only places reads are allowed."""
    cwd = os.path.realpath(os.getcwd())
    roots = set()
    for entry in sys.path:
        if not entry:
            continue
        path = os.path.realpath(entry)
        if path != cwd and os.path.isdir(path):
            roots.add(path.rstrip(os.sep) + os.sep)
    return tuple(roots)


def make_audit_guard(roots: tuple):
    """
    Build a sys.addaudithook callback that refuses host access.

    Objects that are reachable anyway (a preloaded module's private ``_os``,
    ``print.__self__``) still end in an audited call, so this is what keeps
    student code off the host once the import guard has been sidestepped.
    """
    def _deny(event: str):
        raise PermissionError(f"{event} is disabled in sandbox mode for security")

    def _resolve(path) -> Optional[str]:
        try:
            return os.path.realpath(os.fsdecode(path))
        except TypeError:
            return None

    def _listable(path) -> bool:
        resolved = _resolve(path)
        return resolved is not None and (resolved + os.sep).startswith(roots)

    def _readable(path) -> bool:
        resolved = _resolve(path)
        return resolved is not None and resolved.startswith(roots) and resolved.endswith(IMPORTABLE_SUFFIXES)

    def guard(event: str, args: tuple) -> None:
        if event in DENIED_AUDIT_EVENTS:
            _deny(event)
        elif event == "open":
            path, mode, flags = (args + (None, None, None))[:3]
            if isinstance(mode, str) and any(c in mode for c in "wax+"):
                _deny("writing files")
            if isinstance(flags, int) and flags & _WRITE_FLAGS:
                _deny("writing files")
            if not _readable(path):
                _deny(f"open({path!r})")
        elif event in ("os.listdir", "os.scandir"):
            if not _listable(args[0] if args else None):
                _deny(event)

    return guard


def harden(memory_limit_mb: int) -> None:
    """Apply process-wide limits before any student code runs."""
    limit = memory_limit_mb * 1024 * 1024
    limits = (
        ("RLIMIT_AS", limit),
        ("RLIMIT_CORE", 0),
        ("RLIMIT_NOFILE", 64),
        ("RLIMIT_NPROC", 0),   # no fork
        ("RLIMIT_FSIZE", 0),   # no file writes
    )
    for name, value in limits:
        try:
            resource.setrlimit(getattr(resource, name), (value, value))
        except (ValueError, OSError) as e:
            logger.warning(f"Could not apply {name}: {e}")
    # A refused write should raise EFBIG, not kill the worker
    signal.signal(signal.SIGXFSZ, signal.SIG_IGN)

    socket.socket = _blocked_socket  # type: ignore
    socket.create_connection = _blocked_socket  # type: ignore

    sys.addaudithook(make_audit_guard(_import_roots()))


def claim_channel() -> TextIO:
    """Move the protocol onto a private fd and point fd 1 at /dev/null."""
    channel_fd = os.dup(1)
    devnull = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull, 1)
    os.close(devnull)
    return os.fdopen(channel_fd, "w", encoding="utf-8")


def _send(channel: TextIO, message: dict) -> None:
    channel.write(json.dumps(message) + "\n")
    channel.flush()


def serve(requests: TextIO, channel: TextIO, max_lines: int, max_line_length: int) -> None:
    """Announce readiness, then answer each request line until stdin closes."""
    _send(channel, {"type": "ready"})

    while True:
        line = requests.readline()
        if not line:
            break
        if not line.strip():
            continue

        payload = None
        try:
            payload = json.loads(line)
            request = ExecutionRequest.model_validate(payload)
        except (ValueError, ValidationError) as e:
            request_id = payload.get("id") if isinstance(payload, dict) else None
            logger.warning(f"Malformed request: {e}")
            _send(channel, {"type": "error", "id": request_id, "error": f"Malformed request: {e}"})
            continue

        result = execute_code(
            request.code,
            timeout_ms=request.timeout or DEFAULT_TIMEOUT_MS,
            stdin=request.stdin,
            expected_output=request.expected_output,
            max_lines=max_lines,
            max_line_length=max_line_length,
        )
        _send(channel, {"type": "result", "id": request.id, **result.model_dump(by_alias=True)})


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="QuarryRunner sandbox worker")
    parser.add_argument("--memory-limit-mb", type=int, default=512)
    parser.add_argument("--max-log-lines", type=int, default=1000)
    parser.add_argument("--max-line-length", type=int, default=10000)
    args = parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    channel = claim_channel()
    for module_name in PRELOADED_MODULES:
        __import__(module_name)
    harden(args.memory_limit_mb)

    try:
        serve(sys.stdin, channel, args.max_log_lines, args.max_line_length)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
