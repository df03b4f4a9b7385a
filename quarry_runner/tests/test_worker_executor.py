"""Tests for the sandbox worker's in-process execution harness and its line protocol."""
import builtins
import io
import json
import os
import signal
import sys

import pytest

from quarry_runner.worker import executor
from quarry_runner.worker.executor import SOURCE_NAME, ExecutionTimeout, execute_code, make_audit_guard, serve


def test_print_is_captured_as_log_lines() -> None:
    result = execute_code('print("Hello")\nprint("World")')
    assert result.success
    assert [(e.type, e.message) for e in result.logs] == [("log", "Hello"), ("log", "World")]
    assert result.stdout == "Hello\nWorld"
    assert result.error is None


def test_each_run_starts_with_a_fresh_scope() -> None:
    first = execute_code("x = 1")
    second = execute_code("print(x)")
    assert first.success
    assert not second.success
    assert second.error.startswith("NameError")
    assert "1" not in second.stdout


def test_runtime_error_reports_type_and_line() -> None:
    result = execute_code("a = 1\nb = a / 0")
    assert not result.success
    assert result.error == "ZeroDivisionError: division by zero (line 2)"
    assert result.logs[-1].message == "❌ ZeroDivisionError: division by zero (line 2)"


def test_syntax_error_is_a_failed_run() -> None:
    result = execute_code("print('unclosed'")
    assert not result.success
    assert result.error.startswith("SyntaxError")


def test_output_before_error_is_kept() -> None:
    result = execute_code('print("before")\nraise ValueError("boom")')
    assert result.logs[0].message == "before"
    assert result.error == "ValueError: boom (line 2)"


def test_infinite_loop_times_out() -> None:
    result = execute_code("while True:\n    pass", timeout_ms=200)
    assert result.timed_out
    assert not result.success
    assert result.error == "Execution timeout"
    assert result.logs[-1].message == "❌ Code execution exceeded 200ms timeout (likely infinite loop)"


def test_stdin_feeds_input() -> None:
    result = execute_code("name = input()\nprint(name.upper())", stdin="ada\n")
    assert result.success
    assert result.stdout == "ADA"


def test_exhausted_stdin_raises_eof() -> None:
    result = execute_code("input()")
    assert result.error.startswith("EOFError")


def test_sys_import_is_refused() -> None:
    result = execute_code("import sys")
    assert not result.success
    assert "disabled in sandbox mode" in result.error


def test_open_is_blocked() -> None:
    result = execute_code('open("/etc/passwd")')
    assert not result.success
    assert result.error.startswith("PermissionError: open() is disabled in sandbox mode for security")


def test_forbidden_import_is_refused() -> None:
    result = execute_code("import subprocess")
    assert not result.success
    assert "Module 'subprocess' is disabled" in result.error


@pytest.mark.parametrize("module", ["io", "_io", "posix", "_posixsubprocess", "_socket", "pty", "mmap"])
def test_low_level_host_modules_are_refused(module) -> None:
    result = execute_code(f"import {module}")
    assert not result.success
    assert f"Module '{module}' is disabled in sandbox mode" in result.error


def test_builtins_written_through_a_bound_method_do_not_reach_the_next_run() -> None:
    first = execute_code("print.__self__.leak = 42\nprint.__self__.len = None")
    second = execute_code("print(len([1, 2]))\nprint(leak)")
    assert first.success
    assert second.logs[0].message == "2"
    assert second.error.startswith("NameError: name 'leak' is not defined")
    assert not hasattr(builtins, "leak")
    assert builtins.len is len


def test_timed_out_run_restores_interpreter_state() -> None:
    had_colorsys = "colorsys" in sys.modules
    stdout = sys.stdout
    result = execute_code("import colorsys\nprint.__self__.marker = 1\nwhile True:\n    pass", timeout_ms=100)
    assert result.timed_out
    assert sys.stdout is stdout
    assert ("colorsys" in sys.modules) == had_colorsys
    assert not hasattr(builtins, "marker")


def test_exception_str_that_never_returns_still_times_out() -> None:
    code = "\n".join([
        "class Stuck(Exception):",
        "    def __str__(self):",
        "        print.__self__.marker = 1",
        "        while True:",
        "            pass",
        "raise Stuck()",
    ])
    result = execute_code(code, timeout_ms=100)
    assert result.timed_out
    assert result.error == "Execution timeout"
    assert not hasattr(builtins, "marker")


def test_timer_only_interrupts_student_frames(monkeypatch) -> None:
    scope = {}
    exec(compile("import sys\ndef here():\n    return sys._getframe()", SOURCE_NAME, "exec"), scope)
    monkeypatch.setattr(executor, "_armed", True)

    executor._on_alarm(signal.SIGALRM, sys._getframe())
    with pytest.raises(ExecutionTimeout):
        executor._on_alarm(signal.SIGALRM, scope["here"]())


def test_audit_guard_refuses_host_access(tmp_path) -> None:
    root = os.path.realpath(tmp_path) + os.sep
    guard = make_audit_guard((root,))

    guard("open", (root + "helpers.py", "r", os.O_RDONLY))
    guard("os.listdir", (root,))
    guard("compile", (b"", "main.py"))

    refused = [
        ("open", ("/etc/hostname", "r", os.O_RDONLY)),
        ("open", (root + "notes.txt", "r", os.O_RDONLY)),
        ("open", (root + "helpers.py", "w", os.O_WRONLY | os.O_CREAT)),
        ("open", (3, "r", os.O_RDONLY)),
        ("os.listdir", ("/",)),
        ("os.system", (b"id",)),
        ("subprocess.Popen", ("ls", ["ls"], None, None)),
        ("socket.__new__", (None, 2, 1, 0)),
    ]
    for event, args in refused:
        with pytest.raises(PermissionError, match="disabled in sandbox mode"):
            guard(event, args)


def test_allowed_import_works() -> None:
    result = execute_code("import math\nprint(math.sqrt(16))")
    assert result.success
    assert result.stdout == "4.0"


def test_exit_zero_is_success_and_nonzero_is_failure() -> None:
    assert execute_code('print("done")\nexit()').success
    failed = execute_code("exit(3)")
    assert not failed.success
    assert failed.error == "SystemExit: 3"


def test_output_is_truncated_after_line_cap() -> None:
    result = execute_code("for i in range(20):\n    print(i)", max_lines=5)
    assert result.truncated
    assert [e.message for e in result.logs[:5]] == ["0", "1", "2", "3", "4"]
    assert result.logs[-1].message == "❌ Output truncated after 5 lines"
    assert len(result.logs) == 6


def test_long_lines_are_clipped() -> None:
    result = execute_code('print("x" * 50)', max_line_length=10)
    assert result.logs[0].message == "x" * 10 + "…"


def test_partial_lines_are_joined() -> None:
    result = execute_code('print("a", end="")\nprint("b")')
    assert result.stdout == "ab"


def test_legacy_expected_output_ignores_whitespace() -> None:
    result = execute_code('print("Hello, World!")', expected_output="Hello,World!")
    assert result.test_passed is True
    assert result.logs[-1].message == "✅ TEST PASSED."


def test_legacy_expected_output_mismatch() -> None:
    result = execute_code('print("Hi")', expected_output="Bye")
    assert result.test_passed is False
    assert result.logs[-1].message == '❌ Expected "Bye" but got something else.'


def _exchange(*lines: str) -> list[dict]:
    requests = io.StringIO("".join(line + "\n" for line in lines))
    channel = io.StringIO()
    serve(requests, channel, max_lines=100, max_line_length=1000)
    return [json.loads(line) for line in channel.getvalue().splitlines()]


def test_serve_announces_ready_then_answers_by_id() -> None:
    request = json.dumps({"id": 7, "code": "print(6 * 7)", "timeout": 1000})
    messages = _exchange(request)
    assert messages[0] == {"type": "ready"}
    assert messages[1]["type"] == "result"
    assert messages[1]["id"] == 7
    assert messages[1]["success"] is True
    assert messages[1]["timedOut"] is False
    assert messages[1]["logs"] == [{"type": "log", "message": "42"}]


def test_serve_reports_malformed_requests() -> None:
    messages = _exchange("not json", json.dumps({"id": 3, "timeout": 1000}))
    assert messages[1]["type"] == "error"
    assert messages[1]["id"] is None
    assert messages[2]["type"] == "error"
    assert messages[2]["id"] == 3
    assert messages[2]["error"].startswith("Malformed request")
