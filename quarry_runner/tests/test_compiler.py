import json
import shutil
from typing import Optional

import httpx
import pytest

from quarry_runner.compiler import compile_and_run, get_compile_runner, run_local, run_piston
from quarry_runner.errors import BackendUnavailableError, UnsupportedLanguageError
from quarry_runner.models import Language

needs_gcc = pytest.mark.skipif(shutil.which("gcc") is None, reason="gcc not installed")


def _piston(payload: dict, status: int = 200, seen: Optional[dict] = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.update(json.loads(request.content))
        return httpx.Response(status, json=payload)
    return httpx.MockTransport(handler)


async def test_piston_run_output_becomes_log_lines(settings) -> None:
    seen = {}
    transport = _piston({"run": {"stdout": "Hello\nWorld\n", "stderr": "", "code": 0, "signal": None}}, seen=seen)
    result = await run_piston('int main(){puts("Hello");}', Language.C, "", 2000, settings, transport=transport)

    assert result.success
    assert [entry.message for entry in result.logs] == ["Hello", "World"]
    assert seen["language"] == "c"
    assert seen["version"] == "10.2.0"
    assert seen["files"] == [{"name": "main.c", "content": 'int main(){puts("Hello");}'}]


async def test_piston_compile_stage_failure(settings) -> None:
    transport = _piston({"compile": {"code": 1, "output": "main.c:1:1: error: expected ';'"}})
    result = await run_piston("int main(){", Language.C, "", 2000, settings, transport=transport)
    assert not result.success
    assert result.error == "Compilation error: main.c:1:1: error: expected ';'"


async def test_piston_runtime_failure(settings) -> None:
    transport = _piston({"run": {"stdout": "", "stderr": "Segmentation fault", "code": 139}})
    result = await run_piston("int main(){}", Language.C, "", 2000, settings, transport=transport)
    assert not result.success
    assert result.error == "Runtime error: Segmentation fault"


async def test_piston_killed_run_is_a_timeout(settings) -> None:
    transport = _piston({"run": {"stdout": "", "stderr": "", "code": None, "signal": "SIGKILL"}})
    result = await run_piston("int main(){for(;;);}", Language.C, "", 500, settings, transport=transport)
    assert result.timed_out


async def test_piston_error_status_means_unavailable(settings) -> None:
    transport = _piston({"message": "rate limited"}, status=429)
    with pytest.raises(BackendUnavailableError, match="rate limited"):
        await run_piston("int main(){}", Language.C, "", 2000, settings, transport=transport)


async def test_python_is_not_a_compiled_language(settings) -> None:
    with pytest.raises(UnsupportedLanguageError):
        await compile_and_run("print(1)", Language.PYTHON, settings=settings)


def test_unknown_compile_mode() -> None:
    with pytest.raises(ValueError):
        get_compile_runner("cloud")


@needs_gcc
def test_local_c_program_reads_stdin(settings) -> None:
    code = '#include <stdio.h>\nint main(void){int n; scanf("%d", &n); printf("%d\\n", n * 2); return 0;}'
    result = run_local(code, Language.C, "21\n", 5000, settings)
    assert result.success
    assert result.stdout == "42"


@needs_gcc
def test_local_c_compile_error(settings) -> None:
    result = run_local("int main(void) { return 0 }", Language.C, "", 5000, settings)
    assert not result.success
    assert result.error.startswith("Compilation error:")


@needs_gcc
def test_local_c_infinite_loop_times_out(settings) -> None:
    result = run_local("int main(void) { for (;;); }", Language.C, "", 500, settings)
    assert result.timed_out


@needs_gcc
def test_local_c_nonzero_exit_is_runtime_error(settings) -> None:
    result = run_local("int main(void) { return 3; }", Language.C, "", 5000, settings)
    assert not result.success
    assert result.error == "Runtime error: exit code 3"
