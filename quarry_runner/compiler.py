"""
Compile service - runs C and JavaScript submissions outside the Python sandbox.

Two modes, selected by COMPILE_MODE:
- local: compile/run with the host toolchain in a scratch directory
- piston: proxy to a Piston API endpoint
"""
import asyncio
import logging
import os
import resource
import shlex
import subprocess
import tempfile
from functools import partial
from typing import Awaitable, Callable, Optional

import httpx

from .config import Settings, get_settings
from .errors import BackendUnavailableError, UnsupportedLanguageError
from .models import ExecutionResult, Language, LogEntry
from .output import split_output_lines

logger = logging.getLogger(__name__)

LANG_CONFIG = {
    Language.C: {
        "source_name": "main.c",
        "compile": "{cc} -std=c11 -O0 -o main main.c -lm",
        "run": "./main",
        "piston_version": "10.2.0",
    },
    Language.JAVASCRIPT: {
        "source_name": "main.js",
        "compile": "",
        "run": "{node} main.js",
        "piston_version": "18.15.0",
    },
}

COMPILE_OUTPUT_LIMIT = 4000

CompileRunner = Callable[[str, Language, str, int, Settings], Awaitable[ExecutionResult]]


def _language_config(language: Language) -> dict:
    try:
        return LANG_CONFIG[Language(language)]
    except (KeyError, ValueError):
        raise UnsupportedLanguageError(f"Unsupported language: {language}")


def _timeout_result(timeout_ms: int) -> ExecutionResult:
    return ExecutionResult.failure(
        "Execution timeout",
        f"Code execution exceeded {timeout_ms}ms timeout (likely infinite loop)",
        timed_out=True,
    )


def _build_result(
    stdout: str,
    stderr: str,
    returncode: int,
    settings: Settings,
    execution_time: Optional[int] = None,
) -> ExecutionResult:
    out_lines, out_truncated = split_output_lines(stdout, settings.MAX_LOG_LINES, settings.MAX_LINE_LENGTH)
    err_lines, err_truncated = split_output_lines(stderr, settings.MAX_LOG_LINES, settings.MAX_LINE_LENGTH)
    logs = [LogEntry(type="log", message=line) for line in out_lines]
    logs += [LogEntry(type="error", message=line) for line in err_lines]

    error = None
    if returncode != 0:
        error = f"Runtime error: {stderr.strip() or f'exit code {returncode}'}"
        logs.append(LogEntry(type="error", message=f"❌ {error}"))

    return ExecutionResult(
        success=returncode == 0,
        logs=logs,
        error=error,
        execution_time=execution_time,
        truncated=out_truncated or err_truncated,
    )


def _compile_error(output: str) -> ExecutionResult:
    error = f"Compilation error: {output.strip()[:COMPILE_OUTPUT_LIMIT]}"
    return ExecutionResult.failure(error)


# ----------------------------------------------------------------------
# Local toolchain
# ----------------------------------------------------------------------
def _limit_resources(cpu_s: int, memory_mb: Optional[int]):
    def _apply():
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_s, cpu_s))
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
        resource.setrlimit(resource.RLIMIT_NOFILE, (64, 64))
        # V8 reserves far more address space than it uses, so node runs uncapped
        if memory_mb:
            mem = memory_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (mem, mem))
    return _apply


def _scrubbed_env(workdir: str) -> dict[str, str]:
    return {"PATH": os.environ.get("PATH", ""), "HOME": workdir, "LANG": "C.UTF-8"}


def run_local(code: str, language: Language, stdin: str, timeout_ms: int, settings: Settings) -> ExecutionResult:
    """Compile (if needed) and run code with the host toolchain. Blocking."""
    cfg = _language_config(language)
    tools = {"cc": settings.C_COMPILER, "node": settings.NODE_BINARY}

    with tempfile.TemporaryDirectory(prefix="quarry_") as workdir:
        with open(os.path.join(workdir, cfg["source_name"]), "w", encoding="utf-8") as f:
            f.write(code)
        env = _scrubbed_env(workdir)

        if cfg["compile"]:
            compile_cmd = shlex.split(cfg["compile"].format(**tools))
            try:
                compiled = subprocess.run(
                    compile_cmd,
                    cwd=workdir,
                    env=env,
                    capture_output=True,
                    text=True,
                    timeout=settings.COMPILE_TIMEOUT_S,
                )
            except FileNotFoundError as e:
                raise BackendUnavailableError(f"Compiler not available: {compile_cmd[0]}") from e
            except subprocess.TimeoutExpired:
                return ExecutionResult.failure("Compilation error: compiler timed out")
            if compiled.returncode != 0:
                return _compile_error(compiled.stderr or compiled.stdout)

        run_cmd = shlex.split(cfg["run"].format(**tools))
        memory_mb = settings.WORKER_MEMORY_LIMIT_MB if Language(language) == Language.C else None
        cpu_s = max(1, -(-timeout_ms // 1000))
        try:
            proc = subprocess.run(
                run_cmd,
                cwd=workdir,
                env=env,
                input=stdin,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout_ms / 1000,
                preexec_fn=_limit_resources(cpu_s, memory_mb),
            )
        except FileNotFoundError as e:
            raise BackendUnavailableError(f"Runtime not available: {run_cmd[0]}") from e
        except subprocess.TimeoutExpired:
            return _timeout_result(timeout_ms)

        return _build_result(proc.stdout, proc.stderr, proc.returncode, settings)


async def _run_local_async(code: str, language: Language, stdin: str, timeout_ms: int, settings: Settings) -> ExecutionResult:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(run_local, code, language, stdin, timeout_ms, settings))


# ----------------------------------------------------------------------
# Piston API
# ----------------------------------------------------------------------
async def run_piston(
    code: str,
    language: Language,
    stdin: str,
    timeout_ms: int,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ExecutionResult:
    """Proxy one execution to the Piston API."""
    cfg = _language_config(language)
    payload = {
        "language": Language(language).value,
        "version": cfg["piston_version"],
        "files": [{"name": cfg["source_name"], "content": code}],
        "stdin": stdin,
        "run_timeout": timeout_ms,
    }

    try:
        async with httpx.AsyncClient(transport=transport) as client:
            resp = await client.post(
                settings.PISTON_ENDPOINT,
                json=payload,
                timeout=timeout_ms / 1000 + settings.COMPILE_TIMEOUT_S,
            )
    except httpx.TimeoutException:
        return _timeout_result(timeout_ms)
    except httpx.RequestError as e:
        logger.error(f"Failed to reach Piston API: {e}")
        raise BackendUnavailableError(f"Failed to reach Piston API: {e}") from e

    try:
        result = resp.json()
    except ValueError as e:
        raise BackendUnavailableError(f"Piston API error: {resp.status_code}") from e

    if resp.status_code >= 400:
        message = result.get("message") if isinstance(result, dict) else None
        raise BackendUnavailableError(message or f"Piston API error: {resp.status_code}")

    compile_stage = result.get("compile") or {}
    if compile_stage.get("code"):
        return _compile_error(compile_stage.get("output") or compile_stage.get("stderr") or "")

    run_stage = result.get("run") or {}
    if run_stage.get("signal") == "SIGKILL":
        return _timeout_result(timeout_ms)

    returncode = run_stage.get("code")
    if returncode is None:
        returncode = 1 if run_stage.get("signal") else 0
    return _build_result(run_stage.get("stdout") or "", run_stage.get("stderr") or "", returncode, settings)


_COMPILE_RUNNERS: dict[str, CompileRunner] = {
    "local": _run_local_async,
    "piston": run_piston,
}


def get_compile_runner(mode: str) -> CompileRunner:
    key = (mode or "").lower()
    if key not in _COMPILE_RUNNERS:
        raise ValueError(f"Unknown compile mode '{mode}'")
    return _COMPILE_RUNNERS[key]


async def compile_and_run(
    code: str,
    language: Language,
    stdin: str = "",
    timeout_ms: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> ExecutionResult:
    settings = settings or get_settings()
    timeout_ms = timeout_ms or settings.EXEC_TIMEOUT_MS
    _language_config(language)

    logger.info(f"Compiling {Language(language).value} code ({settings.COMPILE_MODE} mode)...")
    result = await get_compile_runner(settings.COMPILE_MODE)(code, language, stdin, timeout_ms, settings)
    if not result.success:
        logger.debug(f"Compile run failed: {result.error}")
    return result
