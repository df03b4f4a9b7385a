"""
Execution orchestrator - static pre-filter, dispatch by language and verdict
computation for one practice run.
"""
import logging
from typing import Optional

from .config import Settings, get_settings
from .errors import UnsupportedLanguageError
from .models import (
    ExecutionResult,
    FailedTest,
    FailureReason,
    Language,
    LogEntry,
    ModuleDescriptor,
    RunOutcome,
    TestCase,
)
from .output import contains_ignoring_whitespace, normalize_output
from .remote_backend import RemoteCompileBackend
from .static_check import ast_static_check, find_missing_snippet, has_entry_point, step_progress
from .worker_bridge import WorkerBridge

logger = logging.getLogger(__name__)

# Languages run in the in-process sandbox worker; the rest go to the compile service
WORKER_LANGUAGES = {Language.PYTHON}
REMOTE_LANGUAGES = {Language.C, Language.JAVASCRIPT}

PASSED_LINE = "✅ TEST PASSED: Logic is sound."
MISMATCH_LINE = "❌ LOGIC ERROR: Output mismatch."


class ExecutionOrchestrator:
    def __init__(
        self,
        bridge: WorkerBridge,
        remote: RemoteCompileBackend,
        settings: Optional[Settings] = None,
    ):
        self.bridge = bridge
        self.remote = remote
        self.settings = settings or get_settings()

    async def run(self, module: ModuleDescriptor, code: str) -> RunOutcome:
        """
        Evaluate code against a module.

        Student-code failures come back as an unsuccessful RunOutcome. Only
        infrastructure failures (worker, compile service, unknown language)
        raise.
        """
        progress = step_progress(code, module.step_requirements)
        total = len(module.tests)

        def outcome(**kwargs) -> RunOutcome:
            return RunOutcome(step_progress=progress, total_tests=total, **kwargs)

        # Static pre-filter, nothing is executed past a failure here
        missing = find_missing_snippet(code, module.required_code)
        if missing is not None:
            return outcome(
                success=False,
                reason=FailureReason.MISSING_SNIPPET,
                missing_snippet=missing,
                error=f'Missing required code: "{missing}"',
                logs=[LogEntry(type="error", message=f'❌ Missing required code: "{missing}"')],
            )

        if not has_entry_point(code, module.language):
            return outcome(
                success=False,
                reason=FailureReason.MISSING_ENTRY_POINT,
                error="C program must include int main() function",
                logs=[LogEntry(type="error", message="❌ C program must include int main() function")],
            )

        if self.settings.STATIC_CHECK and module.language == Language.PYTHON:
            found = ast_static_check(code)
            if found:
                detail = ", ".join(found)
                return outcome(
                    success=False,
                    reason=FailureReason.FORBIDDEN_CONSTRUCT,
                    error=f"Forbidden constructs: {detail}",
                    logs=[LogEntry(type="error", message=f"❌ Forbidden constructs: {detail}")],
                )

        if module.tests:
            return await self._run_tests(module, code, outcome)
        return await self._run_once(module, code, outcome)

    async def _execute(self, language: Language, code: str, stdin: str = "") -> ExecutionResult:
        timeout_ms = self.settings.EXEC_TIMEOUT_MS
        if language in WORKER_LANGUAGES:
            return await self.bridge.execute(code, timeout_ms=timeout_ms, stdin=stdin)
        if language in REMOTE_LANGUAGES:
            return await self.remote.execute(code, language=language, stdin=stdin, timeout_ms=timeout_ms)
        raise UnsupportedLanguageError(f"Unsupported language: {language}")

    def _extend(self, logs: list[LogEntry], entries: list[LogEntry]) -> None:
        room = self.settings.MAX_LOG_LINES - len(logs)
        if room > 0:
            logs.extend(entries[:room])

    async def _run_tests(self, module: ModuleDescriptor, code: str, outcome) -> RunOutcome:
        logs: list[LogEntry] = []
        reveal = self.settings.REVEAL_HIDDEN_TEST_DETAILS

        for index, test in enumerate(module.tests, start=1):
            result = await self._execute(module.language, code, test.input)
            visible = test.public or reveal
            if visible:
                self._extend(logs, result.logs)

            if result.timed_out or not result.success:
                reason = FailureReason.TIMEOUT if result.timed_out else FailureReason.RUNTIME_ERROR
                failed = self._failed_test(index, test, None, visible, result.error or "Execution failed")
                if not visible:
                    logs.append(LogEntry(type="error", message=f"❌ {failed.message}"))
                logger.debug(f"Module {module.id}: test #{index} stopped with {reason.value}")
                return outcome(
                    success=False,
                    reason=reason,
                    failed_test=failed,
                    timed_out=result.timed_out,
                    error=result.error if visible else failed.message,
                    logs=logs,
                    passed_tests=index - 1,
                )

            actual = normalize_output(result.stdout)
            expected = normalize_output(test.expected_output)
            if actual != expected:
                reason = FailureReason.NO_OUTPUT if not actual and expected else FailureReason.TEST_MISMATCH
                message = "No output produced" if reason == FailureReason.NO_OUTPUT else "Output mismatch"
                failed = self._failed_test(index, test, actual, visible, message)
                logs.append(LogEntry(type="error", message=MISMATCH_LINE))
                logs.append(LogEntry(type="error", message=failed.message))
                if visible:
                    logs.append(LogEntry(type="info", message=f"Expected: {expected}"))
                    logs.append(LogEntry(type="info", message=f"Got: {actual}"))
                logger.debug(f"Module {module.id}: test #{index} failed ({reason.value})")
                return outcome(
                    success=False,
                    reason=reason,
                    failed_test=failed,
                    logs=logs,
                    passed_tests=index - 1,
                )

        logs.append(LogEntry(type="success", message=PASSED_LINE))
        return outcome(success=True, logs=logs, passed_tests=len(module.tests))

    def _failed_test(
        self,
        index: int,
        test: TestCase,
        actual: Optional[str],
        visible: bool,
        detail: str,
    ) -> FailedTest:
        if not visible:
            return FailedTest(index=index, public=False, message=f"Hidden test #{index} failed")
        return FailedTest(
            index=index,
            public=test.public,
            input=test.input,
            expected=normalize_output(test.expected_output),
            actual=actual,
            message=f"Test #{index} failed: {detail}",
        )

    async def _run_once(self, module: ModuleDescriptor, code: str, outcome) -> RunOutcome:
        result = await self._execute(module.language, code)
        logs: list[LogEntry] = []
        self._extend(logs, result.logs)

        if result.timed_out:
            return outcome(success=False, reason=FailureReason.TIMEOUT, timed_out=True, error=result.error, logs=logs)
        if not result.success:
            return outcome(success=False, reason=FailureReason.RUNTIME_ERROR, error=result.error, logs=logs)

        expected = module.expected_output
        if not expected:
            return outcome(success=True, logs=logs)

        if not result.stdout.strip():
            logs.append(LogEntry(type="error", message=MISMATCH_LINE))
            return outcome(success=False, reason=FailureReason.NO_OUTPUT, error="No output produced", logs=logs)

        if contains_ignoring_whitespace(result.stdout, expected):
            logs.append(LogEntry(type="success", message=PASSED_LINE))
            return outcome(success=True, logs=logs)

        logs.append(LogEntry(type="error", message=MISMATCH_LINE))
        logs.append(LogEntry(type="error", message=f'❌ Expected "{expected}" but got something else.'))
        return outcome(success=False, reason=FailureReason.TEST_MISMATCH, error="Output mismatch", logs=logs)
