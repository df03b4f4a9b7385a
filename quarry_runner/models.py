"""
Data models shared by the sandbox worker, the bridge, the orchestrator and the
practice session. Wire-facing models accept the content layer's camelCase keys.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Language(str, Enum):
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    C = "c"


SOURCE_EXTENSIONS = {
    Language.PYTHON: "py",
    Language.JAVASCRIPT: "js",
    Language.C: "c",
}


class TestCase(BaseModel):
    """One input/expected-output pair. Hidden tests gate completion only."""
    input: str = ""
    expected_output: str = Field(alias="expectedOutput")
    public: bool = True

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ModuleDescriptor(BaseModel):
    """Practice module as supplied by the content layer (read-only)."""
    id: str
    title: str = ""
    type: str = "practice"
    language: Language
    initial_code: str = Field(default="", alias="initialCode")
    solution: str = ""
    tests: list[TestCase] = Field(default_factory=list)
    expected_output: Optional[str] = Field(default=None, alias="expectedOutput")
    required_code: list[str] = Field(default_factory=list, alias="requiredCode")
    step_requirements: list[list[str]] = Field(default_factory=list, alias="stepRequirements")
    hints: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def source_name(self) -> str:
        return f"main.{SOURCE_EXTENSIONS[self.language]}"


class LogEntry(BaseModel):
    type: str = "log"  # log | error | warn | info | debug | success
    message: str


class ExecutionRequest(BaseModel):
    """Message sent to a sandbox worker."""
    id: int
    code: str
    timeout: int
    stdin: str = ""
    expected_output: Optional[str] = Field(default=None, alias="expectedOutput")

    model_config = ConfigDict(populate_by_name=True)


class ExecutionResult(BaseModel):
    """Outcome of one execution, from the worker or the compile service."""
    success: bool = False
    logs: list[LogEntry] = Field(default_factory=list)
    error: Optional[str] = None
    timed_out: bool = Field(default=False, alias="timedOut")
    test_passed: Optional[bool] = Field(default=None, alias="testPassed")
    execution_time: Optional[int] = Field(default=None, alias="executionTime")
    truncated: bool = False

    model_config = ConfigDict(populate_by_name=True)

    @property
    def stdout(self) -> str:
        """Captured standard output, one line per log entry."""
        return "\n".join(entry.message for entry in self.logs if entry.type == "log")

    @classmethod
    def failure(cls, error: str, message: Optional[str] = None, timed_out: bool = False) -> "ExecutionResult":
        return cls(
            success=False,
            logs=[LogEntry(type="error", message=f"❌ {message or error}")],
            error=error,
            timed_out=timed_out,
        )


class FailureReason(str, Enum):
    MISSING_SNIPPET = "missing_snippet"
    FORBIDDEN_CONSTRUCT = "forbidden_construct"
    MISSING_ENTRY_POINT = "missing_entry_point"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"
    TEST_MISMATCH = "test_mismatch"
    NO_OUTPUT = "no_output"


class FailedTest(BaseModel):
    index: int
    public: bool
    input: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None
    message: str


class RunOutcome(BaseModel):
    """Verdict for one practice run."""
    success: bool
    reason: Optional[FailureReason] = None
    failed_test: Optional[FailedTest] = Field(default=None, alias="failedTest")
    missing_snippet: Optional[str] = Field(default=None, alias="missingSnippet")
    logs: list[LogEntry] = Field(default_factory=list)
    timed_out: bool = Field(default=False, alias="timedOut")
    error: Optional[str] = None
    passed_tests: int = Field(default=0, alias="passedTests")
    total_tests: int = Field(default=0, alias="totalTests")
    step_progress: list[bool] = Field(default_factory=list, alias="stepProgress")

    model_config = ConfigDict(populate_by_name=True)


class Phase(str, Enum):
    EDITING = "editing"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ADVANCED = "advanced"
