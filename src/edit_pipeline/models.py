# models.py
# Data contracts for the edit-apply-verify-promote pipeline.
# No business logic lives here. Pure schema and validation.

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Source(str, Enum):
    """Where an execute request came from. Decides direct vs sandboxed apply."""

    AGENT = "agent"
    COMPOSER = "composer"
    DEBUG_FROM_LOG = "debug_from_log"


class ScopeMode(str, Enum):
    CONSERVATIVE = "conservative"
    NORMAL = "normal"
    AGGRESSIVE = "aggressive"


class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SandboxState(str, Enum):
    CREATED = "created"
    EDITS_APPLIED = "edits_applied"
    CHECKS_RUN = "checks_run"
    PROMOTED = "promoted"
    DISCARDED = "discarded"


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class FileEdit(BaseModel):
    """Replace a span of a file (oldContent given) or the whole file."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file_edit"] = "file_edit"
    path: str = Field(..., min_length=1, description="Workspace-relative, traversal-free path.")
    new_content: str = Field(..., alias="newContent")
    old_content: str | None = Field(default=None, alias="oldContent")
    description: str | None = None
    source: str | None = Field(default=None, description="Who proposed this edit.")


class Command(BaseModel):
    """A shell command run in the workspace root."""

    type: Literal["command"] = "command"
    command: str = Field(..., min_length=1)
    description: str | None = None

    @field_validator("command")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("command must not be blank")
        return value


Step = Annotated[FileEdit | Command, Field(discriminator="type")]


class Plan(BaseModel):
    """An ordered change plan. Declaration order is execution order."""

    steps: list[Step] = Field(..., min_length=1)
    summary: str | None = None


# ---------------------------------------------------------------------------
# Diff engine
# ---------------------------------------------------------------------------


class EditResult(BaseModel):
    ok: bool
    content: str | None = None
    error: str | None = None
    normalized: bool = Field(
        default=False,
        description="True when the whole file was rewritten in normalized form.",
    )


# ---------------------------------------------------------------------------
# Gate and scope
# ---------------------------------------------------------------------------


class Proceed(BaseModel):
    protected_paths: list[str] = Field(default_factory=list)


class NeedsProtectedConfirmation(BaseModel):
    """Returned instead of a result when protected paths need a user's confirmation."""

    kind: Literal["protected_path"] = "protected_path"
    protected_paths: list[str]
    message: str = "This plan modifies protected files. Confirm them to continue."


class ScopeResult(BaseModel):
    steps: list[Step]
    scope_mode: ScopeMode
    trimmed: bool = False
    dropped_steps: int = 0
    file_count: int = 0
    approx_lines: int = 0
    message: str | None = None


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


class Conflict(BaseModel):
    path: str
    reason: str


class ApplyOutcome(BaseModel):
    files_edited: list[str] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)


class SandboxProvenance(BaseModel):
    source: Source
    error_log: str | None = None
    error_type: str | None = None
    error_fingerprint: str | None = None
    model_used: str | None = None
    proposed_edit_paths: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CommandResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class PhaseResult(BaseModel):
    phase: Literal["lint", "tests", "run"]
    status: CheckStatus
    command: str | None = None
    exit_code: int | None = None
    timed_out: bool = False
    output: str = Field(default="", description="Captured output, truncated to the tail.")


class SandboxChecks(BaseModel):
    stack: str = "unknown"
    lint: PhaseResult
    tests: PhaseResult
    run: PhaseResult
    passed: bool = Field(..., description="True when no phase failed.")


# ---------------------------------------------------------------------------
# Execution result
# ---------------------------------------------------------------------------


class LogEntry(BaseModel):
    step_index: int | None = None
    type: Literal["file_edit", "command", "auto_fix", "summary"]
    status: Literal["success", "failed", "conflict", "blocked", "skipped", "timeout"]
    message: str
    path: str | None = None
    command: str | None = None
    command_kind: Literal["setup", "test", "other"] | None = None
    auto_fix_attempted: bool = False
    second_run_status: Literal["success", "failed", "blocked", "timeout"] | None = None
    action_label: str | None = None


class AttemptTelemetry(BaseModel):
    tests_passed: bool
    logs: str = ""
    sandbox_run_id: str | None = None
    checks: SandboxChecks | None = None


class ExecuteResult(BaseModel):
    success: bool
    source: Source
    scope_mode: ScopeMode
    files_edited: list[str] = Field(default_factory=list)
    log: list[LogEntry] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    sandbox_run_id: str | None = None
    checks: SandboxChecks | None = None
    retried: bool = False
    retry_reason: str | None = None
    attempt1: AttemptTelemetry | None = None
    attempt2: AttemptTelemetry | None = None
    message: str = ""
