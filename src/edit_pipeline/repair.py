# repair.py
# Bounded recovery after failed verification.
#
#   SelfRepairLoop  sandboxed sources. One re-plan in conservative scope,
#                   run in a brand-new sandbox. Never a third attempt.
#   AgentAutoFix    agent source. Minimal edits for one failed test command,
#                   applied to live files; the caller re-runs the command once.

import re
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, Field

from edit_pipeline import config, display
from edit_pipeline.diff_engine import apply_edit
from edit_pipeline.errors import ChatError, PathPolicyError, PlanValidationError, ProtectedPathError
from edit_pipeline.models import (
    ApplyOutcome,
    AttemptTelemetry,
    CheckStatus,
    Conflict,
    FileEdit,
    LogEntry,
    Plan,
    SandboxChecks,
    ScopeMode,
    Source,
)
from edit_pipeline.planner import FixProposer, FixRequest, RepairPlanner, RepairRequest
from edit_pipeline.runner import tail_lines
from edit_pipeline.workspace import WorkspaceStore

RETRY_FAILED_MESSAGE = "I tried twice and tests still fail. Please review the diffs and logs manually."
RETRY_FIXED_MESSAGE = "Sandbox checks failed on the first attempt; the conservative retry passed."

_PHASE_LABELS = (("lint", "Lint"), ("tests", "Tests"), ("run", "Run"))

# Failures that a replan could not even start on. Anything else propagates.
_REPLAN_ERRORS = (ChatError, PlanValidationError, PathPolicyError, ProtectedPathError)


# ---------------------------------------------------------------------------
# Failure analysis
# ---------------------------------------------------------------------------

_ERROR_TYPES = [
    ("MODULE_NOT_FOUND", re.compile(r"ModuleNotFoundError|No module named|Cannot find module|ImportError")),
    ("SYNTAX_ERROR", re.compile(r"SyntaxError|IndentationError|Unexpected token")),
    ("TYPE_ERROR", re.compile(r"TypeError")),
    ("TEST_FAILURE", re.compile(r"AssertionError|\bFAILED\b|failed|✕")),
]


def classify_error(log: str) -> str:
    for name, pattern in _ERROR_TYPES:
        if pattern.search(log):
            return name
    return "RUNTIME_ERROR"


def failure_logs(checks: SandboxChecks) -> str:
    """One `Phase: output` block per failed phase with output."""
    lines = []
    for attr, label in _PHASE_LABELS:
        phase = getattr(checks, attr)
        if phase.status is CheckStatus.FAILED and phase.output.strip():
            lines.append(f"{label}: {phase.output.strip()}")
    return "\n".join(lines)


def retry_reason(checks: SandboxChecks) -> str:
    for attr in ("tests", "lint", "run"):
        if getattr(checks, attr).status is CheckStatus.FAILED:
            return f"sandbox_{attr}_failed"
    return "sandbox_checks_failed"


# ---------------------------------------------------------------------------
# Self-repair loop
# ---------------------------------------------------------------------------


class AttemptReport(BaseModel):
    """What one sandbox attempt produced."""

    sandbox_run_id: str | None = None
    applied: ApplyOutcome = Field(default_factory=ApplyOutcome)
    checks: SandboxChecks | None = None
    promoted: ApplyOutcome | None = None
    note: str | None = Field(default=None, description="Why the attempt never reached a sandbox.")

    def telemetry(self) -> AttemptTelemetry:
        if self.checks is None:
            return AttemptTelemetry(tests_passed=False, logs=self.note or "", sandbox_run_id=self.sandbox_run_id)
        return AttemptTelemetry(
            tests_passed=self.checks.passed,
            logs=failure_logs(self.checks),
            sandbox_run_id=self.sandbox_run_id,
            checks=self.checks,
        )


class RepairOutcome(BaseModel):
    final: AttemptReport
    retried: bool = False
    retry_reason: str | None = None
    attempt1: AttemptTelemetry | None = None
    attempt2: AttemptTelemetry | None = None
    message: str | None = None


class SelfRepairLoop:
    """
    At most two sandboxed attempts per request.

    `attempt` runs a list of edits in a fresh sandbox and reports back;
    `prepare` validates, gates and caps the retry's edits and may raise
    ProtectedPathError or PathPolicyError.
    """

    max_attempts = 2

    def __init__(self, planner: RepairPlanner | None) -> None:
        self._planner = planner

    def should_retry(self, first: AttemptReport) -> bool:
        if self._planner is None or first.checks is None or first.checks.passed:
            return False
        return bool(failure_logs(first.checks))

    async def run(
        self,
        first: AttemptReport,
        plan: Plan,
        source: Source,
        files: dict[str, str],
        attempt: Callable[[list[FileEdit]], Awaitable[AttemptReport]],
        prepare: Callable[[list[FileEdit]], list[FileEdit]],
        error_log: str | None = None,
    ) -> RepairOutcome:
        attempt1 = first.telemetry() if first.checks is not None else None
        if not self.should_retry(first):
            return RepairOutcome(final=first, attempt1=attempt1)

        reason = retry_reason(first.checks)
        logs = failure_logs(first.checks)
        display.retry_start(reason, logs)

        request = RepairRequest(
            plan=plan,
            failure_logs=f"Sandbox checks failed after first fix attempt:\n{logs}",
            source=source,
            scope_mode=ScopeMode.CONSERVATIVE,
            files=files,
            error_log=error_log,
        )
        try:
            edits = prepare(await self._planner.replan(request))
        except _REPLAN_ERRORS as exc:
            second = AttemptReport(note=f"Retry could not be planned: {exc}")
        else:
            second = await attempt(edits)

        attempt2 = second.telemetry()
        display.retry_result(attempt2.tests_passed)
        return RepairOutcome(
            final=second,
            retried=True,
            retry_reason=reason,
            attempt1=attempt1,
            attempt2=attempt2,
            message=RETRY_FIXED_MESSAGE if attempt2.tests_passed else RETRY_FAILED_MESSAGE,
        )


# ---------------------------------------------------------------------------
# Agent auto-fix
# ---------------------------------------------------------------------------


class AutoFixResult(BaseModel):
    outcome: ApplyOutcome = Field(default_factory=ApplyOutcome)
    log: list[LogEntry] = Field(default_factory=list)


class AgentAutoFix:
    """
    Single-command correction for the agent path.

    Only the tail of the failing output is sent. At most one edit is kept
    unless the failure is a missing module, where a dependency manifest
    and an import site often both need touching.
    """

    def __init__(self, proposer: FixProposer, tail_line_count: int = config.AUTO_FIX_TAIL_LINES, max_files: int = 5) -> None:
        self._proposer = proposer
        self._tail_line_count = tail_line_count
        self._max_files = max_files

    async def _relevant_files(self, output: str, store: WorkspaceStore) -> dict[str, str]:
        files: dict[str, str] = {}
        for path in await store.list():
            if path in output or path.rsplit("/", 1)[-1] in output:
                content = await store.get(path)
                if content is not None:
                    files[path] = content
            if len(files) >= self._max_files:
                break
        return files

    async def attempt(self, step_index: int, command: str, output: str, store: WorkspaceStore) -> AutoFixResult:
        output_tail = tail_lines(output, self._tail_line_count)
        error_type = classify_error(output_tail)
        display.auto_fix_start(command, error_type)

        request = FixRequest(
            command=command,
            output_tail=output_tail,
            error_type=error_type,
            files=await self._relevant_files(output_tail, store),
        )
        try:
            edits = await self._proposer.propose_fix(request)
        except _REPLAN_ERRORS as exc:
            entry = _auto_fix_entry(step_index, "failed", f"Auto-fix could not be proposed: {exc}")
            return AutoFixResult(log=[entry])

        if error_type != "MODULE_NOT_FOUND":
            edits = edits[:1]

        edited: list[str] = []
        conflicts: list[Conflict] = []
        log: list[LogEntry] = []
        for edit in edits:
            current = await store.get(edit.path)
            result = apply_edit(current, edit.new_content, edit.old_content)
            if not result.ok:
                conflicts.append(Conflict(path=edit.path, reason=result.error or ""))
                log.append(_auto_fix_entry(step_index, "conflict", result.error or "", edit.path))
                continue
            if current is None:
                await store.insert(edit.path, result.content or "")
            else:
                await store.update(edit.path, result.content or "")
            edited.append(edit.path)
            log.append(_auto_fix_entry(step_index, "success", edit.description or f"Patched {edit.path}", edit.path))

        return AutoFixResult(outcome=ApplyOutcome(files_edited=edited, conflicts=conflicts), log=log)


def _auto_fix_entry(step_index: int, status: str, message: str, path: str | None = None) -> LogEntry:
    return LogEntry(
        step_index=step_index,
        type="auto_fix",
        status=status,
        message=message,
        path=path,
        action_label="AUTO-FIX",
    )
