# coordinator.py
# Execution coordinator.
#
# The coordinator owns control flow for one execute request. Collaborators
# (store, runner, planner) are passive; nothing else decides what runs.
#
# Control flow:
#   plan-hash guard → validate → protected path gate → scope cap
#   → agent:    direct apply + single-command auto-fix
#   → composer / debug-from-log: sandbox apply → checks → [self-repair]
#                                → promote | discard
#   → ExecuteResult
#
# All terminal output is delegated to display.py.

from collections.abc import Callable
from pathlib import Path
from typing import Any, assert_never

from edit_pipeline import config, display, gate, scope, validator
from edit_pipeline.diff_engine import apply_edit
from edit_pipeline.errors import PlanHashMismatchError, ProtectedPathError, VerificationTimeoutError
from edit_pipeline.models import (
    ApplyOutcome,
    Command,
    Conflict,
    ExecuteResult,
    FileEdit,
    LogEntry,
    NeedsProtectedConfirmation,
    Plan,
    SandboxProvenance,
    ScopeMode,
    Source,
)
from edit_pipeline.paths import ProtectedPathMatcher
from edit_pipeline.plan_hash import hash_plan, tree_for, verify_plan_hash
from edit_pipeline.planner import FixProposer, RepairPlanner
from edit_pipeline.repair import AgentAutoFix, AttemptReport, SelfRepairLoop, classify_error
from edit_pipeline.runner import (
    ACTION_LABELS,
    CommandRunner,
    SubprocessRunner,
    classify_command,
    combined_output,
    command_allowed,
    tail,
)
from edit_pipeline.sandbox import SandboxManager, error_fingerprint
from edit_pipeline.workspace import WorkspaceStore

EDIT_CONFLICT = "Edit conflict: file changed since planning. Please review manually or re-run with updated context."
DEBUG_CONFLICT = (
    "Could not apply fix for {path} because the file changed after the error was analyzed. "
    "Please review manually or re-run debug-from-log with the latest code."
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _merge(a: ApplyOutcome, b: ApplyOutcome) -> ApplyOutcome:
    edited = list(a.files_edited)
    edited.extend(p for p in b.files_edited if p not in edited)
    return ApplyOutcome(files_edited=edited, conflicts=[*a.conflicts, *b.conflicts])


def _summary_entry(steps: int, outcome: ApplyOutcome, log: list[LogEntry], extra: list[str]) -> LogEntry:
    commands = [e for e in log if e.type == "command" and e.status != "skipped"]
    succeeded = sum(1 for e in commands if e.status == "success")
    lines = [
        f"Completed {steps} step(s). Files edited: {len(outcome.files_edited)}. "
        f"Commands: {succeeded} succeeded, {len(commands) - succeeded} failed."
    ]
    if outcome.conflicts:
        lines.append(f"Conflicts: {', '.join(c.path for c in outcome.conflicts)}.")
    lines.extend(extra)
    return LogEntry(type="summary", status="success", message=" ".join(lines), action_label="SUMMARY")


# ---------------------------------------------------------------------------
# ExecutionCoordinator
# ---------------------------------------------------------------------------


class ExecutionCoordinator:
    """
    Runs approved plans against one workspace.

    Example:
        coordinator = ExecutionCoordinator(
            store=DirectoryWorkspace("./project"),
            sandboxes=SandboxManager(SubprocessRunner()),
            planner=LLMPlanner(ChatClient(candidates_from_env())),
        )
        plan, plan_hash = coordinator.approve(raw_plan)
        result = await coordinator.execute(plan, plan_hash, source=Source.COMPOSER)
    """

    def __init__(
        self,
        store: WorkspaceStore,
        sandboxes: SandboxManager,
        runner: CommandRunner | None = None,
        planner: RepairPlanner | None = None,
        fix_proposer: FixProposer | None = None,
        matcher: ProtectedPathMatcher | None = None,
        safe_edit_mode: bool = config.SAFE_EDIT_MODE,
        command_timeout: float = config.COMMAND_TIMEOUT_SECONDS,
        model_used: str | None = None,
    ) -> None:
        self._store = store
        self._sandboxes = sandboxes
        self._runner = runner or SubprocessRunner()
        self._repair = SelfRepairLoop(planner)
        self._auto_fix = AgentAutoFix(fix_proposer) if fix_proposer is not None else None
        self._matcher = matcher or ProtectedPathMatcher()
        self._safe_edit_mode = safe_edit_mode
        self._command_timeout = command_timeout
        self._model_used = model_used

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def approve(self, raw: Plan | dict[str, Any]) -> tuple[Plan, str]:
        """Validate a freshly produced plan and return it with the hash execute() will demand."""
        plan = validator.validate(raw)
        tree = tree_for(plan)
        display.plan_approved(plan, tree.root, tree.leaves)
        return plan, tree.root

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(
        self,
        plan: Plan | dict[str, Any],
        plan_hash: str | None,
        confirmed_protected_paths: list[str] | None = None,
        scope_mode: ScopeMode = ScopeMode.NORMAL,
        source: Source = Source.COMPOSER,
        error_log: str | None = None,
    ) -> ExecuteResult | NeedsProtectedConfirmation:
        """
        Full pipeline entry point.

        Raises PlanHashMismatchError, PlanValidationError, PathPolicyError
        and SandboxInfraError. A protected-path hit is not an error: it
        comes back as NeedsProtectedConfirmation with nothing touched.
        """
        display.execution_start(source.value, scope_mode.value)

        # ── Step 1: Plan-hash guard ───────────────────────────────────
        if not plan_hash:
            display.hash_mismatch()
            raise PlanHashMismatchError("Missing plan hash. Re-approve the plan before executing it.")

        validated = validator.validate(plan)
        if not verify_plan_hash(validated, plan_hash):
            display.hash_mismatch()
            raise PlanHashMismatchError(
                "Plan hash mismatch. The plan changed after it was reviewed; re-approve it."
            )
        display.hash_verified(hash_plan(validated))

        # ── Step 2: Protected path gate ───────────────────────────────
        decision = gate.check(validated, confirmed_protected_paths, self._safe_edit_mode, self._matcher)
        if isinstance(decision, NeedsProtectedConfirmation):
            display.gate_blocked(decision.protected_paths)
            return decision
        if decision.protected_paths:
            display.gate_confirmed(decision.protected_paths)

        # ── Step 3: Scope cap ─────────────────────────────────────────
        scoped = scope.cap(validated.steps, scope_mode)
        notes = [scoped.message] if scoped.message else []
        if scoped.message:
            display.scope_trimmed(scoped.message)

        # ── Step 4: Dispatch by source ────────────────────────────────
        match source:
            case Source.AGENT:
                result = await self._execute_direct(scoped.steps, scope_mode, notes)
            case Source.COMPOSER | Source.DEBUG_FROM_LOG:
                result = await self._execute_sandboxed(
                    validated, scoped.steps, scope_mode, source, confirmed_protected_paths, error_log, notes
                )
            case _:
                assert_never(source)

        display.final_result(result)
        return result

    # ------------------------------------------------------------------
    # Agent: direct apply
    # ------------------------------------------------------------------

    async def _execute_direct(self, steps: list[FileEdit | Command], scope_mode: ScopeMode, notes: list[str]) -> ExecuteResult:
        log: list[LogEntry] = []
        outcome = ApplyOutcome()

        for index, step in enumerate(steps):
            match step:
                case FileEdit():
                    entries, applied = await self._apply_direct(index, step)
                case Command():
                    entries, applied = await self._run_agent_command(index, step)
                case _:
                    assert_never(step)
            log.extend(entries)
            outcome = _merge(outcome, applied)

        log.append(_summary_entry(len(steps), outcome, log, notes))
        failed_commands = [e for e in log if e.type == "command" and e.status not in ("success", "skipped")]
        success = not outcome.conflicts and not failed_commands
        return ExecuteResult(
            success=success,
            source=Source.AGENT,
            scope_mode=scope_mode,
            files_edited=outcome.files_edited,
            log=log,
            conflicts=outcome.conflicts,
            message=log[-1].message,
        )

    async def _apply_direct(self, index: int, step: FileEdit) -> tuple[list[LogEntry], ApplyOutcome]:
        current = await self._store.get(step.path)
        result = apply_edit(current, step.new_content, step.old_content)

        if not result.ok:
            display.edit_conflict(step.path, EDIT_CONFLICT)
            entry = LogEntry(
                step_index=index, type="file_edit", status="conflict",
                message=EDIT_CONFLICT, path=step.path, action_label="EDIT",
            )
            return [entry], ApplyOutcome(conflicts=[Conflict(path=step.path, reason=EDIT_CONFLICT)])

        if current is None:
            await self._store.insert(step.path, result.content or "")
            message = f"Created {step.path}"
        else:
            await self._store.update(step.path, result.content or "")
            message = f"Edited {step.path}"
        if result.normalized:
            message += " (matched after whitespace normalization; file reformatted)"

        display.edit_applied(step.path, result.normalized)
        entry = LogEntry(
            step_index=index, type="file_edit", status="success",
            message=message, path=step.path, action_label="EDIT",
        )
        return [entry], ApplyOutcome(files_edited=[step.path])

    async def _run_command(self, command: str, cwd: Path) -> tuple[str, str, str]:
        """Return (status, output, summary) for one run of `command`."""
        try:
            result = await self._runner.run(command, cwd, self._command_timeout)
        except VerificationTimeoutError:
            return "timeout", "", f"Command timed out ({self._command_timeout:g}s)"
        output = combined_output(result)
        if result.exit_code == 0:
            return "success", output, "OK"
        return "failed", output, f"Exit code {result.exit_code}"

    async def _run_agent_command(self, index: int, step: Command) -> tuple[list[LogEntry], ApplyOutcome]:
        kind = classify_command(step.command)
        base = dict(step_index=index, type="command", command=step.command, command_kind=kind, action_label=ACTION_LABELS[kind])

        allowed, reason = command_allowed(step.command)
        cwd = self._store.root
        if not allowed or cwd is None:
            message = f"Command blocked: {reason}" if not allowed else "Workspace has no working directory; command not run."
            entry = LogEntry(**base, status="blocked", message=message)
            display.command_result(entry)
            return [entry], ApplyOutcome()

        status, output, summary = await self._run_command(step.command, cwd)
        fix_log: list[LogEntry] = []
        fixed = ApplyOutcome()
        second_status = None
        auto_fix = status == "failed" and kind == "test" and self._auto_fix is not None

        if auto_fix:
            fix = await self._auto_fix.attempt(index, step.command, output, self._store)
            fix_log, fixed = fix.log, fix.outcome
            if fixed.files_edited:
                second_status, output, summary = await self._run_command(step.command, cwd)

        final_status = second_status or status
        message = summary if final_status == "success" else f"{summary}\n{tail(output, config.MAX_LOG_CHARS)}".rstrip()
        entry = LogEntry(
            **base,
            status=final_status,
            message=message,
            auto_fix_attempted=auto_fix,
            second_run_status=second_status,
        )
        display.command_result(entry)
        return [entry, *fix_log], fixed

    # ------------------------------------------------------------------
    # Composer / debug-from-log: sandboxed apply
    # ------------------------------------------------------------------

    def _provenance(self, source: Source, edits: list[FileEdit], error_log: str | None) -> SandboxProvenance:
        trimmed = error_log[: config.MAX_ERROR_LOG_CHARS] if error_log else None
        return SandboxProvenance(
            source=source,
            error_log=trimmed,
            error_type=classify_error(trimmed) if trimmed else None,
            error_fingerprint=error_fingerprint(trimmed) if trimmed else None,
            model_used=self._model_used,
            proposed_edit_paths=[e.path for e in edits],
        )

    async def _sandbox_attempt(self, edits: list[FileEdit], source: Source, error_log: str | None) -> AttemptReport:
        conflict_message = DEBUG_CONFLICT if source is Source.DEBUG_FROM_LOG else EDIT_CONFLICT
        async with self._sandboxes.session(self._store, self._provenance(source, edits, error_log)) as run:
            applied = await self._sandboxes.apply_edits(run, edits, conflict_message)
            if not applied.files_edited:
                return AttemptReport(sandbox_run_id=run.run_id, applied=applied, note="No edits could be applied.")

            checks = await self._sandboxes.run_checks(run)
            if not checks.passed:
                return AttemptReport(sandbox_run_id=run.run_id, applied=applied, checks=checks)

            promoted = await self._sandboxes.promote(run, self._store)
            return AttemptReport(sandbox_run_id=run.run_id, applied=applied, checks=checks, promoted=promoted)

    def _retry_preparer(self, confirmed: list[str] | None) -> Callable[[list[FileEdit]], list[FileEdit]]:
        def prepare(edits: list[FileEdit]) -> list[FileEdit]:
            plan = validator.validate(Plan(steps=edits))
            decision = gate.check(plan, confirmed, self._safe_edit_mode, self._matcher)
            if isinstance(decision, NeedsProtectedConfirmation):
                raise ProtectedPathError(decision.protected_paths)
            capped = scope.cap(plan.steps, ScopeMode.CONSERVATIVE)
            return [s for s in capped.steps if isinstance(s, FileEdit)]

        return prepare

    async def _execute_sandboxed(
        self,
        plan: Plan,
        steps: list[FileEdit | Command],
        scope_mode: ScopeMode,
        source: Source,
        confirmed: list[str] | None,
        error_log: str | None,
        notes: list[str],
    ) -> ExecuteResult:
        edits: list[FileEdit] = []
        log: list[LogEntry] = []
        for index, step in enumerate(steps):
            match step:
                case FileEdit():
                    edits.append(step)
                case Command():
                    log.append(LogEntry(
                        step_index=index, type="command", status="skipped", command=step.command,
                        command_kind=classify_command(step.command),
                        message="Not run for sandboxed sources; sandbox checks cover lint, tests and run.",
                        action_label=ACTION_LABELS[classify_command(step.command)],
                    ))
                case _:
                    assert_never(step)

        first = await self._sandbox_attempt(edits, source, error_log)

        files: dict[str, str] = {}
        for path in dict.fromkeys(e.path for e in edits):
            content = await self._store.get(path)
            if content is not None:
                files[path] = content

        repair = await self._repair.run(
            first,
            plan,
            source,
            files,
            attempt=lambda retry_edits: self._sandbox_attempt(retry_edits, source, error_log),
            prepare=self._retry_preparer(confirmed),
            error_log=error_log,
        )

        final = repair.final
        promoted = final.promoted or ApplyOutcome()
        # Conflicts from the first attempt stand unless the retry touched the same path.
        carried: list[Conflict] = []
        if repair.retried:
            retried_paths = {*final.applied.files_edited, *(c.path for c in final.applied.conflicts)}
            carried = [c for c in first.applied.conflicts if c.path not in retried_paths]
        outcome = ApplyOutcome(
            files_edited=promoted.files_edited,
            conflicts=[*carried, *final.applied.conflicts, *promoted.conflicts],
        )
        log = self._sandbox_log(steps, final, outcome) + log

        if repair.message:
            notes.append(repair.message)
        elif final.checks is not None and not final.checks.passed:
            notes.append("Sandbox checks failed; no changes were applied to the workspace.")
        elif final.note:
            notes.append(final.note)
        log.append(_summary_entry(len(steps), outcome, log, notes))

        return ExecuteResult(
            success=final.promoted is not None and not outcome.conflicts,
            source=source,
            scope_mode=scope_mode,
            files_edited=outcome.files_edited,
            log=log,
            conflicts=outcome.conflicts,
            sandbox_run_id=final.sandbox_run_id,
            checks=final.checks,
            retried=repair.retried,
            retry_reason=repair.retry_reason,
            attempt1=repair.attempt1,
            attempt2=repair.attempt2,
            message=log[-1].message,
        )

    def _sandbox_log(self, steps: list[FileEdit | Command], final: AttemptReport, outcome: ApplyOutcome) -> list[LogEntry]:
        indices = {s.path: i for i, s in enumerate(steps) if isinstance(s, FileEdit)}
        reasons = {c.path: c.reason for c in outcome.conflicts}
        paths = list(dict.fromkeys([*final.applied.files_edited, *reasons]))

        log: list[LogEntry] = []
        for path in paths:
            if path in reasons:
                status, message = "conflict", reasons[path]
            elif path in outcome.files_edited:
                status, message = "success", f"Promoted {path} from sandbox {final.sandbox_run_id}"
            else:
                status, message = "skipped", "Not applied: sandbox checks failed."
            log.append(LogEntry(
                step_index=indices.get(path), type="file_edit", status=status,
                message=message, path=path, action_label="EDIT",
            ))
        return log
