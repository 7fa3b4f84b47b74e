# sandbox.py
# Sandbox manager: stage edits on an isolated copy of the workspace, verify
# them, then promote or discard.
#
# State machine (one SandboxRun per attempt, never reused):
#
#   CREATED → EDITS_APPLIED → CHECKS_RUN → PROMOTED
#      └──────────┴──────────────┴──────→ DISCARDED
#
# The live workspace is written only by promote(). Every exit path goes
# through session(), which reclaims the materialized directory.

import hashlib
import re
import shlex
import shutil
import tempfile
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path

from edit_pipeline import config, display
from edit_pipeline.diff_engine import apply_or_raise
from edit_pipeline.errors import (
    ApplyConflictError,
    CheckFailure,
    SandboxInfraError,
    VerificationTimeoutError,
)
from edit_pipeline.models import (
    ApplyOutcome,
    CheckStatus,
    Conflict,
    FileEdit,
    PhaseResult,
    SandboxChecks,
    SandboxProvenance,
    SandboxState,
)
from edit_pipeline.runner import CommandRunner, combined_output, tail
from edit_pipeline.stacks import StackCommands, detect_commands
from edit_pipeline.workspace import WorkspaceStore

PROMOTE_CONFLICT = "File changed in the workspace after the sandbox was created; not overwritten."

# pytest exits 5 when it collected nothing.
_PYTEST_NO_TESTS = 5
_MISSING_MODULE = re.compile(r"-m\s+(\S+)")

_TRANSITIONS: dict[SandboxState, set[SandboxState]] = {
    SandboxState.CREATED: {SandboxState.EDITS_APPLIED, SandboxState.DISCARDED},
    SandboxState.EDITS_APPLIED: {SandboxState.CHECKS_RUN, SandboxState.DISCARDED},
    SandboxState.CHECKS_RUN: {SandboxState.PROMOTED, SandboxState.DISCARDED},
    SandboxState.PROMOTED: set(),
    SandboxState.DISCARDED: set(),
}


def error_fingerprint(error_log: str) -> str:
    """Stable id for a failure: whitespace-collapsed first 500 chars, hashed."""
    collapsed = " ".join(error_log[:500].split())
    return hashlib.sha256(collapsed.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# SandboxRun
# ---------------------------------------------------------------------------


class SandboxRun:
    """One isolated attempt. Owned by a single execute call."""

    def __init__(self, run_id: str, baseline: dict[str, str], provenance: SandboxProvenance) -> None:
        self.run_id = run_id
        self.provenance = provenance
        self.state = SandboxState.CREATED
        self.workdir: Path | None = None
        self.checks: SandboxChecks | None = None
        self._baseline = dict(baseline)
        self._files = dict(baseline)
        self._edited: list[str] = []

    @property
    def baseline(self) -> dict[str, str]:
        """Workspace contents at snapshot time."""
        return dict(self._baseline)

    @property
    def files(self) -> dict[str, str]:
        """Staged contents, edits included."""
        return dict(self._files)

    @property
    def edited(self) -> list[str]:
        return list(self._edited)

    def _advance(self, target: SandboxState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise SandboxInfraError(
                f"Sandbox {self.run_id}: invalid transition {self.state.value} → {target.value}."
            )
        self.state = target


# ---------------------------------------------------------------------------
# SandboxManager
# ---------------------------------------------------------------------------


class SandboxManager:
    """
    Creates, verifies and settles sandbox runs.

    Example:
        manager = SandboxManager(SubprocessRunner())
        async with manager.session(store, provenance) as run:
            outcome = await manager.apply_edits(run, edits)
            checks = await manager.run_checks(run)
            if checks.passed:
                await manager.promote(run, store)
    """

    def __init__(
        self,
        runner: CommandRunner,
        detector: Callable[[dict[str, str]], StackCommands] = detect_commands,
        base_dir: str | None = config.SANDBOX_BASE_DIR,
        timeout: float = config.COMMAND_TIMEOUT_SECONDS,
        max_log_chars: int = config.MAX_LOG_CHARS,
        resolve: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._runner = runner
        self._detector = detector
        self._base_dir = Path(base_dir) if base_dir else Path(tempfile.gettempdir()) / "sandboxes"
        self._timeout = timeout
        self._max_log_chars = max_log_chars
        self._resolve = resolve

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(self, store: WorkspaceStore, provenance: SandboxProvenance) -> SandboxRun:
        try:
            paths = await store.list()
            snapshot: dict[str, str] = {}
            for path in paths:
                content = await store.get(path)
                if content is not None:
                    snapshot[path] = content
        except (OSError, UnicodeDecodeError) as exc:
            raise SandboxInfraError(f"Could not snapshot workspace: {exc}") from exc

        run = SandboxRun(uuid.uuid4().hex, snapshot, provenance)
        display.sandbox_created(run.run_id, len(snapshot), provenance.source.value)
        return run

    @asynccontextmanager
    async def session(self, store: WorkspaceStore, provenance: SandboxProvenance) -> AsyncIterator[SandboxRun]:
        """Create a run and guarantee it is settled and cleaned up on exit."""
        run = await self.create(store, provenance)
        try:
            yield run
        finally:
            if run.state is not SandboxState.PROMOTED:
                self.discard(run)
            else:
                self._cleanup(run)

    def discard(self, run: SandboxRun) -> None:
        if run.state is SandboxState.DISCARDED:
            return
        run._advance(SandboxState.DISCARDED)
        self._cleanup(run)
        display.sandbox_discarded(run.run_id)

    def _cleanup(self, run: SandboxRun) -> None:
        if run.workdir is not None:
            shutil.rmtree(run.workdir, ignore_errors=True)
            run.workdir = None

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply_edits(self, run: SandboxRun, steps: list[FileEdit], conflict_message: str | None = None) -> ApplyOutcome:
        """
        Run each edit through the diff engine against the staged copy only.

        A conflict on one path is recorded and the remaining edits still apply.
        """
        run._advance(SandboxState.EDITS_APPLIED)
        conflicts: list[Conflict] = []

        for step in steps:
            try:
                result = apply_or_raise(step.path, run._files.get(step.path), step.new_content, step.old_content)
            except ApplyConflictError as exc:
                reason = conflict_message.format(path=exc.path) if conflict_message else exc.reason
                conflicts.append(Conflict(path=exc.path, reason=reason))
                display.edit_conflict(exc.path, reason)
                continue

            run._files[step.path] = result.content or ""
            if step.path not in run._edited:
                run._edited.append(step.path)
            display.edit_applied(step.path, result.normalized)

        return ApplyOutcome(files_edited=run.edited, conflicts=conflicts)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _materialize(self, run: SandboxRun) -> Path:
        workdir = self._base_dir / run.run_id
        try:
            workdir.mkdir(parents=True, exist_ok=False)
            run.workdir = workdir
            for path, content in run._files.items():
                target = (workdir / path).resolve()
                if not target.is_relative_to(workdir.resolve()):
                    raise SandboxInfraError(f"Refusing to write outside the sandbox: {path}")
                target.parent.mkdir(parents=True, exist_ok=True)
                with open(target, "w", encoding="utf-8", newline="") as fh:
                    fh.write(content)
        except OSError as exc:
            raise SandboxInfraError(f"Could not materialize sandbox {run.run_id}: {exc}") from exc
        return workdir

    async def run_checks(self, run: SandboxRun) -> SandboxChecks:
        """
        Materialize the staged files and run lint, tests and run in order.

        Every phase runs regardless of earlier outcomes, so one sandbox
        yields as much diagnostic output as possible.
        """
        run._advance(SandboxState.CHECKS_RUN)
        workdir = self._materialize(run)
        commands = self._detector(run.files)

        lint = await self._run_phase("lint", commands.lint, workdir, "lint" in commands.pinned)
        tests = await self._run_phase("tests", commands.tests, workdir, "tests" in commands.pinned)
        run_phase = await self._run_phase("run", commands.run, workdir, "run" in commands.pinned)

        phases = (lint, tests, run_phase)
        run.checks = SandboxChecks(
            stack=commands.stack,
            lint=lint,
            tests=tests,
            run=run_phase,
            passed=all(p.status is not CheckStatus.FAILED for p in phases),
        )
        display.checks_table(run.run_id, run.checks)
        return run.checks

    async def _run_phase(self, phase: str, candidates: list[str], cwd: Path, pinned: bool = False) -> PhaseResult:
        """
        Run the first available candidate for one phase.

        A detected candidate whose own executable is not installed is passed
        over. Once a command runs, its exit status decides the phase. A
        pinned (workspace-configured) command always runs and is never
        passed over.
        """
        if not candidates:
            return PhaseResult(phase=phase, status=CheckStatus.SKIPPED, output="No command configured.")

        for command in candidates:
            if not pinned and not self._installed(command, cwd):
                continue
            try:
                result = await self._runner.run(command, cwd, self._timeout)
            except VerificationTimeoutError as exc:
                return PhaseResult(
                    phase=phase,
                    status=CheckStatus.FAILED,
                    command=command,
                    timed_out=True,
                    output=str(exc),
                )

            output = combined_output(result)
            if not pinned and _missing_module(command, result.exit_code, output):
                continue
            if phase == "tests" and result.exit_code == _PYTEST_NO_TESTS and "pytest" in command:
                return PhaseResult(
                    phase=phase,
                    status=CheckStatus.SKIPPED,
                    command=command,
                    exit_code=result.exit_code,
                    output="No tests collected.",
                )
            return PhaseResult(
                phase=phase,
                status=CheckStatus.PASSED if result.exit_code == 0 else CheckStatus.FAILED,
                command=command,
                exit_code=result.exit_code,
                output=tail(output, self._max_log_chars),
            )

        return PhaseResult(
            phase=phase,
            status=CheckStatus.SKIPPED,
            output=f"None of the {phase} commands are installed: {', '.join(candidates)}",
        )

    def _installed(self, command: str, cwd: Path) -> bool:
        """Whether the command's own executable exists. Says nothing about what it runs."""
        try:
            words = shlex.split(command)
        except ValueError:
            return True
        if not words:
            return False
        executable = words[0]
        if "/" in executable:
            return (cwd / executable).is_file()
        return self._resolve(executable) is not None

    # ------------------------------------------------------------------
    # Promote
    # ------------------------------------------------------------------

    async def promote(self, run: SandboxRun, store: WorkspaceStore) -> ApplyOutcome:
        """
        Copy every staged edit back to the live workspace.

        A live file that no longer matches the snapshot is left alone and
        reported as a conflict. A store failure part-way raises
        SandboxInfraError naming the files that were already written.
        """
        if run.state is not SandboxState.CHECKS_RUN or run.checks is None or not run.checks.passed:
            raise CheckFailure(f"Sandbox {run.run_id} has not passed verification; refusing to promote.")
        run._advance(SandboxState.PROMOTED)

        promoted: list[str] = []
        conflicts: list[Conflict] = []
        for path in run._edited:
            try:
                live = await store.get(path)
                expected = run._baseline.get(path)
                if live != expected:
                    conflicts.append(Conflict(path=path, reason=PROMOTE_CONFLICT))
                    display.edit_conflict(path, PROMOTE_CONFLICT)
                    continue

                if expected is None:
                    await store.insert(path, run._files[path])
                else:
                    await store.update(path, run._files[path])
            except OSError as exc:
                written = ", ".join(promoted) or "none"
                raise SandboxInfraError(
                    f"Promotion of sandbox {run.run_id} failed at {path}: {exc}. Already promoted: {written}."
                ) from exc
            promoted.append(path)

        display.promoted(run.run_id, promoted)
        return ApplyOutcome(files_edited=promoted, conflicts=conflicts)


def _missing_module(command: str, exit_code: int, output: str) -> bool:
    """True when a `-m <module>` candidate failed only because the module is not installed."""
    module = _MISSING_MODULE.search(command)
    return exit_code != 0 and bool(module) and f"No module named {module.group(1)}" in output
