# scope.py
# Scope limiter. Caps the blast radius of a plan in conservative mode.

import re

from pydantic import BaseModel, Field

from edit_pipeline import config
from edit_pipeline.models import Command, FileEdit, ScopeMode, ScopeResult


class RunScope(BaseModel):
    file_count: int = 0
    approx_lines: int = 0
    per_file: dict[str, int] = Field(default_factory=dict)


def count_lines(text: str | None) -> int:
    if not text:
        return 0
    return len(re.split(r"\r?\n", text))


def approx_lines_changed(step: FileEdit) -> int:
    return max(count_lines(step.old_content), count_lines(step.new_content))


def compute_scope(steps: list[FileEdit | Command]) -> RunScope:
    per_file: dict[str, int] = {}
    for step in steps:
        if isinstance(step, FileEdit):
            per_file[step.path] = per_file.get(step.path, 0) + approx_lines_changed(step)
    return RunScope(
        file_count=len(per_file),
        approx_lines=sum(per_file.values()),
        per_file=per_file,
    )


def cap(
    steps: list[FileEdit | Command],
    scope_mode: ScopeMode,
    max_files: int = config.CONSERVATIVE_MAX_FILES,
    max_lines: int = config.CONSERVATIVE_MAX_LINES,
) -> ScopeResult:
    """
    Return the steps allowed under `scope_mode`.

    Conservative mode keeps the longest prefix of the plan that stays within
    `max_files` and `max_lines`. The first file edit is always kept, so a
    plan is narrowed but never rejected outright.
    """
    scope = compute_scope(steps)
    if scope_mode is not ScopeMode.CONSERVATIVE:
        return ScopeResult(
            steps=list(steps),
            scope_mode=scope_mode,
            file_count=scope.file_count,
            approx_lines=scope.approx_lines,
        )

    kept: list[FileEdit | Command] = []
    files: set[str] = set()
    lines = 0
    for step in steps:
        if isinstance(step, FileEdit):
            next_files = files | {step.path}
            next_lines = lines + approx_lines_changed(step)
            within = len(next_files) <= max_files and next_lines <= max_lines
            if files and not within:
                break
            files, lines = next_files, next_lines
        kept.append(step)

    dropped = len(steps) - len(kept)
    return ScopeResult(
        steps=kept,
        scope_mode=scope_mode,
        trimmed=dropped > 0,
        dropped_steps=dropped,
        file_count=len(files),
        approx_lines=lines,
        message=(
            f"Conservative mode: narrowed changes to {len(files)} file(s), ≈{lines} lines."
            if dropped
            else None
        ),
    )
