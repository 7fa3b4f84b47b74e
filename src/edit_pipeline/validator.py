# validator.py
# Plan validation and canonicalization.
#
# validate() is the only way a raw plan (LLM JSON, API payload) becomes a
# Plan. It is idempotent: validate(validate(x).model_dump()) == validate(x).
#
#   raw dict → per-step checks → path sanitizing → merge repeated edits
#   → venv canonicalization → Plan

import re
from typing import Any, assert_never

from pydantic import ValidationError

from edit_pipeline.errors import PlanValidationError
from edit_pipeline.models import Command, FileEdit, Plan
from edit_pipeline.paths import sanitize_path

VENV_COMMAND = "python3 -m venv venv"
VENV_DESCRIPTION = "Create Python virtual environment"

_PYTHON_FILES = ("requirements.txt", "pyproject.toml")
_PYTHON_COMMAND = re.compile(r"(^|[\s/])(python3?|pip3?|venv)(\s|/|$)")
_VENV_STEP = re.compile(r"python3?\s+-m\s+venv\s+\.?venv\b")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def validate(raw: Plan | dict[str, Any]) -> Plan:
    """
    Turn a raw plan into a canonical Plan.

    Raises PlanValidationError for a malformed plan or step and
    PathPolicyError for absolute or traversing paths.
    """
    if isinstance(raw, Plan):
        raw = raw.model_dump(by_alias=True)
    if not isinstance(raw, dict):
        raise PlanValidationError("Plan must be a JSON object.")

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise PlanValidationError("Plan must contain at least one step.")

    steps = [_validate_step(index, raw_step) for index, raw_step in enumerate(raw_steps)]
    steps = ensure_python_venv(merge_steps(steps))

    summary = raw.get("summary")
    return Plan(steps=steps, summary=summary if isinstance(summary, str) else None)


def _validate_step(index: int, raw_step: Any) -> FileEdit | Command:
    if not isinstance(raw_step, dict):
        raise PlanValidationError(f"Step {index}: must be an object.")

    kind = raw_step.get("type")
    if kind == "file_edit":
        path = raw_step.get("path")
        new_content = raw_step.get("newContent", raw_step.get("new_content"))
        if not isinstance(path, str):
            raise PlanValidationError(f"Step {index}: file_edit requires a string path.")
        if not isinstance(new_content, str):
            raise PlanValidationError(f"Step {index}: file_edit requires string newContent.")
        model = FileEdit
        payload = {**raw_step, "path": sanitize_path(path)}
    elif kind == "command":
        command = raw_step.get("command")
        if not isinstance(command, str) or not command.strip():
            raise PlanValidationError(f"Step {index}: command requires a non-empty command string.")
        model = Command
        payload = raw_step
    else:
        raise PlanValidationError(f"Step {index}: unknown step type {kind!r}.")

    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise PlanValidationError(f"Step {index}: {exc}") from exc


# ---------------------------------------------------------------------------
# Canonicalization
# ---------------------------------------------------------------------------


def merge_steps(steps: list[FileEdit | Command]) -> list[FileEdit | Command]:
    """
    Collapse repeated edits to one path into a single net edit.

    The merged edit sits at the first occurrence and keeps the first step's
    oldContent and description with the last step's newContent.
    """
    merged: list[FileEdit | Command] = []
    positions: dict[str, int] = {}

    for step in steps:
        match step:
            case FileEdit():
                if step.path in positions:
                    at = positions[step.path]
                    merged[at] = merged[at].model_copy(update={"new_content": step.new_content})
                else:
                    positions[step.path] = len(merged)
                    merged.append(step)
            case Command():
                merged.append(step)
            case _:
                assert_never(step)

    return merged


def is_python_plan(steps: list[FileEdit | Command]) -> bool:
    for step in steps:
        match step:
            case FileEdit():
                basename = step.path.rsplit("/", 1)[-1]
                if step.path.endswith(".py") or basename in _PYTHON_FILES:
                    return True
            case Command():
                if _PYTHON_COMMAND.search(step.command):
                    return True
            case _:
                assert_never(step)
    return False


def has_venv_step(steps: list[FileEdit | Command]) -> bool:
    return any(isinstance(s, Command) and _VENV_STEP.search(s.command) for s in steps)


def ensure_python_venv(steps: list[FileEdit | Command]) -> list[FileEdit | Command]:
    """Insert a venv-creation command before the first command (or append) for Python plans."""
    if not is_python_plan(steps) or has_venv_step(steps):
        return list(steps)

    venv = Command(command=VENV_COMMAND, description=VENV_DESCRIPTION)
    for index, step in enumerate(steps):
        if isinstance(step, Command):
            return [*steps[:index], venv, *steps[index:]]
    return [*steps, venv]
