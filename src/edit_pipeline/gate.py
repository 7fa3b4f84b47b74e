# gate.py
# Protected path gate. Runs before any sandbox is created, so a blocked plan
# costs nothing but this check.

from edit_pipeline.models import FileEdit, NeedsProtectedConfirmation, Plan, Proceed
from edit_pipeline.paths import ProtectedPathMatcher


def protected_paths_in(plan: Plan, matcher: ProtectedPathMatcher) -> list[str]:
    """FileEdit paths flagged by the matcher, unique, in plan order."""
    found: list[str] = []
    for step in plan.steps:
        if isinstance(step, FileEdit) and matcher.is_protected(step.path) and step.path not in found:
            found.append(step.path)
    return found


def check(
    plan: Plan,
    confirmed_paths: list[str] | None,
    safe_edit_mode: bool,
    matcher: ProtectedPathMatcher,
) -> Proceed | NeedsProtectedConfirmation:
    """
    Proceed unless safe-edit mode is on and a protected path is unconfirmed.

    NeedsProtectedConfirmation carries every protected path in the plan, not
    just the unconfirmed ones, so the caller can re-submit the full list.
    """
    protected = protected_paths_in(plan, matcher)
    if not safe_edit_mode or not protected:
        return Proceed(protected_paths=protected)

    confirmed = set(confirmed_paths or [])
    if all(path in confirmed for path in protected):
        return Proceed(protected_paths=protected)

    return NeedsProtectedConfirmation(protected_paths=protected)
