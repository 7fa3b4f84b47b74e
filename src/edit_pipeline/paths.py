# paths.py
# Path policy: workspace-relative sanitizing and protected-pattern matching.

import re

from edit_pipeline import config
from edit_pipeline.errors import PathPolicyError

_DRIVE_LETTER = re.compile(r"^[A-Za-z]:")


def sanitize_path(path: str) -> str:
    """
    Normalize a step path to a clean workspace-relative form.

    Backslashes become forward slashes, repeated slashes collapse and `.`
    segments drop. Raises PathPolicyError for empty, absolute or `..` paths.
    """
    if not isinstance(path, str) or not path.strip():
        raise PathPolicyError("Path must be a non-empty string.")

    raw = path.strip()
    if raw.startswith(("/", "\\")) or _DRIVE_LETTER.match(raw):
        raise PathPolicyError(f"Absolute paths are not allowed: {path!r}")

    segments = [s for s in re.split(r"[\\/]+", raw) if s and s != "."]
    if any(s == ".." for s in segments):
        raise PathPolicyError(f"Path traversal is not allowed: {path!r}")
    if not segments:
        raise PathPolicyError(f"Path resolves to the workspace root: {path!r}")

    return "/".join(segments)


class ProtectedPathMatcher:
    """
    Flags paths that match a configured pattern set.

    Pattern forms:
      dir/**   anything under dir/
      *.ext    any path ending in .ext
      prefix*  any file whose basename starts with prefix
      other    exact path only
    """

    def __init__(self, patterns: list[str] | None = None) -> None:
        self._patterns = list(config.PROTECTED_PATTERNS if patterns is None else patterns)

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    def is_protected(self, path: str) -> bool:
        normalized = path.replace("\\", "/")
        while normalized.startswith("./"):
            normalized = normalized[2:]
        return any(_matches(pattern, normalized) for pattern in self._patterns)


def _matches(pattern: str, path: str) -> bool:
    if pattern.endswith("/**"):
        prefix = pattern[:-3]
        return path == prefix or path.startswith(prefix + "/")
    if pattern.startswith("*."):
        return path.endswith(pattern[1:])
    if pattern.endswith("*"):
        basename = path.rsplit("/", 1)[-1]
        return basename.startswith(pattern[:-1])
    return path == pattern
