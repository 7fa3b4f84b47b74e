# diff_engine.py
# Applies one file edit to file content.
#
#   target absent          → insert normalize(newContent)
#   no oldContent          → full replace with normalize(newContent)
#   oldContent found       → splice newContent into that exact span
#   found once normalized  → whole file rewritten in normalized form
#   not found              → conflict (the file drifted since planning)
#
# The normalized fallback trades format fidelity for apply success: it can
# change trailing whitespace and line endings anywhere in the file. Callers
# see this through EditResult.normalized.

import re

from edit_pipeline.errors import ApplyConflictError
from edit_pipeline.models import EditResult

DRIFT_ERROR = "Edit block not found in current file (file may have changed)."

_ESCAPES = {"\\n": "\n", "\\r": "\r", "\\t": "\t", '\\"': '"', "\\'": "'", "\\\\": "\\"}
_ESCAPE_PATTERN = re.compile(r"\\[nrt\"'\\]")


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _unescape_if_double_encoded(text: str) -> str:
    """Decode literal escapes from model output that was JSON-encoded twice."""
    if "\n" in text or "\\n" not in text:
        return text
    return _ESCAPE_PATTERN.sub(lambda m: _ESCAPES[m.group(0)], text)


def normalize_fragment(text: str) -> str:
    text = _unescape_if_double_encoded(text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in text.split("\n"))


def normalize(text: str) -> str:
    """Deterministic document formatting. Never changes tokens, only whitespace framing."""
    text = normalize_fragment(text)
    if not text.strip():
        return ""
    return text.rstrip("\n") + "\n"


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


def apply_edit(current: str | None, new_content: str, old_content: str | None = None) -> EditResult:
    if current is None or not old_content:
        return EditResult(ok=True, content=normalize(new_content))

    at = current.find(old_content)
    if at != -1:
        spliced = current[:at] + new_content + current[at + len(old_content):]
        return EditResult(ok=True, content=spliced)

    normalized_current = normalize(current)
    normalized_old = normalize_fragment(old_content)
    if normalized_old.strip() and normalized_old in normalized_current:
        rewritten = normalized_current.replace(normalized_old, normalize_fragment(new_content), 1)
        return EditResult(ok=True, content=rewritten, normalized=True)

    return EditResult(ok=False, error=DRIFT_ERROR)


def apply_or_raise(path: str, current: str | None, new_content: str, old_content: str | None = None) -> EditResult:
    """apply_edit, raising ApplyConflictError instead of returning ok=False."""
    result = apply_edit(current, new_content, old_content)
    if not result.ok:
        raise ApplyConflictError(path, result.error or DRIFT_ERROR)
    return result
