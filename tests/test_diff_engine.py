import pytest

from edit_pipeline.diff_engine import DRIFT_ERROR, apply_edit, apply_or_raise, normalize
from edit_pipeline.errors import ApplyConflictError

# ---------------------------------------------------------------------------
# Full replace and insert
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("current", ["", "anything\n", "x\r\ny\r\n", None])
def test_full_replace_ignores_current_content(current):
    result = apply_edit(current, "def f():\n    return 1\n")
    assert result.ok
    assert result.content == "def f():\n    return 1\n"

def test_full_replace_is_formatted():
    result = apply_edit("old", "line one   \r\nline two")
    assert result.content == "line one\nline two\n"

def test_empty_old_content_means_full_replace():
    result = apply_edit("keep me", "new body\n", "")
    assert result.content == "new body\n"

def test_missing_file_is_inserted_regardless_of_old_content():
    result = apply_edit(None, "fresh\n", "something that is not there")
    assert result.ok
    assert result.content == "fresh\n"

# ---------------------------------------------------------------------------
# Exact match
# ---------------------------------------------------------------------------

def test_exact_match_replaces_only_the_span():
    result = apply_edit("x\nfoo()\ny", "bar()", "foo()")
    assert result.ok
    assert result.content == "x\nbar()\ny"
    assert result.normalized is False

def test_exact_match_preserves_surrounding_bytes():
    current = "head  \r\n\tfoo()\r\ntail   "
    result = apply_edit(current, "bar()", "foo()")
    assert result.content == "head  \r\n\tbar()\r\ntail   "

def test_exact_match_uses_first_occurrence():
    result = apply_edit("a = 1\na = 1\n", "a = 2", "a = 1")
    assert result.content == "a = 2\na = 1\n"

# ---------------------------------------------------------------------------
# Normalized fallback
# ---------------------------------------------------------------------------

def test_normalized_match_rewrites_whole_file():
    current = "one   \r\ntwo\r\nthree  \r\n"
    result = apply_edit(current, "TWO\n", "two   \n")
    assert result.ok
    assert result.normalized is True
    assert result.content == "one\nTWO\nthree\n"

def test_double_escaped_old_content_still_matches():
    current = "def f():\n    return 1\n"
    result = apply_edit(current, "def f():\n    return 2", "def f():\\n    return 1")
    assert result.ok
    assert result.content == "def f():\n    return 2\n"

# ---------------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------------

def test_drift_is_reported_not_guessed():
    result = apply_edit("x\nbaz()\ny", "bar()", "foo()")
    assert result.ok is False
    assert result.content is None
    assert result.error == DRIFT_ERROR

def test_apply_or_raise_raises_conflict():
    with pytest.raises(ApplyConflictError) as info:
        apply_or_raise("a.ts", "x\nbaz()\ny", "bar()", "foo()")
    assert info.value.path == "a.ts"
    assert info.value.kind == "apply_conflict"

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def test_normalize_is_stable():
    text = "a \r\nb\t\r\n\n\n"
    assert normalize(normalize(text)) == normalize(text)
    assert normalize(text) == "a\nb\n"

def test_normalize_keeps_real_backslash_sequences_in_multiline_source():
    source = 'print("a\\nb")\nx = 1\n'
    assert normalize(source) == source

def test_normalize_empty():
    assert normalize("   \n") == ""
