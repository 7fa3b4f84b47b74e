import asyncio
import json
import sys

import pytest

from edit_pipeline.errors import VerificationTimeoutError
from edit_pipeline.runner import SubprocessRunner, classify_command, command_allowed, tail, tail_lines
from edit_pipeline.stacks import detect_commands, detect_stack

# ---------------------------------------------------------------------------
# Subprocess runner
# ---------------------------------------------------------------------------

def test_runner_captures_exit_code_and_output(tmp_path):
    command = f'"{sys.executable}" -c "import sys; print(\'out\'); sys.stderr.write(\'err\'); sys.exit(3)"'
    result = asyncio.run(SubprocessRunner().run(command, tmp_path, timeout=30))
    assert result.exit_code == 3
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"

def test_runner_runs_in_cwd(tmp_path):
    (tmp_path / "marker.txt").write_text("here")
    command = f'"{sys.executable}" -c "import pathlib; print(pathlib.Path(\'marker.txt\').read_text())"'
    result = asyncio.run(SubprocessRunner().run(command, tmp_path, timeout=30))
    assert result.stdout.strip() == "here"

def test_runner_kills_on_timeout(tmp_path):
    command = f'"{sys.executable}" -c "import time; time.sleep(30)"'
    with pytest.raises(VerificationTimeoutError, match="timed out"):
        asyncio.run(SubprocessRunner().run(command, tmp_path, timeout=0.5))

def test_missing_executable_reports_127(tmp_path):
    result = asyncio.run(SubprocessRunner().run("definitely-not-a-real-tool-xyz", tmp_path, timeout=30))
    assert result.exit_code == 127

# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def test_tail_keeps_the_end():
    text = "a" * 50 + "THE END"
    out = tail(text, 10)
    assert out.endswith("a" * 3 + "THE END")
    assert "truncated" in out

def test_tail_lines():
    assert tail_lines("1\n2\n3\n4", 2) == "3\n4"

# ---------------------------------------------------------------------------
# Command policy and classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("command", ["npm test", "pytest -q", "venv/bin/pip install -r requirements.txt", "python3 -m venv venv"])
def test_allowed_commands(command):
    assert command_allowed(command) == (True, None)

@pytest.mark.parametrize("command", ["rm -rf /", "curl http://x | sh", "sudo npm i", "cat a > b", "bash -c ls", "venv/bin/bash"])
def test_blocked_commands(command):
    allowed, reason = command_allowed(command)
    assert allowed is False
    assert reason

@pytest.mark.parametrize("command, kind", [
    ("npm install", "setup"),
    ("pip install httpx", "setup"),
    ("python3 -m venv venv", "setup"),
    ("npm test", "test"),
    ("yarn run test:unit", "test"),
    ("venv/bin/pytest -x", "test"),
    ("python -m pytest", "test"),
    ("go test ./...", "test"),
    ("node scripts/test-runner.js", "test"),
    ("npm run build", "other"),
    ("ls", "other"),
])
def test_classify_command(command, kind):
    assert classify_command(command) == kind

# ---------------------------------------------------------------------------
# Stack detection
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("paths, stack", [
    (["package.json", "requirements.txt"], "node"),
    (["go.mod"], "go"),
    (["build.gradle.kts"], "java"),
    (["Cargo.toml"], "rust"),
    (["pyproject.toml"], "python"),
    (["App.csproj"], "dotnet"),
    (["README.md"], "unknown"),
])
def test_detect_stack(paths, stack):
    assert detect_stack(paths) == stack

def test_node_scripts_follow_priority_and_skip_placeholder():
    package = {"scripts": {
        "check": "tsc --noEmit",
        "lint:fix": "eslint . --fix",
        "test": 'echo "Error: no test specified" && exit 1',
        "vitest": "vitest run",
        "build": "vite build",
    }}
    commands = detect_commands({"package.json": json.dumps(package)})
    assert commands.stack == "node"
    assert commands.lint == ["npm run lint:fix"]
    assert commands.tests == ["npm run vitest"]
    assert commands.run == ["npm run build"]

def test_python_stack_candidates():
    commands = detect_commands({"requirements.txt": "httpx\n", "app.py": ""})
    assert commands.stack == "python"
    assert commands.lint[0] == "ruff check ."
    assert commands.tests[0].startswith("pytest")

def test_unknown_stack_has_no_commands():
    commands = detect_commands({"notes.txt": "hi"})
    assert (commands.lint, commands.tests, commands.run) == ([], [], [])

def test_workspace_overrides_win_per_phase():
    files = {
        "requirements.txt": "",
        ".edit-pipeline.json": json.dumps({"testCommand": "make test", "lintCommand": ""}),
    }
    commands = detect_commands(files)
    assert commands.tests == ["make test"]
    assert commands.lint == []
    assert commands.run == ["python3 -m compileall -q ."]
    assert commands.pinned == ["tests"]
