# runner.py
# Command execution: the subprocess runner, the agent command policy and
# command classification.

import asyncio
import os
import re
import signal
from pathlib import Path
from typing import Literal, Protocol

from edit_pipeline.errors import SandboxInfraError, VerificationTimeoutError
from edit_pipeline.models import CommandResult

CommandKind = Literal["setup", "test", "other"]


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class CommandRunner(Protocol):
    async def run(self, command: str, cwd: Path, timeout: float) -> CommandResult: ...


class SubprocessRunner:
    """
    Runs shell commands in their own process group.

    On timeout the whole group is killed and VerificationTimeoutError is
    raised. Spawn failures surface as SandboxInfraError.
    """

    def __init__(self, env: dict[str, str] | None = None) -> None:
        self._env = env

    async def run(self, command: str, cwd: Path, timeout: float) -> CommandResult:
        env = {**os.environ, **(self._env or {}), "CI": "1"}
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=str(cwd),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise SandboxInfraError(f"Could not start {command!r}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            _kill_group(proc)
            await proc.wait()
            raise VerificationTimeoutError(command, timeout) from None

        return CommandResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def combined_output(result: CommandResult) -> str:
    return "\n".join(part for part in (result.stdout.strip(), result.stderr.strip()) if part)


def tail(text: str, max_chars: int) -> str:
    """Keep the end of `text`. Failures are usually reported last."""
    if len(text) <= max_chars:
        return text
    dropped = len(text) - max_chars
    return f"... [{dropped} chars truncated] ...\n" + text[-max_chars:]


def tail_lines(text: str, count: int) -> str:
    return "\n".join(text.splitlines()[-count:])


# ---------------------------------------------------------------------------
# Agent command policy
# ---------------------------------------------------------------------------

ALLOWED_BASE_COMMANDS = {
    "npm", "yarn", "pnpm", "node", "npx",
    "python", "python3", "pip", "pip3", "pytest",
    "go", "cargo", "mvn", "gradle", "dotnet",
    "ls", "pwd", "cat", "grep", "find", "head", "tail", "wc",
}

BLOCKED_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\brm\s+", r"\brmdir\b", r"\bcurl\b", r"\bwget\b", r"\bssh\b", r"\bscp\b",
        r"\bnc\s+", r"\bnetcat\b", r">>", r">\s+", r"\bsudo\b", r"\bsu\s+",
        r"\bchmod\b", r"\bchown\b", r"\|\s*(ba)?sh\b",
    )
]

_VENV_EXECUTABLE = re.compile(r"^(?:\./)?\.?venv/bin/(.+)$", re.IGNORECASE)


def command_allowed(command: str) -> tuple[bool, str | None]:
    """Return (allowed, reason). Agent commands run on live files, so the policy is an allowlist."""
    trimmed = command.strip()
    for pattern in BLOCKED_PATTERNS:
        if pattern.search(trimmed):
            return False, f"Command contains blocked pattern: {pattern.pattern}"

    base = trimmed.split()[0].lower() if trimmed else ""
    venv = _VENV_EXECUTABLE.match(base)
    if venv:
        base = venv.group(1)
    if base not in ALLOWED_BASE_COMMANDS:
        return False, f'Command "{base}" is not in the allowlist'
    return True, None


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_SETUP = [
    re.compile(r"^(npm|yarn|pnpm)\s+install\b"),
    re.compile(r"^(pip3?|(\./)?\.?venv/bin/pip3?)\s+install\b"),
    re.compile(r"^python3?\s+-m\s+(venv|pip\s+install)\b"),
]
_TEST = [
    re.compile(r"^(npm|yarn|pnpm)\s+(run\s+)?test"),
    re.compile(r"^(\./)?(\.?venv/bin/)?pytest\b"),
    re.compile(r"^python3?\s+-m\s+pytest\b"),
    re.compile(r"^(go|cargo|dotnet|mvn)\s+test\b"),
    re.compile(r"^node\s+.*test"),
    re.compile(r"^npx\s+.*\b(test|jest|vitest)\b"),
]


def classify_command(command: str) -> CommandKind:
    normalized = command.strip().lower()
    if any(p.search(normalized) for p in _SETUP):
        return "setup"
    if any(p.search(normalized) for p in _TEST):
        return "test"
    return "other"


ACTION_LABELS = {"setup": "CMD-SETUP", "test": "CMD-TEST", "other": "CMD-OTHER"}
