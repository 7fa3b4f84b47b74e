# stacks.py
# Stack detection: which lint / tests / run commands a workspace supports.
#
# Each phase gets an ordered candidate list. The sandbox tries candidates in
# order and moves on when one is not installed; an empty list means the
# phase is skipped.

import json

from pydantic import BaseModel, Field, ValidationError

from edit_pipeline import config

NODE_LINT_SCRIPTS = ["lint", "lint:fix", "lint:check", "eslint", "check"]
NODE_TEST_SCRIPTS = ["test:unit", "test", "test:ci", "test:run", "jest", "vitest", "jest:ci", "vitest:run"]
NODE_RUN_SCRIPTS = ["build", "compile", "typecheck"]

_NPM_PLACEHOLDER_TEST = "no test specified"


class StackCommands(BaseModel):
    stack: str = "unknown"
    lint: list[str] = Field(default_factory=list)
    tests: list[str] = Field(default_factory=list)
    run: list[str] = Field(default_factory=list)
    pinned: list[str] = Field(
        default_factory=list,
        description="Phases whose command came from workspace config. Never passed over.",
    )


class StackOverrides(BaseModel):
    """Per-workspace overrides read from .edit-pipeline.json. An empty string disables a phase."""

    lint_command: str | None = Field(default=None, alias="lintCommand")
    test_command: str | None = Field(default=None, alias="testCommand")
    run_command: str | None = Field(default=None, alias="runCommand")


STACK_COMMANDS: dict[str, StackCommands] = {
    "python": StackCommands(
        stack="python",
        lint=["ruff check .", "pylint .", "flake8 ."],
        tests=["pytest -q", "python3 -m pytest -q"],
        run=["python3 -m compileall -q ."],
    ),
    "go": StackCommands(
        stack="go",
        lint=["go vet ./..."],
        tests=["go test ./..."],
        run=["go build ./..."],
    ),
    "rust": StackCommands(
        stack="rust",
        lint=["cargo clippy --no-deps", "cargo check"],
        tests=["cargo test"],
        run=["cargo build"],
    ),
    "java": StackCommands(
        stack="java",
        lint=["mvn -q checkstyle:check"],
        tests=["mvn -q test", "gradle test"],
        run=["mvn -q compile", "gradle build -x test"],
    ),
    "dotnet": StackCommands(
        stack="dotnet",
        lint=["dotnet format --verify-no-changes"],
        tests=["dotnet test"],
        run=["dotnet build"],
    ),
}


def detect_stack(paths: list[str]) -> str:
    names = {p.rsplit("/", 1)[-1] for p in paths}
    if "package.json" in names:
        return "node"
    if names & {"go.mod", "go.sum"}:
        return "go"
    if names & {"pom.xml", "build.gradle", "build.gradle.kts"}:
        return "java"
    if "Cargo.toml" in names:
        return "rust"
    if names & {"pyproject.toml", "requirements.txt", "setup.py"}:
        return "python"
    if any(n.endswith((".csproj", ".sln")) for n in names):
        return "dotnet"
    return "unknown"


def _node_commands(package_json: str | None) -> StackCommands:
    try:
        scripts = json.loads(package_json or "{}").get("scripts") or {}
    except (json.JSONDecodeError, AttributeError):
        scripts = {}

    def pick(priority: list[str]) -> list[str]:
        return [
            f"npm run {name}"
            for name in priority
            if isinstance(scripts.get(name), str) and _NPM_PLACEHOLDER_TEST not in scripts[name]
        ][:1]

    return StackCommands(
        stack="node",
        lint=pick(NODE_LINT_SCRIPTS),
        tests=pick(NODE_TEST_SCRIPTS),
        run=pick(NODE_RUN_SCRIPTS),
    )


def _load_overrides(raw: str | None) -> StackOverrides | None:
    if raw is None:
        return None
    try:
        return StackOverrides.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError):
        return None


def detect_commands(files: dict[str, str]) -> StackCommands:
    """
    Resolve lint / tests / run candidates for a snapshot of workspace files.

    A root-level .edit-pipeline.json wins over detection, phase by phase.
    """
    stack = detect_stack(list(files))
    if stack == "node":
        package_paths = sorted((p for p in files if p.rsplit("/", 1)[-1] == "package.json"), key=len)
        commands = _node_commands(files[package_paths[0]])
    else:
        commands = STACK_COMMANDS.get(stack, StackCommands()).model_copy(deep=True)

    overrides = _load_overrides(files.get(config.STACK_CONFIG_FILE))
    if overrides is None:
        return commands

    for phase, value in (
        ("lint", overrides.lint_command),
        ("tests", overrides.test_command),
        ("run", overrides.run_command),
    ):
        if value is None:
            continue
        setattr(commands, phase, [value.strip()] if value.strip() else [])
        if value.strip():
            commands.pinned.append(phase)
    return commands
