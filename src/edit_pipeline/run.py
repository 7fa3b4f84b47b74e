# run.py
# Entry point. Config and wiring only. No pipeline logic lives here.
#
#   edit-pipeline approve plan.json --workspace ./project
#   edit-pipeline execute plan.json --workspace ./project --hash <root> \
#       --source composer --scope normal --confirm .env
#
# Swap model strings through EDIT_PIPELINE_MODELS for any OpenRouter model.
# https://openrouter.ai/models

import argparse
import asyncio
import json
import sys
from pathlib import Path

from edit_pipeline import config, display
from edit_pipeline.coordinator import ExecutionCoordinator
from edit_pipeline.errors import PipelineError
from edit_pipeline.llm import ChatClient, candidates_from_env
from edit_pipeline.models import ExecuteResult, NeedsProtectedConfirmation, ScopeMode, Source
from edit_pipeline.planner import LLMPlanner
from edit_pipeline.runner import SubprocessRunner
from edit_pipeline.sandbox import SandboxManager
from edit_pipeline.workspace import DirectoryWorkspace


def build_coordinator(workspace: Path, client: ChatClient | None = None) -> ExecutionCoordinator:
    runner = SubprocessRunner()
    planner = LLMPlanner(client) if client is not None else None
    return ExecutionCoordinator(
        store=DirectoryWorkspace(workspace),
        sandboxes=SandboxManager(runner),
        runner=runner,
        planner=planner,
        fix_proposer=planner,
        model_used=config.MODELS[0] if planner and config.MODELS else None,
    )


async def _execute(args: argparse.Namespace, raw_plan: dict) -> ExecuteResult | NeedsProtectedConfirmation:
    """Run one execute request. The chat client's connections are closed on every exit path."""
    client = ChatClient(candidates_from_env()) if config.OPENROUTER_API_KEY else None
    coordinator = build_coordinator(args.workspace, client)
    error_log = args.error_log.read_text(encoding="utf-8") if args.error_log else None
    try:
        return await coordinator.execute(
            raw_plan,
            args.plan_hash,
            confirmed_protected_paths=args.confirm,
            scope_mode=ScopeMode(args.scope),
            source=Source(args.source),
            error_log=error_log,
        )
    finally:
        if client is not None:
            await client.aclose()


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="edit-pipeline", description="Apply, verify and promote change plans.")
    sub = parser.add_subparsers(dest="action", required=True)

    approve = sub.add_parser("approve", help="Validate a plan and print its hash.")
    approve.add_argument("plan", type=Path)
    approve.add_argument("--workspace", type=Path, default=Path("."))

    execute = sub.add_parser("execute", help="Execute an approved plan.")
    execute.add_argument("plan", type=Path)
    execute.add_argument("--workspace", type=Path, default=Path("."))
    execute.add_argument("--hash", dest="plan_hash", required=True)
    execute.add_argument("--source", choices=[s.value for s in Source], default=Source.COMPOSER.value)
    execute.add_argument("--scope", choices=[m.value for m in ScopeMode], default=ScopeMode.NORMAL.value)
    execute.add_argument("--confirm", action="append", default=[], metavar="PATH")
    execute.add_argument("--error-log", type=Path, help="Failure log for debug-from-log runs.")
    execute.add_argument("--json", action="store_true", help="Print the result as JSON.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    raw_plan = json.loads(args.plan.read_text(encoding="utf-8"))

    try:
        if args.action == "approve":
            _, plan_hash = build_coordinator(args.workspace).approve(raw_plan)
            print(plan_hash)
            return 0

        result = asyncio.run(_execute(args, raw_plan))
    except PipelineError as exc:
        display.halt(f"{exc.kind}: {exc}")
        return 1

    if args.json:
        print(result.model_dump_json(indent=2))
    if isinstance(result, ExecuteResult):
        return 0 if result.success else 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
