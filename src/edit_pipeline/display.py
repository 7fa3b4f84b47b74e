# display.py
# All terminal output for the edit pipeline.
#
# This module owns presentation entirely. Pipeline modules never format
# strings for the terminal; they call named functions here. Swap this file
# to change the entire UI.
#
# Colour language:
#   cyan    routing and lifecycle events
#   blue    model calls
#   yellow  verification checkpoints (plan hash, sandbox checks)
#   green   success / promoted
#   red     conflicts, failures, halts
#   magenta self-repair and auto-fix

from typing import assert_never

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from edit_pipeline import config
from edit_pipeline.models import (
    CheckStatus,
    Command,
    ExecuteResult,
    FileEdit,
    LogEntry,
    Plan,
    SandboxChecks,
)

console = Console(quiet=config.QUIET)

_STATUS_STYLE = {
    CheckStatus.PASSED: "[bold green]passed[/bold green]",
    CheckStatus.FAILED: "[bold red]failed[/bold red]",
    CheckStatus.SKIPPED: "[dim]skipped[/dim]",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ⏎ ")
    if len(value) > max_len:
        value = value[:max_len] + "…"
    return escape(value)


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


def plan_approved(plan: Plan, root: str, leaves: list[str]) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("#", justify="center", width=4)
    table.add_column("Type", style="bold white", width=10)
    table.add_column("Target", style="white", width=36)
    table.add_column("Leaf", style="dim yellow", width=18)
    table.add_column("Description", style="dim white")

    for index, (step, leaf) in enumerate(zip(plan.steps, leaves)):
        match step:
            case FileEdit():
                target = step.path
                kind = "replace" if step.old_content else "write"
            case Command():
                target = step.command
                kind = "command"
            case _:
                assert_never(step)
        table.add_row(str(index), kind, _mono(target, 34), leaf[:16], escape(step.description or ""))

    console.print(
        Panel(
            table,
            title=_label("PLAN APPROVED", "cyan"),
            subtitle=f"[dim]{escape(plan.summary or '')}[/dim]",
            border_style="cyan",
            padding=(0, 1),
        )
    )
    console.print(f"  [bold yellow]Plan hash:[/bold yellow] [white]{root}[/white]")


# ---------------------------------------------------------------------------
# Execution entry
# ---------------------------------------------------------------------------


def execution_start(source: str, scope_mode: str) -> None:
    console.print()
    console.print(Rule(f"[cyan]EXECUTE · source={source} · scope={scope_mode}[/cyan]", style="cyan"))


def hash_verified(plan_hash: str) -> None:
    console.print(f"  [bold green]✓ Plan hash verified[/bold green]  [dim]{plan_hash[:24]}…{plan_hash[-8:]}[/dim]")


def hash_mismatch() -> None:
    console.print()
    console.print(
        Panel(
            "[bold red]Plan hash missing or mismatched.[/bold red]\n"
            "[white]The plan being executed is not the plan that was reviewed. Nothing was changed.[/white]",
            title=_label("STALE PLAN ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def gate_blocked(paths: list[str]) -> None:
    console.print()
    console.print(
        Panel(
            "[bold yellow]This plan touches protected paths:[/bold yellow]\n"
            + "\n".join(f"  [white]• {escape(p)}[/white]" for p in paths)
            + "\n[dim]Confirm them and re-submit. No files were touched.[/dim]",
            title=_label("CONFIRMATION REQUIRED", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


def gate_confirmed(paths: list[str]) -> None:
    console.print(f"  [yellow]↳ Protected paths confirmed:[/yellow] [dim]{escape(', '.join(paths))}[/dim]")


def scope_trimmed(message: str) -> None:
    console.print(_label("SCOPE", "cyan"), f"[cyan] {escape(message)}[/cyan]")


# ---------------------------------------------------------------------------
# Edits and commands
# ---------------------------------------------------------------------------


def edit_applied(path: str, normalized: bool) -> None:
    note = "  [yellow](whitespace-normalized rewrite)[/yellow]" if normalized else ""
    console.print(f"  [green]✓ edit[/green]  [white]{escape(path)}[/white]{note}")


def edit_conflict(path: str, reason: str) -> None:
    console.print(f"  [bold red]✗ conflict[/bold red]  [white]{escape(path)}[/white]  [dim]{_mono(reason, 100)}[/dim]")


def command_result(entry: LogEntry) -> None:
    color = {"success": "green", "failed": "red", "timeout": "red", "blocked": "yellow"}.get(entry.status, "dim")
    second = f"  [magenta]re-run: {entry.second_run_status}[/magenta]" if entry.second_run_status else ""
    console.print(
        _label(entry.action_label or "CMD", "blue"),
        f" [white]{escape(entry.command or '')}[/white]  [{color}]{entry.status}[/{color}]{second}",
    )
    if entry.status != "success":
        console.print(f"  [dim]{_mono(entry.message, 200)}[/dim]")


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


def sandbox_created(run_id: str, file_count: int, source: str) -> None:
    console.print()
    console.print(
        _label("SANDBOX", "cyan"),
        f"[cyan] created[/cyan] [white]{run_id[:12]}[/white] "
        f"[dim]({file_count} file(s) snapshotted, origin={source})[/dim]",
    )


def checks_table(run_id: str, checks: SandboxChecks) -> None:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold yellow", padding=(0, 1))
    table.add_column("Phase", width=8)
    table.add_column("Status", width=10)
    table.add_column("Command", style="dim white", width=32)
    table.add_column("Output", style="dim")

    for phase in (checks.lint, checks.tests, checks.run):
        table.add_row(
            phase.phase,
            _STATUS_STYLE[phase.status],
            escape(phase.command or "-"),
            _mono(phase.output.strip().splitlines()[-1] if phase.output.strip() else "", 60),
        )

    verdict = "[bold green]checks passed[/bold green]" if checks.passed else "[bold red]checks failed[/bold red]"
    console.print(
        Panel(
            table,
            title=_label(f"SANDBOX CHECKS · {checks.stack}", "yellow"),
            subtitle=f"[dim]{run_id[:12]}[/dim] {verdict}",
            border_style="yellow",
            padding=(0, 1),
        )
    )


def promoted(run_id: str, paths: list[str]) -> None:
    console.print(
        _label("PROMOTE", "green"),
        f"[green] {len(paths)} file(s) copied to the workspace from {run_id[:12]}[/green]",
    )


def sandbox_discarded(run_id: str) -> None:
    console.print(_label("SANDBOX", "cyan"), f"[dim] discarded {run_id[:12]}[/dim]")


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


def model_fallback(model: str, error: str) -> None:
    console.print(_label("MODEL", "blue"), f"[blue] {model} failed, trying next candidate[/blue] [dim]{_mono(error, 80)}[/dim]")


def retry_start(reason: str, logs: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold magenta]{escape(reason)}[/bold magenta]\n[dim]{_mono(logs, 300)}[/dim]\n\n"
            "[white]Re-planning in conservative scope. A fresh sandbox will be used.[/white]",
            title=_label("SELF-REPAIR", "magenta"),
            border_style="magenta",
            padding=(0, 2),
        )
    )


def retry_result(passed: bool) -> None:
    if passed:
        console.print("  [bold green]✓ Retry passed sandbox checks[/bold green]")
    else:
        console.print("  [bold red]✗ Retry failed. No further attempts.[/bold red]")


def auto_fix_start(command: str, error_type: str) -> None:
    console.print(
        _label("AUTO-FIX", "magenta"),
        f"[magenta] proposing a fix for[/magenta] [white]{escape(command)}[/white] [dim]({error_type})[/dim]",
    )


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: ExecuteResult) -> None:
    console.print()
    color = "green" if result.success else "red"
    lines = [f"[white]{escape(result.message)}[/white]"]
    if result.files_edited:
        lines.append("\n[bold]Files edited:[/bold] " + escape(", ".join(result.files_edited)))
    for conflict in result.conflicts:
        lines.append(f"[red]• {escape(conflict.path)}[/red] [dim]{escape(conflict.reason)}[/dim]")
    if result.retried:
        lines.append(f"\n[magenta]Retried ({result.retry_reason}).[/magenta]")
    console.print(
        Panel(
            "\n".join(lines),
            title=_label("RESULT", color),
            border_style=color,
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
