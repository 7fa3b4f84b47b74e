import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from edit_pipeline.errors import ChatError, ProtectedPathError
from edit_pipeline.models import CheckStatus, FileEdit, PhaseResult, Plan, SandboxChecks, Source
from edit_pipeline.repair import (
    RETRY_FAILED_MESSAGE,
    RETRY_FIXED_MESSAGE,
    AgentAutoFix,
    AttemptReport,
    SelfRepairLoop,
    classify_error,
    failure_logs,
    retry_reason,
)
from edit_pipeline.workspace import InMemoryWorkspace

PLAN = Plan(steps=[FileEdit(path="a.py", new_content="x = 1\n")])


def _checks(lint="passed", tests="passed", run="passed", output="boom") -> SandboxChecks:
    def phase(name, status):
        return PhaseResult(phase=name, status=CheckStatus(status), output=output if status == "failed" else "")
    phases = {"lint": phase("lint", lint), "tests": phase("tests", tests), "run": phase("run", run)}
    return SandboxChecks(**phases, passed=all(p.status is not CheckStatus.FAILED for p in phases.values()))


# ---------------------------------------------------------------------------
# Failure analysis
# ---------------------------------------------------------------------------

def test_failure_logs_only_lists_failed_phases():
    checks = _checks(lint="failed", tests="failed", run="skipped", output="bad")
    assert failure_logs(checks) == "Lint: bad\nTests: bad"

def test_failure_logs_empty_when_failed_phase_has_no_output():
    assert failure_logs(_checks(tests="failed", output="   ")) == ""

@pytest.mark.parametrize("kwargs, reason", [
    ({"tests": "failed", "lint": "failed"}, "sandbox_tests_failed"),
    ({"lint": "failed"}, "sandbox_lint_failed"),
    ({"run": "failed"}, "sandbox_run_failed"),
])
def test_retry_reason_priority(kwargs, reason):
    assert retry_reason(_checks(**kwargs)) == reason

@pytest.mark.parametrize("log, kind", [
    ("ModuleNotFoundError: No module named 'httpx'", "MODULE_NOT_FOUND"),
    ("Error: Cannot find module 'express'", "MODULE_NOT_FOUND"),
    ("  File \"a.py\", line 2\nSyntaxError: invalid syntax", "SYNTAX_ERROR"),
    ("TypeError: unsupported operand", "TYPE_ERROR"),
    ("FAILED tests/test_a.py::test_x - AssertionError", "TEST_FAILURE"),
    ("Segmentation fault", "RUNTIME_ERROR"),
])
def test_classify_error(log, kind):
    assert classify_error(log) == kind


# ---------------------------------------------------------------------------
# Self-repair loop
# ---------------------------------------------------------------------------

def _planner(edits=None, error=None) -> MagicMock:
    planner = MagicMock()
    planner.replan = AsyncMock(return_value=edits or [FileEdit(path="a.py", new_content="x = 2\n")], side_effect=error)
    return planner

def _run_loop(loop, first, attempt, prepare=lambda edits: edits):
    return asyncio.run(loop.run(first, PLAN, Source.COMPOSER, {"a.py": "x = 0\n"}, attempt=attempt, prepare=prepare))

def test_passing_first_attempt_is_not_retried():
    planner = _planner()
    first = AttemptReport(sandbox_run_id="r1", checks=_checks())
    outcome = _run_loop(SelfRepairLoop(planner), first, AsyncMock())

    assert outcome.retried is False
    assert outcome.final is first
    assert outcome.attempt1.tests_passed is True
    planner.replan.assert_not_called()

def test_no_planner_means_no_retry():
    first = AttemptReport(sandbox_run_id="r1", checks=_checks(tests="failed"))
    outcome = _run_loop(SelfRepairLoop(None), first, AsyncMock())
    assert outcome.retried is False
    assert outcome.attempt1.tests_passed is False

def test_failure_without_logs_is_not_retried():
    first = AttemptReport(sandbox_run_id="r1", checks=_checks(tests="failed", output=""))
    planner = _planner()
    outcome = _run_loop(SelfRepairLoop(planner), first, AsyncMock())
    assert outcome.retried is False
    planner.replan.assert_not_called()

def test_retry_runs_once_with_conservative_request():
    planner = _planner()
    second = AttemptReport(sandbox_run_id="r2", checks=_checks())
    attempt = AsyncMock(return_value=second)
    first = AttemptReport(sandbox_run_id="r1", checks=_checks(tests="failed", output="AssertionError"))

    outcome = _run_loop(SelfRepairLoop(planner), first, attempt)

    assert outcome.retried is True
    assert outcome.retry_reason == "sandbox_tests_failed"
    assert outcome.attempt1.tests_passed is False
    assert outcome.attempt2.tests_passed is True
    assert outcome.final is second
    assert outcome.message == RETRY_FIXED_MESSAGE
    attempt.assert_awaited_once()
    request = planner.replan.call_args.args[0]
    assert request.scope_mode.value == "conservative"
    assert request.failure_logs == "Sandbox checks failed after first fix attempt:\nTests: AssertionError"

def test_second_failure_is_final():
    planner = _planner()
    attempt = AsyncMock(return_value=AttemptReport(sandbox_run_id="r2", checks=_checks(tests="failed")))
    first = AttemptReport(sandbox_run_id="r1", checks=_checks(tests="failed"))

    outcome = _run_loop(SelfRepairLoop(planner), first, attempt)

    assert outcome.attempt2.tests_passed is False
    assert outcome.message == RETRY_FAILED_MESSAGE
    assert planner.replan.await_count == 1
    assert attempt.await_count == 1

def test_replan_error_becomes_failed_second_attempt():
    planner = _planner(error=ChatError("no models"))
    attempt = AsyncMock()
    first = AttemptReport(sandbox_run_id="r1", checks=_checks(tests="failed"))

    outcome = _run_loop(SelfRepairLoop(planner), first, attempt)

    assert outcome.retried is True
    assert outcome.attempt2.tests_passed is False
    assert "no models" in outcome.attempt2.logs
    attempt.assert_not_called()

def test_prepare_rejection_blocks_second_sandbox():
    def prepare(edits):
        raise ProtectedPathError([".env"])

    attempt = AsyncMock()
    first = AttemptReport(sandbox_run_id="r1", checks=_checks(tests="failed"))
    outcome = _run_loop(SelfRepairLoop(_planner()), first, attempt, prepare)

    assert outcome.attempt2.tests_passed is False
    attempt.assert_not_called()


# ---------------------------------------------------------------------------
# Agent auto-fix
# ---------------------------------------------------------------------------

def _proposer(edits) -> MagicMock:
    proposer = MagicMock()
    proposer.propose_fix = AsyncMock(return_value=edits)
    return proposer

def test_auto_fix_applies_one_edit_and_sends_tail():
    store = InMemoryWorkspace({"calc.py": "def add(a, b):\n    return a - b\n", "other.py": "x"})
    proposer = _proposer([
        FileEdit(path="calc.py", old_content="a - b", new_content="a + b"),
        FileEdit(path="other.py", new_content="y"),
    ])
    output = "\n".join(f"line {i}" for i in range(300)) + "\ncalc.py:2 AssertionError"

    result = asyncio.run(AgentAutoFix(proposer, tail_line_count=10).attempt(3, "pytest", output, store))

    assert result.outcome.files_edited == ["calc.py"]
    assert store.files["calc.py"] == "def add(a, b):\n    return a + b\n"
    assert store.files["other.py"] == "x"
    request = proposer.propose_fix.call_args.args[0]
    assert len(request.output_tail.splitlines()) == 10
    assert request.error_type == "TEST_FAILURE"
    assert list(request.files) == ["calc.py"]
    assert result.log[0].action_label == "AUTO-FIX"
    assert result.log[0].step_index == 3

def test_auto_fix_keeps_all_edits_for_missing_module():
    store = InMemoryWorkspace({"requirements.txt": "", "app.py": "import httpx\n"})
    proposer = _proposer([
        FileEdit(path="requirements.txt", new_content="httpx\n"),
        FileEdit(path="app.py", new_content="import httpx\nprint(1)\n"),
    ])
    result = asyncio.run(AgentAutoFix(proposer).attempt(0, "pytest", "ModuleNotFoundError: No module named 'httpx'", store))
    assert result.outcome.files_edited == ["requirements.txt", "app.py"]

def test_auto_fix_reports_drift_without_writing():
    store = InMemoryWorkspace({"calc.py": "return a * b\n"})
    proposer = _proposer([FileEdit(path="calc.py", old_content="a - b", new_content="a + b")])
    result = asyncio.run(AgentAutoFix(proposer).attempt(0, "pytest", "AssertionError", store))
    assert result.outcome.files_edited == []
    assert result.outcome.conflicts[0].path == "calc.py"
    assert result.log[0].status == "conflict"
    assert store.files["calc.py"] == "return a * b\n"

def test_auto_fix_proposal_error_is_logged():
    proposer = MagicMock()
    proposer.propose_fix = AsyncMock(side_effect=ChatError("offline"))
    result = asyncio.run(AgentAutoFix(proposer).attempt(1, "npm test", "failed", InMemoryWorkspace()))
    assert result.outcome.files_edited == []
    assert result.log[0].status == "failed"
    assert "offline" in result.log[0].message
