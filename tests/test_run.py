import json
from unittest.mock import AsyncMock, MagicMock

from edit_pipeline import config, run

# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _setup(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "OPENROUTER_API_KEY", None)
    workspace = tmp_path / "ws"
    workspace.mkdir()
    (workspace / "a.ts").write_text("x\nfoo()\ny")
    plan = tmp_path / "plan.json"
    plan.write_text(json.dumps({"steps": [
        {"type": "file_edit", "path": "a.ts", "oldContent": "foo()", "newContent": "bar()"},
    ]}))
    return workspace, plan

def test_approve_then_execute(tmp_path, monkeypatch, capsys):
    workspace, plan = _setup(tmp_path, monkeypatch)

    assert run.main(["approve", str(plan), "--workspace", str(workspace)]) == 0
    plan_hash = capsys.readouterr().out.strip().splitlines()[-1]
    assert len(plan_hash) == 64

    code = run.main(["execute", str(plan), "--workspace", str(workspace), "--hash", plan_hash, "--json"])
    assert code == 0
    assert (workspace / "a.ts").read_text() == "x\nbar()\ny"

def test_execute_with_wrong_hash_halts(tmp_path, monkeypatch):
    workspace, plan = _setup(tmp_path, monkeypatch)
    code = run.main(["execute", str(plan), "--workspace", str(workspace), "--hash", "0" * 64])
    assert code == 1
    assert (workspace / "a.ts").read_text() == "x\nfoo()\ny"

def test_build_coordinator_without_key_has_no_planner(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "OPENROUTER_API_KEY", None)
    coordinator = run.build_coordinator(tmp_path)
    assert coordinator._auto_fix is None

def test_execute_closes_the_chat_client(tmp_path, monkeypatch):
    workspace, plan = _setup(tmp_path, monkeypatch)
    monkeypatch.setattr(config, "OPENROUTER_API_KEY", "test-key")
    client = MagicMock()
    client.aclose = AsyncMock()
    monkeypatch.setattr(run, "ChatClient", MagicMock(return_value=client))

    code = run.main(["execute", str(plan), "--workspace", str(workspace), "--hash", "0" * 64])

    assert code == 1
    client.aclose.assert_awaited_once()
