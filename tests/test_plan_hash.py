import pytest

from edit_pipeline.models import Command, FileEdit, Plan
from edit_pipeline.plan_hash import MerkleTree, canonical_step, hash_plan, verify_plan_hash

# ---------------------------------------------------------------------------
# Merkle Tree
# ---------------------------------------------------------------------------

def test_merkle_tree_is_key_order_independent():
    a = MerkleTree([{"type": "command", "command": "npm test"}])
    b = MerkleTree([{"command": "npm test", "type": "command"}])
    assert a.root == b.root

def test_merkle_tree_odd_layers_pad():
    tree = MerkleTree([{"n": 1}, {"n": 2}, {"n": 3}])
    assert len(tree.leaves) == 3
    assert len(tree.root) == 64

def test_merkle_tree_empty_steps():
    with pytest.raises(ValueError, match="empty step list"):
        MerkleTree([])

# ---------------------------------------------------------------------------
# Plan hash
# ---------------------------------------------------------------------------

def _plan(new_content: str = "bar()") -> Plan:
    return Plan(steps=[
        FileEdit(path="a.ts", old_content="foo()", new_content=new_content),
        Command(command="npm test"),
    ])

def test_hash_is_deterministic():
    assert hash_plan(_plan()) == hash_plan(_plan())

def test_hash_changes_when_content_changes():
    assert hash_plan(_plan()) != hash_plan(_plan("baz()"))

def test_hash_changes_when_steps_reorder():
    plan = _plan()
    reordered = Plan(steps=list(reversed(plan.steps)))
    assert hash_plan(plan) != hash_plan(reordered)

def test_hash_ignores_description_and_command_spacing():
    plan = _plan()
    cosmetic = Plan(steps=[
        plan.steps[0].model_copy(update={"description": "reworded"}),
        Command(command="npm   test"),
    ])
    assert hash_plan(plan) == hash_plan(cosmetic)

def test_canonical_step_keeps_content_exact():
    step = FileEdit(path=" a.ts ", new_content="x  \n", old_content=None)
    assert canonical_step(step) == {"type": "file_edit", "path": "a.ts", "oldContent": None, "newContent": "x  \n"}

def test_verify_plan_hash_rejects_missing_and_wrong():
    plan = _plan()
    assert verify_plan_hash(plan, hash_plan(plan)) is True
    assert verify_plan_hash(plan, hash_plan(plan).upper()) is True
    assert verify_plan_hash(plan, None) is False
    assert verify_plan_hash(plan, "") is False
    assert verify_plan_hash(plan, "0" * 64) is False
