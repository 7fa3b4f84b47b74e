# plan_hash.py
# SHA-256 Merkle hashing for plan approval.
#
# Guarantees: an execute request can only run the exact plan a user
# reviewed. The plan hash is the Merkle root over canonical step dicts, so
# any edit to any step (or a reordering) changes the root and the request is
# rejected before a single file is touched.
#
# stdlib only.

import hashlib
import hmac
import json
from typing import Any, assert_never

from edit_pipeline.models import Command, FileEdit, Plan


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _serialize(step: dict[str, Any]) -> str:
    """Deterministic serialization. sort_keys and fixed separators are non-negotiable."""
    return json.dumps(step, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def canonical_step(step: FileEdit | Command) -> dict[str, Any]:
    """The hashed view of a step. Content is kept byte-exact; only framing is normalized."""
    match step:
        case FileEdit():
            return {
                "type": step.type,
                "path": step.path.strip(),
                "oldContent": step.old_content,
                "newContent": step.new_content,
            }
        case Command():
            return {"type": step.type, "command": " ".join(step.command.split())}
        case _:
            assert_never(step)


# ---------------------------------------------------------------------------
# MerkleTree
# ---------------------------------------------------------------------------


class MerkleTree:
    """
    Builds a binary SHA-256 Merkle tree from a list of canonical step dicts.

    Leaf  = SHA256(json.dumps(step, sort_keys=True))
    Node  = SHA256(left_child + right_child)
    Root  = single hash representing the entire plan

    Odd-length layers duplicate the last node before pairing.
    """

    def __init__(self, steps: list[dict[str, Any]]) -> None:
        if not steps:
            raise ValueError("Cannot build a Merkle tree from an empty step list.")

        self._leaves: list[str] = [_sha256(_serialize(s)) for s in steps]
        self._root: str = self._build_tree(list(self._leaves))

    def _build_tree(self, nodes: list[str]) -> str:
        if len(nodes) == 1:
            return nodes[0]

        if len(nodes) % 2 != 0:
            nodes = nodes + [nodes[-1]]

        parents = [
            _sha256(nodes[i] + nodes[i + 1])
            for i in range(0, len(nodes), 2)
        ]
        return self._build_tree(parents)

    @property
    def root(self) -> str:
        return self._root

    @property
    def leaves(self) -> list[str]:
        return list(self._leaves)


# ---------------------------------------------------------------------------
# Plan hashing
# ---------------------------------------------------------------------------


def tree_for(plan: Plan) -> MerkleTree:
    return MerkleTree([canonical_step(step) for step in plan.steps])


def hash_plan(plan: Plan) -> str:
    """Hex-encoded Merkle root of the plan's steps."""
    return tree_for(plan).root


def verify_plan_hash(plan: Plan, plan_hash: str | None) -> bool:
    if not plan_hash:
        return False
    return hmac.compare_digest(hash_plan(plan), plan_hash.strip().lower())
