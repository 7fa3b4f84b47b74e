# planner.py
# LLM-backed planning collaborator for the repair paths.
#
#   replan()       sandbox self-repair: a fresh, conservative set of edits
#                  built from the failed attempt's verification logs
#   propose_fix()  agent auto-fix: minimal edits for one failed test command
#
# Both return validated FileEdit steps. Prompt wording is intentionally
# plain; only the JSON contract matters to the pipeline.

import json
import re
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from edit_pipeline import validator
from edit_pipeline.errors import PlanValidationError
from edit_pipeline.llm import ChatClient
from edit_pipeline.models import FileEdit, Plan, ScopeMode, Source


# ---------------------------------------------------------------------------
# Requests and responses
# ---------------------------------------------------------------------------


class RepairRequest(BaseModel):
    plan: Plan
    failure_logs: str
    source: Source
    scope_mode: ScopeMode = ScopeMode.CONSERVATIVE
    files: dict[str, str] = Field(default_factory=dict, description="Current live contents of touched files.")
    error_log: str | None = None


class FixRequest(BaseModel):
    command: str
    output_tail: str
    error_type: str | None = None
    files: dict[str, str] = Field(default_factory=dict)


class EditProposal(BaseModel):
    path: str
    new_content: str = Field(..., alias="newContent")
    old_content: str | None = Field(default=None, alias="oldContent")
    description: str | None = None


class EditsResponse(BaseModel):
    edits: list[EditProposal] = Field(default_factory=list)
    explanation: str | None = None


class RepairPlanner(Protocol):
    async def replan(self, request: RepairRequest) -> list[FileEdit]: ...


class FixProposer(Protocol):
    async def propose_fix(self, request: FixRequest) -> list[FileEdit]: ...


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

EDITS_FORMAT = """\
Respond with ONLY a JSON object of this exact shape:

{
  "explanation": "one or two sentences on the root cause",
  "edits": [
    {
      "path": "workspace/relative/path.ext",
      "description": "what this edit changes",
      "oldContent": "exact text currently in the file (omit to replace the whole file)",
      "newContent": "replacement text"
    }
  ]
}

oldContent must be copied verbatim from the file contents you are given.\
"""

REPAIR_SYSTEM_PROMPT = f"""\
You are repairing a change that failed verification in an isolated sandbox.
You receive the original plan, the lint/test/run output of the failed
attempt, and the current contents of the files involved.

Produce a NEW set of file edits that makes verification pass. Stay
conservative: focus on the minimal set of files, do not refactor, do not
touch files unrelated to the failure.

{EDITS_FORMAT}"""

FIX_SYSTEM_PROMPT = f"""\
You are fixing a single failed test command. You receive the command, the
tail of its output and the contents of the files that look relevant.

Propose the smallest edit that makes the command pass. Prefer exactly one
edit. Never edit test expectations unless the test itself is wrong.

{EDITS_FORMAT}"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _format_files(files: dict[str, str]) -> str:
    if not files:
        return "(no file contents available)"
    return "\n\n".join(f"--- {path} ---\n{content}" for path, content in files.items())


def parse_edits(response: str) -> list[FileEdit]:
    """
    Extract and validate the edits JSON from a model response.

    Raises PlanValidationError on malformed JSON or edits and PathPolicyError
    on unsafe paths.
    """
    raw = response.strip()
    if raw.startswith("```"):
        raw = re.sub(r"^```(?:json)?\s*", "", raw)
        raw = re.sub(r"\s*```$", "", raw)

    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end < start:
        raise PlanValidationError(f"Response contains no JSON object:\n{response}")

    try:
        data = EditsResponse.model_validate(json.loads(raw[start:end + 1], strict=False))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise PlanValidationError(f"Edits JSON is malformed: {exc}") from exc

    if not data.edits:
        raise PlanValidationError("Response proposed no edits.")

    plan = validator.validate(
        {"steps": [{"type": "file_edit", **e.model_dump(by_alias=True)} for e in data.edits]}
    )
    return [step for step in plan.steps if isinstance(step, FileEdit)]


# ---------------------------------------------------------------------------
# LLMPlanner
# ---------------------------------------------------------------------------


class LLMPlanner:
    """Implements both RepairPlanner and FixProposer on top of a ChatClient."""

    def __init__(self, client: ChatClient) -> None:
        self._client = client

    async def replan(self, request: RepairRequest) -> list[FileEdit]:
        messages = [
            {"role": "system", "content": REPAIR_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Scope mode: {request.scope_mode.value}\n\n"
                    f"Original plan:\n{request.plan.model_dump_json(indent=2, by_alias=True)}\n\n"
                    f"Verification output of the failed attempt:\n{request.failure_logs}\n\n"
                    + (f"Original error log:\n{request.error_log}\n\n" if request.error_log else "")
                    + f"Current files:\n{_format_files(request.files)}"
                ),
            },
        ]
        reply = await self._client.chat(messages)
        return parse_edits(reply.content)

    async def propose_fix(self, request: FixRequest) -> list[FileEdit]:
        messages = [
            {"role": "system", "content": FIX_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Command: {request.command}\n"
                    f"Error type: {request.error_type or 'unknown'}\n\n"
                    f"Output tail:\n{request.output_tail}\n\n"
                    f"Files:\n{_format_files(request.files)}"
                ),
            },
        ]
        reply = await self._client.chat(messages)
        return parse_edits(reply.content)
