# config.py
# Environment-driven settings for the edit pipeline.
#
# Read once at import. Everything here can be overridden from a .env file
# at the project root or from the process environment.

import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _list(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


# ---------------------------------------------------------------------------
# LLM collaborator
# ---------------------------------------------------------------------------

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")

# Ordered fallback list. The first model that answers wins.
MODELS = _list("EDIT_PIPELINE_MODELS", ["anthropic/claude-3.5-haiku"])
LLM_TIMEOUT_SECONDS = float(os.getenv("EDIT_PIPELINE_LLM_TIMEOUT", "60"))


# ---------------------------------------------------------------------------
# Sandbox and verification
# ---------------------------------------------------------------------------

COMMAND_TIMEOUT_SECONDS = float(os.getenv("EDIT_PIPELINE_COMMAND_TIMEOUT", "60"))
SANDBOX_BASE_DIR = os.getenv("SANDBOX_BASE_DIR") or None
MAX_LOG_CHARS = int(os.getenv("EDIT_PIPELINE_MAX_LOG_CHARS", "8000"))
MAX_ERROR_LOG_CHARS = 50_000
STACK_CONFIG_FILE = ".edit-pipeline.json"


# ---------------------------------------------------------------------------
# Safety policy
# ---------------------------------------------------------------------------

SAFE_EDIT_MODE = _flag("EDIT_PIPELINE_SAFE_EDIT", True)

DEFAULT_PROTECTED_PATTERNS = [
    ".env*",
    "*.key",
    "*.pem",
    "config/secrets/**",
    ".github/workflows/**",
    "infra/**",
]
PROTECTED_PATTERNS = _list("EDIT_PIPELINE_PROTECTED_PATTERNS", DEFAULT_PROTECTED_PATTERNS)

CONSERVATIVE_MAX_FILES = 5
CONSERVATIVE_MAX_LINES = 250

AUTO_FIX_TAIL_LINES = 150


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

QUIET = _flag("EDIT_PIPELINE_QUIET", False)
