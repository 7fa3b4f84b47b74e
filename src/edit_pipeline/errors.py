# errors.py
# Error taxonomy for the edit pipeline.
#
# Every error carries a stable `kind` string so callers can map a failure
# onto a response without matching on class names.


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""

    kind = "pipeline"


class PlanValidationError(PipelineError):
    """Raised when a plan or one of its steps is malformed."""

    kind = "plan_validation"


class PathPolicyError(PipelineError):
    """Raised when a step path is absolute or escapes the workspace."""

    kind = "path_policy"


class ProtectedPathError(PipelineError):
    """Raised when a plan touches protected paths that were not confirmed."""

    kind = "protected_path"

    def __init__(self, paths: list[str]) -> None:
        self.paths = list(paths)
        super().__init__(f"Confirmation required for protected paths: {', '.join(self.paths)}")


class ApplyConflictError(PipelineError):
    """Raised when an edit's oldContent is no longer present in the target file."""

    kind = "apply_conflict"

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class SandboxInfraError(PipelineError):
    """Raised on snapshot, materialization, state or process-spawn failures. Always fatal."""

    kind = "sandbox_infra"


class CheckFailure(PipelineError):
    """Raised when a sandbox is asked to promote without passing verification."""

    kind = "check_failure"


class VerificationTimeoutError(PipelineError):
    """Raised by the command runner when a command exceeds its wall-clock budget."""

    kind = "timeout"

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout:g}s: {command}")


class PlanHashMismatchError(PipelineError):
    """Raised when the supplied plan hash is missing or does not match the plan."""

    kind = "plan_hash_mismatch"


class ChatError(PipelineError):
    """Raised when every model candidate failed to answer."""

    kind = "chat"
