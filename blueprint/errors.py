"""Pipeline error taxonomy.

Services raise these; the HTTP layer renders them through a single exception
handler as ``{"error": kind, "message": ...}`` with the class status code.
"""
from typing import Any, Dict


class PipelineError(Exception):
    kind = "PipelineError"
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, **self.extra}


class NonRetriable(PipelineError):
    """Step executor gives up on these immediately instead of re-invoking the handler."""


class Unauthorized(NonRetriable):
    kind = "Unauthorized"
    status_code = 403


class NotFound(NonRetriable):
    kind = "NotFound"
    status_code = 404


class IncompletePhases(NonRetriable):
    kind = "IncompletePhases"
    status_code = 400

    def __init__(self, found: int, required: int = 12):
        super().__init__(
            f"Complete all {required} phases before generating plan. "
            f"Currently have {found} phases completed.",
            found=found,
        )
        self.found = found


class GenerationFailed(PipelineError):
    kind = "GenerationFailed"
    status_code = 502


class ParseFailure(PipelineError):
    # recovered inside the planner, never reaches a caller
    kind = "ParseFailure"
    status_code = 500


class AssemblyFailure(NonRetriable):
    kind = "AssemblyFailure"
    status_code = 422


class NotReady(NonRetriable):
    kind = "NotReady"
    status_code = 409


class NoFiles(NonRetriable):
    kind = "NoFiles"
    status_code = 500


class NotApproved(NonRetriable):
    kind = "NotApproved"
    status_code = 409


class AlreadyInProgress(NonRetriable):
    kind = "AlreadyInProgress"
    status_code = 409


class InvalidTransition(NonRetriable):
    kind = "InvalidTransition"
    status_code = 409


class SessionArchived(NonRetriable):
    kind = "SessionArchived"
    status_code = 409
