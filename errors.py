"""
Exception hierarchy for Code Pilot.

Errors raised across module boundaries carry an HTTP status code so the web
layer can translate them without knowing where they came from.
"""

from typing import Any, Dict


class PilotError(Exception):
    """Base error with a status code and a machine-readable code"""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, status_code: int = None, code: str = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code


class ValidationError(PilotError):
    status_code = 400
    code = "VALIDATION_ERROR"


class UnauthorizedError(PilotError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(PilotError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(PilotError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(PilotError):
    status_code = 409
    code = "CONFLICT"


class SandboxError(PilotError):
    """Sandbox could not be provisioned or is unusable"""
    code = "SANDBOX_ERROR"


class UnknownToolError(PilotError, ValueError):
    """A tool name outside the catalogue was requested (programmer error)"""
    code = "UNKNOWN_TOOL"


class PlanningError(PilotError):
    code = "PLANNING_ERROR"


class ImplementationError(PilotError):
    code = "IMPLEMENTATION_ERROR"


class GitHubError(PilotError):
    status_code = 502
    code = "GITHUB_ERROR"


def error_payload(exc: Exception) -> Dict[str, Any]:
    """Render an exception for a JSON response body."""
    if isinstance(exc, PilotError):
        return {"error": exc.message, "code": exc.code}
    return {"error": str(exc) or exc.__class__.__name__, "code": PilotError.code}


def status_for(exc: Exception) -> int:
    return exc.status_code if isinstance(exc, PilotError) else 500
