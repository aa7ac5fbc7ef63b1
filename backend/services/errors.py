"""
Domain errors for the task engine.

Routes map these to HTTP responses through the handler registered in server.py;
services raise them directly instead of ValueError so callers can tell the
failure modes apart.
"""
from typing import Any, Dict, List, Optional


class TaskEngineError(Exception):
    """Base exception for task engine operations."""
    status_code = 400
    error_type = "task_engine_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "error_type": self.error_type,
            "details": self.details,
        }


class ValidationError(TaskEngineError):
    """Bad input: missing client/service, inactive service, invalid field values."""
    error_type = "validation_error"

    def __init__(self, message: str, issues: Optional[List[Dict[str, Any]]] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if issues:
            details["issues"] = issues
        super().__init__(message, details)
        self.issues = issues or []


class NotFoundError(TaskEngineError):
    status_code = 404
    error_type = "not_found"


class InvalidTransition(TaskEngineError):
    """Requested status change is not in the allowed transition table."""
    status_code = 409
    error_type = "invalid_transition"

    def __init__(self, current: str, requested: str, allowed: List[str]):
        super().__init__(
            f"Invalid transition: {current} → {requested}. Allowed: {allowed}",
            {"current": current, "requested": requested, "allowed": allowed},
        )
        self.current = current
        self.requested = requested
        self.allowed = allowed


class GenerationInProgress(TaskEngineError):
    status_code = 409
    error_type = "generation_in_progress"


class PartialGenerationFailure(TaskEngineError):
    """Some templates rendered, some failed. Carried on the result, not raised."""
    error_type = "partial_generation_failure"


class TotalGenerationFailure(TaskEngineError):
    """No template rendered. Carried on the result, not raised."""
    error_type = "total_generation_failure"


class CompletionPrecondition(TaskEngineError):
    """One or more completion requirements are unmet; every reason is listed."""
    error_type = "completion_precondition"

    def __init__(self, reasons: List[str], missing_template_ids: Optional[List[str]] = None):
        super().__init__(
            "Task cannot be completed: " + "; ".join(reasons),
            {"reasons": reasons, "missing_template_ids": missing_template_ids or []},
        )
        self.reasons = reasons
        self.missing_template_ids = missing_template_ids or []


class MigrationConflict(TaskEngineError):
    status_code = 409
    error_type = "migration_conflict"
