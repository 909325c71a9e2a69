"""Error taxonomy for the issue lifecycle and routing engine."""


class EngineError(Exception):
    """Base class for engine errors surfaced to callers."""

    status_code = 400
    error_code = "engine_error"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(EngineError):
    """Raised when a request is missing or carries invalid required fields."""

    status_code = 400
    error_code = "validation_error"


class IssueNotFound(EngineError):
    """Raised when an issue id does not resolve (or is outside the caller's scope)."""

    status_code = 404
    error_code = "not_found"


class IllegalTransition(EngineError):
    """Raised when a status change falls outside the allowed edge set."""

    status_code = 409
    error_code = "illegal_transition"


class ConflictError(EngineError):
    """Raised when a concurrent write changed the issue first; re-fetch and retry."""

    status_code = 409
    error_code = "conflict"

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["retryable"] = True
        return payload


class PersistenceError(EngineError):
    """Raised when the relational store fails during a write."""

    status_code = 500
    error_code = "persistence_error"


class ClassifierUnavailable(EngineError):
    """Raised by the vision classifier on failure or timeout; callers degrade."""

    error_code = "classifier_unavailable"


class DuplicateDetectionFailure(EngineError):
    """Raised when the proximity query fails; callers degrade to non-duplicate."""

    error_code = "duplicate_detection_failure"


class RoutingRuleMissing(EngineError):
    """Raised when no routing rule matches; callers fall back to the default route."""

    error_code = "routing_rule_missing"
