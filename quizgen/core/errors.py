"""
Domain error taxonomy shared by the services and the HTTP layer.
"""
from fastapi import status


class QuizEngineError(Exception):
    """Base class for all engine errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(QuizEngineError):
    """Malformed or out-of-range input, rejected before any side effect."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "validation_error"


class NotFound(QuizEngineError):
    """Quiz, question or original submission absent or not owned by the caller."""

    status_code = status.HTTP_404_NOT_FOUND
    error_type = "not_found"


class GenerationFailure(QuizEngineError):
    """The generation oracle returned unusable content."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "generation_failure"


class TransientDependencyFailure(QuizEngineError):
    """Cache or oracle unavailable. Callers degrade instead of aborting."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_type = "dependency_unavailable"


class PersistenceFailure(QuizEngineError):
    """A transaction could not commit and was rolled back."""

    error_type = "persistence_failure"
