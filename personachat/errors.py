"""
Typed generation errors.

Adapters raise these; the generation facade passes them through untouched
except GenerationAborted, which ends a stream quietly. Callers branch on the
class rather than on message text.
"""

from typing import Optional


class GenerationError(Exception):
    """Base class for every failure surfaced by the generation layer."""
    code = "generation_error"


class GenerationAborted(GenerationError):
    """The request was cancelled. Not a user-facing failure."""
    code = "aborted"

    def __init__(self, message: str = "Aborted"):
        super().__init__(message)


class QuotaExceededError(GenerationError):
    """Rate limit or quota exhausted; the user has to supply a new credential."""
    code = "quota_exceeded"

    def __init__(self, provider: str = "", message: str = "QUOTA_EXCEEDED"):
        super().__init__(message)
        self.provider = provider


class _ModelAccessError(GenerationError):
    def __init__(self, message: str, model: str = "", suggested_model: Optional[str] = None):
        super().__init__(message)
        self.model = model
        self.suggested_model = suggested_model


class ModelNotFoundError(_ModelAccessError):
    code = "model_not_found"


class PermissionDeniedError(_ModelAccessError):
    code = "permission_denied"


class ConnectivityError(GenerationError):
    """The backend could not be reached at all (DNS, refused, CORS-style relay block)."""
    code = "connectivity"

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class BackendRejectedError(GenerationError):
    """A backend-specific refusal that has a known remedy (e.g. job-queue priority)."""
    code = "backend_rejected"

    def __init__(self, message: str, rejection_code: str = ""):
        super().__init__(message)
        self.rejection_code = rejection_code


class ApiError(GenerationError):
    """Any other non-success HTTP response."""
    code = "api_error"

    def __init__(self, status_code: int, body: str = "", message: Optional[str] = None):
        super().__init__(message or f"API Error {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class GenerationFaultedError(GenerationError):
    code = "faulted"


class GenerationTimeoutError(GenerationError):
    code = "timeout"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class UnsupportedProviderError(GenerationError):
    code = "unsupported"

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class CharacterExtractionError(Exception):
    """Generated output did not contain a recoverable character object."""
    code = "extraction_failed"

    def __init__(self, message: str = (
        "Could not extract valid JSON from the output yet. "
        "You may need to continue generation if it was cut off."
    )):
        super().__init__(message)
