"""
Error kinds raised by the prediction pipeline.

Every error carries a stable ``kind`` and the HTTP ``status_code`` it maps to,
so the API layer only has to translate one exception hierarchy.
"""
from typing import Dict, List, Optional


class PipelineError(Exception):
    kind = "PipelineError"
    status_code = 500
    message = "Prediction failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_response(self) -> Dict:
        return {"success": False, "error": self.message}


class InvalidInput(PipelineError):
    kind = "InvalidInput"
    status_code = 400
    message = "Invalid input"

    def __init__(self, errors: List[Dict[str, str]]):
        super().__init__()
        self.errors = errors

    def to_response(self) -> Dict:
        return {"success": False, "errors": self.errors}


class AuthRequired(PipelineError):
    kind = "AuthRequired"
    status_code = 401
    message = "Authentication required"


class AccessDenied(PipelineError):
    kind = "AccessDenied"
    status_code = 403
    message = "Access denied"


class NotFound(PipelineError):
    kind = "NotFound"
    status_code = 404
    message = "Not found"


class PersistenceError(PipelineError):
    kind = "PersistenceError"
    status_code = 500
    message = "Failed to store prediction"


class BackendFailure(PipelineError):
    """Base class for failures of the remote inference call."""


class BackendUnavailable(BackendFailure):
    kind = "BackendUnavailable"
    status_code = 503
    message = "ML service is unavailable - connection refused"


class BackendTimeout(BackendFailure):
    kind = "BackendTimeout"
    status_code = 504
    message = "ML service timeout - request took too long"


class BackendError(BackendFailure):
    kind = "BackendError"
    status_code = 500
    message = "Prediction failed"

    def __init__(self, backend_status: Optional[int] = None, raw_body: str = ""):
        # backend_status and raw_body are for logs only
        super().__init__()
        self.backend_status = backend_status
        self.raw_body = raw_body

    def __str__(self):
        return f"backend error (status={self.backend_status}): {self.raw_body[:500]}"
