"""
Runtime Errors

Error categories raised by the runtime. Each class carries a stable ``code``
and an HTTP ``status_code`` so callers can branch on the category instead of
matching message strings.
"""

from typing import Optional


class LLMRuntimeError(Exception):
    """Base class for all runtime errors."""

    code = "RUNTIME_ERROR"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class ResourceUnavailableError(LLMRuntimeError):
    """Hardware state (VRAM, RAM) could not be queried."""

    code = "RESOURCE_UNAVAILABLE"
    status_code = 503


class NotFoundError(LLMRuntimeError):
    code = "NOT_FOUND"
    status_code = 404


class ModelNotFoundError(NotFoundError):
    code = "MODEL_NOT_FOUND"

    def __init__(self, model_id: str):
        super().__init__(f"Model not found: {model_id}")
        self.model_id = model_id


class ModelNotLoadedError(NotFoundError):
    code = "MODEL_NOT_LOADED"

    def __init__(self, model_id: str):
        super().__init__(f"Model {model_id} is not loaded")
        self.model_id = model_id


class ThreadNotFoundError(NotFoundError):
    code = "THREAD_NOT_FOUND"

    def __init__(self, thread_id: str):
        super().__init__(f"Thread not found: {thread_id}")
        self.thread_id = thread_id


class ConflictError(LLMRuntimeError):
    code = "CONFLICT"
    status_code = 409


class ModelAlreadyExistsError(ConflictError):
    code = "MODEL_ALREADY_EXISTS"

    def __init__(self, filename: str):
        super().__init__(f"Model already exists: {filename}")
        self.filename = filename


class DownloadInProgressError(ConflictError):
    code = "DOWNLOAD_IN_PROGRESS"

    def __init__(self, filename: str):
        super().__init__(f"Model is already being downloaded: {filename}")
        self.filename = filename


class DownloadHTTPError(LLMRuntimeError):
    """Download failed with an HTTP status other than 401/403."""

    code = "DOWNLOAD_HTTP_ERROR"
    status_code = 502

    def __init__(self, http_status: int, reason: Optional[str] = None):
        super().__init__(f"HTTP error! status: {http_status}" + (f" ({reason})" if reason else ""))
        self.http_status = http_status


class DownloadUnauthorizedError(DownloadHTTPError):
    """The repository is gated and no valid token was supplied."""

    code = "UNAUTHORIZED_HF_TOKEN_REQUIRED"
    status_code = 401

    def __init__(self):
        super().__init__(401, "a Hugging Face access token is required")


class DownloadForbiddenError(DownloadHTTPError):
    """The token is valid but has not been granted access to the repository."""

    code = "FORBIDDEN_MODEL_ACCESS_REQUIRED"
    status_code = 403

    def __init__(self):
        super().__init__(403, "access to this model must be requested")


class CancelledError(LLMRuntimeError):
    """User or signal initiated abort.

    Deliberately not a subclass of ``asyncio.CancelledError``: task cancellation
    and a caller-requested abort are reported separately.
    """

    code = "CANCELLED"
    status_code = 499


class DownloadCancelledError(CancelledError):
    code = "DOWNLOAD_CANCELLED"

    def __init__(self, filename: str):
        super().__init__(f"Download cancelled: {filename}")
        self.filename = filename


class GenerationCancelledError(CancelledError):
    code = "GENERATION_CANCELLED"

    def __init__(self, message: str = "Generation cancelled"):
        super().__init__(message)


class EngineFailureError(LLMRuntimeError):
    """The native inference engine failed."""

    code = "ENGINE_FAILURE"
    status_code = 500


class ModelLoadError(EngineFailureError):
    code = "MODEL_LOAD_FAILED"

    def __init__(self, model_id: str, cause: Exception):
        super().__init__(f"Failed to load model {model_id}: {cause}")
        self.model_id = model_id
        self.cause = cause


class NoUserMessageError(LLMRuntimeError):
    code = "NO_USER_MESSAGE"
    status_code = 400

    def __init__(self):
        super().__init__("No user message found")
