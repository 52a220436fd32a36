from __future__ import annotations

from typing import Any, Dict, Optional


class ChapterflowError(Exception):
    kind = "internal_error"

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class TurnValidationError(ChapterflowError):
    """Raised when a turn or admin request is missing required fields."""

    kind = "validation_error"

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class AuthError(ChapterflowError):
    """Raised when a session code is absent from the store."""

    kind = "auth_error"

    def __init__(self, message: str = "Invalid or expired login code.", status_code: int = 401):
        super().__init__(message, status_code=status_code)


class UpstreamError(ChapterflowError):
    """Raised when the generation service fails; the session is left untouched."""

    kind = "upstream_error"

    def __init__(
        self,
        message: str = "Failed to get response from AI service.",
        upstream_status: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message, status_code=502)
        self.upstream_status = upstream_status
        self.detail = detail

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["llm_status"] = self.upstream_status
        payload["llm_details"] = self.detail
        return payload


class PersistenceError(ChapterflowError):
    kind = "persistence_error"

    def __init__(self, message: str = "Failed to access session state."):
        super().__init__(message, status_code=500)


class ConfigurationError(ChapterflowError):
    kind = "configuration_error"

    def __init__(self, message: str):
        super().__init__(message, status_code=500)


class PromptError(ChapterflowError):
    """Raised when a prompt is requested for a status that never calls out."""

    kind = "prompt_error"

    def __init__(self, message: str):
        super().__init__(message, status_code=500)
