"""Error taxonomy for the negotiation services."""
from typing import Any, Dict, Optional


class NetworkChatError(Exception):
    """Base error with structured code, message and details."""

    code = "NETWORK_CHAT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        self.message = message
        self.details = details or {}
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class AuthError(NetworkChatError):
    """Credential is invalid or could not be refreshed."""
    code = "AUTH_ERROR"


class ChatBackendError(NetworkChatError):
    """Transport or backend failure on a proxy chat turn."""

    code = "CHAT_BACKEND_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
        code: Optional[str] = None
    ):
        self.status_code = status_code
        self.detail = detail
        super().__init__(
            message,
            details={"status_code": status_code, "detail": detail},
            code=code
        )


class DetectionError(NetworkChatError):
    """Conclusion detection failed. Never escapes the detector."""
    code = "DETECTION_ERROR"


class ValidationError(NetworkChatError):
    """Malformed input, raised before any engine work starts."""
    code = "VALIDATION_ERROR"


class NotFoundError(ValidationError):
    """Referenced request, conversation or peer does not exist."""
    code = "NOT_FOUND"


class PersistenceError(NetworkChatError):
    """Record store unavailable or rejected a write."""
    code = "PERSISTENCE_ERROR"


class SinkClosedError(NetworkChatError):
    """Progress sink was closed; no further events can be delivered."""
    code = "SINK_CLOSED"
