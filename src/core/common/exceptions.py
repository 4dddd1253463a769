"""
Common exception classes for the Agent Engine client.

This module defines the error taxonomy surfaced to callers of the token,
streaming and connector layers.
"""

from __future__ import annotations


class AgentEngineClientError(Exception):
    """Base exception class for all Agent Engine client errors."""

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        *,
        status_code: int | None = None,
        **kwargs,
    ):
        """Initialize the exception.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error details
            status_code: Optional HTTP status code hint for callers
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.status_code = status_code or 500
        for key, value in (kwargs or {}).items():
            setattr(self, key, value)

    def to_dict(self) -> dict:
        error_dict = {
            "message": self.message,
            "type": self.__class__.__name__,
            "details": self.details,
        }

        for attr_name in dir(self):
            if (
                not attr_name.startswith("_")
                and attr_name not in ["message", "details", "status_code", "args"]
                and not callable(getattr(self, attr_name))
            ):
                error_dict[attr_name] = getattr(self, attr_name)

        return {"error": error_dict}


class ConfigurationError(AgentEngineClientError):
    """Raised when a required identifier or credential source is missing."""

    def __init__(
        self,
        message: str = "Configuration error",
        details: dict | None = None,
        **kwargs,
    ):
        super().__init__(message, details, status_code=400, **kwargs)


class AuthenticationError(AgentEngineClientError):
    """Raised when a service-account access token cannot be obtained."""

    def __init__(
        self,
        message: str = "Authentication failed",
        details: dict | None = None,
        *,
        retryable: bool = False,
        **kwargs,
    ):
        super().__init__(message, details, status_code=401, **kwargs)
        self.retryable = retryable


class SessionError(AgentEngineClientError):
    """Raised when the engine refuses to create a session or returns no id."""

    def __init__(
        self,
        message: str = "Failed to create session",
        details: dict | None = None,
        **kwargs,
    ):
        status_code = kwargs.pop("status_code", 502)
        super().__init__(message, details, status_code=status_code, **kwargs)


class TransportError(AgentEngineClientError):
    """Raised when the engine cannot be reached or a stream read fails."""

    def __init__(
        self,
        message: str = "Transport error",
        details: dict | None = None,
        **kwargs,
    ):
        super().__init__(message, details, status_code=503, **kwargs)


class BackendError(AgentEngineClientError):
    """Raised when the engine answers a query with a non-2xx status."""

    def __init__(
        self,
        message: str = "Backend operation failed",
        backend_name: str | None = None,
        details: dict | None = None,
        **kwargs,
    ):
        # callers map to 502 by default unless overridden
        status_code = kwargs.pop("status_code", 502)
        super().__init__(message, details, status_code=status_code, **kwargs)
        self.backend_name = backend_name


class EmptyResponseError(AgentEngineClientError):
    """Raised when a stream ends without any visible text."""

    def __init__(
        self,
        message: str = "Agent Engine returned an empty response",
        details: dict | None = None,
        **kwargs,
    ):
        super().__init__(message, details, status_code=502, **kwargs)


class CancellationError(AgentEngineClientError):
    """Raised when the caller aborts an in-flight query."""

    def __init__(
        self,
        message: str = "Request cancelled by caller",
        details: dict | None = None,
        **kwargs,
    ):
        super().__init__(message, details, status_code=499, **kwargs)
