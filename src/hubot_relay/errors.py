"""Error taxonomy for the relay.

Every error the HTTP layer knows how to render derives from :class:`RelayError`
and carries its own status code and machine-readable ``code``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base class for errors rendered as ``{"error": ..., "code": ...}``."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def payload(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(RelayError):
    """Missing or malformed request fields."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthError(RelayError):
    """Invalid or expired credential, or a required credential is missing."""

    status_code = 401
    code = "AUTH_ERROR"


class AccessDeniedError(RelayError):
    """Authenticated caller asked for somebody else's data."""

    status_code = 403
    code = "ACCESS_DENIED"


class UpstreamError(RelayError):
    """Completion service failed (network error, timeout, non-success status)."""

    status_code = 500
    code = "UPSTREAM_ERROR"


class PersistenceError(RelayError):
    """Conversation store read/write failed."""

    status_code = 500
    code = "PERSISTENCE_ERROR"


class DeprecatedEndpointError(RelayError):
    status_code = 410
    code = "DEPRECATED_ENDPOINT"

    def __init__(self, message: str, replacement: Optional[str] = None) -> None:
        super().__init__(message)
        self.replacement = replacement

    def payload(self) -> Dict[str, Any]:
        out = super().payload()
        if self.replacement:
            out["replacement"] = self.replacement
        return out


class ConfigError(RuntimeError):
    """Raised at startup when required configuration is missing."""
