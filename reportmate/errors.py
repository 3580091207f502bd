"""
Error taxonomy for the dashboard API.

Every error that can reach a client derives from ReportMateError and carries
the HTTP status it maps to plus a short ``error`` label and optional
``details``. The FastAPI app renders them as ``{"error": ..., "details": ...}``.
"""
from typing import Any, Dict, Optional


class ReportMateError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = 500
    error: str = "Internal server error"

    def __init__(self, details: Optional[str] = None, error: Optional[str] = None):
        super().__init__(details or error or self.error)
        if error:
            self.error = error
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.details:
            body["details"] = self.details
        return body


class ConfigurationError(ReportMateError):
    """Required configuration (base URL, secret) is missing."""

    status_code = 500
    error = "API configuration error"


class AuthorizationError(ReportMateError):
    """Caller is not authorized."""

    status_code = 401
    error = "Unauthorized"


class UpstreamListError(ReportMateError):
    """The discovery call listing entities failed; nothing can be aggregated."""

    status_code = 502
    error = "Upstream list request failed"


class UpstreamDetailError(ReportMateError):
    """A single entity's detail fetch failed. Absorbed by the fan-out."""

    status_code = 502
    error = "Upstream detail request failed"

    def __init__(self, entity_id: str, details: Optional[str] = None):
        super().__init__(details=details)
        self.entity_id = entity_id


class FetchCancelled(ReportMateError):
    """A refresh was abandoned through its abort event."""

    status_code = 503
    error = "Refresh cancelled"


class CacheMissWithNoFallback(ReportMateError):
    """Refresh failed and there is no previously cached payload to serve."""

    status_code = 503
    error = "Service temporarily unavailable"


class InvalidRequestError(ReportMateError):
    """Request is missing required parameters or names something unknown."""

    status_code = 400
    error = "Missing parameters"


class DeviceNotFoundError(ReportMateError):
    """Upstream has no device with the requested identifier."""

    status_code = 404
    error = "Device not found"
