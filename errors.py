from typing import Dict, Optional

from fastapi import status


# =========================
# Base
# =========================

class GatewayError(Exception):
    """
    Base for every error the gateway reports to a caller.

    Carries the HTTP status and any extra response headers so the
    exception handler in main.py can render it without knowing the subtype.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.headers = headers or {}


# =========================
# Surfaced before streaming
# =========================

class ClientInputError(GatewayError):
    """Missing or invalid request fields."""

    status_code = status.HTTP_400_BAD_REQUEST


class ConfigurationError(GatewayError):
    """Missing credential or a provider disabled in this environment."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class UpstreamError(GatewayError):
    """
    Provider answered with a non-success status (passed through to the
    caller) or could not be reached (502).
    """

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, *, status_code: Optional[int] = None, provider: str = ""):
        super().__init__(message, status_code=status_code)
        self.provider = provider


class AdmissionRejection(GatewayError):
    """Raised when the admission gate rejects a request."""

    def __init__(self, decision, message: str, *, status_code: int, headers: Optional[Dict[str, str]] = None):
        super().__init__(message, status_code=status_code, headers=headers)
        self.decision = decision


# =========================
# Recovered locally
# =========================

class DecodeError(ValueError):
    """One upstream record could not be decoded. Never aborts a stream."""


class RateLimitStoreUnavailable(RuntimeError):
    """Rate-limit backing store unconfigured, unreachable or timed out."""


class HumanityServiceUnavailable(RuntimeError):
    """Verification service unconfigured, unreachable or timed out."""
