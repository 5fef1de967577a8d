"""Typed error taxonomy shared by adapters, lifecycle, router and the HTTP layer."""
from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for every error the gateway reports to its callers."""

    code = "gateway_error"
    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(GatewayError):
    """Bad bot config or request body; raised before any state change."""

    code = "validation_error"
    http_status = 400


class UnsupportedPlatformError(GatewayError):
    code = "unsupported_platform"
    http_status = 400


class BotNotFoundError(GatewayError):
    code = "bot_not_found"
    http_status = 404


class NotRunningError(GatewayError):
    """Operation needs a live adapter instance and the bot has none."""

    code = "not_running"
    http_status = 409


class StartError(GatewayError):
    code = "start_failed"
    http_status = 502


class StopError(GatewayError):
    code = "stop_failed"
    http_status = 500


class VerificationError(GatewayError):
    """Webhook authenticity check failed; the event must not be forwarded."""

    code = "verification_failed"
    http_status = 401

    def __init__(self, message: str, reason: str = "signature_mismatch", **details: Any):
        super().__init__(message, reason=reason, **details)
        self.reason = reason


class SendError(GatewayError):
    """Outbound delivery failed. `retryable` tells the caller whether to try again."""

    code = "send_failed"
    http_status = 502

    def __init__(self, message: str, retryable: bool, status_code: int | None = None, **details: Any):
        super().__init__(message, **details)
        self.retryable = retryable
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["retryable"] = self.retryable
        if self.status_code is not None:
            out["status_code"] = self.status_code
        return out


class RateLimitedError(GatewayError):
    code = "rate_limited"
    http_status = 429

    def __init__(self, message: str, retry_after_s: float = 0.0, **details: Any):
        super().__init__(message, retry_after_s=round(retry_after_s, 3), **details)
        self.retry_after_s = retry_after_s


class ConcurrencyLimitError(GatewayError):
    code = "concurrency_limited"
    http_status = 503


class NoAvailablePlatformError(GatewayError):
    code = "no_available_platform"
    http_status = 503


class PipelineError(GatewayError):
    code = "pipeline_failed"
    http_status = 502


class AuthError(GatewayError):
    code = "unauthorized"
    http_status = 401
