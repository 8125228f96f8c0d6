# errors.py
"""
Error taxonomy for the storefront backend.

Provider and gateway exceptions keep their upstream status/body for the
server log. Nothing in here is ever serialized into a client response;
handlers translate these into generic HTTPExceptions via `log_and_raise`.
"""

import logging
from typing import NoReturn, Optional

from fastapi import HTTPException

log = logging.getLogger(__name__)


class MapMarkedError(Exception):
    """Base class for all domain errors."""


# --- Payment gateway ---

class GatewayUnavailable(MapMarkedError):
    """Stripe is unreachable or not configured."""


class InvalidSignature(MapMarkedError):
    """Webhook payload failed signature verification (or had none)."""


class WebhookMisconfigured(MapMarkedError):
    """Production deployment without a usable webhook signing secret."""


# --- Fulfillment provider ---

class ProviderError(MapMarkedError):
    """A Printful call failed. status_code/detail are for logs only."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail[:500] if detail else ""

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} ({self.status_code}): {self.detail}"
        return base


class UploadFailed(ProviderError):
    pass


class OrderCreationFailed(ProviderError):
    pass


class FileProcessingFailed(ProviderError):
    pass


class MockupFailed(ProviderError):
    pass


class MockupTimedOut(MockupFailed):
    pass


# --- Renderer ---

class RenderFailed(MapMarkedError):
    pass


class RenderTimedOut(RenderFailed):
    pass


# --- Input ---

class InvalidImage(MapMarkedError):
    """Image payload is not a decodable data URI / image."""


class RateLimitExceeded(MapMarkedError):
    def __init__(self, retry_after: int):
        super().__init__("Rate limit exceeded")
        self.retry_after = retry_after


def log_and_raise(error: BaseException, public_message: str, status_code: int = 500) -> NoReturn:
    """Logs full error details server-side and raises a generic HTTPException."""
    log.error(f"[API Error] {public_message}: {type(error).__name__}: {error}", exc_info=error)
    raise HTTPException(status_code=status_code, detail=public_message) from error
