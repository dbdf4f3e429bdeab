# SpotAffinity/src/engine/errors.py
"""Error taxonomy for the admission path. Each class maps to one HTTP status in routes/mutate.py."""
from __future__ import annotations


class WebhookError(Exception):
    """Base class for failures that must surface to the API server as a non-200 status."""

    status_code = 500

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class AdmissionReviewError(WebhookError):
    """The request never reached the engine: bad content type, unreadable body, malformed envelope."""

    status_code = 400


class DecodeError(WebhookError):
    """The embedded pod object could not be decoded."""

    status_code = 500


class EncodeError(WebhookError):
    """The patch could not be serialized."""

    status_code = 500


class DeadlineExceeded(WebhookError):
    """The decision did not complete before the webhook deadline. No cache mutation was applied."""

    status_code = 504
