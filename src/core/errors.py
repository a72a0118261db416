"""Error taxonomy shared by the background engines.

Each engine decides what to do with a failure by its class, never by its
message:

    TransientIOError       — retry later with per-entity backoff; watermarks stay put
    AuthRevokedError       — connection moves to ``error``; user must reconnect
    DataIntegrityError     — a stored envelope failed authentication; fatal for that record
    PayloadValidationError — one malformed provider item; skip it, keep the batch
    DeliveryRejectedError  — the SMS transport refused a message permanently
    ConfigurationError     — bad setting or secret; abort process startup
"""

from __future__ import annotations


class CadenceError(Exception):
    """Base class for all Cadence engine errors."""


class TransientIOError(CadenceError):
    """Network failure, timeout, rate limit, or provider outage."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AuthRevokedError(CadenceError):
    """The provider rejected our refresh token or access grant."""


class DataIntegrityError(CadenceError):
    """An encrypted field failed authentication or could not be decoded."""


class PayloadValidationError(CadenceError):
    """A single provider payload item could not be normalized."""


class DeliveryRejectedError(CadenceError):
    """The SMS transport rejected a message (bad number, opted out, ...)."""


class ConfigurationError(CadenceError):
    """A required setting or secret is missing or malformed."""
