"""SMS transports.

A transport makes exactly one delivery attempt per ``send`` call.  Retries
and backoff are the dispatch engine's job.

    TwilioSmsTransport — Twilio Messages REST API over httpx
    LogSmsTransport    — writes the message to the log (development)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from src.config import Settings
from src.core.errors import ConfigurationError, DeliveryRejectedError, TransientIOError

logger = logging.getLogger("cadence.sms")

MESSAGE_PREFIX = "🔔 Cadence: "

_TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


def mask_phone(phone: str) -> str:
    """Keep only the last four digits for logging."""
    digits = [c for c in phone if c.isdigit()]
    if len(digits) <= 4:
        return "***"
    return "***" + "".join(digits[-4:])


@dataclass
class DeliveryResult:
    """Outcome of one accepted send.

    Attributes:
        message_id: Transport-side id (Twilio SID).
        status:     Transport status string, e.g. 'queued'.
    """

    message_id: str
    status: str = "queued"


class SmsTransport(ABC):
    """``send(phone, message) -> DeliveryResult``.

    Raises:
        TransientIOError:      Worth retrying (network, 429, 5xx).
        DeliveryRejectedError: Permanently refused (bad number, opted out).
    """

    @abstractmethod
    async def send(self, phone_number: str, message: str) -> DeliveryResult: ...

    async def aclose(self) -> None:
        """Release transport resources."""


class TwilioSmsTransport(SmsTransport):
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from = from_number
        self._http_client = http_client
        self._timeout = timeout

    @property
    def _url(self) -> str:
        return f"{_TWILIO_API_BASE}/Accounts/{self._account_sid}/Messages.json"

    async def send(self, phone_number: str, message: str) -> DeliveryResult:
        data = {"To": phone_number, "From": self._from, "Body": f"{MESSAGE_PREFIX}{message}"}
        auth = (self._account_sid, self._auth_token)
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._url, data=data, auth=auth)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, data=data, auth=auth)
        except httpx.HTTPError as exc:
            raise TransientIOError(f"Twilio: {type(exc).__name__}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(f"Twilio returned {response.status_code}")
        if response.status_code >= 400:
            raise DeliveryRejectedError(
                f"Twilio rejected message to {mask_phone(phone_number)}: "
                f"{response.status_code} {_twilio_error(response)}"
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        sid = str(body.get("sid") or "")
        logger.info("SMS sent to %s (sid=%s)", mask_phone(phone_number), sid or "unknown")
        return DeliveryResult(message_id=sid, status=str(body.get("status") or "queued"))


def _twilio_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return f"code={body.get('code')} {body.get('message') or ''}".strip()
    return ""


class LogSmsTransport(SmsTransport):
    """Logs instead of sending.  Keeps what it "sent" for inspection."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, phone_number: str, message: str) -> DeliveryResult:
        self.sent.append((phone_number, message))
        logger.info("SMS (log backend) to %s: %s%s", mask_phone(phone_number), MESSAGE_PREFIX, message)
        return DeliveryResult(message_id=f"log-{len(self.sent)}", status="logged")


def build_transport(settings: Settings, http_client: httpx.AsyncClient | None = None) -> SmsTransport:
    if settings.sms_backend == "twilio":
        return TwilioSmsTransport(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            http_client=http_client,
        )
    if settings.sms_backend == "log":
        return LogSmsTransport()
    raise ConfigurationError(f"Unknown sms_backend {settings.sms_backend!r}")
