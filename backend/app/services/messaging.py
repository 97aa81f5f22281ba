from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from uuid import uuid4

from requests import RequestException
from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from backend.app.models import utc_now
from backend.app.settings import ServerMisconfigurationError, Settings

logger = logging.getLogger("lead_autopilot.messaging")

_SID_PATTERN = re.compile(r"[A-Z]{2}[a-z0-9]{32}")
_SID_WORD = re.compile(r"(?:\b|_)sid\b", re.IGNORECASE)


class ProviderError(Exception):
    pass


@dataclass(frozen=True)
class SendReceipt:
    provider: str
    provider_message_id: str
    sent_at: datetime


class SendProvider(Protocol):
    name: str

    def send_text(self, *, to_phone: str, text: str) -> SendReceipt: ...


class StubProvider:
    name = "stub"

    def send_text(self, *, to_phone: str, text: str) -> SendReceipt:
        logger.info("stub_send to_phone=%s chars=%s", to_phone, len(text))
        return SendReceipt(
            provider=self.name,
            provider_message_id=f"stub_{uuid4().hex}",
            sent_at=utc_now(),
        )


class TwilioProvider:
    name = "twilio"

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        whatsapp_from: str,
        timeout_seconds: float,
    ) -> None:
        self._from = _whatsapp_address(whatsapp_from)
        self._client = Client(
            account_sid,
            auth_token,
            http_client=TwilioHttpClient(timeout=timeout_seconds),
        )

    def send_text(self, *, to_phone: str, text: str) -> SendReceipt:
        try:
            message = self._client.messages.create(
                from_=self._from,
                to=_whatsapp_address(to_phone),
                body=text,
            )
        except (TwilioException, RequestException) as exc:
            raise ProviderError(str(exc)) from exc
        return SendReceipt(
            provider=self.name,
            provider_message_id=message.sid,
            sent_at=utc_now(),
        )


def _whatsapp_address(phone: str) -> str:
    value = phone.strip()
    if value.startswith("whatsapp:"):
        return value
    if not value.startswith("+"):
        value = f"+{value}"
    return f"whatsapp:{value}"


def sanitize_error(message: str) -> str:
    """Strip provider credentials and identifiers before an error reaches the audit log."""
    if "TWILIO" in message.upper() or _SID_WORD.search(message) or _SID_PATTERN.search(message):
        return "provider_error"
    collapsed = " ".join(message.split())
    return collapsed[:200] or "provider_error"


def build_provider(settings: Settings) -> SendProvider:
    if settings.messaging_provider == "stub":
        return StubProvider()
    if settings.messaging_provider == "twilio":
        missing = [
            name
            for name, value in (
                ("TWILIO_ACCOUNT_SID", settings.twilio_account_sid),
                ("TWILIO_AUTH_TOKEN", settings.twilio_auth_token),
                ("TWILIO_WHATSAPP_FROM", settings.twilio_whatsapp_from),
            )
            if not value
        ]
        if missing:
            raise ServerMisconfigurationError(
                f"twilio provider requires: {', '.join(missing)}"
            )
        return TwilioProvider(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            whatsapp_from=settings.twilio_whatsapp_from,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    raise ServerMisconfigurationError(
        f"unsupported MESSAGING_PROVIDER: {settings.messaging_provider}"
    )
