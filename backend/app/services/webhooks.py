from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from starlette.datastructures import Headers

SIGNATURE_HEADERS = ("x-hub-signature-256", "x-whatsapp-signature-256", "x-webhook-signature")


class SignatureVerificationError(Exception):
    pass


def _signature_header(headers: Headers) -> Optional[str]:
    for key in SIGNATURE_HEADERS:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def sign_payload(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_whatsapp_signature(headers: Headers, raw_body: bytes, secret: str) -> None:
    """No-op when no secret is configured; provider retries resend the same signature."""
    if not secret:
        return
    signature = _signature_header(headers)
    if not signature:
        raise SignatureVerificationError("missing whatsapp signature header")
    provided = signature.split("=", 1)[1] if signature.startswith("sha256=") else signature
    expected = sign_payload(raw_body, secret).split("=", 1)[1]
    if not hmac.compare_digest(expected, provided):
        raise SignatureVerificationError("invalid whatsapp signature")
