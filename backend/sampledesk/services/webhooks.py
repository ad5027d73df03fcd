from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from starlette.datastructures import Headers

# Meta-style gateways send x-hub-signature-256; generic relays use x-webhook-signature.
SIGNATURE_HEADERS = ("x-hub-signature-256", "x-webhook-signature")


class SignatureVerificationError(Exception):
    pass


def sign_payload(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _incoming_signature(headers: Headers) -> Optional[str]:
    for key in SIGNATURE_HEADERS:
        value = (headers.get(key) or "").strip()
        if value:
            return value if value.startswith("sha256=") else f"sha256={value}"
    return None


def verify_channel_signature(headers: Headers, raw_body: bytes, secret: str) -> None:
    """Check the gateway HMAC over the raw body. A blank secret disables the check."""
    if not secret:
        return
    signature = _incoming_signature(headers)
    if signature is None:
        raise SignatureVerificationError("missing channel signature header")
    if not hmac.compare_digest(sign_payload(raw_body, secret), signature):
        raise SignatureVerificationError("invalid channel signature")
