"""
Payment webhook signature verification.

Header format: ``t=<unix seconds>,v1=<hex>[,v1=<hex>...]`` where each ``v1`` is
HMAC-SHA256 of ``"<t>.<raw body>"`` with the endpoint secret. Several ``v1``
values are accepted so the secret can be rotated.
"""
import hashlib
import hmac
import time

from fulfillment.core.exceptions import WebhookSignatureError

SIGNATURE_HEADER = "Payment-Signature"
SIGNATURE_SCHEME = "v1"


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    signed_payload = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, body: bytes, timestamp: int | None = None) -> str:
    """בניית header חתום - לשימוש בסקריפטים ובבדיקות"""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(secret, ts, body)}"


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []

    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("malformed timestamp")
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)

    if timestamp is None:
        raise WebhookSignatureError("missing timestamp")
    if not signatures:
        raise WebhookSignatureError(f"no {SIGNATURE_SCHEME} signature")
    return timestamp, signatures


def verify_signature(
    body: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> int:
    """
    אימות חתימת ה-webhook. מחזיר את ה-timestamp החתום.

    Raises:
        WebhookSignatureError: header חסר/פגום, timestamp מחוץ לחלון, או
            שאף חתימה לא תואמת
    """
    if not header:
        raise WebhookSignatureError("missing signature header")

    timestamp, signatures = _parse_header(header)

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("timestamp outside tolerance")

    expected = compute_signature(secret, timestamp, body)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("signature mismatch")

    return timestamp
