"""
Tests for payment webhook signature verification
"""
import pytest

from fulfillment.core.exceptions import WebhookSignatureError
from fulfillment.core.signature import (
    build_signature_header,
    compute_signature,
    verify_signature,
)

SECRET = "whsec_unit"
BODY = b'{"id":"evt_1","type":"checkout.session.completed"}'
NOW = 1_700_000_000


def _reason(exc_info) -> str:
    return exc_info.value.details["reason"]


@pytest.mark.unit
def test_valid_signature_returns_timestamp():
    header = build_signature_header(SECRET, BODY, timestamp=NOW)

    assert verify_signature(BODY, header, SECRET, now=NOW + 10) == NOW


@pytest.mark.unit
def test_missing_header():
    with pytest.raises(WebhookSignatureError) as exc_info:
        verify_signature(BODY, None, SECRET, now=NOW)
    assert _reason(exc_info) == "missing signature header"


@pytest.mark.unit
def test_tampered_body_rejected():
    header = build_signature_header(SECRET, BODY, timestamp=NOW)

    with pytest.raises(WebhookSignatureError) as exc_info:
        verify_signature(BODY + b" ", header, SECRET, now=NOW)
    assert _reason(exc_info) == "signature mismatch"


@pytest.mark.unit
def test_wrong_secret_rejected():
    header = build_signature_header("whsec_other", BODY, timestamp=NOW)

    with pytest.raises(WebhookSignatureError):
        verify_signature(BODY, header, SECRET, now=NOW)


@pytest.mark.unit
@pytest.mark.parametrize("skew", [-301, 301])
def test_timestamp_outside_tolerance(skew: int):
    header = build_signature_header(SECRET, BODY, timestamp=NOW)

    with pytest.raises(WebhookSignatureError) as exc_info:
        verify_signature(BODY, header, SECRET, tolerance_seconds=300, now=NOW + skew)
    assert _reason(exc_info) == "timestamp outside tolerance"


@pytest.mark.unit
def test_zero_tolerance_disables_window():
    header = build_signature_header(SECRET, BODY, timestamp=NOW)

    assert verify_signature(BODY, header, SECRET, tolerance_seconds=0, now=NOW + 86400) == NOW


@pytest.mark.unit
def test_any_matching_v1_is_accepted():
    """Secret rotation: the provider signs with both the old and the new secret"""
    good = compute_signature(SECRET, NOW, BODY)
    header = f"t={NOW},v1={'0' * 64},v1={good}"

    assert verify_signature(BODY, header, SECRET, now=NOW) == NOW


@pytest.mark.unit
@pytest.mark.parametrize("header, reason", [
    ("v1=abc", "missing timestamp"),
    (f"t={NOW}", "no v1 signature"),
    ("t=yesterday,v1=abc", "malformed timestamp"),
    ("garbage", "missing timestamp"),
])
def test_malformed_headers(header: str, reason: str):
    with pytest.raises(WebhookSignatureError) as exc_info:
        verify_signature(BODY, header, SECRET, now=NOW)
    assert _reason(exc_info) == reason
