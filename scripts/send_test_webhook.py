"""
Send a signed test event to a running instance.

Checks the ingress path end to end:
- GET /health
- POST /api/webhooks/payments with a valid Payment-Signature header

Usage:
    PAYMENT_WEBHOOK_SECRET=... python scripts/send_test_webhook.py [session_id] [event_type]

The session id must belong to an existing order for a checkout event to be
processed; an unknown order ends as a failed job (HTTP 500), which is also a
useful check of the escalation path.
"""

from __future__ import annotations

import json
import os
import sys
import time
import uuid
from pathlib import Path

import httpx

# לאפשר הרצה מכל תיקיה
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from fulfillment.core.logging import get_logger, setup_logging  # noqa: E402
from fulfillment.core.signature import SIGNATURE_HEADER, build_signature_header  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _event_payload(session_id: str, event_type: str) -> dict:
    return {
        "id": f"evt_smoke_{uuid.uuid4().hex[:16]}",
        "type": event_type,
        "created": int(time.time()),
        "data": {
            "object": {
                "id": session_id,
                "payment_status": "paid",
                "customer_details": {"email": "smoke@example.com", "name": "Smoke Test"},
            }
        },
    }


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="webhook-fulfillment-smoke")

    secret = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")
    if not secret:
        raise SystemExit("PAYMENT_WEBHOOK_SECRET is required")

    session_id = sys.argv[1] if len(sys.argv) > 1 else "cs_smoke_test"
    event_type = sys.argv[2] if len(sys.argv) > 2 else "checkout.session.completed"

    base_url = _base_url()
    timeout = _timeout_seconds()
    body = json.dumps(_event_payload(session_id, event_type)).encode()

    logger.info(
        "Sending test webhook",
        extra_data={"base_url": base_url, "session_id": session_id, "event_type": event_type}
    )

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp, expected_family=2)

        webhook_url = f"{base_url}/api/webhooks/payments"
        resp = client.post(
            webhook_url,
            content=body,
            headers={
                "Content-Type": "application/json",
                SIGNATURE_HEADER: build_signature_header(secret, body),
            },
        )
        logger.info(
            "Webhook response",
            extra_data={"status_code": resp.status_code, "body": resp.text[:500]}
        )
        _check_status(resp, expected_family=2)

        # מסירה חוזרת של אותו אירוע - חייבת להחזיר already_processed
        resp = client.post(
            webhook_url,
            content=body,
            headers={
                "Content-Type": "application/json",
                SIGNATURE_HEADER: build_signature_header(secret, body),
            },
        )
        _check_status(resp, expected_family=2)
        if resp.json().get("status") != "already_processed":
            raise RuntimeError(f"Redelivery was not deduplicated: {resp.text[:500]}")

    logger.info("Test webhook completed successfully")


if __name__ == "__main__":
    main()
