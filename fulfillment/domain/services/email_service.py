"""
Email Service - שליחת מיילים דרך ספק HTTP (API תואם Resend).

כל ניסיון שליחה נרשם בטבלת email_logs, גם כשנכשל. הקריאה לספק עוברת דרך
circuit breaker ייעודי ("email") כך שתקלה מתמשכת אצל הספק נכשלת מהר.
"""
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.circuit_breaker import CircuitBreaker
from fulfillment.core.config import settings
from fulfillment.core.exceptions import EmailDeliveryError, ServiceTimeoutError
from fulfillment.core.logging import get_logger
from fulfillment.db.models.email_log import EmailLog, EmailLogStatus

logger = get_logger(__name__)

PROVIDER_NAME = "resend"


def _mask_email(address: str) -> str:
    """user@example.com → u***@example.com"""
    local, sep, domain = address.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


class EmailService:
    def __init__(self, db: AsyncSession, circuit_breaker: CircuitBreaker):
        self.db = db
        self._circuit_breaker = circuit_breaker

    async def _post(self, to: str, subject: str, html: str) -> dict[str, Any]:
        if not settings.EMAIL_API_KEY:
            raise EmailDeliveryError("EMAIL_API_KEY is not configured")

        try:
            async with httpx.AsyncClient(timeout=settings.EMAIL_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    settings.EMAIL_API_URL,
                    headers={"Authorization": f"Bearer {settings.EMAIL_API_KEY}"},
                    json={
                        "from": settings.EMAIL_FROM,
                        "to": [to],
                        "subject": subject,
                        "html": html,
                    },
                )
        except httpx.TimeoutException:
            raise ServiceTimeoutError("email", settings.EMAIL_TIMEOUT_SECONDS)
        except httpx.RequestError as exc:
            raise EmailDeliveryError(
                f"network error: {exc}",
                details={"network_error": True},
            )

        if response.status_code not in (200, 201, 202):
            raise EmailDeliveryError.from_response("send", response)

        data = response.json()
        return {"id": data.get("id")}

    async def send_email(self, to: str, subject: str, html: str) -> dict[str, Any]:
        """
        Send one email. Returns ``{"id": <provider message id>}``.

        Raises:
            EmailDeliveryError / ServiceTimeoutError: the provider failed
            CircuitBreakerOpenError: the email breaker is open
        """
        try:
            result = await self._circuit_breaker.execute(self._post, to, subject, html)
        except Exception as exc:
            await self._log(to, subject, EmailLogStatus.FAILED, error=str(exc))
            logger.warning(
                "Email send failed",
                extra_data={"to": _mask_email(to), "subject": subject, "error": str(exc)}
            )
            raise

        await self._log(to, subject, EmailLogStatus.SENT, provider_message_id=result["id"])
        logger.info(
            "Email sent",
            extra_data={"to": _mask_email(to), "subject": subject, "message_id": result["id"]}
        )
        return result

    async def _log(
        self,
        to: str,
        subject: str,
        status: EmailLogStatus,
        *,
        provider_message_id: str | None = None,
        error: str | None = None,
    ) -> None:
        self.db.add(EmailLog(
            recipient=to,
            subject=subject[:255],
            status=status,
            provider=PROVIDER_NAME,
            provider_message_id=provider_message_id,
            error=error,
        ))
        await self.db.commit()
