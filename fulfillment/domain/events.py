"""
Payment provider event schema and the event types the engine acts on.
"""
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

CHECKOUT_COMPLETED_TYPES = frozenset({"checkout.session.completed", "checkout.completed"})
REFUND_TYPES = frozenset({"charge.refunded", "payment_intent.refunded"})
CHECKOUT_EXPIRED_TYPES = frozenset({"checkout.session.expired"})

FULFILLMENT_JOB_TYPE = "webhook.fulfillment"


class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any] = Field(default_factory=dict)


class PaymentEvent(BaseModel):
    """Provider notification; unknown fields are kept so the payload round-trips"""

    model_config = ConfigDict(extra="allow", frozen=True)

    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=100)
    created: int | None = None
    data: EventData = Field(default_factory=EventData)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.object

    def to_payload(self) -> dict[str, Any]:
        """The event as received, for storage in failed jobs"""
        return self.model_dump(mode="json", exclude_unset=True)

    def with_id(self, event_id: str) -> "PaymentEvent":
        return self.model_copy(update={"id": event_id})


def session_reference(obj: dict[str, Any]) -> str | None:
    """Provider session id carried by a checkout event"""
    return obj.get("id")


def refund_reference(obj: dict[str, Any]) -> str | None:
    """
    מזהה ההזמנה מתוך אירוע החזר.

    עדיפות: metadata.session_id (נשמר בזמן יצירת ה-checkout), אחריו
    payment_intent, ולבסוף מזהה האובייקט עצמו.
    """
    metadata = obj.get("metadata") or {}
    return metadata.get("session_id") or obj.get("payment_intent") or obj.get("id")
