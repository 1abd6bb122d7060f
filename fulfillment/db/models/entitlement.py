"""
Entitlement Model - הרשאת גישה של משתמש למוצר.

שורה אחת לכל (user_id, product_id). הענקה היא upsert, החזר כספי מכבה
את השורה (active=False) ולא מוחק אותה.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, UniqueConstraint

from fulfillment.db.database import Base


class Entitlement(Base):
    __tablename__ = "entitlements"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    product_id = Column(String(100), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)

    active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revoke_reason = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_entitlement_user_product"),
    )
