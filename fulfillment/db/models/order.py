"""
Order Model
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from fulfillment.db.database import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"


class Order(Base):
    """Checkout order, created before payment and fulfilled by webhook"""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)

    user_id = Column(String(100), nullable=False, index=True)
    customer_email = Column(String(255), nullable=False)
    customer_name = Column(String(255), nullable=True)

    amount_in_cents = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False, default="usd")

    provider_session_id = Column(String(255), unique=True, nullable=False)
    provider_payment_intent_id = Column(String(255), unique=True, nullable=True)

    fulfilled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
    )


class OrderItem(Base):
    """Product purchased in an order"""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(100), nullable=False)
    product_name = Column(String(255), nullable=False)
    amount_in_cents = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
