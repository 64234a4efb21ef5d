"""
Order snapshot models.

The order and catalog store is owned by the commerce platform. These tables
hold the read-only copy of what the returns flow needs from it: who placed
the order, where it shipped from and to, and the per-line tax configuration
and order-level discount/delivery totals used when a refund is re-derived.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, MoneyType, utcnow


class OrderStatus(str, Enum):
    """Order statuses relevant to returns."""
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    PARTIALLY_DELIVERED = "PARTIALLY_DELIVERED"
    CANCELLED = "CANCELLED"

    @classmethod
    def returnable(cls) -> List[str]:
        return [cls.DELIVERED.value, cls.PARTIALLY_DELIVERED.value]


class Order(Base):
    """
    Order header as sold.
    Pricing totals are persisted by the order service and never recomputed here.
    """
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Order Identification
    order_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True
    )

    # Customer
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True
    )
    customer_phone: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="Phone the pickup OTP is sent to"
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(50),
        default=OrderStatus.CONFIRMED.value,
        nullable=False,
        index=True
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    # Place of supply
    warehouse_state: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="State of the fulfilling warehouse"
    )
    delivery_state: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="State of the delivery address"
    )
    is_interstate: Mapped[Optional[bool]] = mapped_column(
        Boolean,
        nullable=True,
        comment="Explicit interstate flag recorded at checkout; overrides state comparison"
    )

    # Pricing (all in INR)
    subtotal: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Sum of item taxable values"
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=Decimal("0.00"),
        nullable=False
    )
    discount_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=Decimal("0.00"),
        nullable=False
    )
    shipping_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=Decimal("0.00"),
        nullable=False
    )
    discount_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    # Relationships
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.created_at",
    )

    @property
    def subtotal_with_tax(self) -> Decimal:
        """Order value the discount was applied against."""
        return (self.subtotal or Decimal("0")) + (self.tax_amount or Decimal("0"))

    @property
    def is_returnable(self) -> bool:
        return self.status in OrderStatus.returnable()

    def __repr__(self) -> str:
        return f"<Order(number='{self.order_number}', status='{self.status}')>"


class OrderItem(Base):
    """Order line as sold, including the tax configuration applied at checkout."""
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False
    )

    # Product Details (snapshot at order time)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Quantity and Pricing
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    price_includes_tax: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False
    )

    # Tax
    tax_name: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tax_rate: Mapped[Optional[Decimal]] = mapped_column(
        MoneyType,
        nullable=True,
        comment="GST rate percentage; NULL when the catalog had no tax configured"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    # Relationships
    order: Mapped["Order"] = relationship("Order", back_populates="items")

    def __repr__(self) -> str:
        return f"<OrderItem(product='{self.product_name}', qty={self.quantity})>"
