"""
Return Request Models

Customer return requests, the returned lines, and the append-only audit trail
of every status change.
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional, List
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, Integer, Text, ForeignKey, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.database import Base
from app.db_types import UUIDType, JSONType, MoneyType, utcnow

if TYPE_CHECKING:
    from app.models.order import Order


class ReturnRequest(Base):
    """
    A customer's request to return one or more delivered order lines.
    Mutated only through the return state machine; never deleted.
    """
    __tablename__ = "return_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # External-facing identifier
    return_id: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="Customer-facing return number"
    )

    # Related Order (owned by the order service)
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default="requested",
        index=True,
        comment="requested, approved, pickup_assigned, pickup_rejected, picked_up, received, partially_refunded, refunded, rejected"
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency counter"
    )

    # Pickup Agent (snapshot from the agent directory)
    assigned_agent_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True
    )
    assigned_pickup_agent: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="{agent_id, name, phone, assigned_at}"
    )

    # Refund
    refund_preference: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="{method: upi|bank, details}"
    )
    refund_method: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        comment="Payout channel recorded when the refund was finalized"
    )
    refunded_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        default=Decimal("0.00"),
        comment="Cumulative amount refunded"
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    # Pickup OTP (hash only, never the code)
    pickup_otp_hash: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True
    )
    pickup_otp_issued_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    pickup_otp_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    pickup_otp_attempts_remaining: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0
    )
    pickup_otp_resend_available_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    pickup_otp_verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    # Timestamps
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    # Relationships
    order: Mapped["Order"] = relationship(
        "Order",
        lazy="selectin",
    )
    items: Mapped[List["ReturnItem"]] = relationship(
        "ReturnItem",
        back_populates="return_request",
        cascade="save-update, merge",
        lazy="selectin",
        order_by="ReturnItem.line_number",
    )
    status_history: Mapped[List["ReturnStatusHistory"]] = relationship(
        "ReturnStatusHistory",
        back_populates="return_request",
        cascade="save-update, merge",
        lazy="selectin",
        order_by="ReturnStatusHistory.sequence",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def pending_items(self) -> List["ReturnItem"]:
        """Lines still eligible for refund computation."""
        return [item for item in self.items if item.return_status == "pending"]

    def __repr__(self) -> str:
        return f"<ReturnRequest(return_id='{self.return_id}', status='{self.status}')>"


class ReturnItem(Base):
    """
    One returned order line.
    Price and tax are copied from the order line when the return is requested.
    """
    __tablename__ = "return_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    return_request_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("return_requests.id"),
        nullable=False,
        index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Original Order Item
    order_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("order_items.id"),
        nullable=True,
        index=True
    )

    # Product Info (snapshot)
    product_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Pricing (as originally sold)
    price: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Unit price as originally sold"
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price_includes_tax: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True
    )
    tax_name: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tax_percentage: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)

    return_reason: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="DAMAGED, DEFECTIVE, WRONG_ITEM, NOT_AS_DESCRIBED, CHANGED_MIND, SIZE_FIT_ISSUE, QUALITY_ISSUE, OTHER"
    )
    return_reason_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Refund
    return_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="pending, refunded"
    )
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(
        MoneyType,
        nullable=True,
        comment="Set once when the line is refunded"
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    # Relationships
    return_request: Mapped["ReturnRequest"] = relationship(
        "ReturnRequest",
        back_populates="items"
    )

    @validates("refund_amount")
    def _refund_amount_write_once(self, key, value):
        if self.refund_amount is not None and value != self.refund_amount:
            raise ValueError(f"Refund amount for line {self.id} is already recorded")
        return value

    def __repr__(self) -> str:
        return f"<ReturnItem(name='{self.name}', qty={self.quantity}, status='{self.return_status}')>"


class ReturnStatusHistory(Base):
    """
    Append-only audit trail of status changes for a return request.
    """
    __tablename__ = "return_status_history"
    __table_args__ = (
        UniqueConstraint("return_request_id", "sequence", name="uq_return_status_history_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    return_request_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("return_requests.id"),
        nullable=False,
        index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="User who made the change"
    )
    actor_role: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    # Relationships
    return_request: Mapped["ReturnRequest"] = relationship(
        "ReturnRequest",
        back_populates="status_history"
    )

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    def __repr__(self) -> str:
        return f"<ReturnStatusHistory(from='{self.from_status}', to='{self.status}')>"


@event.listens_for(ReturnStatusHistory, "before_update")
def _reject_history_update(mapper, connection, target):
    raise ValueError("Return status history entries are immutable")


@event.listens_for(ReturnStatusHistory, "before_delete")
def _reject_history_delete(mapper, connection, target):
    raise ValueError("Return status history entries cannot be deleted")
