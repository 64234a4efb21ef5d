"""
Pydantic schemas for Return Requests, Pickup OTP and Refunds.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import Field

from app.schemas.base import BaseCreateSchema, BaseResponseSchema


# ==================== Enums ====================

class ReturnReason(str, Enum):
    DAMAGED = "DAMAGED"
    DEFECTIVE = "DEFECTIVE"
    WRONG_ITEM = "WRONG_ITEM"
    NOT_AS_DESCRIBED = "NOT_AS_DESCRIBED"
    CHANGED_MIND = "CHANGED_MIND"
    SIZE_FIT_ISSUE = "SIZE_FIT_ISSUE"
    QUALITY_ISSUE = "QUALITY_ISSUE"
    OTHER = "OTHER"


class RefundMethod(str, Enum):
    UPI = "upi"
    BANK = "bank"
    ORIGINAL_PAYMENT = "original_payment"
    STORE_CREDIT = "store_credit"


class RefundPreferenceMethod(str, Enum):
    """Payout channels a customer can ask for when submitting a return."""
    UPI = "upi"
    BANK = "bank"


# ==================== Create ====================

class ReturnLineCreate(BaseCreateSchema):
    order_item_id: UUID
    quantity: int = Field(..., ge=1)
    return_reason: ReturnReason
    return_reason_details: Optional[str] = Field(None, max_length=1000)


class RefundPreference(BaseCreateSchema):
    method: RefundPreferenceMethod
    details: Dict[str, str] = Field(default_factory=dict)


class ReturnCreate(BaseCreateSchema):
    """Customer return submission."""
    order_id: UUID
    items: List[ReturnLineCreate] = Field(..., min_length=1)
    refund_preference: Optional[RefundPreference] = None
    note: Optional[str] = Field(None, max_length=1000)


# ==================== Status ====================

class PickupAgent(BaseCreateSchema):
    agent_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=200)
    phone: Optional[str] = Field(None, max_length=20)


class StatusUpdateRequest(BaseCreateSchema):
    """
    Move a return to a new status.

    ``refunded_amount`` is only accepted for a partial refund; full refunds
    always use the calculated amount. ``expected_version`` is the version the
    caller last read; a request made against an older version is refused.
    """
    status: str = Field(..., min_length=1, max_length=30)
    note: Optional[str] = Field(None, max_length=1000)
    assigned_pickup_agent: Optional[PickupAgent] = None
    refunded_amount: Optional[Decimal] = None
    expected_version: int = Field(..., ge=1)
    acknowledge_missing_tax: bool = False


class TransitionsResponse(BaseResponseSchema):
    return_id: str
    status: str
    allowed_transitions: List[str]


# ==================== Pickup OTP ====================

class PickupOtpResponse(BaseResponseSchema):
    return_id: str
    expires_at: datetime
    resend_available_at: datetime
    attempts_remaining: int
    message: str = "Pickup code sent to the customer"


class OtpVerifyRequest(BaseCreateSchema):
    code: str = Field(..., min_length=4, max_length=8, pattern=r"^\d+$")


class OtpVerifyResponse(BaseResponseSchema):
    return_id: str
    verified: bool
    verified_at: Optional[datetime] = None


# ==================== Refund ====================

class RefundLineRequest(BaseCreateSchema):
    item_id: UUID
    refund_amount: Decimal


class RefundRequest(BaseCreateSchema):
    """Manual partial refund of chosen lines."""
    items: List[RefundLineRequest] = Field(..., min_length=1)
    refund_method: RefundMethod
    note: Optional[str] = Field(None, max_length=1000)
    expected_version: int = Field(..., ge=1)


class RefundLineResponse(BaseResponseSchema):
    item_id: str
    name: str
    quantity: int
    tax_rate: Decimal
    taxable_value: Decimal
    tax_amount: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    gross_total: Decimal
    discount_share: Decimal
    delivery_share: Decimal
    refundable_amount: Decimal


class RefundSummaryResponse(BaseResponseSchema):
    return_id: str
    tax_type: str
    is_interstate: bool
    lines: List[RefundLineResponse]
    items_total_gross: Decimal
    items_discount_total: Decimal
    delivery_refund: Decimal
    total_refund: Decimal
    currency: str
    low_confidence: bool
    warnings: List[str] = []


# ==================== Responses ====================

class ReturnItemResponse(BaseResponseSchema):
    id: UUID
    line_number: int
    order_item_id: Optional[UUID] = None
    product_id: UUID
    name: str
    price: Decimal
    quantity: int
    price_includes_tax: bool
    tax_name: Optional[str] = None
    tax_percentage: Optional[Decimal] = None
    return_reason: str
    return_reason_details: Optional[str] = None
    return_status: str
    refund_amount: Optional[Decimal] = None
    refunded_at: Optional[datetime] = None


class StatusHistoryResponse(BaseResponseSchema):
    sequence: int
    from_status: Optional[str] = None
    status: str
    note: Optional[str] = None
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    created_at: datetime


class ReturnResponse(BaseResponseSchema):
    id: UUID
    return_id: str
    order_id: UUID
    customer_id: UUID
    status: str
    version: int
    assigned_agent_id: Optional[str] = None
    assigned_pickup_agent: Optional[dict] = None
    refund_preference: Optional[dict] = None
    refund_method: Optional[str] = None
    refunded_amount: Decimal
    refunded_at: Optional[datetime] = None
    pickup_otp_expires_at: Optional[datetime] = None
    pickup_otp_attempts_remaining: int = 0
    pickup_otp_verified_at: Optional[datetime] = None
    requested_at: datetime
    created_at: datetime
    updated_at: datetime
    items: List[ReturnItemResponse] = []
    status_history: List[StatusHistoryResponse] = []


class ReturnBrief(BaseResponseSchema):
    id: UUID
    return_id: str
    order_id: UUID
    status: str
    version: int
    assigned_agent_id: Optional[str] = None
    refunded_amount: Decimal
    requested_at: datetime


class ReturnListResponse(BaseResponseSchema):
    items: List[ReturnBrief]
    total: int
    skip: int = 0
    limit: int = 50


class ReturnStatsResponse(BaseResponseSchema):
    by_status: Dict[str, int]
    total: int
