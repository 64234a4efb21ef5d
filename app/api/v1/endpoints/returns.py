"""
Return Request API Endpoints

Customer return submission, the staff/agent status workflow, pickup OTP
handling and refunds. Business rules live in the services; these handlers
only translate between HTTP and the service layer.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Query, status

from app.api.deps import DB, CurrentActor, StaffActor
from app.schemas.return_request import (
    OtpVerifyRequest,
    OtpVerifyResponse,
    PickupOtpResponse,
    RefundLineResponse,
    RefundRequest,
    RefundSummaryResponse,
    ReturnBrief,
    ReturnCreate,
    ReturnListResponse,
    ReturnResponse,
    ReturnStatsResponse,
    StatusUpdateRequest,
    TransitionsResponse,
)
from app.services.pickup_otp_service import IssuedPickupCode, PickupOtpService, send_pickup_otp_sms
from app.services.refund_calculator import RefundSummary
from app.services.return_service import ReturnService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/returns", tags=["Returns"])


# ==================== Helper Functions ====================

def schedule_pickup_sms(background_tasks: BackgroundTasks, issued: IssuedPickupCode) -> None:
    """Send the plaintext code once the response (and its transaction) is done."""
    background_tasks.add_task(send_pickup_otp_sms, issued.phone, issued.code)


def otp_response(issued: IssuedPickupCode) -> PickupOtpResponse:
    return PickupOtpResponse(
        return_id=issued.return_id,
        expires_at=issued.expires_at,
        resend_available_at=issued.resend_available_at,
        attempts_remaining=issued.attempts_remaining,
    )


def summary_response(return_id: str, summary: RefundSummary) -> RefundSummaryResponse:
    return RefundSummaryResponse(
        return_id=return_id,
        tax_type=summary.tax_type.value,
        is_interstate=summary.is_interstate,
        lines=[RefundLineResponse.model_validate(line) for line in summary.lines],
        items_total_gross=summary.items_total_gross,
        items_discount_total=summary.items_discount_total,
        delivery_refund=summary.delivery_refund,
        total_refund=summary.total_refund,
        currency=summary.currency,
        low_confidence=summary.low_confidence,
        warnings=summary.warnings,
    )


# ==================== Customer Submission ====================

@router.post("", response_model=ReturnResponse, status_code=status.HTTP_201_CREATED)
async def create_return(
    request: ReturnCreate,
    db: DB,
    actor: CurrentActor,
):
    """
    Customer submits a return for lines of a delivered order.
    Must be within the return window after delivery.
    """
    service = ReturnService(db)
    return_request = await service.create_return(
        actor=actor,
        order_id=request.order_id,
        items=[item.model_dump(mode="json") for item in request.items],
        refund_preference=request.refund_preference.model_dump(mode="json") if request.refund_preference else None,
        note=request.note,
    )
    return ReturnResponse.model_validate(return_request)


# ==================== Reads ====================

@router.get("", response_model=ReturnListResponse)
async def list_returns(
    db: DB,
    actor: CurrentActor,
    status_filter: Optional[str] = Query(None, alias="status"),
    assigned_agent_id: Optional[str] = None,
    order_id: Optional[uuid.UUID] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """
    List return requests.
    Customers see their own returns; delivery agents see returns assigned to them.
    """
    service = ReturnService(db)
    returns, total = await service.list_returns(
        actor,
        status=status_filter,
        assigned_agent_id=assigned_agent_id,
        order_id=order_id,
        skip=skip,
        limit=limit,
    )
    return ReturnListResponse(
        items=[ReturnBrief.model_validate(r) for r in returns],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/stats", response_model=ReturnStatsResponse)
async def get_return_stats(
    db: DB,
    actor: StaffActor,
):
    """Count of returns per status."""
    counts = await ReturnService(db).stats(actor)
    return ReturnStatsResponse(by_status=counts, total=sum(counts.values()))


@router.get("/{return_id}", response_model=ReturnResponse)
async def get_return(
    return_id: str,
    db: DB,
    actor: CurrentActor,
):
    return_request = await ReturnService(db).get_return(return_id, actor)
    return ReturnResponse.model_validate(return_request)


@router.get("/{return_id}/refund-summary", response_model=RefundSummaryResponse)
async def get_refund_summary(
    return_id: str,
    db: DB,
    actor: StaffActor,
    acknowledge_missing_tax: bool = False,
):
    """
    Preview the refund for the return's pending lines.
    Tax is re-derived from the order; the discount is spread by line value.
    """
    service = ReturnService(db)
    summary = await service.refund_summary(return_id, actor, allow_missing_tax=acknowledge_missing_tax)
    return_request = await service.repository.get(return_id)
    return summary_response(return_request.return_id, summary)


@router.get("/{return_id}/transitions", response_model=TransitionsResponse)
async def get_allowed_transitions(
    return_id: str,
    db: DB,
    actor: CurrentActor,
):
    """Statuses the caller may move this return to."""
    service = ReturnService(db)
    allowed = await service.allowed_transitions(return_id, actor)
    return_request = await service.repository.get(return_id)
    return TransitionsResponse(
        return_id=return_request.return_id,
        status=return_request.status,
        allowed_transitions=allowed,
    )


# ==================== Status Workflow ====================

@router.post("/{return_id}/status", response_model=ReturnResponse)
async def update_return_status(
    return_id: str,
    request: StatusUpdateRequest,
    background_tasks: BackgroundTasks,
    db: DB,
    actor: CurrentActor,
):
    """
    Move a return through its workflow.

    - pickup_assigned requires assigned_pickup_agent and sends a pickup code
    - picked_up requires a verified pickup code
    - refunded uses the calculated refund; partially_refunded takes refunded_amount
    """
    service = ReturnService(db)
    outcome = await service.transition(
        return_id,
        request.status,
        actor,
        note=request.note,
        assigned_pickup_agent=request.assigned_pickup_agent.model_dump() if request.assigned_pickup_agent else None,
        refunded_amount=request.refunded_amount,
        expected_version=request.expected_version,
        allow_missing_tax=request.acknowledge_missing_tax,
    )
    if outcome.issued_code:
        schedule_pickup_sms(background_tasks, outcome.issued_code)
    return ReturnResponse.model_validate(outcome.return_request)


@router.post("/{return_id}/refund", response_model=ReturnResponse)
async def refund_return(
    return_id: str,
    request: RefundRequest,
    db: DB,
    actor: StaffActor,
):
    """
    Refund chosen lines for chosen amounts.
    Closes the return as partially refunded.
    """
    outcome = await ReturnService(db).process_refund(
        return_id,
        actor,
        items=[item.model_dump(mode="json") for item in request.items],
        refund_method=request.refund_method.value,
        note=request.note,
        expected_version=request.expected_version,
    )
    return ReturnResponse.model_validate(outcome.return_request)


# ==================== Pickup OTP ====================

@router.post("/{return_id}/otp", response_model=PickupOtpResponse)
async def generate_pickup_otp(
    return_id: str,
    background_tasks: BackgroundTasks,
    db: DB,
    actor: CurrentActor,
):
    """Issue a pickup code and send it to the customer's phone."""
    issued = await PickupOtpService(db).generate(return_id, actor)
    schedule_pickup_sms(background_tasks, issued)
    return otp_response(issued)


@router.post("/{return_id}/otp/resend", response_model=PickupOtpResponse)
async def resend_pickup_otp(
    return_id: str,
    background_tasks: BackgroundTasks,
    db: DB,
    actor: CurrentActor,
):
    """Issue a replacement pickup code after the resend cooldown."""
    issued = await PickupOtpService(db).resend(return_id, actor)
    schedule_pickup_sms(background_tasks, issued)
    return otp_response(issued)


@router.post("/{return_id}/otp/verify", response_model=OtpVerifyResponse)
async def verify_pickup_otp(
    return_id: str,
    request: OtpVerifyRequest,
    db: DB,
    actor: CurrentActor,
):
    """Agent enters the code read out by the customer."""
    return_request = await PickupOtpService(db).verify(return_id, request.code, actor)
    return OtpVerifyResponse(
        return_id=return_request.return_id,
        verified=True,
        verified_at=return_request.pickup_otp_verified_at,
    )
