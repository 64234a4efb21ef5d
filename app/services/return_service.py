"""
Return Service

Orchestrates the return lifecycle on top of the state machine, the pickup
OTP service and the refund calculator:

- Customer return submission against a delivered order
- Locked, version-checked status transitions
- Refund amounts computed server-side and bounded
- Domain events published after commit
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    AmountExceedsRefundable,
    ConflictingUpdate,
    Forbidden,
    InvalidAmount,
    InvalidReturnRequest,
    NotEligible,
    NotFound,
)
from app.core.permissions import Actor, PermissionChecker
from app.db_types import ensure_aware, utcnow
from app.models.return_request import ReturnItem, ReturnRequest
from app.services.events import EventDispatcher, ReturnStatusChanged, dispatcher as default_dispatcher
from app.services.pickup_otp_service import IssuedPickupCode, PickupOtpService
from app.services.refund_calculator import RefundCalculator, RefundSummary
from app.services.return_repository import ReturnRepository, generate_return_id
from app.services.return_state_machine import (
    ReturnStateMachine,
    ReturnStatus,
    allowed_transitions,
    initial_history_entry,
)
from app.services.tax_allocator import ZERO, to_decimal

logger = logging.getLogger(__name__)


@dataclass
class TransitionOutcome:
    return_request: ReturnRequest
    from_status: str
    issued_code: Optional[IssuedPickupCode] = None
    summary: Optional[RefundSummary] = None


class ReturnService:
    """
    Service for return request operations.
    """

    def __init__(
        self,
        db: AsyncSession,
        calculator: Optional[RefundCalculator] = None,
        events: Optional[EventDispatcher] = None,
    ):
        self.db = db
        self.repository = ReturnRepository(db)
        self.machine = ReturnStateMachine()
        self.calculator = calculator or RefundCalculator()
        self.otp = PickupOtpService(db, self.repository)
        self.events = events or default_dispatcher

    # ==================== Helpers ====================

    async def _load_for_update(
        self,
        return_id: str,
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        return_request = await self.repository.get(return_id, for_update=True)
        if expected_version is not None and return_request.version != expected_version:
            raise ConflictingUpdate(
                f"Return {return_request.return_id} is at version {return_request.version}, "
                f"expected {expected_version}. Reload and retry.",
                {"current_version": return_request.version},
            )
        return return_request

    async def _publish(self, return_request: ReturnRequest, from_status: Optional[str], actor: Actor,
                       refunded_amount: Optional[Decimal] = None) -> None:
        await self.events.dispatch(ReturnStatusChanged(
            return_id=return_request.return_id,
            order_id=str(return_request.order_id),
            from_status=from_status,
            to_status=return_request.status,
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
            refunded_amount=refunded_amount,
        ))

    # ==================== Reads ====================

    async def get_return(self, return_id: str, actor: Actor) -> ReturnRequest:
        return_request = await self.repository.get(return_id)
        if not PermissionChecker(actor).can_view(return_request):
            raise Forbidden(f"{actor} may not view return {return_request.return_id}")
        return return_request

    async def list_returns(
        self,
        actor: Actor,
        status: Optional[str] = None,
        assigned_agent_id: Optional[str] = None,
        order_id: Optional[uuid.UUID] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[ReturnRequest], int]:
        """List returns visible to the actor."""
        customer_id = None
        if actor.is_customer:
            try:
                customer_id = uuid.UUID(actor.actor_id)
            except ValueError:
                return [], 0
        elif actor.is_delivery_agent:
            assigned_agent_id = actor.actor_id

        return await self.repository.list(
            status=status,
            assigned_agent_id=assigned_agent_id,
            order_id=order_id,
            customer_id=customer_id,
            skip=skip,
            limit=limit,
        )

    async def stats(self, actor: Actor) -> Dict[str, int]:
        if not actor.is_staff:
            raise Forbidden("Only staff can view return statistics")
        counts = await self.repository.stats()
        return {status: counts.get(status, 0) for status in ReturnStatus.all()}

    async def allowed_transitions(self, return_id: str, actor: Actor) -> List[str]:
        return_request = await self.get_return(return_id, actor)
        if actor.is_delivery_agent and not PermissionChecker(actor).is_assigned_agent(return_request):
            return []
        return allowed_transitions(return_request.status, actor.role)

    async def refund_summary(
        self,
        return_id: str,
        actor: Actor,
        allow_missing_tax: bool = False,
    ) -> RefundSummary:
        """Preview of the refundable amount for the return's pending lines."""
        return_request = await self.get_return(return_id, actor)
        return self.calculator.calculate(return_request, return_request.order, allow_missing_tax)

    # ==================== Create ====================

    async def create_return(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        items: Sequence[Dict[str, Any]],
        refund_preference: Optional[dict] = None,
        note: Optional[str] = None,
    ) -> ReturnRequest:
        """
        Submit a return against a delivered order.

        Each entry in ``items`` carries order_item_id, quantity, return_reason
        and optionally return_reason_details.
        """
        if not (actor.is_customer or actor.is_staff):
            raise Forbidden(f"{actor} may not create returns")

        order = await self.repository.get_order(order_id)
        if actor.is_customer and str(order.customer_id) != actor.actor_id:
            raise Forbidden(f"Order {order.order_number} does not belong to {actor}")

        if not order.is_returnable:
            raise NotEligible(
                f"Order {order.order_number} is '{order.status}', only delivered orders can be returned"
            )

        delivered_at = ensure_aware(order.delivered_at)
        now = utcnow()
        if delivered_at is None or now > delivered_at + timedelta(days=settings.RETURN_WINDOW_DAYS):
            raise NotEligible(
                f"Return window of {settings.RETURN_WINDOW_DAYS} days has passed for order {order.order_number}"
            )

        if not items:
            raise InvalidReturnRequest("At least one item is required")

        order_items = {oi.id: oi for oi in order.items}
        claimed = await self.repository.claimed_order_item_ids(order.id)
        seen = set()

        return_request = ReturnRequest(
            return_id=generate_return_id(now),
            order=order,
            customer_id=order.customer_id,
            status=ReturnStatus.REQUESTED,
            refund_preference=refund_preference,
            refunded_amount=Decimal("0.00"),
            pickup_otp_attempts_remaining=0,
            requested_at=now,
            items=[],
            status_history=[],
        )

        for line_number, entry in enumerate(items, start=1):
            try:
                order_item_id = uuid.UUID(str(entry["order_item_id"]))
            except ValueError:
                raise InvalidReturnRequest(f"Invalid order item id {entry['order_item_id']!r}")
            order_item = order_items.get(order_item_id)
            if order_item is None:
                raise InvalidReturnRequest(f"Item {order_item_id} is not part of order {order.order_number}")
            if order_item_id in seen:
                raise InvalidReturnRequest(f"Item {order_item.product_name} is listed more than once")
            if order_item_id in claimed:
                raise InvalidReturnRequest(
                    f"Item {order_item.product_name} is already part of another return"
                )
            quantity = int(entry["quantity"])
            if quantity < 1 or quantity > order_item.quantity:
                raise InvalidReturnRequest(
                    f"Return quantity for {order_item.product_name} must be between 1 and {order_item.quantity}"
                )
            seen.add(order_item_id)

            return_request.items.append(ReturnItem(
                line_number=line_number,
                order_item_id=order_item.id,
                product_id=order_item.product_id,
                name=order_item.product_name,
                price=order_item.unit_price,
                quantity=quantity,
                price_includes_tax=order_item.price_includes_tax,
                tax_name=order_item.tax_name,
                tax_percentage=order_item.tax_rate,
                return_reason=entry["return_reason"],
                return_reason_details=entry.get("return_reason_details"),
                return_status="pending",
            ))

        return_request.status_history.append(initial_history_entry(actor, note))
        self.repository.add(return_request)
        await self.repository.commit()

        logger.info(
            f"Return {return_request.return_id} requested for order {order.order_number} "
            f"({len(return_request.items)} items) by {actor}"
        )
        await self._publish(return_request, None, actor)
        return return_request

    # ==================== Transitions ====================

    async def transition(
        self,
        return_id: str,
        target_status: str,
        actor: Actor,
        note: Optional[str] = None,
        assigned_pickup_agent: Optional[dict] = None,
        refunded_amount: Optional[Decimal] = None,
        expected_version: Optional[int] = None,
        allow_missing_tax: bool = False,
    ) -> TransitionOutcome:
        """
        Move a return to ``target_status``.

        Refund targets compute the amount from the persisted order data:
        a full refund uses the calculated total verbatim, a partial refund
        takes a whole-rupee amount no larger than that total.
        """
        return_request = await self._load_for_update(return_id, expected_version)
        from_status = return_request.status

        self.machine.validate(return_request, target_status, actor, assigned_pickup_agent)

        summary = None
        amount = None
        if target_status == ReturnStatus.REFUNDED:
            if refunded_amount is not None:
                raise InvalidAmount("A full refund uses the calculated amount; do not supply one")
            summary = self.calculator.calculate(return_request, return_request.order, allow_missing_tax)
            amount = self.calculator.full_refund_amount(summary)
            self._mark_lines_refunded(
                return_request,
                {line.item_id: line.refundable_amount for line in summary.lines},
            )
        elif target_status == ReturnStatus.PARTIALLY_REFUNDED:
            summary = self.calculator.calculate(return_request, return_request.order, allow_missing_tax)
            amount = self.calculator.validate_partial_amount(refunded_amount, summary)

        self.machine.transition(
            return_request,
            target_status,
            actor,
            note=note,
            assigned_agent=assigned_pickup_agent,
            refunded_amount=amount,
        )

        issued = None
        if target_status == ReturnStatus.PICKUP_ASSIGNED and settings.OTP_AUTO_ISSUE_ON_ASSIGN:
            issued = self.otp.issue(return_request)

        await self.repository.commit()

        logger.info(
            f"Return {return_request.return_id}: {from_status} -> {target_status} by {actor}"
            + (f", refunded {amount}" if amount is not None else "")
        )
        await self._publish(return_request, from_status, actor, amount)
        return TransitionOutcome(
            return_request=return_request,
            from_status=from_status,
            issued_code=issued,
            summary=summary,
        )

    def _mark_lines_refunded(self, return_request: ReturnRequest, amounts: Dict[str, Decimal]) -> None:
        now = utcnow()
        for item in return_request.pending_items:
            item.refund_amount = amounts.get(str(item.id), ZERO)
            item.return_status = "refunded"
            item.refunded_at = now

    # ==================== Manual partial refund ====================

    async def process_refund(
        self,
        return_id: str,
        actor: Actor,
        items: Sequence[Dict[str, Any]],
        refund_method: str,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> TransitionOutcome:
        """
        Refund chosen lines for chosen amounts and close the return as
        partially refunded.

        Each line amount is bounded by that line's calculated refundable
        amount; the total must be a whole-rupee amount within the
        calculated total.
        """
        return_request = await self._load_for_update(return_id, expected_version)
        from_status = return_request.status
        target_status = ReturnStatus.PARTIALLY_REFUNDED

        self.machine.validate(return_request, target_status, actor)

        if not items:
            raise InvalidAmount("At least one line is required for a refund")

        summary = self.calculator.calculate(return_request, return_request.order)
        pending = {str(item.id): item for item in return_request.pending_items}
        all_items = {str(item.id) for item in return_request.items}

        amounts: Dict[str, Decimal] = {}
        for entry in items:
            item_id = str(entry["item_id"])
            if item_id not in all_items:
                raise NotFound(f"Item {item_id} is not part of return {return_request.return_id}")
            if item_id not in pending:
                raise NotEligible(f"Item {item_id} has already been refunded")
            if item_id in amounts:
                raise InvalidAmount(f"Item {item_id} is listed more than once")

            value = to_decimal(entry["refund_amount"])
            if value <= ZERO:
                raise InvalidAmount(f"Refund amount for item {item_id} must be positive")
            line = summary.line(item_id)
            if value > line.refundable_amount:
                raise AmountExceedsRefundable(
                    f"Refund amount {value} exceeds refundable {line.refundable_amount} for {line.name}",
                    {"item_id": item_id, "requested": str(value), "refundable": str(line.refundable_amount)},
                )
            amounts[item_id] = value

        total = self.calculator.validate_partial_amount(sum(amounts.values(), ZERO), summary)

        now = utcnow()
        for item_id, value in amounts.items():
            item = pending[item_id]
            item.refund_amount = value
            item.return_status = "refunded"
            item.refunded_at = now
        return_request.refund_method = refund_method

        self.machine.transition(return_request, target_status, actor, note=note, refunded_amount=total, now=now)
        await self.repository.commit()

        logger.info(
            f"Return {return_request.return_id}: partial refund {total} via {refund_method} "
            f"for {len(amounts)} lines by {actor}"
        )
        await self._publish(return_request, from_status, actor, total)
        return TransitionOutcome(return_request=return_request, from_status=from_status, summary=summary)
