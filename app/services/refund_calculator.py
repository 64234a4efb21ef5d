"""
Refund calculation for return requests.

Builds on the tax allocation of the returned lines and spreads the order's
discount across them in proportion to their gross value:

    discount_ratio   = order discount / order subtotal-with-tax
    discount_share   = line gross x discount_ratio
    refundable       = line gross - discount_share (+ delivery share if refundable)

Per-line figures are rounded to paise for presentation. The final total is
rounded to the whole rupee from the unrounded aggregate.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence

from app.config import settings
from app.core.exceptions import AmountExceedsRefundable, InvalidAmount, MissingTaxInfo
from app.services.tax_allocator import (
    MISSING_TAX_INFO,
    ZERO,
    Jurisdiction,
    TaxAllocation,
    TaxAllocator,
    TaxLineInput,
    TaxType,
    determine_jurisdiction,
    resolve_tax_rate,
    round_money,
    round_whole,
    to_decimal,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderTotals:
    """Order-level figures the refund is proportioned against."""
    subtotal_with_tax: Decimal
    discount_amount: Decimal = ZERO
    delivery_charge: Decimal = ZERO

    @property
    def discount_ratio(self) -> Decimal:
        if self.subtotal_with_tax <= ZERO:
            return ZERO
        return self.discount_amount / self.subtotal_with_tax

    @property
    def delivery_ratio(self) -> Decimal:
        if self.subtotal_with_tax <= ZERO:
            return ZERO
        return self.delivery_charge / self.subtotal_with_tax


@dataclass(frozen=True)
class RefundLine:
    """Refund breakdown for one returned line, rounded to paise."""
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


@dataclass
class RefundSummary:
    """Authoritative refundable amount for a return."""
    tax_type: TaxType
    is_interstate: bool
    lines: List[RefundLine]
    items_total_gross: Decimal
    items_discount_total: Decimal
    delivery_refund: Decimal
    total_refund: Decimal
    currency: str = "INR"
    warnings: List[str] = field(default_factory=list)

    @property
    def low_confidence(self) -> bool:
        return bool(self.warnings)

    def line(self, item_id: str) -> Optional[RefundLine]:
        return next((line for line in self.lines if line.item_id == str(item_id)), None)


class RefundCalculator:
    """
    Pure refund computation over persisted inputs.
    Holds no shared state; safe to call from any instance.
    """

    def __init__(
        self,
        allocator: Optional[TaxAllocator] = None,
        delivery_refundable: Optional[bool] = None,
        currency: Optional[str] = None,
    ):
        self.allocator = allocator or TaxAllocator()
        self.delivery_refundable = (
            settings.DELIVERY_REFUNDABLE if delivery_refundable is None else delivery_refundable
        )
        self.currency = currency or settings.REFUND_CURRENCY

    # ------------------------------------------------------------------
    # Core computation
    # ------------------------------------------------------------------

    def summarize(
        self,
        allocation: TaxAllocation,
        totals: OrderTotals,
    ) -> RefundSummary:
        """Apply discount (and optionally delivery) allocation to a tax allocation."""
        discount_ratio = totals.discount_ratio
        delivery_ratio = totals.delivery_ratio if self.delivery_refundable else ZERO

        gross_sum = ZERO
        discount_sum = ZERO
        delivery_sum = ZERO
        lines: List[RefundLine] = []

        for tax_line in allocation.lines:
            gross = tax_line.gross_total
            discount_share = gross * discount_ratio
            delivery_share = gross * delivery_ratio
            refundable = gross - discount_share + delivery_share

            gross_sum += gross
            discount_sum += discount_share
            delivery_sum += delivery_share

            # Round the tax once; SGST takes whatever CGST rounding leaves
            tax_amount = round_money(tax_line.tax_amount)
            cgst = round_money(tax_line.cgst)
            igst = round_money(tax_line.igst)
            sgst = tax_amount - cgst - igst

            lines.append(RefundLine(
                item_id=tax_line.item_id,
                name=tax_line.name,
                quantity=tax_line.quantity,
                tax_rate=tax_line.tax_rate,
                taxable_value=round_money(tax_line.taxable_value),
                tax_amount=tax_amount,
                cgst=cgst,
                sgst=sgst,
                igst=igst,
                gross_total=round_money(gross),
                discount_share=round_money(discount_share),
                delivery_share=round_money(delivery_share),
                refundable_amount=round_money(refundable),
            ))

        total = gross_sum - discount_sum + delivery_sum
        if total < ZERO:
            total = ZERO

        return RefundSummary(
            tax_type=allocation.jurisdiction.tax_type,
            is_interstate=allocation.jurisdiction.is_interstate,
            lines=lines,
            items_total_gross=round_money(gross_sum),
            items_discount_total=round_money(discount_sum),
            delivery_refund=round_money(delivery_sum),
            total_refund=round_whole(total),
            currency=self.currency,
            warnings=list(allocation.warnings),
        )

    def calculate_lines(
        self,
        lines: Sequence[TaxLineInput],
        jurisdiction: Jurisdiction,
        totals: OrderTotals,
    ) -> RefundSummary:
        return self.summarize(self.allocator.allocate(lines, jurisdiction), totals)

    # ------------------------------------------------------------------
    # ORM entry point
    # ------------------------------------------------------------------

    def calculate(self, return_request, order, allow_missing_tax: bool = False) -> RefundSummary:
        """
        Compute the refundable amount for the pending lines of a return.

        Raises MissingTaxInfo when a line has no resolvable rate, unless
        ``allow_missing_tax`` is set, in which case the line is computed at
        0% and the summary carries a MISSING_TAX_INFO warning.
        """
        order_items = list(order.items or [])
        jurisdiction = determine_jurisdiction(
            order.warehouse_state,
            order.delivery_state,
            order.is_interstate,
        )

        inputs: List[TaxLineInput] = []
        missing: List[str] = []
        for item in return_request.pending_items:
            try:
                resolution = resolve_tax_rate(item, order_items)
                rate, tax_name = resolution.rate, resolution.name
            except MissingTaxInfo:
                if not allow_missing_tax:
                    raise
                missing.append(item.name)
                rate, tax_name = ZERO, None

            inputs.append(TaxLineInput(
                item_id=str(item.id),
                name=item.name,
                price=to_decimal(item.price),
                quantity=item.quantity,
                price_includes_tax=item.price_includes_tax,
                tax_rate=rate,
                tax_name=tax_name,
            ))

        totals = OrderTotals(
            subtotal_with_tax=to_decimal(order.subtotal_with_tax),
            discount_amount=to_decimal(order.discount_amount),
            delivery_charge=to_decimal(order.shipping_amount),
        )
        summary = self.calculate_lines(inputs, jurisdiction, totals)

        if missing:
            summary.warnings.append(MISSING_TAX_INFO)
            logger.warning(
                f"Refund for {return_request.return_id} computed without tax for {missing}; "
                f"caller acknowledged missing tax info"
            )
        if jurisdiction.low_confidence:
            logger.warning(
                f"Refund for {return_request.return_id} is low confidence: {jurisdiction.warning}"
            )

        return summary

    # ------------------------------------------------------------------
    # Amount policies
    # ------------------------------------------------------------------

    @staticmethod
    def full_refund_amount(summary: RefundSummary) -> Decimal:
        """Full refunds use the calculator's rounded total verbatim."""
        return summary.total_refund

    @staticmethod
    def validate_partial_amount(amount, summary: RefundSummary) -> Decimal:
        """
        Partial refunds are whole-rupee amounts bounded by the computed total.
        """
        if amount is None:
            raise InvalidAmount("A refund amount is required for a partial refund")

        value = to_decimal(amount)
        if value <= ZERO:
            raise InvalidAmount(f"Refund amount must be positive, got {value}")
        if value != value.to_integral_value():
            raise InvalidAmount(f"Partial refunds must be whole-rupee amounts, got {value}")
        if value > summary.total_refund:
            raise AmountExceedsRefundable(
                f"Refund amount {value} exceeds refundable total {summary.total_refund}",
                {"requested": str(value), "refundable": str(summary.total_refund)},
            )
        return value
