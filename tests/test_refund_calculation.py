from decimal import Decimal
from types import SimpleNamespace
import uuid

import pytest

from app.core.exceptions import AmountExceedsRefundable, InvalidAmount, MissingTaxInfo
from app.services.refund_calculator import OrderTotals, RefundCalculator
from app.services.tax_allocator import (
    MISSING_STATE_INFO,
    JurisdictionSource,
    TaxAllocator,
    TaxLineInput,
    TaxType,
    determine_jurisdiction,
    resolve_tax_rate,
)


def line(item_id="L1", price="118", quantity=1, rate="18", inclusive=True, name="Steel Bottle"):
    return TaxLineInput(
        item_id=item_id,
        name=name,
        price=Decimal(price),
        quantity=quantity,
        price_includes_tax=inclusive,
        tax_rate=Decimal(rate),
    )


# ==================== Jurisdiction ====================

def test_same_state_is_intrastate():
    jurisdiction = determine_jurisdiction(" Karnataka", "karnataka ")
    assert jurisdiction.is_interstate is False
    assert jurisdiction.tax_type == TaxType.CGST_SGST
    assert not jurisdiction.low_confidence


def test_different_states_are_interstate():
    jurisdiction = determine_jurisdiction("Karnataka", "Maharashtra")
    assert jurisdiction.is_interstate is True
    assert jurisdiction.tax_type == TaxType.IGST


def test_order_flag_wins_over_state_comparison():
    jurisdiction = determine_jurisdiction("Karnataka", "Karnataka", explicit_interstate=True)
    assert jurisdiction.is_interstate is True
    assert jurisdiction.source == JurisdictionSource.ORDER_FLAG


def test_missing_state_falls_back_to_intrastate_with_warning():
    jurisdiction = determine_jurisdiction("Karnataka", None)
    assert jurisdiction.is_interstate is False
    assert jurisdiction.low_confidence
    assert jurisdiction.warning == MISSING_STATE_INFO


# ==================== Tax split ====================

def test_intrastate_inclusive_split():
    allocation = TaxAllocator().allocate([line()], determine_jurisdiction("KA", "KA"))
    tax_line = allocation.lines[0]
    assert tax_line.taxable_value == Decimal("100")
    assert tax_line.cgst == Decimal("9")
    assert tax_line.sgst == Decimal("9")
    assert tax_line.igst == Decimal("0")


def test_interstate_inclusive_split():
    allocation = TaxAllocator().allocate([line()], determine_jurisdiction("KA", "MH"))
    tax_line = allocation.lines[0]
    assert tax_line.taxable_value == Decimal("100")
    assert tax_line.igst == Decimal("18")
    assert tax_line.cgst == Decimal("0")
    assert tax_line.sgst == Decimal("0")


def test_exclusive_price_adds_tax_on_top():
    allocation = TaxAllocator().allocate(
        [line(price="50", quantity=2, inclusive=False)],
        determine_jurisdiction("KA", "KA"),
    )
    tax_line = allocation.lines[0]
    assert tax_line.taxable_value == Decimal("100")
    assert tax_line.tax_amount == Decimal("18")
    assert tax_line.gross_total == Decimal("118")


def test_zero_rate_line_has_no_tax():
    allocation = TaxAllocator().allocate([line(rate="0")], determine_jurisdiction("KA", "KA"))
    assert allocation.lines[0].tax_amount == Decimal("0")
    assert allocation.lines[0].taxable_value == Decimal("118")


# ==================== Discount allocation ====================

def test_discount_is_spread_by_line_gross():
    calculator = RefundCalculator(delivery_refundable=False)
    summary = calculator.calculate_lines(
        [line(price="200", rate="18")],
        determine_jurisdiction("KA", "KA"),
        OrderTotals(subtotal_with_tax=Decimal("1000"), discount_amount=Decimal("100")),
    )
    refund_line = summary.lines[0]
    assert refund_line.gross_total == Decimal("200.00")
    assert refund_line.discount_share == Decimal("20.00")
    assert refund_line.refundable_amount == Decimal("180.00")
    assert summary.total_refund == Decimal("180")


def test_delivery_share_only_when_refundable():
    totals = OrderTotals(
        subtotal_with_tax=Decimal("1000"),
        discount_amount=Decimal("0"),
        delivery_charge=Decimal("50"),
    )
    jurisdiction = determine_jurisdiction("KA", "KA")

    without = RefundCalculator(delivery_refundable=False).calculate_lines([line(price="200")], jurisdiction, totals)
    assert without.delivery_refund == Decimal("0.00")
    assert without.total_refund == Decimal("200")

    with_delivery = RefundCalculator(delivery_refundable=True).calculate_lines([line(price="200")], jurisdiction, totals)
    assert with_delivery.delivery_refund == Decimal("10.00")
    assert with_delivery.total_refund == Decimal("210")


def test_total_is_rounded_from_unrounded_aggregate():
    # Each line refunds 33.495 (shown as 33.50); the total is 100.485, not 100.50
    totals = OrderTotals(subtotal_with_tax=Decimal("335"), discount_amount=Decimal("0.05"))
    summary = RefundCalculator(delivery_refundable=False).calculate_lines(
        [line(item_id=f"L{i}", price="33.50", rate="0") for i in range(3)],
        determine_jurisdiction("KA", "KA"),
        totals,
    )
    assert all(refund_line.refundable_amount == Decimal("33.50") for refund_line in summary.lines)
    assert summary.total_refund == Decimal("100")


def test_cgst_and_sgst_add_up_to_rounded_tax():
    # 0.25 at 20% carries 0.05 tax: 0.025 each way before rounding
    summary = RefundCalculator(delivery_refundable=False).calculate_lines(
        [line(price="0.25", rate="20", inclusive=False)],
        determine_jurisdiction("KA", "KA"),
        OrderTotals(subtotal_with_tax=Decimal("0.30"), discount_amount=Decimal("0")),
    )
    refund_line = summary.lines[0]
    assert refund_line.tax_amount == Decimal("0.05")
    assert refund_line.cgst == Decimal("0.03")
    assert refund_line.sgst == Decimal("0.02")
    assert refund_line.cgst + refund_line.sgst == refund_line.tax_amount
    assert refund_line.igst == Decimal("0.00")


# ==================== Amount policies ====================

def _summary(total="180"):
    calculator = RefundCalculator(delivery_refundable=False)
    return calculator.calculate_lines(
        [line(price=total, rate="18")],
        determine_jurisdiction("KA", "KA"),
        OrderTotals(subtotal_with_tax=Decimal(total)),
    )


def test_partial_amount_up_to_total_is_accepted():
    summary = _summary()
    assert RefundCalculator.validate_partial_amount(Decimal("180"), summary) == Decimal("180")
    assert RefundCalculator.validate_partial_amount("50", summary) == Decimal("50")


def test_partial_amount_above_total_is_rejected():
    with pytest.raises(AmountExceedsRefundable):
        RefundCalculator.validate_partial_amount(Decimal("181"), _summary())


@pytest.mark.parametrize("amount", [None, Decimal("0"), Decimal("-5"), Decimal("10.50")])
def test_invalid_partial_amounts(amount):
    with pytest.raises(InvalidAmount):
        RefundCalculator.validate_partial_amount(amount, _summary())


# ==================== Tax resolution ====================

def _return_item(**overrides):
    values = dict(
        id=uuid.uuid4(),
        order_item_id=None,
        product_id=uuid.uuid4(),
        name="Steel Bottle",
        tax_percentage=None,
        tax_name=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _order_item(**overrides):
    values = dict(id=uuid.uuid4(), product_id=uuid.uuid4(), product_name="Steel Bottle", tax_rate=None, tax_name=None)
    values.update(overrides)
    return SimpleNamespace(**values)


def test_return_line_rate_takes_priority():
    item = _return_item(tax_percentage=Decimal("12"))
    order_items = [_order_item(tax_rate=Decimal("18"))]
    assert resolve_tax_rate(item, order_items).rate == Decimal("12")


def test_falls_back_to_order_item_by_id_then_product_then_name():
    by_id = _order_item(tax_rate=Decimal("5"))
    by_product = _order_item(tax_rate=Decimal("12"), product_name="Other")
    by_name = _order_item(tax_rate=Decimal("28"), product_name="  steel bottle ")

    item = _return_item(order_item_id=by_id.id, product_id=by_product.product_id)
    assert resolve_tax_rate(item, [by_name, by_product, by_id]).rate == Decimal("5")

    item = _return_item(product_id=by_product.product_id)
    assert resolve_tax_rate(item, [by_name, by_product]).rate == Decimal("12")

    item = _return_item()
    resolution = resolve_tax_rate(item, [by_name])
    assert resolution.rate == Decimal("28")
    assert resolution.source == "order_item_name"


def test_zero_rate_is_a_configured_rate():
    item = _return_item(tax_percentage=Decimal("0"))
    assert resolve_tax_rate(item, []).rate == Decimal("0")


def test_unresolvable_rate_raises_missing_tax_info():
    with pytest.raises(MissingTaxInfo):
        resolve_tax_rate(_return_item(), [_order_item(product_name="Something else")])
