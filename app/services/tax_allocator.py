"""
GST allocation for returned lines.

Re-derives, at refund time, the taxable value and the CGST/SGST or IGST split
of each returned line from the price it was sold at:

- Price inclusive of tax: taxable = price x qty / (1 + rate/100)
- Price exclusive of tax: taxable = price x qty
- Intra-state supply: CGST = SGST = tax / 2
- Inter-state supply: IGST = tax

All arithmetic uses Decimal at full precision; rounding happens only when
values are presented (see ``round_money``).
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from app.core.exceptions import MissingTaxInfo


logger = logging.getLogger(__name__)


ZERO = Decimal("0")
HUNDRED = Decimal("100")
TWO = Decimal("2")

# Warning codes attached to computations that proceeded on incomplete data
MISSING_STATE_INFO = "MISSING_STATE_INFO"
MISSING_TAX_INFO = "MISSING_TAX_INFO"


def round_money(value: Decimal) -> Decimal:
    """Round to paise (2 decimal places), half-up."""
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def round_whole(value: Decimal) -> Decimal:
    """Round to the nearest whole rupee, half-up."""
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class TaxType(str, Enum):
    CGST_SGST = "CGST_SGST"
    IGST = "IGST"

    @property
    def display_name(self) -> str:
        return "IGST" if self == TaxType.IGST else "CGST + SGST"


class JurisdictionSource(str, Enum):
    ORDER_FLAG = "order_flag"
    STATE_COMPARISON = "state_comparison"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class Jurisdiction:
    """Outcome of the interstate determination."""
    is_interstate: bool
    source: JurisdictionSource
    warning: Optional[str] = None

    @property
    def tax_type(self) -> TaxType:
        return TaxType.IGST if self.is_interstate else TaxType.CGST_SGST

    @property
    def low_confidence(self) -> bool:
        return self.source == JurisdictionSource.FALLBACK


def _normalize_state(state: Optional[str]) -> str:
    return (state or "").strip().lower()


def determine_jurisdiction(
    warehouse_state: Optional[str],
    delivery_state: Optional[str],
    explicit_interstate: Optional[bool] = None,
) -> Jurisdiction:
    """
    Decide between IGST and CGST+SGST treatment.

    An interstate flag recorded on the order wins. Otherwise the warehouse and
    delivery states are compared (trimmed, case-insensitive). When either
    state is missing the supply is treated as intra-state and flagged.
    """
    if explicit_interstate is not None:
        return Jurisdiction(
            is_interstate=bool(explicit_interstate),
            source=JurisdictionSource.ORDER_FLAG,
        )

    origin = _normalize_state(warehouse_state)
    destination = _normalize_state(delivery_state)

    if not origin or not destination:
        logger.warning(
            f"State info missing (warehouse={warehouse_state!r}, delivery={delivery_state!r}); "
            f"falling back to intra-state CGST+SGST, low confidence"
        )
        return Jurisdiction(
            is_interstate=False,
            source=JurisdictionSource.FALLBACK,
            warning=MISSING_STATE_INFO,
        )

    return Jurisdiction(
        is_interstate=origin != destination,
        source=JurisdictionSource.STATE_COMPARISON,
    )


@dataclass(frozen=True)
class TaxResolution:
    """A tax rate and where it was found."""
    rate: Decimal
    name: Optional[str]
    source: str


def resolve_tax_rate(return_item, order_items: Sequence = ()) -> TaxResolution:
    """
    Find the GST rate for a returned line.

    Priority:
        1. the rate copied onto the return line
        2. the order line with the same order_item_id
        3. an order line with the same product_id
        4. an order line with the same name (case-insensitive, trimmed)

    A configured rate of 0 is a valid (exempt) rate. Raises MissingTaxInfo
    when none of the sources carries a rate.
    """
    if return_item.tax_percentage is not None:
        return TaxResolution(
            rate=to_decimal(return_item.tax_percentage),
            name=return_item.tax_name,
            source="return_item",
        )

    def _from(order_item, source: str) -> Optional[TaxResolution]:
        if order_item is None or order_item.tax_rate is None:
            return None
        return TaxResolution(rate=to_decimal(order_item.tax_rate), name=order_item.tax_name, source=source)

    order_item_id = getattr(return_item, "order_item_id", None)
    if order_item_id is not None:
        match = next((oi for oi in order_items if oi.id == order_item_id), None)
        resolved = _from(match, "order_item")
        if resolved:
            return resolved

    match = next(
        (oi for oi in order_items if oi.product_id == return_item.product_id and oi.tax_rate is not None),
        None,
    )
    resolved = _from(match, "order_item_product")
    if resolved:
        return resolved

    wanted = (return_item.name or "").strip().lower()
    if wanted:
        match = next(
            (
                oi for oi in order_items
                if (oi.product_name or "").strip().lower() == wanted and oi.tax_rate is not None
            ),
            None,
        )
        resolved = _from(match, "order_item_name")
        if resolved:
            return resolved

    raise MissingTaxInfo(
        f"No tax rate configured for '{return_item.name}'",
        {"item_id": str(return_item.id), "product_id": str(return_item.product_id)},
    )


@dataclass(frozen=True)
class TaxLineInput:
    """Pricing of one returned line as originally sold."""
    item_id: str
    name: str
    price: Decimal
    quantity: int
    price_includes_tax: bool
    tax_rate: Decimal
    tax_name: Optional[str] = None


@dataclass(frozen=True)
class TaxLine:
    """Unrounded tax breakdown of one returned line."""
    item_id: str
    name: str
    quantity: int
    tax_rate: Decimal
    taxable_value: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal

    @property
    def tax_amount(self) -> Decimal:
        return self.cgst + self.sgst + self.igst

    @property
    def gross_total(self) -> Decimal:
        return self.taxable_value + self.tax_amount


@dataclass
class TaxAllocation:
    """Tax breakdown for a set of returned lines."""
    jurisdiction: Jurisdiction
    lines: List[TaxLine]
    warnings: List[str] = field(default_factory=list)

    @property
    def taxable_total(self) -> Decimal:
        return sum((line.taxable_value for line in self.lines), ZERO)

    @property
    def cgst_total(self) -> Decimal:
        return sum((line.cgst for line in self.lines), ZERO)

    @property
    def sgst_total(self) -> Decimal:
        return sum((line.sgst for line in self.lines), ZERO)

    @property
    def igst_total(self) -> Decimal:
        return sum((line.igst for line in self.lines), ZERO)

    @property
    def gross_total(self) -> Decimal:
        return sum((line.gross_total for line in self.lines), ZERO)


class TaxAllocator:
    """Computes taxable value and GST split per returned line."""

    def allocate_line(self, line: TaxLineInput, jurisdiction: Jurisdiction) -> TaxLine:
        rate = to_decimal(line.tax_rate)
        line_total = to_decimal(line.price) * Decimal(line.quantity)

        if rate == ZERO:
            taxable_value = line_total
            tax_amount = ZERO
        elif line.price_includes_tax:
            taxable_value = line_total / (1 + rate / HUNDRED)
            tax_amount = line_total - taxable_value
        else:
            taxable_value = line_total
            tax_amount = taxable_value * rate / HUNDRED

        if jurisdiction.is_interstate:
            cgst = sgst = ZERO
            igst = tax_amount
        else:
            cgst = sgst = tax_amount / TWO
            igst = ZERO

        return TaxLine(
            item_id=line.item_id,
            name=line.name,
            quantity=line.quantity,
            tax_rate=rate,
            taxable_value=taxable_value,
            cgst=cgst,
            sgst=sgst,
            igst=igst,
        )

    def allocate(self, lines: Iterable[TaxLineInput], jurisdiction: Jurisdiction) -> TaxAllocation:
        allocation = TaxAllocation(
            jurisdiction=jurisdiction,
            lines=[self.allocate_line(line, jurisdiction) for line in lines],
        )
        if jurisdiction.warning:
            allocation.warnings.append(jurisdiction.warning)
        return allocation
