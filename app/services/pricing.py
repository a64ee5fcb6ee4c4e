"""
Quote Pricing Service
Computes a quote's monetary totals from its line items and pricing inputs:
- subtotal: sum of quantity * unit_price
- tax: percentage of the subtotal when tax applies
- discount: percentage of the subtotal, or a fixed amount
- total: subtotal + tax - discount (not floored at zero)

All arithmetic is Decimal at full precision. Amounts are only rounded to
cents by round_money(), at the display boundary.

Pricing inputs are what the database keeps, so they may not carry more
decimal places than their columns: quantity 3, unit price, tax rate and
discount value 4. Totals are stored at 6 places and compared against a
fresh computation within one unit of that scale.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, List, Optional, Sequence

from app.schemas import QuoteItemRecord, QuoteRecord, QuoteTotals
from app.services.errors import ValidationError

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")

# Column scales in app/models.py
QUANTITY_PLACES = 3
PRICE_PLACES = 4
RATE_PLACES = 4
TOTAL_STEP = Decimal("0.000001")

TOTAL_FIELDS = ("subtotal", "tax_amount", "discount_amount", "total")


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """Coerce numbers coming from forms or the database to Decimal without float noise"""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}")


def round_money(value: Any) -> Decimal:
    """Round to cents for display. Never feed the result back into a computation."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def fits_scale(value: Decimal, places: int) -> bool:
    """True when value has no more than `places` significant decimal places"""
    try:
        return value == value.quantize(Decimal(1).scaleb(-places))
    except InvalidOperation:
        return False


def _describe(item: QuoteItemRecord, position: int) -> str:
    label = item.description or (f"material #{item.material_id}" if item.material_id else "custom item")
    return f"Item {position} ({label})"


def validate_items(items: Sequence[QuoteItemRecord]) -> None:
    """Reject malformed line items before any total is computed. Nothing is clamped."""
    problems = []
    for position, item in enumerate(items, start=1):
        quantity = to_decimal(item.quantity, "quantity")
        unit_price = to_decimal(item.unit_price, "unit_price")
        if quantity <= ZERO:
            problems.append(f"{_describe(item, position)}: quantity must be greater than zero")
        if unit_price < ZERO:
            problems.append(f"{_describe(item, position)}: unit price cannot be negative")
        if not fits_scale(quantity, QUANTITY_PLACES):
            problems.append(f"{_describe(item, position)}: quantity allows at most {QUANTITY_PLACES} decimal places")
        if not fits_scale(unit_price, PRICE_PLACES):
            problems.append(f"{_describe(item, position)}: unit price allows at most {PRICE_PLACES} decimal places")
        if item.item_type == "material" and item.material_id is None:
            problems.append(f"{_describe(item, position)}: material items need a material")
        if item.item_type == "custom" and item.material_id is not None:
            problems.append(f"{_describe(item, position)}: custom items cannot reference a material")

    if problems:
        raise ValidationError("; ".join(problems))


def item_subtotal(item: QuoteItemRecord) -> Decimal:
    return to_decimal(item.quantity, "quantity") * to_decimal(item.unit_price, "unit_price")


def compute_totals(
    items: Sequence[QuoteItemRecord],
    apply_tax: bool,
    tax_rate: Any,
    discount_type: Optional[str],
    discount_value: Any,
) -> QuoteTotals:
    """
    Compute subtotal, tax, discount and total for a set of line items.

    Pure and deterministic. A discount larger than subtotal + tax yields a
    negative total, which is returned as-is.
    """
    validate_items(items)

    rate = to_decimal(tax_rate, "tax_rate")
    discount = to_decimal(discount_value, "discount_value")
    if rate < ZERO:
        raise ValidationError("tax_rate cannot be negative")
    if discount < ZERO:
        raise ValidationError("discount_value cannot be negative")
    if not fits_scale(rate, RATE_PLACES):
        raise ValidationError(f"tax_rate allows at most {RATE_PLACES} decimal places")
    if not fits_scale(discount, PRICE_PLACES):
        raise ValidationError(f"discount_value allows at most {PRICE_PLACES} decimal places")
    if discount_type not in (None, "percentage", "fixed"):
        raise ValidationError(f"Unknown discount type '{discount_type}'")

    subtotal = sum((item_subtotal(item) for item in items), ZERO)
    tax_amount = subtotal * rate / HUNDRED if apply_tax else ZERO

    # No discount type means no discount, whatever value was left in the form
    if discount_type == "percentage":
        discount_amount = subtotal * discount / HUNDRED
    elif discount_type == "fixed":
        discount_amount = discount
    else:
        discount_amount = ZERO

    total = subtotal + tax_amount - discount_amount
    return QuoteTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total=total,
    )


def compute_quote_totals(quote: QuoteRecord, items: Optional[Sequence[QuoteItemRecord]] = None) -> QuoteTotals:
    """Totals for a quote's own pricing inputs, optionally over a replacement item list"""
    return compute_totals(
        quote.items if items is None else items,
        quote.apply_tax,
        quote.tax_rate,
        quote.discount_type,
        quote.discount_value,
    )


def priced_items(items: Sequence[QuoteItemRecord]) -> List[QuoteItemRecord]:
    """Fill in each item's subtotal and default display_order to insertion order"""
    validate_items(items)
    priced = []
    taken = {item.display_order for item in items if item.display_order is not None}
    next_order = 0
    for item in items:
        display_order = item.display_order
        if display_order is None:
            while next_order in taken:
                next_order += 1
            display_order = next_order
            taken.add(display_order)
        priced.append(item.model_copy(update={
            "subtotal": item_subtotal(item),
            "display_order": display_order,
        }))
    return sorted(priced, key=lambda i: i.display_order)


def first_mismatch(stored: QuoteTotals, computed: QuoteTotals) -> Optional[str]:
    """
    Name of the first total that differs by more than one unit of the
    6-place column scale the stored values passed through.
    """
    for field in TOTAL_FIELDS:
        difference = to_decimal(getattr(stored, field), field) - to_decimal(getattr(computed, field), field)
        if abs(difference) > TOTAL_STEP:
            return field
    return None


def totals_match(stored: QuoteTotals, computed: QuoteTotals) -> bool:
    return first_mismatch(stored, computed) is None


def totals_patch(totals: QuoteTotals) -> dict:
    return {field: getattr(totals, field) for field in TOTAL_FIELDS}
