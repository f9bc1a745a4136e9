"""
GST-aware price derivation.

Everything here is pure. Money is handled as ``Decimal`` and every amount that
leaves this module is quantized to whole paise with ROUND_HALF_UP, so a line's
``price_before_gst + gst_amount`` always equals its ``final_price`` and the
order totals add up to the grand total exactly.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import lru_cache
from typing import Any, Dict, Iterable, Optional, Tuple

import settings
from errors import InvalidPriceInputError

CENT = Decimal("0.01")
HUNDRED = Decimal(100)
ZERO = Decimal(0)

GST_TYPES = ("inclusive", "exclusive")


def to_decimal(value: Any, field: str = "value") -> Decimal:
    if isinstance(value, bool):
        raise InvalidPriceInputError(f"{field} must be a number")
    try:
        # str() keeps floats like 0.1 from dragging binary noise along
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidPriceInputError(f"{field} must be a number")
    if not result.is_finite():
        raise InvalidPriceInputError(f"{field} must be a finite number")
    return result


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value: Decimal) -> float:
    return float(round2(value))


@dataclass(frozen=True)
class PriceBreakdown:
    price_before_gst: Decimal
    gst_amount: Decimal
    final_price: Decimal
    discount_percent: int
    mrp: Decimal
    gst_rate: Decimal
    gst_type: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "price_before_gst": to_money(self.price_before_gst),
            "gst_amount": to_money(self.gst_amount),
            "final_price": to_money(self.final_price),
            "discount_percent": self.discount_percent,
            "mrp": to_money(self.mrp),
        }


@dataclass(frozen=True)
class OrderTotals:
    subtotal_before_gst: Decimal
    total_gst_amount: Decimal
    shipping_charge: Decimal
    grand_total: Decimal
    total_items: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "subtotal_before_gst": to_money(self.subtotal_before_gst),
            "total_gst_amount": to_money(self.total_gst_amount),
            "shipping_charge": to_money(self.shipping_charge),
            "grand_total": to_money(self.grand_total),
            "total_items": self.total_items,
        }


def compute_breakdown(base_price, mrp=None, gst_rate=0, gst_type: str = "exclusive") -> PriceBreakdown:
    """Split a base price into pre-tax amount, GST and final price.

    ``inclusive`` means ``base_price`` already contains GST and it is carved
    out; ``exclusive`` means GST is added on top. ``mrp`` falls back to the
    base price when missing or zero and only feeds ``discount_percent``.
    """
    base = round2(to_decimal(base_price, "base_price"))
    rate = to_decimal(gst_rate, "gst_rate")
    mrp_value = None if mrp is None else round2(to_decimal(mrp, "mrp"))
    if gst_type not in GST_TYPES:
        raise InvalidPriceInputError(f"gst_type must be one of {', '.join(GST_TYPES)}")
    if base < 0:
        raise InvalidPriceInputError("base_price must not be negative")
    if rate < 0:
        raise InvalidPriceInputError("gst_rate must not be negative")
    if mrp_value is not None and mrp_value < 0:
        raise InvalidPriceInputError("mrp must not be negative")
    return _breakdown(base, mrp_value, rate, gst_type)


@lru_cache(maxsize=4096)
def _breakdown(base: Decimal, mrp: Optional[Decimal], rate: Decimal, gst_type: str) -> PriceBreakdown:
    if gst_type == "inclusive":
        price_before_gst = round2(base / (1 + rate / HUNDRED))
        gst_amount = base - price_before_gst
        final_price = base
    else:
        price_before_gst = base
        gst_amount = round2(base * rate / HUNDRED)
        final_price = base + gst_amount

    if mrp is None or mrp == 0:
        mrp = base
    discount = 0
    if mrp > final_price:
        discount = int(((mrp - final_price) / mrp * HUNDRED).quantize(Decimal(1), rounding=ROUND_HALF_UP))

    return PriceBreakdown(
        price_before_gst=price_before_gst,
        gst_amount=gst_amount,
        final_price=final_price,
        discount_percent=discount,
        mrp=mrp,
        gst_rate=rate,
        gst_type=gst_type,
    )


def resolve_size_price(base_price, base_mrp, size: Optional[Dict[str, Any]]) -> Tuple[Decimal, Optional[Decimal]]:
    """Price and MRP for one size of a product, before GST."""
    price = to_decimal(base_price, "base_price")
    mrp = to_decimal(base_mrp, "mrp") if base_mrp else None
    if not size:
        return price, mrp

    modifier = size.get("price_modifier_type") or "none"
    if modifier == "fixed":
        if size.get("price") is None:
            raise InvalidPriceInputError(f"size {size.get('size_value')} has a fixed price but no price set")
        size_mrp = size.get("mrp")
        return to_decimal(size["price"], "size price"), (to_decimal(size_mrp, "size mrp") if size_mrp else mrp)
    if modifier == "percentage":
        if size.get("price_modifier_value") is None:
            raise InvalidPriceInputError(f"size {size.get('size_value')} has a percentage price but no value set")
        multiplier = 1 + to_decimal(size["price_modifier_value"], "price_modifier_value") / HUNDRED
        return price * multiplier, (mrp * multiplier if mrp is not None else None)
    return price, mrp


def find_size(product: Dict[str, Any], size_value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not size_value:
        return None
    for size in product.get("sizes") or []:
        if size.get("size_value") == size_value:
            return size
    return None


def breakdown_for(product: Dict[str, Any], selected_size: Optional[str] = None) -> PriceBreakdown:
    # sizes share the product's GST settings
    price, mrp = resolve_size_price(product.get("price", 0), product.get("mrp"), find_size(product, selected_size))
    return compute_breakdown(
        price,
        mrp,
        product.get("gst_rate") or 0,
        product.get("gst_type") or "exclusive",
    )


def shipping_charge_for(subtotal_before_gst, override=None) -> Decimal:
    subtotal = to_decimal(subtotal_before_gst, "subtotal")
    # an empty order ships free even under a pincode rule
    if subtotal <= ZERO:
        return ZERO.quantize(CENT)
    if override is not None:
        return round2(to_decimal(override, "shipping override"))
    if subtotal < settings.FREE_SHIPPING_THRESHOLD:
        return round2(settings.FLAT_SHIPPING_CHARGE)
    return ZERO.quantize(CENT)


def compute_order_totals(lines: Iterable[Tuple[PriceBreakdown, int]], shipping_override=None) -> OrderTotals:
    subtotal = ZERO
    gst_total = ZERO
    total_items = 0
    for breakdown, quantity in lines:
        subtotal += breakdown.price_before_gst * quantity
        gst_total += breakdown.gst_amount * quantity
        total_items += quantity
    shipping = shipping_charge_for(subtotal, shipping_override)
    return OrderTotals(
        subtotal_before_gst=round2(subtotal),
        total_gst_amount=round2(gst_total),
        shipping_charge=shipping,
        grand_total=round2(subtotal + gst_total + shipping),
        total_items=total_items,
    )


def breakdown_from_snapshot(item: Dict[str, Any]) -> PriceBreakdown:
    """Rebuild a line's breakdown from the values frozen on an order item."""
    return PriceBreakdown(
        price_before_gst=round2(to_decimal(item["price_before_gst"])),
        gst_amount=round2(to_decimal(item["gst_amount"])),
        final_price=round2(to_decimal(item["final_price"])),
        discount_percent=0,
        mrp=round2(to_decimal(item["final_price"])),
        gst_rate=to_decimal(item.get("gst_rate", 0)),
        gst_type=item.get("gst_type", "exclusive"),
    )
