"""
pricing.py — Order Pricing

Turns a list of line items plus an optional coupon code into a
subtotal / shipping / discount / total breakdown. All amounts are integer
minor currency units, so no rounding is needed except for percent coupons.

The coupon table and shipping rule are passed in as PricingRules so that
callers (and tests) can swap rule sets without touching module state.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from typing import Iterable, Mapping, Optional

from .config import FLAT_SHIPPING_FEE, FREE_SHIPPING_THRESHOLD

FIXED = "fixed"
PERCENT = "percent"

SHIPPING_FREE = "free"
SHIPPING_STANDARD = "standard"


@dataclass(frozen=True)
class LineItem:
    product_id: str
    quantity: int
    unit_price: int  # minor units
    variant_selection: Mapping[str, str] = field(default_factory=dict)
    name: str = ""
    image: str = ""
    spec_id: Optional[str] = None

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Coupon:
    code: str
    kind: str  # fixed | percent
    value: float  # minor units for fixed, fraction for percent
    minimum_subtotal: Optional[int] = None


@dataclass(frozen=True)
class PricingRules:
    free_shipping_threshold: int
    flat_shipping_fee: int
    coupons: Mapping[str, Coupon]


@dataclass(frozen=True)
class OrderCalculation:
    subtotal: int
    shipping: int
    coupon_discount: int
    discount: int
    total: int
    shipping_method: str


DEFAULT_COUPONS = {
    "SAVE10": Coupon("SAVE10", FIXED, 1000, minimum_subtotal=5000),
    "SAVE20": Coupon("SAVE20", FIXED, 2000, minimum_subtotal=10000),
    "PERCENT10": Coupon("PERCENT10", PERCENT, 0.1, minimum_subtotal=8000),
}

DEFAULT_RULES = PricingRules(
    free_shipping_threshold=FREE_SHIPPING_THRESHOLD,
    flat_shipping_fee=FLAT_SHIPPING_FEE,
    coupons=DEFAULT_COUPONS,
)


def subtotal_of(items: Iterable[LineItem]) -> int:
    return sum(item.unit_price * item.quantity for item in items)


def shipping_for(subtotal: int, rules: PricingRules = DEFAULT_RULES) -> int:
    if subtotal >= rules.free_shipping_threshold:
        return 0
    return rules.flat_shipping_fee


def coupon_discount(coupon_code: Optional[str], subtotal: int,
                    rules: PricingRules = DEFAULT_RULES) -> int:
    """
    Resolves a coupon code against the rule table.

    Unknown codes and subtotals below the coupon minimum yield 0, never an
    error. A fixed coupon is capped at the subtotal; a percent coupon is
    rounded down to a whole minor unit.
    """
    if not coupon_code:
        return 0
    coupon = rules.coupons.get(coupon_code)
    if coupon is None:
        return 0
    if coupon.minimum_subtotal is not None and subtotal < coupon.minimum_subtotal:
        return 0

    if coupon.kind == FIXED:
        return min(int(coupon.value), subtotal)
    if coupon.kind == PERCENT:
        amount = Decimal(subtotal) * Decimal(str(coupon.value))
        return int(amount.to_integral_value(rounding=ROUND_FLOOR))
    return 0


def calculate(items: Iterable[LineItem], coupon_code: Optional[str] = None,
              rules: PricingRules = DEFAULT_RULES) -> OrderCalculation:
    """
    Computes the price breakdown of an order.

    Args:
        items: Line items with integer unit prices.
        coupon_code: At most one coupon code; stacking is not supported.
        rules: Shipping rule and coupon table to price against.

    Returns:
        OrderCalculation: subtotal, shipping, discounts and a total that is
        never negative.
    """
    items = list(items)
    subtotal = subtotal_of(items)
    shipping = shipping_for(subtotal, rules)
    coupon_amount = coupon_discount(coupon_code, subtotal, rules)
    discount = coupon_amount

    return OrderCalculation(
        subtotal=subtotal,
        shipping=shipping,
        coupon_discount=coupon_amount,
        discount=discount,
        total=max(0, subtotal + shipping - discount),
        shipping_method=SHIPPING_FREE if shipping == 0 else SHIPPING_STANDARD,
    )
