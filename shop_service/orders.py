"""
orders.py — Order Assembly and Order Lifecycle

Order assembly:
    Validates line items and address, prices them through pricing.calculate()
    and produces an immutable OrderDraft with a generated order number.
    Names, prices, images and variants are copied into the draft, so later
    catalog changes never reach an existing order. The cart is not touched.

Lifecycle:
    pending ──► paid ──► shipped ──► delivered
       │
       └──► cancelled

    `cancelled` and `delivered` are terminal.
"""

import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Callable, FrozenSet, Iterable, Mapping, Optional

from .config import PAYMENT_METHOD_LABEL
from .errors import InvalidTransitionError, OrderValidationError
from .pricing import DEFAULT_RULES, LineItem, OrderCalculation, PricingRules, calculate


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = MappingProxyType({
    OrderStatus.PENDING: frozenset([OrderStatus.PAID, OrderStatus.CANCELLED]),
    OrderStatus.PAID: frozenset([OrderStatus.SHIPPED]),
    OrderStatus.SHIPPED: frozenset([OrderStatus.DELIVERED]),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
})

TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)

REQUIRED_ADDRESS_FIELDS = ("name", "phone", "province", "city", "district", "detail")


def can_transition(current, target) -> bool:
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


def ensure_transition(order_id: str, current, target) -> OrderStatus:
    """
    Returns the target status if the step is allowed.

    Raises:
        InvalidTransitionError: The lifecycle does not permit current → target.
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(order_id, current.value, target.value)
    return target


# --- Order numbers ---

def generate_order_number(now_ms: Optional[int] = None) -> str:
    """ORD + millisecond timestamp + 3-digit random suffix, e.g. ORD1718000000000042."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"ORD{now_ms}{random.randint(0, 999):03d}"


def generate_uuid_order_number() -> str:
    return f"ORD-{uuid.uuid4()}"


# --- Assembly ---

@dataclass(frozen=True)
class OrderLineSnapshot:
    product_id: str
    name: str
    image: str
    quantity: int
    unit_price: int
    variant_selection: Mapping[str, str]
    spec_id: Optional[str] = None

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class OrderDraft:
    order_number: str
    status: OrderStatus
    items: tuple
    shipping_address: Mapping[str, str]
    calculation: OrderCalculation
    payment_method: str
    coupon_code: Optional[str]
    remark: Optional[str]
    created_at: datetime


def validate_order_input(items: list, shipping_address: Optional[Mapping[str, str]]) -> list[str]:
    problems = []
    if not items:
        problems.append("Order must contain at least one item")
    for index, item in enumerate(items):
        if item.quantity < 1:
            problems.append(f"Item {index} ({item.product_id}): quantity must be at least 1")
        if item.unit_price < 0:
            problems.append(f"Item {index} ({item.product_id}): price must not be negative")

    if shipping_address is None:
        problems.append("Shipping address is required")
    else:
        for name in REQUIRED_ADDRESS_FIELDS:
            value = shipping_address.get(name)
            if value is None or not str(value).strip():
                problems.append(f"Shipping address field '{name}' is required")
    return problems


def assemble_order(items: Iterable[LineItem],
                   shipping_address: Mapping[str, str],
                   coupon_code: Optional[str] = None,
                   rules: PricingRules = DEFAULT_RULES,
                   number_factory: Callable[[], str] = generate_order_number,
                   remark: Optional[str] = None,
                   now: Optional[datetime] = None) -> OrderDraft:
    """
    Builds a pending order from priced line items.

    Args:
        items: Line items whose unit_price is the price at this instant.
        shipping_address: Mapping with all REQUIRED_ADDRESS_FIELDS.
        coupon_code: Optional single coupon code.
        rules: Pricing rules handed to the calculator.
        number_factory: Produces the human-readable order number.
        remark: Free-text buyer note.
        now: Creation time, defaults to the current UTC time.

    Returns:
        OrderDraft: Immutable snapshot in status `pending`.

    Raises:
        OrderValidationError: Input is incomplete; nothing is built.
    """
    items = list(items)
    problems = validate_order_input(items, shipping_address)
    if problems:
        raise OrderValidationError("Order input is invalid", details=problems)

    calculation = calculate(items, coupon_code, rules)
    snapshots = tuple(
        OrderLineSnapshot(
            product_id=item.product_id,
            name=item.name or "Product",
            image=item.image or "",
            quantity=item.quantity,
            unit_price=item.unit_price,
            variant_selection=MappingProxyType(dict(item.variant_selection or {})),
            spec_id=item.spec_id,
        )
        for item in items
    )
    address = MappingProxyType({name: str(shipping_address[name]).strip()
                                for name in REQUIRED_ADDRESS_FIELDS})

    return OrderDraft(
        order_number=number_factory(),
        status=OrderStatus.PENDING,
        items=snapshots,
        shipping_address=address,
        calculation=calculation,
        payment_method=PAYMENT_METHOD_LABEL,
        coupon_code=coupon_code or None,
        remark=remark,
        created_at=now or datetime.now(timezone.utc),
    )
