"""
cart.py — Cart Reconciliation

Maintains one user's cart lines. Lines are keyed by product plus the
canonical form of the chosen variants, so repeated additions of the same
thing merge into one line no matter how the variant mapping was ordered.

Stock policy:
    - add_line and set_quantity clamp to the stock ceiling
    - a line that would be clamped to zero units is rejected
    - batch_update validates everything first and rejects over-stock
"""

import hashlib
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional

from .errors import (
    CartLineNotFoundError,
    CartValidationError,
    InsufficientStockError,
    ProductUnavailableError,
)

PUBLISHED = "published"


@dataclass(frozen=True)
class StockInfo:
    """Answer of the product/stock lookup for one product (or one variant)."""
    product_id: str
    unit_price: int
    stock: int
    status: str
    price_adjustment: int = 0
    name: str = ""
    image: str = ""
    spec_id: Optional[str] = None


StockLookup = Callable[[str, Mapping[str, str]], StockInfo]


@dataclass
class CartLine:
    id: str
    key: str
    product_id: str
    quantity: int
    unit_price: int
    stock_ceiling: int
    variant_selection: dict = field(default_factory=dict)
    price_adjustment: int = 0
    selected: bool = True
    name: str = ""
    image: str = ""
    spec_id: Optional[str] = None

    @property
    def effective_price(self) -> int:
        return self.unit_price + self.price_adjustment

    @property
    def line_total(self) -> int:
        return self.effective_price * self.quantity


@dataclass(frozen=True)
class QuantityUpdate:
    line_id: str
    quantity: int


def compute_line_key(product_id: str, variant_selection: Optional[Mapping[str, str]] = None) -> str:
    """
    Builds the canonical identity of a cart line.

    Variant entries are sorted by attribute name and joined as `name:value`
    pairs, so {"size": "M", "color": "red"} and {"color": "red", "size": "M"}
    give the same key.
    """
    pairs = sorted((variant_selection or {}).items(), key=lambda kv: kv[0])
    variant_part = "|".join(f"{name}:{value}" for name, value in pairs)
    return f"{product_id}|{variant_part}"


def line_id_for(key: str) -> str:
    """Short URL-safe id derived from a line key."""
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


class Cart:
    """
    In-memory view of one user's cart.

    The persistence layer loads rows into a Cart, calls one operation and
    writes the resulting lines back within the same transaction.
    """

    def __init__(self, user_id: str, lines: Iterable[CartLine] = ()):
        self.user_id = user_id
        self._lines: dict[str, CartLine] = {line.id: line for line in lines}

    # --- Queries ---

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines.values())

    def get(self, line_id: str) -> Optional[CartLine]:
        return self._lines.get(line_id)

    def __contains__(self, line_id) -> bool:
        return line_id in self._lines

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    @property
    def total_price(self) -> int:
        return sum(line.line_total for line in self._lines.values())

    def selected_lines(self) -> list[CartLine]:
        return [line for line in self._lines.values() if line.selected]

    @property
    def selected_quantity(self) -> int:
        return sum(line.quantity for line in self.selected_lines())

    @property
    def selected_price(self) -> int:
        return sum(line.line_total for line in self.selected_lines())

    # --- Mutations ---

    def add_line(self, product_id: str, quantity: int,
                 variant_selection: Optional[Mapping[str, str]],
                 lookup: StockLookup) -> CartLine:
        """
        Adds `quantity` units of a product/variant, merging with an existing line.

        Raises:
            CartValidationError: quantity is below 1.
            ProductUnavailableError: the product is not published.
            InsufficientStockError: no stock is left for this line.
        """
        if quantity < 1:
            raise CartValidationError("Quantity must be at least 1")

        variants = dict(variant_selection or {})
        info = lookup(product_id, variants)
        if info.status != PUBLISHED:
            raise ProductUnavailableError(product_id)

        key = compute_line_key(product_id, variants)
        line_id = line_id_for(key)
        existing = self._lines.get(line_id)
        proposed = quantity + (existing.quantity if existing else 0)
        clamped = min(proposed, info.stock)
        if clamped < 1:
            raise InsufficientStockError(product_id, proposed, info.stock)

        if existing:
            existing.quantity = clamped
            existing.stock_ceiling = info.stock
            existing.unit_price = info.unit_price
            existing.price_adjustment = info.price_adjustment
            return existing

        line = CartLine(
            id=line_id,
            key=key,
            product_id=product_id,
            quantity=clamped,
            unit_price=info.unit_price,
            stock_ceiling=info.stock,
            variant_selection=variants,
            price_adjustment=info.price_adjustment,
            name=info.name,
            image=info.image,
            spec_id=info.spec_id,
        )
        self._lines[line_id] = line
        return line

    def set_quantity(self, line_id: str, quantity: int) -> Optional[CartLine]:
        """Sets a line's quantity; zero or less removes the line."""
        if quantity <= 0:
            self.remove_line(line_id)
            return None
        line = self._lines.get(line_id)
        if line is None:
            raise CartLineNotFoundError(line_id)
        clamped = min(quantity, line.stock_ceiling)
        if clamped < 1:
            raise InsufficientStockError(line.product_id, quantity, line.stock_ceiling)
        line.quantity = clamped
        return line

    def remove_line(self, line_id: str) -> bool:
        return self._lines.pop(line_id, None) is not None

    def clear(self):
        self._lines.clear()

    def batch_update(self, updates: Iterable[QuantityUpdate]) -> list[CartLine]:
        """
        Applies several quantity changes as one unit.

        Every update is checked first; if any refers to a line outside this
        cart, asks for less than one unit, or exceeds the line's stock
        ceiling, nothing is changed and all failures are reported together.
        """
        updates = list(updates)
        failures = []
        for update in updates:
            line = self._lines.get(update.line_id)
            if line is None:
                failures.append(f"Cart item not found: {update.line_id}")
            elif update.quantity < 1:
                failures.append(f"Quantity for {update.line_id} must be at least 1")
            elif update.quantity > line.stock_ceiling:
                failures.append(
                    f"Insufficient stock for {line.name or line.product_id}: "
                    f"requested {update.quantity}, available {line.stock_ceiling}"
                )
        if failures:
            raise CartValidationError("Batch update rejected", details=failures)

        for update in updates:
            self._lines[update.line_id].quantity = update.quantity
        return [self._lines[update.line_id] for update in updates]

    # --- Selection ---

    def toggle_selected(self, line_id: str) -> CartLine:
        line = self._lines.get(line_id)
        if line is None:
            raise CartLineNotFoundError(line_id)
        line.selected = not line.selected
        return line

    def toggle_all(self) -> bool:
        """Selects every line unless all are selected already, then deselects all."""
        target = not all(line.selected for line in self._lines.values())
        for line in self._lines.values():
            line.selected = target
        return target
