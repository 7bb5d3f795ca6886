"""
services.py — Transactional Services of the Shop

Each public method is one request-scoped unit of work: it opens a session,
loads the rows it needs, runs the pure cart / pricing / order logic and
writes the result back in the same transaction.

Cart edits lock the user's cart rows (SELECT ... FOR UPDATE) for the whole
read-modify-write, and a unique (user_id, line_id) constraint turns a racing
duplicate insert into a CartConflictError instead of a lost update.
"""

import logging
import math
import random
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Iterable, Mapping, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload, sessionmaker

from .cart import PUBLISHED, Cart, CartLine, QuantityUpdate, StockInfo, compute_line_key, line_id_for
from .clients import FulfillmentClient, PaymentClient
from .config import PAYMENT_CURRENCY, PAYMENT_MODE
from .db import CartItemRow, OrderItemRow, OrderRow, PaymentRow, ProductRow, ProductSpecRow, utcnow
from .errors import (
    AccessDeniedError,
    CartConflictError,
    CartLineNotFoundError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotCancellableError,
    OrderNotFoundError,
    OrderValidationError,
    PaymentError,
    PaymentValidationError,
    ProductNotFoundError,
    ProductUnavailableError,
)
from .models import (
    CartItemResponse,
    CartResponse,
    CartSpecResponse,
    OrderCalculationResponse,
    OrderItemRequest,
    OrderItemResponse,
    OrderListResponse,
    OrderPaymentResponse,
    OrderResponse,
    OrderShippingResponse,
    OrderStatusResponse,
    Pagination,
    PaymentCallback,
    PaymentParamsResponse,
    PaymentStatusResponse,
    ProductListResponse,
    ProductResponse,
    ProductSpecResponse,
    ShippingAddress,
)
from .orders import OrderStatus, assemble_order, ensure_transition, generate_order_number
from .pricing import (
    DEFAULT_RULES,
    SHIPPING_FREE,
    SHIPPING_STANDARD,
    LineItem,
    OrderCalculation,
    PricingRules,
    calculate,
)

log = logging.getLogger(__name__)

TRADE_SUCCESS = "SUCCESS"

SORTABLE_FIELDS = {
    "createdAt": ProductRow.created_at,
    "price": ProductRow.price,
    "salesCount": ProductRow.sales_count,
    "name": ProductRow.name,
}


# --- Catalog lookups shared by cart and orders ---

def resolve_product(session, product_id: str, spec_id: Optional[str] = None):
    """
    Loads a product and, if requested, one of its specifications.

    Raises:
        ProductNotFoundError: Unknown product, or a spec of another product.
    """
    product = session.get(ProductRow, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)
    spec = None
    if spec_id:
        spec = session.get(ProductSpecRow, spec_id)
        if spec is None or spec.product_id != product_id:
            raise ProductNotFoundError(product_id, spec_id)
    return product, spec


def stock_info(product: ProductRow, spec: Optional[ProductSpecRow] = None) -> StockInfo:
    return StockInfo(
        product_id=product.id,
        unit_price=product.price,
        stock=spec.stock if spec else product.stock,
        status=product.status,
        price_adjustment=spec.price_adjustment if spec else 0,
        name=product.name,
        image=product.first_image,
        spec_id=spec.id if spec else None,
    )


def variants_for(spec: Optional[ProductSpecRow], selected_variants: Optional[Mapping[str, str]]) -> dict:
    if spec is not None:
        return {spec.name: spec.value}
    return dict(selected_variants or {})


# --- Response builders ---

def product_response(row: ProductRow, include_specs: bool = False) -> ProductResponse:
    specs = []
    if include_specs:
        specs = [
            ProductSpecResponse(id=spec.id, name=spec.name, value=spec.value,
                                priceAdjustment=spec.price_adjustment, stock=spec.stock)
            for spec in row.specs
        ]
    return ProductResponse(
        id=row.id,
        name=row.name,
        description=row.description,
        price=row.price,
        originalPrice=row.original_price,
        stock=row.stock,
        images=list(row.images or []),
        category=row.category,
        status=row.status,
        salesCount=row.sales_count,
        specs=specs,
        createdAt=row.created_at,
    )


def cart_item_response(line: CartLine) -> CartItemResponse:
    spec = None
    if line.spec_id and line.variant_selection:
        name, value = next(iter(line.variant_selection.items()))
        spec = CartSpecResponse(id=line.spec_id, name=name, value=value,
                                priceAdjustment=line.price_adjustment)
    return CartItemResponse(
        id=line.id,
        productId=line.product_id,
        name=line.name,
        price=line.effective_price,
        image=line.image,
        quantity=line.quantity,
        stock=line.stock_ceiling,
        selected=line.selected,
        selectedVariants=dict(line.variant_selection),
        spec=spec,
    )


def cart_response(cart: Cart) -> CartResponse:
    return CartResponse(
        data=[cart_item_response(line) for line in cart.lines],
        total=cart.total_price,
        itemCount=cart.total_quantity,
        selectedTotal=cart.selected_price,
        selectedItemCount=cart.selected_quantity,
    )


def calculation_response(calc: OrderCalculation) -> OrderCalculationResponse:
    return OrderCalculationResponse(
        subtotal=calc.subtotal,
        shipping=calc.shipping,
        discount=calc.discount,
        total=calc.total,
        couponDiscount=calc.coupon_discount,
        shippingMethod=calc.shipping_method,
    )


def order_response(row: OrderRow) -> OrderResponse:
    return OrderResponse(
        id=row.id,
        orderNumber=row.order_number,
        status=row.status,
        items=[
            OrderItemResponse(
                productId=item.product_id,
                name=item.name,
                image=item.image,
                quantity=item.quantity,
                price=item.unit_price,
                selectedVariants=dict(item.variant_selection or {}),
            )
            for item in row.items
        ],
        address=ShippingAddress(**row.shipping_address),
        payment=OrderPaymentResponse(method=row.payment_method, amount=row.payment_amount,
                                     paidAt=row.paid_at),
        shipping=OrderShippingResponse(
            method=SHIPPING_FREE if row.shipping_amount == 0 else SHIPPING_STANDARD,
            fee=row.shipping_amount,
            trackingNumber=row.tracking_number,
        ),
        subtotal=row.subtotal_amount,
        discount=row.discount_amount,
        couponCode=row.coupon_code,
        remark=row.remark,
        createdAt=row.created_at,
        updatedAt=row.updated_at,
    )


# --- Catalog ---

class CatalogService:
    """Read-only access to published products."""

    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    def list_products(self, search: Optional[str] = None, category: Optional[str] = None,
                      min_price: Optional[int] = None, max_price: Optional[int] = None,
                      status: str = PUBLISHED, sort_by: str = "createdAt", sort_order: str = "desc",
                      page: int = 1, limit: int = 10) -> ProductListResponse:
        conditions = [ProductRow.status == status]
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(
                ProductRow.name.ilike(pattern),
                ProductRow.description.ilike(pattern),
                ProductRow.category.ilike(pattern),
            ))
        if category:
            conditions.append(ProductRow.category == category)
        if min_price is not None:
            conditions.append(ProductRow.price >= min_price)
        if max_price is not None:
            conditions.append(ProductRow.price <= max_price)

        column = SORTABLE_FIELDS.get(sort_by, ProductRow.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()

        with self._sessions() as session:
            total = session.scalar(select(func.count()).select_from(ProductRow).where(*conditions))
            rows = session.scalars(
                select(ProductRow)
                .where(*conditions)
                .order_by(ordering, ProductRow.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            products = [product_response(row) for row in rows]

        return ProductListResponse(
            products=products,
            total=total,
            page=page,
            limit=limit,
            totalPages=math.ceil(total / limit) if limit else 0,
        )

    def categories(self) -> list[str]:
        with self._sessions() as session:
            return list(session.scalars(
                select(ProductRow.category)
                .where(ProductRow.status == PUBLISHED, ProductRow.category.is_not(None))
                .distinct()
                .order_by(ProductRow.category)
            ).all())

    def get_product(self, product_id: str) -> ProductResponse:
        with self._sessions() as session:
            product, _ = resolve_product(session, product_id)
            return product_response(product, include_specs=True)

    def lookup(self, product_id: str, spec_id: Optional[str] = None) -> StockInfo:
        with self._sessions() as session:
            product, spec = resolve_product(session, product_id, spec_id)
            return stock_info(product, spec)


# --- Cart ---

class CartService:
    """Persists the outcome of cart.Cart operations per user."""

    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    def _load(self, session, user_id: str, lock: bool = False):
        query = (
            select(CartItemRow)
            .where(CartItemRow.user_id == user_id)
            .options(selectinload(CartItemRow.product), selectinload(CartItemRow.spec))
            .order_by(CartItemRow.created_at.desc(), CartItemRow.id.desc())
        )
        if lock:
            query = query.with_for_update(of=CartItemRow)
        rows = session.scalars(query).all()
        cart = Cart(user_id, (self._to_line(row) for row in rows))
        return cart, {row.line_id: row for row in rows}

    @staticmethod
    def _to_line(row: CartItemRow) -> CartLine:
        info = stock_info(row.product, row.spec)
        return CartLine(
            id=row.line_id,
            key=row.line_key,
            product_id=row.product_id,
            quantity=row.quantity,
            unit_price=info.unit_price,
            stock_ceiling=info.stock,
            variant_selection=dict(row.variant_selection or {}),
            price_adjustment=info.price_adjustment,
            selected=row.selected,
            name=info.name,
            image=info.image,
            spec_id=row.spec_id,
        )

    @staticmethod
    def _save(session, user_id: str, cart: Cart, rows: dict):
        for line_id, row in rows.items():
            line = cart.get(line_id)
            if line is None:
                session.delete(row)
            else:
                row.quantity = line.quantity
                row.selected = line.selected
        for line in cart.lines:
            if line.id not in rows:
                session.add(CartItemRow(
                    user_id=user_id,
                    line_id=line.id,
                    line_key=line.key,
                    product_id=line.product_id,
                    spec_id=line.spec_id,
                    variant_selection=dict(line.variant_selection),
                    quantity=line.quantity,
                    selected=line.selected,
                ))
        session.flush()

    @contextmanager
    def _editing(self, user_id: str):
        """Yields (session, cart) under a row lock and writes the cart back on success."""
        try:
            with self._sessions.begin() as session:
                cart, rows = self._load(session, user_id, lock=True)
                yield session, cart
                self._save(session, user_id, cart, rows)
        except IntegrityError as e:
            log.warning(f"[Cart: {user_id}] Gleichzeitige Änderung erkannt: {e.orig}")
            raise CartConflictError("Cart was modified concurrently, please retry") from e

    def get_cart(self, user_id: str) -> CartResponse:
        with self._sessions() as session:
            cart, _ = self._load(session, user_id)
        return cart_response(cart)

    def add_item(self, user_id: str, product_id: str, quantity: int,
                 spec_id: Optional[str] = None,
                 selected_variants: Optional[Mapping[str, str]] = None) -> CartItemResponse:
        with self._editing(user_id) as (session, cart):
            product, spec = resolve_product(session, product_id, spec_id)
            info = stock_info(product, spec)
            variants = variants_for(spec, selected_variants)
            line_id = line_id_for(compute_line_key(product_id, variants))
            existing = cart.get(line_id)
            before = existing.quantity if existing else 0
            # Free-form variant lines of one product draw on the same stock
            shared = sum(
                other.quantity for other in cart.lines
                if other.id != line_id and other.product_id == product.id and other.spec_id == info.spec_id
            )
            if shared:
                info = replace(info, stock=max(0, info.stock - shared))
            line = cart.add_line(product_id, quantity, variants, lambda _product_id, _variants: info)

        if line.quantity < before + quantity:
            log.warning(f"[Cart: {user_id}] Menge für {product_id} auf Lagerbestand {line.stock_ceiling} begrenzt.")
        log.info(f"[Cart: {user_id}] {quantity}x {product_id} hinzugefügt, Menge jetzt {line.quantity}.")
        return cart_item_response(line)

    def update_item(self, user_id: str, line_id: str, quantity: int) -> Optional[CartItemResponse]:
        with self._editing(user_id) as (_, cart):
            line = cart.set_quantity(line_id, quantity)
        if line is None:
            log.info(f"[Cart: {user_id}] Position {line_id} entfernt (Menge {quantity}).")
            return None
        return cart_item_response(line)

    def remove_item(self, user_id: str, line_id: str) -> bool:
        with self._editing(user_id) as (_, cart):
            removed = cart.remove_line(line_id)
        return removed

    def batch_update(self, user_id: str, updates: Iterable[QuantityUpdate]) -> list[CartItemResponse]:
        with self._editing(user_id) as (_, cart):
            lines = cart.batch_update(updates)
        return [cart_item_response(line) for line in lines]

    def clear(self, user_id: str) -> int:
        with self._editing(user_id) as (_, cart):
            count = len(cart)
            cart.clear()
        log.info(f"[Cart: {user_id}] Warenkorb geleert ({count} Positionen).")
        return count

    def toggle_item(self, user_id: str, line_id: str) -> CartItemResponse:
        with self._editing(user_id) as (_, cart):
            line = cart.toggle_selected(line_id)
        return cart_item_response(line)

    def toggle_all(self, user_id: str) -> bool:
        with self._editing(user_id) as (_, cart):
            selected = cart.toggle_all()
        return selected

    def remove_lines(self, user_id: str, line_ids: Iterable[str]) -> int:
        with self._editing(user_id) as (_, cart):
            removed = sum(1 for line_id in line_ids if cart.remove_line(line_id))
        return removed

    def checkout_lines(self, user_id: str, line_ids: Optional[list[str]] = None) -> list[CartLine]:
        """Returns the given lines, or every selected line when no ids are passed."""
        with self._sessions() as session:
            cart, _ = self._load(session, user_id)
        if line_ids is None:
            return cart.selected_lines()
        lines = []
        for line_id in line_ids:
            line = cart.get(line_id)
            if line is None:
                raise CartLineNotFoundError(line_id)
            lines.append(line)
        return lines


# --- Orders ---

class OrderService:
    """Creates orders from priced items and moves them through the lifecycle."""

    def __init__(self, session_factory: sessionmaker, rules: PricingRules = DEFAULT_RULES,
                 number_factory=generate_order_number):
        self._sessions = session_factory
        self.rules = rules
        self.number_factory = number_factory

    @staticmethod
    def _price_items(session, items: Iterable[OrderItemRequest]) -> list[LineItem]:
        """
        Prices items from the live catalog; the result is what the order snapshots.

        Items that draw on the same stock (same product and spec) are checked
        against that stock with their summed quantity.
        """
        line_items = []
        requested = defaultdict(int)
        for item in items:
            product, spec = resolve_product(session, item.productId, item.specId)
            info = stock_info(product, spec)
            if info.status != PUBLISHED:
                raise ProductUnavailableError(product.id)
            pool = (product.id, info.spec_id)
            requested[pool] += item.quantity
            if requested[pool] > info.stock:
                raise InsufficientStockError(product.id, requested[pool], info.stock)
            line_items.append(LineItem(
                product_id=product.id,
                quantity=item.quantity,
                unit_price=info.unit_price + info.price_adjustment,
                variant_selection=variants_for(spec, item.selectedVariants),
                name=info.name,
                image=info.image,
                spec_id=info.spec_id,
            ))
        return line_items

    def calculate(self, items: Iterable[OrderItemRequest],
                  coupon_code: Optional[str] = None) -> OrderCalculationResponse:
        with self._sessions() as session:
            line_items = self._price_items(session, items)
        return calculation_response(calculate(line_items, coupon_code, self.rules))

    def create_order(self, user_id: str, items: Iterable[OrderItemRequest],
                     address: Mapping[str, str], coupon_code: Optional[str] = None,
                     remark: Optional[str] = None) -> OrderResponse:
        with self._sessions.begin() as session:
            line_items = self._price_items(session, items)
            draft = assemble_order(line_items, address, coupon_code, self.rules,
                                   self.number_factory, remark)
            calc = draft.calculation
            row = OrderRow(
                id=str(uuid.uuid4()),
                order_number=draft.order_number,
                user_id=user_id,
                status=draft.status.value,
                subtotal_amount=calc.subtotal,
                shipping_amount=calc.shipping,
                discount_amount=calc.discount,
                payment_amount=calc.total,
                payment_method=draft.payment_method,
                coupon_code=draft.coupon_code,
                shipping_address=dict(draft.shipping_address),
                remark=draft.remark,
                created_at=draft.created_at,
                updated_at=draft.created_at,
            )
            row.items = [
                OrderItemRow(
                    product_id=snapshot.product_id,
                    spec_id=snapshot.spec_id,
                    name=snapshot.name,
                    image=snapshot.image,
                    quantity=snapshot.quantity,
                    unit_price=snapshot.unit_price,
                    total_price=snapshot.line_total,
                    variant_selection=dict(snapshot.variant_selection),
                )
                for snapshot in draft.items
            ]
            session.add(row)
            session.flush()
            response = order_response(row)

        log.info(f"[Order: {draft.order_number}] Bestellung angelegt (User {user_id}, "
                 f"Betrag {calc.total}, Rabatt {calc.discount}).")
        return response

    @staticmethod
    def _owned(session, user_id: str, order_id: str, lock: bool = False) -> OrderRow:
        query = select(OrderRow).where(OrderRow.id == order_id, OrderRow.user_id == user_id)
        if lock:
            query = query.with_for_update()
        row = session.scalar(query)
        if row is None:
            raise OrderNotFoundError(order_id)
        return row

    def get_order(self, user_id: str, order_id: str) -> OrderResponse:
        with self._sessions() as session:
            return order_response(self._owned(session, user_id, order_id))

    def load(self, order_id: str) -> OrderResponse:
        """Fetches any order by id, without owner check (internal callers only)."""
        with self._sessions() as session:
            row = session.get(OrderRow, order_id)
            if row is None:
                raise OrderNotFoundError(order_id)
            return order_response(row)

    def list_orders(self, user_id: str, page: int = 1, limit: int = 10,
                    status: Optional[str] = None) -> OrderListResponse:
        conditions = [OrderRow.user_id == user_id]
        if status and status != "all":
            try:
                conditions.append(OrderRow.status == OrderStatus(status.lower()).value)
            except ValueError:
                raise OrderValidationError(f"Unknown order status: {status}")

        with self._sessions() as session:
            total = session.scalar(select(func.count()).select_from(OrderRow).where(*conditions))
            rows = session.scalars(
                select(OrderRow)
                .where(*conditions)
                .options(selectinload(OrderRow.items))
                .order_by(OrderRow.created_at.desc(), OrderRow.order_number.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            orders = [order_response(row) for row in rows]

        return OrderListResponse(
            orders=orders,
            pagination=Pagination(page=page, limit=limit, total=total,
                                  totalPages=math.ceil(total / limit) if limit else 0),
        )

    def cancel(self, user_id: str, order_id: str) -> OrderStatusResponse:
        """
        Cancels a pending order of the caller.

        Raises:
            OrderNotCancellableError: Order missing, owned by someone else, or
                no longer pending. The status is left untouched.
        """
        with self._sessions.begin() as session:
            row = session.scalar(
                select(OrderRow)
                .where(OrderRow.id == order_id,
                       OrderRow.user_id == user_id,
                       OrderRow.status == OrderStatus.PENDING.value)
                .with_for_update()
            )
            if row is None:
                raise OrderNotCancellableError(order_id)
            row.status = OrderStatus.CANCELLED.value
            order_number = row.order_number

        log.info(f"[Order: {order_number}] Storniert durch Käufer.")
        return OrderStatusResponse(id=order_id, status=OrderStatus.CANCELLED.value,
                                   message="Order cancelled")

    def _advance(self, order_id: str, target: OrderStatus, **changes) -> OrderResponse:
        with self._sessions.begin() as session:
            row = session.scalar(select(OrderRow).where(OrderRow.id == order_id).with_for_update())
            if row is None:
                raise OrderNotFoundError(order_id)
            ensure_transition(row.order_number, row.status, target)
            row.status = target.value
            for name, value in changes.items():
                setattr(row, name, value)
            session.flush()
            response = order_response(row)
        log.info(f"[Order: {response.orderNumber}] Status -> {target.value}.")
        return response

    def ship(self, order_id: str, tracking_number: Optional[str] = None) -> OrderResponse:
        return self._advance(order_id, OrderStatus.SHIPPED, tracking_number=tracking_number)

    def deliver(self, order_id: str) -> OrderResponse:
        return self._advance(order_id, OrderStatus.DELIVERED)


# --- Payment ---

@dataclass(frozen=True)
class PaymentOutcome:
    order_id: str
    order_number: str
    status: str
    applied: bool
    duplicate: bool = False


PAYMENT_METHODS = [
    {"type": "wxpay", "name": "WeChat Pay", "enabled": True, "description": "H5 payment"},
    {"type": "alipay", "name": "Alipay", "enabled": False, "description": "Not available yet"},
]


class PaymentService:
    """
    Requests payments from the gateway and applies its confirmations.

    A confirmation is the only way an order becomes `paid`. Confirmations are
    keyed by the gateway transaction id, so a redelivered callback is
    acknowledged without touching the order a second time.
    """

    def __init__(self, session_factory: sessionmaker, client: PaymentClient, mode: str = PAYMENT_MODE):
        self._sessions = session_factory
        self.client = client
        self.mode = mode

    def config(self) -> dict:
        return {
            "mode": self.mode,
            "supportedMethods": [m["type"] for m in PAYMENT_METHODS if m["enabled"]],
            "currency": PAYMENT_CURRENCY,
            "minAmount": 1,
        }

    def create_payment(self, user_id: str, order_id: str, method: str = "wxpay") -> PaymentParamsResponse:
        if method not in self.config()["supportedMethods"]:
            raise PaymentValidationError(f"Unsupported payment method: {method}")
        with self._sessions() as session:
            row = OrderService._owned(session, user_id, order_id)
            if row.status != OrderStatus.PENDING.value:
                raise InvalidTransitionError(row.order_number, row.status, OrderStatus.PAID.value)
            order_number, amount = row.order_number, row.payment_amount

        log.info(f"[Order: {order_number}] Fordere Zahlungsparameter an (Betrag {amount}).")
        params = self.client.create_payment(order_number, amount, f"Order {order_number}")
        return PaymentParamsResponse.model_validate(params)

    @staticmethod
    def verify_callback(callback: PaymentCallback, order: OrderRow) -> bool:
        if callback.trade_state == TRADE_SUCCESS and callback.total_fee != order.payment_amount:
            log.error(f"[Order: {order.order_number}] Betrag im Callback ({callback.total_fee}) "
                      f"passt nicht zur Bestellung ({order.payment_amount}).")
            return False
        return True

    def handle_callback(self, callback: PaymentCallback) -> PaymentOutcome:
        """
        Applies one payment confirmation.

        Returns:
            PaymentOutcome: `applied` is True only when this call moved the
            order from pending to paid; `duplicate` marks a transaction id
            that was processed before.

        Raises:
            OrderNotFoundError: No order with this order number.
            PaymentError: The callback does not match the order.
        """
        try:
            with self._sessions.begin() as session:
                seen = session.scalar(
                    select(PaymentRow).where(PaymentRow.transaction_id == callback.transaction_id)
                )
                if seen is not None:
                    return self._duplicate(session, seen)

                order = session.scalar(
                    select(OrderRow).where(OrderRow.order_number == callback.out_trade_no).with_for_update()
                )
                if order is None:
                    raise OrderNotFoundError(callback.out_trade_no)
                if not self.verify_callback(callback, order):
                    raise PaymentError("Payment callback verification failed")

                session.add(PaymentRow(
                    transaction_id=callback.transaction_id,
                    order_id=order.id,
                    amount=callback.total_fee,
                    trade_state=callback.trade_state,
                ))

                applied = False
                prefix = f"[Order: {order.order_number}]"
                if callback.trade_state != TRADE_SUCCESS:
                    log.warning(f"{prefix} Zahlung nicht erfolgreich ({callback.trade_state}). Bestellung bleibt offen.")
                elif order.status == OrderStatus.PENDING.value:
                    order.status = OrderStatus.PAID.value
                    order.paid_at = utcnow()
                    applied = True
                    log.info(f"{prefix} Zahlung bestätigt. (TxID: {callback.transaction_id})")
                elif order.status == OrderStatus.CANCELLED.value:
                    log.critical(f"{prefix} Zahlung für stornierte Bestellung eingegangen "
                                 f"(TxID: {callback.transaction_id}). BENÖTIGT MANUELLE ERSTATTUNG!")
                else:
                    log.warning(f"{prefix} Bestellung bereits {order.status}, weitere Zahlung "
                                f"{callback.transaction_id} nur protokolliert.")
                session.flush()
                return PaymentOutcome(order.id, order.order_number, order.status, applied)
        except IntegrityError:
            # Same transaction id committed concurrently
            with self._sessions() as session:
                seen = session.scalar(
                    select(PaymentRow).where(PaymentRow.transaction_id == callback.transaction_id)
                )
                return self._duplicate(session, seen)

    @staticmethod
    def _duplicate(session, payment: PaymentRow) -> PaymentOutcome:
        order = session.get(OrderRow, payment.order_id)
        log.info(f"[Order: {order.order_number}] Doppelter Callback für {payment.transaction_id} ignoriert.")
        return PaymentOutcome(order.id, order.order_number, order.status, applied=False, duplicate=True)

    def mock_callback(self, user_id: str, order_id: str) -> PaymentCallback:
        """Builds the success callback the gateway would send (mock mode only)."""
        if self.mode != "mock":
            raise AccessDeniedError("Mock callbacks are only available in mock payment mode")
        with self._sessions() as session:
            row = OrderService._owned(session, user_id, order_id)
            return PaymentCallback(
                out_trade_no=row.order_number,
                transaction_id=f"wx_mock_{int(time.time() * 1000)}{random.randint(0, 999):03d}",
                trade_state=TRADE_SUCCESS,
                total_fee=row.payment_amount,
            )

    def payment_status(self, user_id: str, order_id: str) -> PaymentStatusResponse:
        with self._sessions() as session:
            row = OrderService._owned(session, user_id, order_id)
            transaction_id = session.scalar(
                select(PaymentRow.transaction_id)
                .where(PaymentRow.order_id == row.id, PaymentRow.trade_state == TRADE_SUCCESS)
                .order_by(PaymentRow.id)
                .limit(1)
            )
            return PaymentStatusResponse(
                orderId=row.id,
                orderNumber=row.order_number,
                status=row.status,
                amount=row.payment_amount,
                paidAt=row.paid_at,
                transactionId=transaction_id,
            )


@dataclass
class ShopServices:
    catalog: CatalogService
    carts: CartService
    orders: OrderService
    payments: PaymentService
    fulfillment: Optional[FulfillmentClient] = None


def build_services(session_factory: sessionmaker, payment_client: PaymentClient,
                   fulfillment: Optional[FulfillmentClient] = None,
                   rules: PricingRules = DEFAULT_RULES,
                   payment_mode: str = PAYMENT_MODE) -> ShopServices:
    return ShopServices(
        catalog=CatalogService(session_factory),
        carts=CartService(session_factory),
        orders=OrderService(session_factory, rules),
        payments=PaymentService(session_factory, payment_client, payment_mode),
        fulfillment=fulfillment,
    )
