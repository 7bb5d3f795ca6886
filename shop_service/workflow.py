"""
workflow.py — Orchestration Across Cart, Orders, Payment and Fulfillment

The services each own one transaction. The workflows here chain them for
the multi-step use cases and decide what happens when a later step fails.

Checkout:
1. Read the selected (or explicitly listed) cart lines
2. Create the order from them (priced from the live catalog)
3. Remove exactly those lines from the cart
4. Optionally request payment parameters from the gateway

Payment confirmation:
1. Apply the gateway callback (pending -> paid, idempotent per transaction)
2. Send a shipment instruction to the WMS (RabbitMQ)

Fulfillment updates:
    WMS status messages move paid orders to shipped and delivered.
"""

import logging

import pika
from sqlalchemy.exc import SQLAlchemyError

from .errors import CartValidationError, PaymentError
from .models import CheckoutRequest, CheckoutResponse, OrderItemRequest, PaymentCallback
from .services import OrderService, PaymentOutcome, ShopServices

log = logging.getLogger(__name__)

WMS_ORDER_SHIPPED = "ORDER_SHIPPED"
WMS_ORDER_DELIVERED = "ORDER_DELIVERED"


def checkout_workflow(user_id: str, request: CheckoutRequest, services: ShopServices) -> CheckoutResponse:
    """
    Turns cart lines into a pending order and, if asked, starts payment.

    The order is the commit point. If removing the lines from the cart or
    requesting payment fails afterwards, the order stays and the failure is
    logged; the buyer can retry payment via /pay/create.

    Args:
        user_id (str): Caller.
        request (CheckoutRequest): Lines, address, coupon and remark.
        services (ShopServices): Service container of the app.

    Returns:
        CheckoutResponse: The order and, when requested and available, the
        payment parameters.

    Raises:
        CartValidationError: Nothing to check out.
        CartLineNotFoundError: A listed line is not in the cart.
        OrderValidationError, ProductUnavailableError, InsufficientStockError:
            The order could not be assembled; the cart is unchanged.
    """
    log_prefix = f"[Checkout: {user_id}]"
    lines = services.carts.checkout_lines(user_id, request.cartItemIds)
    if not lines:
        raise CartValidationError("No cart items selected for checkout")

    log.info(f"{log_prefix} Schritt 1: Lege Bestellung aus {len(lines)} Warenkorb-Positionen an...")
    items = [
        OrderItemRequest(
            productId=line.product_id,
            quantity=line.quantity,
            specId=line.spec_id,
            selectedVariants=dict(line.variant_selection),
        )
        for line in lines
    ]
    order = services.orders.create_order(
        user_id, items, request.address.model_dump(), request.couponCode, request.remark
    )
    log_prefix = f"[Order: {order.orderNumber}]"

    log.info(f"{log_prefix} Schritt 2: Entferne bestellte Positionen aus dem Warenkorb...")
    try:
        services.carts.remove_lines(user_id, [line.id for line in lines])
    except SQLAlchemyError as e:
        log.error(f"{log_prefix} Warenkorb konnte nicht bereinigt werden: {e}")

    payment = None
    if request.pay:
        log.info(f"{log_prefix} Schritt 3: Fordere Zahlungsparameter an...")
        try:
            payment = services.payments.create_payment(user_id, order.id)
        except PaymentError as e:
            log.error(f"{log_prefix} Zahlung konnte nicht gestartet werden ({e.message}). "
                      f"Bestellung bleibt offen.")

    log.info(f"{log_prefix} Checkout abgeschlossen.")
    return CheckoutResponse(order=order, payment=payment)


def confirm_payment_workflow(callback: PaymentCallback, services: ShopServices) -> PaymentOutcome:
    """
    Applies a payment confirmation and hands the paid order to the warehouse.

    The shipment instruction is only sent when this call moved the order to
    `paid`; redelivered callbacks never produce a second instruction.
    """
    outcome = services.payments.handle_callback(callback)
    if not outcome.applied or services.fulfillment is None:
        return outcome

    log_prefix = f"[Order: {outcome.order_number}]"
    order = services.orders.load(outcome.order_id)
    log.info(f"{log_prefix} Sende Auftrag an WMS (MQ)...")
    try:
        services.fulfillment.send_shipment_instruction(
            order.id,
            order.orderNumber,
            [{"productId": item.productId, "name": item.name, "quantity": item.quantity}
             for item in order.items],
            order.address.model_dump(),
        )
    except pika.exceptions.AMQPError as e:
        # Payment is recorded; the order has to be entered into the WMS by hand
        log.critical(f"{log_prefix} Kritischer MQ-Fehler mit WMS: {e}. Manuelle Übergabe nötig!")
    return outcome


def apply_fulfillment_update(data: dict, orders: OrderService):
    """
    Handles one WMS status message.

    ORDER_SHIPPED moves the order to `shipped` (with its tracking number),
    ORDER_DELIVERED to `delivered`. Intermediate warehouse states are only
    logged. Illegal steps raise InvalidTransitionError.
    """
    order_id = data["orderId"]
    status = data["status"]
    if status == WMS_ORDER_SHIPPED:
        orders.ship(order_id, data.get("trackingNumber"))
    elif status == WMS_ORDER_DELIVERED:
        orders.deliver(order_id)
    else:
        log.info(f"[WMS-STATUS][Order: {order_id}] Lagerstatus {status} nur protokolliert.")
