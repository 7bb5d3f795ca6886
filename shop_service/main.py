"""
main.py — FastAPI Entry Point for the Shop Service

This module provides the REST API of the shop: catalog, cart, orders and
payment. Routes are thin; they resolve the caller, call one service or
workflow and return its pydantic response.

Responsibilities:
    • Expose catalog, cart, order and payment endpoints
    • Map domain errors (ShopError) to JSON error responses
    • Seed the demo catalog and start the WMS status listener on startup
    • Provide system health information

Caller identity is taken from the `X-User-Id` header (and `X-User-Role`
for merchant endpoints), set by the upstream gateway.
"""

import threading
from functools import partial
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .cart import QuantityUpdate
from .clients import FulfillmentClient, PaymentClient, start_fulfillment_status_listener
from .config import FULFILLMENT_ENABLED, PAYMENT_MODE, SEED_CATALOG
from .db import create_session_factory, seed_catalog
from .errors import ShopError
from .logging_config import get_logger, setup_logging
from .models import (
    AddCartItemRequest,
    BatchUpdateCartRequest,
    CallbackAck,
    CartItemResponse,
    CartResponse,
    CartSelectionResponse,
    CheckoutRequest,
    CheckoutResponse,
    CreateOrderRequest,
    CreatePaymentRequest,
    OrderCalculationRequest,
    OrderCalculationResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusResponse,
    PaymentCallback,
    PaymentParamsResponse,
    PaymentStatusResponse,
    ProductListResponse,
    ProductResponse,
    ShipOrderRequest,
    UpdateCartItemRequest,
)
from .services import PAYMENT_METHODS, ShopServices, build_services
from .workflow import apply_fulfillment_update, checkout_workflow, confirm_payment_workflow

# Initialization
setup_logging()
log = get_logger(__name__)

MERCHANT_ROLE = "merchant"


# --- Dependencies ---

def get_services(request: Request) -> ShopServices:
    return request.app.state.services


def current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Resolves the caller; requests without an identity are rejected with 401."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def require_merchant(x_user_role: Optional[str] = Header(None, alias="X-User-Role")) -> str:
    if x_user_role != MERCHANT_ROLE:
        raise HTTPException(status_code=403, detail="Merchant role required")
    return x_user_role


def create_app(session_factory=None, payment_client: Optional[PaymentClient] = None,
               fulfillment_client: Optional[FulfillmentClient] = None,
               payment_mode: str = PAYMENT_MODE, seed: bool = SEED_CATALOG,
               fulfillment_enabled: bool = FULFILLMENT_ENABLED) -> FastAPI:
    """
    Builds the FastAPI application.

    Collaborators that are not passed in are created on startup from the
    environment configuration, so tests can inject an in-memory database
    and a payment client bound to the mock gateway.

    Args:
        session_factory: SQLAlchemy sessionmaker; defaults to DATABASE_URL.
        payment_client (PaymentClient): Client of the payment gateway.
        fulfillment_client (FulfillmentClient): WMS publisher, used when
            fulfillment is enabled.
        payment_mode (str): "mock" enables /pay/mock-callback.
        seed (bool): Insert the demo catalog into an empty database.
        fulfillment_enabled (bool): Publish shipment instructions and listen
            for WMS status updates.

    Returns:
        FastAPI: The configured application.
    """
    app = FastAPI(title="Shop AG Order Service")

    # Startup Event: wire services, seed catalog, launch WMS listener
    @app.on_event("startup")
    def on_startup():
        """
        FastAPI startup event handler.

        Creates missing collaborators, seeds the demo catalog and, when
        fulfillment is enabled, starts the WMS status listener as a daemon
        thread that stops automatically with the main app.
        """
        log.info("Shop-Service startet...")
        sessions = session_factory or create_session_factory()
        fulfillment = None
        if fulfillment_enabled:
            fulfillment = fulfillment_client or FulfillmentClient()
        services = build_services(
            sessions,
            payment_client or PaymentClient(),
            fulfillment,
            payment_mode=payment_mode,
        )
        app.state.services = services

        if seed:
            seed_catalog(sessions)

        if fulfillment_enabled:
            listener_thread = threading.Thread(
                target=start_fulfillment_status_listener,
                args=(partial(apply_fulfillment_update, orders=services.orders),),
                daemon=True,
            )
            listener_thread.start()
            log.info("WMS Status Listener Thread gestartet.")

    @app.on_event("shutdown")
    def on_shutdown():
        services = app.state.services
        services.payments.client.close()
        if services.fulfillment:
            services.fulfillment.close()
        log.info("Shop-Service beendet.")

    @app.exception_handler(ShopError)
    async def shop_error_handler(request: Request, exc: ShopError):
        if exc.status_code >= 500:
            log.error(f"{request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": exc.code, "message": exc.message, "details": exc.details},
        )

    register_routes(app)
    return app


def register_routes(app: FastAPI):

    # Health Check Endpoint
    @app.get("/health")
    def health_check():
        """
        Simple health check endpoint for monitoring systems and container
        orchestrators (e.g., Docker, Kubernetes).
        """
        return {"status": "ok"}

    # --- Products ---

    @app.get("/products", response_model=ProductListResponse)
    def list_products(
            search: Optional[str] = None,
            category: Optional[str] = None,
            min_price: Optional[int] = Query(None, alias="minPrice", ge=0),
            max_price: Optional[int] = Query(None, alias="maxPrice", ge=0),
            sort_by: str = Query("createdAt", alias="sortBy"),
            sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
            page: int = Query(1, ge=1),
            limit: int = Query(10, ge=1, le=100),
            services: ShopServices = Depends(get_services),
    ):
        return services.catalog.list_products(
            search=search, category=category, min_price=min_price, max_price=max_price,
            sort_by=sort_by, sort_order=sort_order, page=page, limit=limit,
        )

    @app.get("/products/categories")
    def list_categories(services: ShopServices = Depends(get_services)):
        return {"categories": services.catalog.categories()}

    @app.get("/products/{product_id}", response_model=ProductResponse)
    def get_product(product_id: str, services: ShopServices = Depends(get_services)):
        return services.catalog.get_product(product_id)

    # --- Cart ---

    @app.get("/cart", response_model=CartResponse)
    def get_cart(user_id: str = Depends(current_user_id),
                 services: ShopServices = Depends(get_services)):
        return services.carts.get_cart(user_id)

    @app.post("/cart", response_model=CartItemResponse, status_code=201)
    def add_to_cart(body: AddCartItemRequest, user_id: str = Depends(current_user_id),
                    services: ShopServices = Depends(get_services)):
        return services.carts.add_item(user_id, body.productId, body.quantity,
                                       body.specId, body.selectedVariants)

    @app.delete("/cart")
    def clear_cart(user_id: str = Depends(current_user_id),
                   services: ShopServices = Depends(get_services)):
        return {"removed": services.carts.clear(user_id)}

    @app.patch("/cart/batch", response_model=CartResponse)
    def batch_update_cart(body: BatchUpdateCartRequest, user_id: str = Depends(current_user_id),
                          services: ShopServices = Depends(get_services)):
        services.carts.batch_update(
            user_id, [QuantityUpdate(update.id, update.quantity) for update in body.updates]
        )
        return services.carts.get_cart(user_id)

    @app.patch("/cart/select-all", response_model=CartSelectionResponse)
    def toggle_all_selected(user_id: str = Depends(current_user_id),
                            services: ShopServices = Depends(get_services)):
        return CartSelectionResponse(selected=services.carts.toggle_all(user_id))

    @app.put("/cart/{line_id}", response_model=CartResponse)
    def update_cart_item(line_id: str, body: UpdateCartItemRequest,
                         user_id: str = Depends(current_user_id),
                         services: ShopServices = Depends(get_services)):
        services.carts.update_item(user_id, line_id, body.quantity)
        return services.carts.get_cart(user_id)

    @app.delete("/cart/{line_id}", response_model=CartResponse)
    def remove_cart_item(line_id: str, user_id: str = Depends(current_user_id),
                         services: ShopServices = Depends(get_services)):
        services.carts.remove_item(user_id, line_id)
        return services.carts.get_cart(user_id)

    @app.patch("/cart/{line_id}/select", response_model=CartItemResponse)
    def toggle_selected(line_id: str, user_id: str = Depends(current_user_id),
                        services: ShopServices = Depends(get_services)):
        return services.carts.toggle_item(user_id, line_id)

    # --- Orders ---

    @app.post("/orders/calculate", response_model=OrderCalculationResponse)
    def calculate_order(body: OrderCalculationRequest, user_id: str = Depends(current_user_id),
                        services: ShopServices = Depends(get_services)):
        return services.orders.calculate(body.items, body.couponCode)

    @app.post("/orders", response_model=OrderResponse, status_code=201)
    def create_order(body: CreateOrderRequest, user_id: str = Depends(current_user_id),
                     services: ShopServices = Depends(get_services)):
        return services.orders.create_order(user_id, body.items, body.address.model_dump(),
                                            body.couponCode, body.remark)

    @app.post("/checkout", response_model=CheckoutResponse, status_code=201)
    def checkout(body: CheckoutRequest, user_id: str = Depends(current_user_id),
                 services: ShopServices = Depends(get_services)):
        return checkout_workflow(user_id, body, services)

    @app.get("/orders", response_model=OrderListResponse)
    def list_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                    status: Optional[str] = None, user_id: str = Depends(current_user_id),
                    services: ShopServices = Depends(get_services)):
        return services.orders.list_orders(user_id, page, limit, status)

    @app.get("/orders/{order_id}", response_model=OrderResponse)
    def get_order(order_id: str, user_id: str = Depends(current_user_id),
                  services: ShopServices = Depends(get_services)):
        return services.orders.get_order(user_id, order_id)

    @app.patch("/orders/{order_id}/cancel", response_model=OrderStatusResponse)
    def cancel_order(order_id: str, user_id: str = Depends(current_user_id),
                     services: ShopServices = Depends(get_services)):
        return services.orders.cancel(user_id, order_id)

    @app.patch("/orders/{order_id}/ship", response_model=OrderResponse,
               dependencies=[Depends(require_merchant)])
    def ship_order(order_id: str, body: ShipOrderRequest,
                   services: ShopServices = Depends(get_services)):
        return services.orders.ship(order_id, body.trackingNumber)

    @app.patch("/orders/{order_id}/deliver", response_model=OrderResponse,
               dependencies=[Depends(require_merchant)])
    def deliver_order(order_id: str, services: ShopServices = Depends(get_services)):
        return services.orders.deliver(order_id)

    # --- Payment ---

    @app.get("/pay/methods")
    def payment_methods():
        return {"methods": PAYMENT_METHODS}

    @app.get("/pay/config")
    def payment_config(services: ShopServices = Depends(get_services)):
        return services.payments.config()

    @app.post("/pay/create", response_model=PaymentParamsResponse)
    def create_payment(body: CreatePaymentRequest, user_id: str = Depends(current_user_id),
                       services: ShopServices = Depends(get_services)):
        return services.payments.create_payment(user_id, body.orderId, body.method)

    # API Endpoint: Payment Gateway → Shop
    @app.post("/pay/notify", response_model=CallbackAck)
    def payment_notify(callback: PaymentCallback, services: ShopServices = Depends(get_services)):
        """
        Receives the asynchronous payment confirmation from the gateway.

        Answers SUCCESS for applied and for already processed callbacks. A
        callback that cannot be matched is answered with FAIL (HTTP 400) so
        that the gateway keeps it for inspection.
        """
        try:
            confirm_payment_workflow(callback, services)
        except ShopError as e:
            log.error(f"[Order: {callback.out_trade_no}] Callback abgelehnt: {e.message}")
            return JSONResponse(status_code=400, content={"code": "FAIL", "message": e.message})
        return CallbackAck(code="SUCCESS", message="OK")

    @app.post("/pay/mock-callback/{order_id}", response_model=PaymentStatusResponse)
    def mock_payment_callback(order_id: str, user_id: str = Depends(current_user_id),
                              services: ShopServices = Depends(get_services)):
        callback = services.payments.mock_callback(user_id, order_id)
        confirm_payment_workflow(callback, services)
        return services.payments.payment_status(user_id, order_id)

    @app.get("/pay/status/{order_id}", response_model=PaymentStatusResponse)
    def payment_status(order_id: str, user_id: str = Depends(current_user_id),
                       services: ShopServices = Depends(get_services)):
        return services.payments.payment_status(user_id, order_id)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
