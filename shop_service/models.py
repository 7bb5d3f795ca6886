"""
models.py — Request and Response Models of the Shop API

This module defines the data structures exchanged over HTTP.
It uses Pydantic models so that every payload is validated at the boundary,
before it reaches the cart, pricing or order logic.

All money fields are integer minor currency units (e.g. cents).
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# --- Products ---

class ProductSpecResponse(BaseModel):
    id: str
    name: str
    value: str
    priceAdjustment: int
    stock: int


class ProductResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: int
    originalPrice: Optional[int] = None
    stock: int
    images: List[str]
    category: Optional[str] = None
    status: str
    salesCount: int
    specs: List[ProductSpecResponse] = []
    createdAt: datetime


class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    total: int
    page: int
    limit: int
    totalPages: int


# --- Cart ---

class AddCartItemRequest(BaseModel):
    """
    Adds a product (optionally a specific variant) to the caller's cart.

    Attributes:
        productId (str): Product to add.
        quantity (int): Units to add. Must be greater than zero.
        specId (str): Optional product specification (variant) id.
        selectedVariants (dict): Free-form variant choice, used when no specId is given.
    """
    productId: str
    quantity: int = Field(..., gt=0)
    specId: Optional[str] = None
    selectedVariants: Optional[Dict[str, str]] = None


class UpdateCartItemRequest(BaseModel):
    # zero or less removes the line
    quantity: int


class CartItemUpdate(BaseModel):
    id: str
    quantity: int


class BatchUpdateCartRequest(BaseModel):
    updates: List[CartItemUpdate] = Field(..., min_length=1)


class CartSpecResponse(BaseModel):
    id: str
    name: str
    value: str
    priceAdjustment: int


class CartItemResponse(BaseModel):
    id: str
    productId: str
    name: str
    price: int
    image: str
    quantity: int
    stock: int
    selected: bool
    selectedVariants: Dict[str, str] = {}
    spec: Optional[CartSpecResponse] = None


class CartResponse(BaseModel):
    data: List[CartItemResponse]
    total: int
    itemCount: int
    selectedTotal: int
    selectedItemCount: int


class CartSelectionResponse(BaseModel):
    selected: bool


# --- Orders ---

class OrderItemRequest(BaseModel):
    productId: str
    quantity: int = Field(..., gt=0)
    specId: Optional[str] = None
    selectedVariants: Optional[Dict[str, str]] = None


class ShippingAddress(BaseModel):
    name: str
    phone: str
    province: str
    city: str
    district: str
    detail: str


class OrderCalculationRequest(BaseModel):
    items: List[OrderItemRequest]
    couponCode: Optional[str] = None


class OrderCalculationResponse(BaseModel):
    subtotal: int
    shipping: int
    discount: int
    total: int
    couponDiscount: int
    shippingMethod: str


class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest]
    address: ShippingAddress
    couponCode: Optional[str] = None
    remark: Optional[str] = None


class CheckoutRequest(BaseModel):
    """
    Turns cart lines into an order.

    Attributes:
        cartItemIds (list[str]): Lines to check out; all selected lines when omitted.
        address (ShippingAddress): Delivery address.
        couponCode (str): Optional single coupon code.
        remark (str): Optional buyer note.
        pay (bool): Request payment parameters right after the order is created.
    """
    cartItemIds: Optional[List[str]] = None
    address: ShippingAddress
    couponCode: Optional[str] = None
    remark: Optional[str] = None
    pay: bool = True


class OrderItemResponse(BaseModel):
    productId: str
    name: str
    image: str
    quantity: int
    price: int
    selectedVariants: Dict[str, str] = {}


class OrderPaymentResponse(BaseModel):
    method: str
    amount: int
    paidAt: Optional[datetime] = None


class OrderShippingResponse(BaseModel):
    method: str
    fee: int
    trackingNumber: Optional[str] = None


class OrderResponse(BaseModel):
    id: str
    orderNumber: str
    status: str
    items: List[OrderItemResponse]
    address: ShippingAddress
    payment: OrderPaymentResponse
    shipping: OrderShippingResponse
    subtotal: int
    discount: int
    couponCode: Optional[str] = None
    remark: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: Pagination


class OrderStatusResponse(BaseModel):
    id: str
    status: str
    message: str


class ShipOrderRequest(BaseModel):
    trackingNumber: str = Field(..., min_length=1)


# --- Payment ---

class CreatePaymentRequest(BaseModel):
    orderId: str
    method: str = "wxpay"


class PaymentParamsResponse(BaseModel):
    """Parameters the client needs to launch the payment with the gateway."""
    appId: str
    timeStamp: str
    nonceStr: str
    package: str
    signType: str
    paySign: str
    prepayId: str


class PaymentCallback(BaseModel):
    """
    Payment confirmation sent by the gateway.

    Attributes:
        out_trade_no (str): Our order number.
        transaction_id (str): Gateway transaction id, unique per payment.
        trade_state (str): SUCCESS, or a failure state such as FAIL / CLOSED.
        total_fee (int): Paid amount in minor units.
    """
    out_trade_no: str
    transaction_id: str
    trade_state: str
    total_fee: int


class CallbackAck(BaseModel):
    code: str
    message: str


class PaymentStatusResponse(BaseModel):
    orderId: str
    orderNumber: str
    status: str
    amount: int
    paidAt: Optional[datetime] = None
    transactionId: Optional[str] = None


class CheckoutResponse(BaseModel):
    order: OrderResponse
    payment: Optional[PaymentParamsResponse] = None
