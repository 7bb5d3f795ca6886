"""Pytest fixtures for shop service tests."""

import os

# Console logging only; must be set before shop_service.config is imported
os.environ["LOG_FILE"] = ""

import pytest
from fastapi.testclient import TestClient

from mock_services import mock_payment_service
from shop_service.clients import PaymentClient
from shop_service.db import DEMO_PRODUCTS, create_session_factory, seed_catalog
from shop_service.main import create_app
from shop_service.services import build_services

TEST_PRODUCTS = DEMO_PRODUCTS + [
    {
        "id": "prod-mug",
        "name": "Ceramic Mug",
        "description": "Hand-glazed mug.",
        "price": 1500,
        "stock": 3,
        "images": ["/assets/images/products/mug.png"],
        "category": "Kitchen",
        "specs": [],
    },
    {
        "id": "prod-draft",
        "name": "Unreleased Gadget",
        "description": "Coming soon.",
        "price": 5000,
        "stock": 10,
        "images": [],
        "category": "Electronics",
        "status": "draft",
        "specs": [],
    },
    {
        "id": "prod-sold-out",
        "name": "Limited Poster",
        "price": 2000,
        "stock": 0,
        "images": [],
        "category": "Art",
        "specs": [],
    },
]

ADDRESS = {
    "name": "Li Wei",
    "phone": "13800000000",
    "province": "Zhejiang",
    "city": "Hangzhou",
    "district": "Xihu",
    "detail": "1 Lingyin Road",
}


class RecordingFulfillment:
    """Collects shipment instructions instead of publishing them."""

    def __init__(self):
        self.instructions = []

    def send_shipment_instruction(self, order_id, order_number, items, shipping_address):
        self.instructions.append({
            "orderId": order_id,
            "orderNumber": order_number,
            "items": items,
            "shippingAddress": shipping_address,
        })

    def close(self):
        pass


@pytest.fixture
def address():
    return dict(ADDRESS)


@pytest.fixture
def session_factory():
    """Fresh in-memory database with the test catalog."""
    factory = create_session_factory("sqlite://")
    seed_catalog(factory, TEST_PRODUCTS)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite database; each thread gets its own connection."""
    factory = create_session_factory(f"sqlite:///{tmp_path / 'shop.db'}")
    seed_catalog(factory, TEST_PRODUCTS)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def gateway():
    """TestClient of the mock payment gateway."""
    mock_payment_service.reset()
    with TestClient(mock_payment_service.app) as client:
        yield client


@pytest.fixture
def payment_client(gateway):
    return PaymentClient(client=gateway)


@pytest.fixture
def fulfillment():
    return RecordingFulfillment()


@pytest.fixture
def services(session_factory, payment_client, fulfillment):
    return build_services(session_factory, payment_client, fulfillment, payment_mode="mock")


@pytest.fixture
def api_client(session_factory, payment_client):
    """TestClient of the shop API acting as user-1."""
    app = create_app(
        session_factory=session_factory,
        payment_client=payment_client,
        payment_mode="mock",
        seed=False,
        fulfillment_enabled=False,
    )
    with TestClient(app, headers={"X-User-Id": "user-1"}) as client:
        yield client
