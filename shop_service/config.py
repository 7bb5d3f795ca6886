"""
config.py — Runtime Settings for the Shop Service

All settings are read once from environment variables at import time.
Money values are integer minor currency units (cents / fen).
"""

import os

# Persistence
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./shop.db")
SEED_CATALOG = os.environ.get("SEED_CATALOG", "1") == "1"

# Payment gateway (REST)
PAYMENT_SERVICE_URL = os.environ.get("PAYMENT_SERVICE_URL", "http://payment_service:8001")
PAYMENT_MODE = os.environ.get("PAYMENT_MODE", "mock")  # mock | live
PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "CNY")
PAYMENT_NOTIFY_URL = os.environ.get("PAYMENT_NOTIFY_URL", "http://shop_service:8000/pay/notify")
PAYMENT_METHOD_LABEL = "wxpay"

# Fulfillment / warehouse (RabbitMQ)
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "shopag")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "shopag")
FULFILLMENT_ENABLED = os.environ.get("FULFILLMENT_ENABLED", "0") == "1"
WMS_ORDERS_QUEUE = "wms.orders.new"
WMS_STATUS_QUEUE = "wms.status.updates"

# Pricing
FREE_SHIPPING_THRESHOLD = int(os.environ.get("FREE_SHIPPING_THRESHOLD", "9900"))
FLAT_SHIPPING_FEE = int(os.environ.get("FLAT_SHIPPING_FEE", "1000"))

# Logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("LOG_FILE", "shop_service.log")
