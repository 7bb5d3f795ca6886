"""
This module provides communication clients for the external systems used by the shop:
- Payment Gateway (REST API)
- Warehouse Management System for fulfillment (RabbitMQ)
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import json
import logging
import time
import uuid

import httpx
import pika

from .config import (
    PAYMENT_CURRENCY,
    PAYMENT_NOTIFY_URL,
    PAYMENT_SERVICE_URL,
    RABBITMQ_HOST,
    RABBITMQ_PASSWORD,
    RABBITMQ_USER,
    WMS_ORDERS_QUEUE,
    WMS_STATUS_QUEUE,
)
from .errors import PaymentError, ShopError

log = logging.getLogger(__name__)


# --- Payment Client (REST) ---
class PaymentClient:
    """
    Client for the Payment Gateway (REST API).
    Requests prepay parameters for pending orders and maps gateway errors to PaymentError.
    """
    def __init__(self, base_url: str = PAYMENT_SERVICE_URL, client: httpx.Client | None = None):
        """
        Initializes the HTTP client with proper timeout configuration.

        Args:
            base_url (str): Gateway base URL, used when no client is given.
            client (httpx.Client): Pre-built client, e.g. a TestClient of the mock gateway.
        """
        if client is None:
            timeout_config = httpx.Timeout(5.0, read=8.0)
            client = httpx.Client(base_url=base_url, timeout=timeout_config)
        self.client = client

    def close(self):
        """Closes the HTTP client session."""
        self.client.close()

    def create_payment(self, order_number: str, amount: int, description: str,
                       payment_token: str | None = None) -> dict:
        """
        Creates a prepay transaction via the Payment Gateway REST API.
        Args:
            order_number (str): Human-readable order number, used as gateway reference.
            amount (int): Amount in minor units.
            description (str): Text shown to the payer.
            payment_token (str): Optional payer token forwarded to the gateway.
        Returns:
            dict: Prepay parameters (appId, timeStamp, nonceStr, package, signType, paySign, prepayId).
        Raises:
            PaymentError: On timeout, connection failure, or an error status from the gateway.
        """
        # One key per order
        idempotency_key = f"pay-{order_number}"
        payload = {
            "amount": amount,
            "currency": PAYMENT_CURRENCY,
            "referenceId": order_number,
            "description": description,
            "notifyUrl": PAYMENT_NOTIFY_URL,
        }
        if payment_token:
            payload["paymentToken"] = payment_token
        headers = {"Idempotency-Key": idempotency_key}

        try:
            response = self.client.post("/v1/payments", json=payload, headers=headers)
            response.raise_for_status()  # Löst HTTPStatusError bei 4xx/5xx aus
            return response.json()
        except httpx.TimeoutException as e:
            log.error(f"[Order: {order_number}] Payment Gateway Timeout. Status unbekannt.")
            raise PaymentError("Payment gateway timed out") from e
        except httpx.HTTPStatusError as e:
            # Speziell für 402 (Payment Declined)
            if e.response.status_code == 402:
                log.warning(f"[Order: {order_number}] Zahlung abgelehnt: {e.response.text}")
                raise PaymentError("Payment declined by gateway") from e
            log.error(f"[Order: {order_number}] HTTP-Fehler beim Payment: {e}")
            raise PaymentError(f"Payment gateway error ({e.response.status_code})") from e
        except httpx.TransportError as e:
            log.error(f"[Order: {order_number}] Payment Gateway nicht erreichbar: {e}")
            raise PaymentError("Payment gateway unreachable") from e


# --- Fulfillment Client (MQ) ---
class FulfillmentClient:
    """
    Client for the Warehouse Management System (RabbitMQ).
    Sends shipment instructions for paid orders and manages the MQ connection.
    """
    def __init__(self, host: str = RABBITMQ_HOST):
        """Stores connection settings; the connection is opened on first use."""
        self.host = host
        self.connection = None
        self.channel = None

    def _connect(self):
        """
        Establishes a RabbitMQ connection using the configured credentials.
        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        try:
            credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
            self.connection = pika.BlockingConnection(
                pika.ConnectionParameters(host=self.host, credentials=credentials, heartbeat=60)
            )
            self.channel = self.connection.channel()
            self.channel.queue_declare(queue=WMS_ORDERS_QUEUE)
            log.info("Fulfillment Client mit RabbitMQ verbunden.")
        except pika.exceptions.AMQPConnectionError as e:
            log.critical(f"Kann nicht zu RabbitMQ (WMS) verbinden: {e}")
            raise

    def send_shipment_instruction(self, order_id: str, order_number: str, items: list,
                                  shipping_address: dict):
        """
        Publishes a shipment instruction for a paid order to the WMS queue.
        Args:
            order_id (str): Internal order id, echoed back in status updates.
            order_number (str): Human-readable order number.
            items (list): Dicts with 'productId', 'name' and 'quantity'.
            shipping_address (dict): Address snapshot of the order.
        Raises:
            pika.exceptions.AMQPError: If message publishing fails.
        """
        message = {
            "instructionId": str(uuid.uuid4()),
            "orderId": order_id,
            "orderNumber": order_number,
            "instructionTimestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "items": items,
            "shippingAddress": shipping_address,
        }
        try:
            if not self.connection or self.connection.is_closed:
                self._connect()

            self.channel.basic_publish(
                exchange='',
                routing_key=WMS_ORDERS_QUEUE,
                body=json.dumps(message),
                properties=pika.BasicProperties(delivery_mode=2)  # Macht Nachricht persistent
            )
            log.info(f"[Order: {order_number}] Versandanweisung an WMS-Queue gesendet.")
        except pika.exceptions.AMQPError as e:
            log.error(f"[Order: {order_number}] FEHLER beim Senden an WMS-Queue: {e}")
            raise

    def close(self):
        if self.connection and self.connection.is_open:
            self.connection.close()


# --- Fulfillment Status Listener (MQ Consumer) ---
def handle_status_message(body: bytes, handler) -> bool:
    """
    Parses one WMS status update and passes it to `handler`.

    Returns:
        bool: True if the message should be acknowledged, False if it is
        malformed and belongs in the dead letter queue.
    """
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        log.error(f"[WMS-STATUS] Ungültige JSON-Nachricht erhalten: {body!r}")
        return False
    if not isinstance(data, dict) or not data.get("orderId") or not data.get("status"):
        log.error(f"[WMS-STATUS] Nachricht ohne orderId/status: {data}")
        return False

    log.info(f"[WMS-STATUS][Order: {data['orderId']}] Status-Update: {data['status']}. Details: {data}")
    try:
        handler(data)
    except ShopError as e:
        # e.g. a duplicate ORDER_SHIPPED
        log.warning(f"[WMS-STATUS][Order: {data['orderId']}] Update nicht angewendet: {e.message}")
    return True


def start_fulfillment_status_listener(handler, host: str = RABBITMQ_HOST):
    """
    Listens for WMS status updates until the process exits.

    Messages from the `wms.status.updates` queue are parsed and handed to
    `handler`; valid messages are acknowledged, malformed ones rejected.
    On connection loss or errors, it reconnects after 10 seconds.
    """
    log.info("WMS Status Listener Thread startet...")
    while True:
        try:
            credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
            connection = pika.BlockingConnection(
                pika.ConnectionParameters(host=host, credentials=credentials)
            )
            channel = connection.channel()
            channel.queue_declare(queue=WMS_STATUS_QUEUE)

            def callback(ch, method, properties, body):
                if handle_status_message(body, handler):
                    ch.basic_ack(delivery_tag=method.delivery_tag)
                else:
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)  # -> DLQ

            log.info("[WMS-STATUS] Listener ist aktiv und lauscht auf Updates.")
            channel.basic_consume(queue=WMS_STATUS_QUEUE, on_message_callback=callback)
            channel.start_consuming()

        except pika.exceptions.AMQPConnectionError:
            log.warning("WMS Listener: Verbindung zu RabbitMQ verloren. Versuche Reconnect in 10s...")
            time.sleep(10)
        except Exception as e:
            log.error(f"WMS Listener: Kritischer Fehler. {e}. Neustart in 10s.", exc_info=True)
            time.sleep(10)
