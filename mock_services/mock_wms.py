"""
mock_wms.py — Mock Implementation of the Warehouse Management System (WMS)

This module simulates a Warehouse Management System that receives shipment
instructions for paid orders from the shop service (via RabbitMQ) and
publishes status updates back.

Purpose:
    • Simulate asynchronous warehouse operations (pick, pack, ship, deliver)
    • Drive the shop's paid → shipped → delivered transitions end to end

Communication Channels:
    - Input Queue:  'wms.orders.new'        ← Receives shipment instructions
    - Output Queue: 'wms.status.updates'    → Sends order status updates

Each instruction is handled in its own thread, with sleeps between the
stages to emulate real warehouse delays.
"""

import json
import logging
import os
import threading
import time
import uuid

import pika

logging.basicConfig(level=logging.INFO)
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "shopag")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "shopag")

ORDERS_QUEUE = "wms.orders.new"
STATUS_QUEUE = "wms.status.updates"

# (status, delay before it is sent)
STAGES = [
    ("ITEMS_PICKED", 3),
    ("ORDER_PACKED", 3),
    ("ORDER_SHIPPED", 2),
    ("ORDER_DELIVERED", 5),
]


def get_mq_connection():
    """
    Establishes and returns a connection to the RabbitMQ message broker.

    Returns:
        pika.BlockingConnection: Active connection to the RabbitMQ broker.

    Raises:
        pika.exceptions.AMQPConnectionError: If the broker is unavailable.
    """
    credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
    return pika.BlockingConnection(
        pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials)
    )


def build_status_message(order_id: str, status: str, tracking_number: str) -> dict:
    message = {
        "orderId": order_id,
        "status": status,
        "updateTimestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }
    if status == "ORDER_SHIPPED":
        message["trackingNumber"] = tracking_number
    return message


def send_status_updates(order_id: str):
    """
    Simulates the fulfillment of one order and publishes each stage to the
    status queue. ORDER_SHIPPED carries the tracking number.
    """
    tracking_number = f"TRK{uuid.uuid4().hex[:10].upper()}"
    try:
        connection = get_mq_connection()
        channel = connection.channel()
        channel.queue_declare(queue=STATUS_QUEUE)

        logging.info(f"[WMS] Beginne Bearbeitung für Order {order_id}")
        for status, delay in STAGES:
            time.sleep(delay)
            message = build_status_message(order_id, status, tracking_number)
            channel.basic_publish(exchange='', routing_key=STATUS_QUEUE, body=json.dumps(message))
            logging.info(f"[WMS] Status gesendet: {status} for {order_id}")

        connection.close()
    except pika.exceptions.AMQPError as e:
        logging.error(f"[WMS] Fehler im Status-Update-Thread: {e}")


def on_order_received(ch, method, properties, body):
    """
    Callback for new messages on the 'wms.orders.new' queue.

    Valid instructions are acknowledged and fulfilled in a background
    thread; malformed ones are rejected to the Dead Letter Queue (DLQ).
    """
    try:
        data = json.loads(body)
        order_id = data["orderId"]
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        logging.error(f"[WMS] Fehler bei Nachrichtenverarbeitung: {e}")
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        return

    logging.info(f"[WMS] Neue Versandanweisung für Order {data.get('orderNumber', order_id)} "
                 f"({len(data.get('items', []))} Positionen) erhalten.")
    threading.Thread(target=send_status_updates, args=(order_id,)).start()
    ch.basic_ack(delivery_tag=method.delivery_tag)


def main():
    """
    Starts the mock WMS consumer loop.

    Reconnects every 5 seconds if the broker is unavailable and stops on
    keyboard interrupt (Ctrl+C).
    """
    logging.info("Mock WMS Service (MQ) startet...")
    while True:
        try:
            connection = get_mq_connection()
            channel = connection.channel()
            channel.queue_declare(queue=ORDERS_QUEUE)

            logging.info("[WMS] Wartet auf neue Aufträge. (Consumer aktiv)")
            channel.basic_consume(queue=ORDERS_QUEUE, on_message_callback=on_order_received)
            channel.start_consuming()
        except pika.exceptions.AMQPConnectionError as e:
            logging.warning(f"MQ-Verbindung fehlgeschlagen, versuche erneut in 5s... {e}")
            time.sleep(5)
        except KeyboardInterrupt:
            break


if __name__ == '__main__':
    main()
