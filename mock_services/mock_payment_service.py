"""
mock_payment_service.py — Mock Implementation of the Payment Gateway (REST API)

This module provides a simulated payment gateway for local runs and tests.
It exposes a FastAPI application that hands out prepay parameters for an
order and, on request, sends the asynchronous payment confirmation back to
the shop's notify URL.

Simulation Scenarios:
    • Successful prepay creation
    • Declined payment (HTTP 402)
    • Timeout simulation (simulates client read timeout)
    • Completing a prepay, which posts the callback to the shop

Endpoints:
    POST /v1/payments                        — Creates a prepay transaction.
    POST /v1/payments/{prepay_id}/complete   — Settles it and notifies the shop.

Port:
    Default: 8001 (HTTP)
"""

import hashlib
import logging
import os
import time
import uuid
from typing import Optional

import httpx
from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

app = FastAPI(title="Mock Payment Gateway")
logging.basicConfig(level=logging.INFO)

APP_ID = os.environ.get("PAYMENT_APP_ID", "mock_app_id")

# Idempotency-Key -> response, prepay id -> transaction
_responses: dict = {}
_prepays: dict = {}


class PaymentRequest(BaseModel):
    """
    Represents a prepay request payload.

    Attributes:
        amount (int): Amount in the smallest currency units (e.g., fen).
        currency (str): ISO 4217 currency code (e.g., 'CNY').
        referenceId (str): Order number the payment belongs to.
        description (str): Text shown to the payer.
        notifyUrl (str): Where the payment confirmation is posted.
        paymentToken (str): Optional payer token; drives the simulation scenarios.
    """
    amount: int = Field(..., gt=0)
    currency: str
    referenceId: str
    description: str = ""
    notifyUrl: Optional[str] = None
    paymentToken: Optional[str] = None


def _sign(params: dict) -> str:
    query = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.md5(f"{query}&key={APP_ID}".encode("utf-8")).hexdigest().upper()


def reset():
    """Forgets all prepays and cached responses."""
    _responses.clear()
    _prepays.clear()


@app.post("/v1/payments")
def create_payment(
        request: PaymentRequest,
        idempotency_key: str = Header(..., alias="Idempotency-Key")
):
    """
    Creates a prepay transaction.

    This endpoint simulates different outcomes based on the optional `paymentToken`:
        - Starts with "tok_decline_" → Payment declined (HTTP 402)
        - Starts with "tok_timeout_" → Simulated timeout (long-running process)
        - Anything else → Prepay parameters

    A repeated Idempotency-Key returns the first response unchanged.

    Returns:
        dict: appId, timeStamp, nonceStr, package, signType, paySign, prepayId.

    Raises:
        HTTPException(402): If the payment is declined.
    """
    logging.info(f"[PS] Zahlungsanfrage für {request.referenceId} (Idempotenz: {idempotency_key})")

    if idempotency_key in _responses:
        logging.info(f"[PS] Wiederholte Anfrage für {request.referenceId}, sende gespeicherte Antwort.")
        return _responses[idempotency_key]

    token = request.paymentToken or ""
    if token.startswith("tok_decline_"):
        logging.warning(f"[PS] Zahlung für {request.referenceId} abgelehnt.")
        raise HTTPException(
            status_code=402,
            detail={"errorCode": "payment_declined", "message": "Zahlung abgelehnt."}
        )

    if token.startswith("tok_timeout_"):
        logging.info(f"[PS] Simuliere Timeout für {request.referenceId}...")
        time.sleep(10)
        logging.error(f"[PS] Timeout-Anfrage {request.referenceId} abgeschlossen (zu spät).")
        return

    prepay_id = f"wx{uuid.uuid4().hex}"
    params = {
        "appId": APP_ID,
        "timeStamp": str(int(time.time())),
        "nonceStr": uuid.uuid4().hex,
        "package": f"prepay_id={prepay_id}",
        "signType": "MD5",
    }
    response = {**params, "paySign": _sign(params), "prepayId": prepay_id}

    _prepays[prepay_id] = {
        "referenceId": request.referenceId,
        "amount": request.amount,
        "notifyUrl": request.notifyUrl,
    }
    _responses[idempotency_key] = response
    logging.info(f"[PS] Prepay {prepay_id} für {request.referenceId} angelegt.")
    return response


@app.post("/v1/payments/{prepay_id}/complete")
def complete_payment(prepay_id: str, trade_state: str = "SUCCESS", notify: bool = True):
    """
    Settles a prepay transaction and posts the confirmation to its notify URL.

    Args:
        prepay_id (str): Id returned by POST /v1/payments.
        trade_state (str): SUCCESS, or a failure state such as FAIL.
        notify (bool): Send the callback to the shop; False only returns it.

    Returns:
        dict: The callback payload (out_trade_no, transaction_id, trade_state, total_fee).
    """
    prepay = _prepays.get(prepay_id)
    if prepay is None:
        raise HTTPException(status_code=404, detail="Unknown prepay id")

    callback = {
        "out_trade_no": prepay["referenceId"],
        "transaction_id": f"tr_{uuid.uuid4().hex}",
        "trade_state": trade_state,
        "total_fee": prepay["amount"],
    }
    if notify and prepay["notifyUrl"]:
        try:
            httpx.post(prepay["notifyUrl"], json=callback, timeout=5.0).raise_for_status()
            logging.info(f"[PS] Callback für {prepay['referenceId']} zugestellt ({trade_state}).")
        except httpx.HTTPError as e:
            logging.error(f"[PS] Callback für {prepay['referenceId']} fehlgeschlagen: {e}")
    return callback


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)
