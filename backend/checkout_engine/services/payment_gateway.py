# Overview: Payment processor boundary; simulated in-process gateway and HTTP gateway client.

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, replace
from urllib.parse import urljoin

import httpx
from flask import current_app

from ..errors import PaymentGatewayError

"""
Payment processor contract.

The engine never moves money itself. It asks the processor for a payment
bound to a quote token and later asks whether that payment is confirmed:

- create_payment(amount_cents, currency, quote_token) -> PaymentConfirmation
- get_payment(reference) -> PaymentConfirmation | None

The amount comes from the persisted quote, never from the client.
"""

logger = logging.getLogger(__name__)

PAYMENT_PENDING = "PENDING"
PAYMENT_CONFIRMED = "CONFIRMED"
PAYMENT_FAILED = "FAILED"


@dataclass(frozen=True)
class PaymentConfirmation:
    reference: str
    status: str
    amount_cents: int
    currency: str
    quote_token: str

    @property
    def confirmed(self) -> bool:
        return self.status == PAYMENT_CONFIRMED

    def to_dict(self) -> dict:
        return {
            "reference": self.reference,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "quote_token": self.quote_token,
        }


class SimulatedPaymentGateway:
    """
    In-process processor for development and tests.

    Payments start PENDING; confirm() / fail() play the processor's webhook.
    Thread-safe: request handlers and test threads share one instance.
    """

    def __init__(self, *, auto_confirm: bool = False):
        self.auto_confirm = auto_confirm
        self._payments: dict[str, PaymentConfirmation] = {}
        self._lock = threading.Lock()

    def create_payment(self, amount_cents: int, currency: str, quote_token: str) -> PaymentConfirmation:
        payment = PaymentConfirmation(
            reference=f"sim_{secrets.token_hex(12)}",
            status=PAYMENT_CONFIRMED if self.auto_confirm else PAYMENT_PENDING,
            amount_cents=amount_cents,
            currency=currency,
            quote_token=quote_token,
        )
        with self._lock:
            self._payments[payment.reference] = payment
        return payment

    def get_payment(self, reference: str) -> PaymentConfirmation | None:
        with self._lock:
            return self._payments.get(reference)

    def _set_status(self, reference: str, status: str) -> PaymentConfirmation:
        with self._lock:
            payment = self._payments.get(reference)
            if payment is None:
                raise PaymentGatewayError(f"Unknown payment {reference}")
            payment = replace(payment, status=status)
            self._payments[reference] = payment
            return payment

    def confirm(self, reference: str) -> PaymentConfirmation:
        return self._set_status(reference, PAYMENT_CONFIRMED)

    def fail(self, reference: str) -> PaymentConfirmation:
        return self._set_status(reference, PAYMENT_FAILED)

    def register(self, payment: PaymentConfirmation) -> None:
        """Seed a payment as if the processor had created it (tests, replays)."""
        with self._lock:
            self._payments[payment.reference] = payment


class HttpPaymentGateway:
    """
    Client for an HTTP payment processor.

    POST {base}/payments         {amount_cents, currency, quote_token}
    GET  {base}/payments/{ref}   -> 404 when unknown
    """

    def __init__(self, base_url: str, *, api_key: str = "", timeout: float = 10.0, transport=None):
        self.base_url = base_url.rstrip("/") + "/"
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.Client(headers=headers, timeout=self.timeout, transport=self.transport)

    @staticmethod
    def _parse(data: dict) -> PaymentConfirmation:
        try:
            return PaymentConfirmation(
                reference=str(data["reference"]),
                status=str(data["status"]).upper(),
                amount_cents=int(data["amount_cents"]),
                currency=str(data["currency"]).upper(),
                quote_token=str(data["quote_token"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PaymentGatewayError("Malformed response from payment processor", details={"cause": str(e)}) from e

    def create_payment(self, amount_cents: int, currency: str, quote_token: str) -> PaymentConfirmation:
        url = urljoin(self.base_url, "payments")
        payload = {"amount_cents": amount_cents, "currency": currency, "quote_token": quote_token}
        with self._client() as client:
            try:
                response = client.post(url, json=payload)
                response.raise_for_status()
                return self._parse(response.json())
            except (httpx.RequestError, httpx.HTTPStatusError) as e:
                logger.error("Payment processor create_payment error: %s", e)
                raise PaymentGatewayError("Payment processor unavailable") from e

    def get_payment(self, reference: str) -> PaymentConfirmation | None:
        url = urljoin(self.base_url, f"payments/{reference}")
        with self._client() as client:
            try:
                response = client.get(url)
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                return self._parse(response.json())
            except (httpx.RequestError, httpx.HTTPStatusError) as e:
                logger.error("Payment processor get_payment error for %s: %s", reference, e)
                raise PaymentGatewayError("Payment processor unavailable") from e


def build_payment_gateway(config) -> SimulatedPaymentGateway | HttpPaymentGateway:
    kind = (config.get("PAYMENT_GATEWAY") or "simulated").lower()
    if kind == "simulated":
        return SimulatedPaymentGateway()
    if kind == "http":
        return HttpPaymentGateway(
            config["PAYMENT_API_URL"],
            api_key=config.get("PAYMENT_API_KEY", ""),
            timeout=config.get("PAYMENT_TIMEOUT_SECONDS", 10.0),
        )
    raise ValueError(f"Unknown PAYMENT_GATEWAY: {kind}")


def get_payment_gateway():
    return current_app.extensions["payment_gateway"]
