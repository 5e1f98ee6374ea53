# Overview: QR payment providers (HTTP payment-link API or offline) and webhook signature checks.

"""
QR Payment Providers

A provider issues a payment code for an order amount and answers status
queries for it. Two implementations:

- HttpPaymentProvider: talks to a payment-link API over httpx. Request
  bodies and webhooks are signed with HMAC-SHA256 over the sorted
  "key=value&key=value" form of the data fields.
- OfflinePaymentProvider: no network; codes are generated locally and
  payment is confirmed through the webhook or the confirm-and-print
  fallback at the counter.

The provider only reports status; the order service owns the order state.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
from flask import current_app

from ..errors import PaymentGatewayError
from ..money import amount_str
from ..time_utils import utcnow

# Provider status values mapped onto order payment_status
STATUS_PENDING = "PENDING"
STATUS_PAID = "PAID"
STATUS_EXPIRED = "EXPIRED"
STATUS_CANCELLED = "CANCELLED"
KNOWN_STATUSES = {STATUS_PENDING, STATUS_PAID, STATUS_EXPIRED, STATUS_CANCELLED}


@dataclass(frozen=True)
class QrPayment:
    reference: str
    payload: str
    image: str | None
    expires_at: datetime
    checkout_url: str | None = None


def _signing_string(data: dict) -> str:
    parts = []
    for key in sorted(data):
        value = data[key]
        if value is None:
            value = ""
        parts.append(f"{key}={value}")
    return "&".join(parts)


def sign_fields(data: dict, key: str) -> str:
    return hmac.new(key.encode("utf-8"), _signing_string(data).encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(data: dict, signature: str | None, key: str) -> bool:
    if not signature:
        return False
    expected = sign_fields(data, key)
    return hmac.compare_digest(expected.lower(), str(signature).lower())


def new_reference(order_id: int) -> str:
    """Numeric reference (payment-link APIs take an integer order code)."""
    return f"{order_id}{secrets.randbelow(10 ** 6):06d}"


def _description(order_id: int) -> str:
    return f"SB{order_id}"[:25]


class PaymentProvider:
    def create_payment(self, *, order_id: int, amount: Decimal, expires_at: datetime) -> QrPayment:
        raise NotImplementedError

    def get_status(self, reference: str) -> str | None:
        """Provider view of a payment; None when the provider cannot tell."""
        raise NotImplementedError

    def cancel_payment(self, reference: str) -> None:
        raise NotImplementedError


class OfflinePaymentProvider(PaymentProvider):
    def create_payment(self, *, order_id: int, amount: Decimal, expires_at: datetime) -> QrPayment:
        reference = new_reference(order_id)
        payload = f"SMARTBIZ|{reference}|{amount_str(amount)}|{_description(order_id)}"
        return QrPayment(reference=reference, payload=payload, image=None, expires_at=expires_at)

    def get_status(self, reference: str) -> str | None:
        return None

    def cancel_payment(self, reference: str) -> None:
        return None


class HttpPaymentProvider(PaymentProvider):
    """
    Payment-link API client.

    POST /v2/payment-requests            create a code
    GET  /v2/payment-requests/<ref>      status
    POST /v2/payment-requests/<ref>/cancel
    Responses carry {"code": "00", "desc": ..., "data": {...}}; any other code is an error.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client_id: str = "",
        api_key: str = "",
        checksum_key: str = "",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.checksum_key = checksum_key
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "x-client-id": client_id,
                "x-api-key": api_key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"Payment provider request failed: {exc}") from exc
        except ValueError as exc:
            raise PaymentGatewayError("Payment provider returned invalid JSON") from exc

        if str(body.get("code")) != "00":
            raise PaymentGatewayError(
                f"Payment provider error: {body.get('desc') or 'unknown error'}",
                details={"provider_code": body.get("code")},
            )
        return body.get("data") or {}

    def create_payment(self, *, order_id: int, amount: Decimal, expires_at: datetime) -> QrPayment:
        reference = new_reference(order_id)
        fields = {
            "orderCode": int(reference),
            "amount": int(amount),
            "description": _description(order_id),
            "returnUrl": "",
            "cancelUrl": "",
        }
        body = dict(fields)
        body["expiredAt"] = int((expires_at - datetime(1970, 1, 1)).total_seconds())
        if self.checksum_key:
            body["signature"] = sign_fields(fields, self.checksum_key)

        data = self._request("POST", "/v2/payment-requests", json=body)
        return QrPayment(
            reference=reference,
            payload=data.get("qrCode") or "",
            image=data.get("qrImage"),
            expires_at=expires_at,
            checkout_url=data.get("checkoutUrl"),
        )

    def get_status(self, reference: str) -> str | None:
        data = self._request("GET", f"/v2/payment-requests/{reference}")
        status = str(data.get("status") or "").upper()
        return status if status in KNOWN_STATUSES else None

    def cancel_payment(self, reference: str) -> None:
        self._request("POST", f"/v2/payment-requests/{reference}/cancel", json={})


def get_payment_provider() -> PaymentProvider:
    """
    Provider for the current app.

    An instance registered under app.extensions["payment_provider"] wins;
    otherwise PAYMENT_GATEWAY_URL selects the HTTP provider (empty = offline).
    """
    provider = current_app.extensions.get("payment_provider")
    if provider is not None:
        return provider

    base_url = current_app.config.get("PAYMENT_GATEWAY_URL") or ""
    if not base_url:
        provider = OfflinePaymentProvider()
    else:
        provider = HttpPaymentProvider(
            base_url,
            client_id=current_app.config.get("PAYMENT_GATEWAY_CLIENT_ID", ""),
            api_key=current_app.config.get("PAYMENT_GATEWAY_API_KEY", ""),
            checksum_key=current_app.config.get("PAYMENT_WEBHOOK_SECRET", ""),
            timeout=current_app.config.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10),
        )
    current_app.extensions["payment_provider"] = provider
    return provider


def qr_expiry(now: datetime | None = None) -> datetime:
    minutes = current_app.config.get("QR_EXPIRY_MINUTES", 15)
    return (now or utcnow()) + timedelta(minutes=minutes)
