# Overview: Terminal-to-server transport for orders: in-process services or the REST API over httpx.

"""
Order Gateways

The terminal only speaks dicts shaped like the REST API's JSON bodies, so
both gateways are interchangeable:

- ServiceOrderGateway calls the services directly inside the app context.
- HttpOrderGateway calls /api/* with httpx and turns error bodies back
  into the matching EngineError subclasses.
"""

from __future__ import annotations

from contextlib import nullcontext

import httpx
from flask import current_app, has_app_context

from ..errors import (
    EngineError,
    ExpiredBatchOnly,
    InsufficientStock,
    NotFoundError,
    PaymentGatewayError,
    PaymentWindowExpired,
    StaleOrderState,
    ValidationError,
)
from ..services import order_service, stock_service


class OrderGateway:
    def get_product(self, store_id: int, product_id: int) -> dict:
        raise NotImplementedError

    def submit_order(self, body: dict) -> dict:
        raise NotImplementedError

    def confirm_cash(self, order_id: int, cash_received=None) -> dict:
        raise NotImplementedError

    def payment_status(self, order_id: int) -> dict:
        raise NotImplementedError

    def cancel_qr(self, order_id: int) -> dict:
        raise NotImplementedError

    def print_order(self, order_id: int) -> dict:
        raise NotImplementedError


class ServiceOrderGateway(OrderGateway):
    """In-process gateway for a terminal running next to the Flask app."""

    def __init__(self, app):
        self.app = app

    def _context(self):
        # Reuse an active context for this app so callers share its session
        if has_app_context() and current_app._get_current_object() is self.app:
            return nullcontext()
        return self.app.app_context()

    def get_product(self, store_id: int, product_id: int) -> dict:
        with self._context():
            product = stock_service.get_product_for_store(store_id, product_id, require_active=True)
            return stock_service.stock_summary(product)

    def submit_order(self, body: dict) -> dict:
        with self._context():
            return order_service.submit_order(body).to_dict()

    def confirm_cash(self, order_id: int, cash_received=None) -> dict:
        with self._context():
            cash = str(cash_received) if cash_received is not None else None
            return order_service.confirm_cash_payment(order_id, cash).to_dict()

    def payment_status(self, order_id: int) -> dict:
        with self._context():
            return order_service.get_payment_status(order_id)

    def cancel_qr(self, order_id: int) -> dict:
        with self._context():
            return order_service.cancel_qr_payment(order_id).to_dict()

    def print_order(self, order_id: int) -> dict:
        with self._context():
            return order_service.print_order(order_id)


def error_from_response(status_code: int, body: dict) -> EngineError:
    """Rebuild the server's EngineError from an error response body."""
    code = body.get("code")
    message = body.get("error") or f"Request failed with status {status_code}"
    details = body.get("details") or {}

    if code == "VALIDATION_ERROR":
        return ValidationError(details.get("fields") or {"_": message}, message=message)
    if code == "EXPIRED_BATCH_ONLY":
        return ExpiredBatchOnly(details.get("product_id"), details.get("requested", 0), details.get("expired_quantity", 0))
    if code == "INSUFFICIENT_STOCK":
        return InsufficientStock(
            details.get("product_id"), details.get("requested", 0), details.get("available", 0), message=message
        )
    if code == "STALE_ORDER_STATE":
        return StaleOrderState(details.get("order_id"), details.get("status", ""), message=message)
    if code == "PAYMENT_WINDOW_EXPIRED":
        return PaymentWindowExpired(details.get("order_id"), details.get("expired_at"))
    if code == "NOT_FOUND":
        return NotFoundError(details.get("entity", "Resource"), details.get("id"))
    if code == "PAYMENT_GATEWAY_ERROR":
        return PaymentGatewayError(message, details)

    error = EngineError(message, details)
    error.code = code or "HTTP_ERROR"
    error.status = status_code
    return error


class HttpOrderGateway(OrderGateway):
    """Gateway for a terminal talking to a remote SmartBiz server."""

    def __init__(self, base_url: str, *, timeout: float = 10.0, transport: httpx.BaseTransport | None = None):
        self._client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        # Transport errors propagate untouched; the poller retries them
        response = self._client.request(method, path, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error:
            raise error_from_response(response.status_code, body if isinstance(body, dict) else {})
        return body

    def get_product(self, store_id: int, product_id: int) -> dict:
        return self._request("GET", f"/api/stock/products/{product_id}", params={"store_id": store_id})

    def submit_order(self, body: dict) -> dict:
        return self._request("POST", "/api/orders/", json=body)["order"]

    def confirm_cash(self, order_id: int, cash_received=None) -> dict:
        payload = {"cash_received": str(cash_received)} if cash_received is not None else {}
        return self._request("POST", f"/api/orders/{order_id}/confirm-cash", json=payload)["order"]

    def payment_status(self, order_id: int) -> dict:
        return self._request("GET", f"/api/orders/{order_id}/payment-status")

    def cancel_qr(self, order_id: int) -> dict:
        return self._request("POST", f"/api/orders/{order_id}/cancel-qr", json={})["order"]

    def print_order(self, order_id: int) -> dict:
        return self._request("POST", f"/api/orders/{order_id}/print", json={})["receipt"]
