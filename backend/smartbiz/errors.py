# Overview: Error taxonomy shared by services, the POS terminal and the HTTP layer.

"""
Every engine failure is an EngineError carrying a stable code, an HTTP
status and a details dict, so routes and terminals can report the specific
failure instead of a generic message.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for engine failures."""

    code = "ENGINE_ERROR"
    status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(EngineError):
    """
    Missing or malformed input.

    Field errors are kept per field ({"cash_received": "..."}) so a form can
    highlight each offending input.
    """

    code = "VALIDATION_ERROR"
    status = 400

    def __init__(self, fields: dict[str, str] | str, message: str | None = None):
        if isinstance(fields, str):
            fields = {"_": fields}
        self.fields = dict(fields)
        if message is None:
            message = next(iter(self.fields.values())) if len(self.fields) == 1 else "Invalid input"
        super().__init__(message, details={"fields": self.fields})


class InsufficientStock(EngineError):
    """Requested quantity exceeds sellable quantity. Always carries the available quantity."""

    code = "INSUFFICIENT_STOCK"
    status = 409

    def __init__(
        self,
        product_id: int | None,
        requested: int,
        available: int,
        message: str | None = None,
    ):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            message or f"Insufficient stock: requested {requested}, available {available}",
            details={
                "product_id": product_id,
                "requested": requested,
                "available": available,
            },
        )


class ExpiredBatchOnly(InsufficientStock):
    """The product has stock on its counter but every batch holding it has expired."""

    code = "EXPIRED_BATCH_ONLY"

    def __init__(self, product_id: int | None, requested: int, expired_quantity: int):
        self.expired_quantity = expired_quantity
        super().__init__(
            product_id,
            requested,
            0,
            message=f"All remaining stock has expired ({expired_quantity} units in expired batches)",
        )
        self.details["expired_quantity"] = expired_quantity


class StaleOrderState(EngineError):
    """Mutation attempted on an order that is already paid or printed."""

    code = "STALE_ORDER_STATE"
    status = 409

    def __init__(self, order_id, status: str, message: str | None = None):
        super().__init__(
            message or f"Order {order_id} is {status} and can no longer be changed",
            details={"order_id": order_id, "status": status},
        )


class PaymentWindowExpired(EngineError):
    """The QR code expired before payment was confirmed."""

    code = "PAYMENT_WINDOW_EXPIRED"
    status = 410

    def __init__(self, order_id, expired_at: str | None = None):
        super().__init__(
            "QR payment window has expired; submit the order again for a new code",
            details={"order_id": order_id, "expired_at": expired_at},
        )


class PartialVoucherApplyRejected(EngineError):
    """Posting a voucher failed; nothing was committed."""

    code = "VOUCHER_APPLY_REJECTED"
    status = 409

    def __init__(self, voucher_id, cause: EngineError):
        self.cause = cause
        super().__init__(
            f"Voucher {voucher_id} was not posted: {cause.message}",
            details={"voucher_id": voucher_id, "cause": cause.to_dict()},
        )


class NotFoundError(EngineError):
    code = "NOT_FOUND"
    status = 404

    def __init__(self, entity: str, entity_id):
        super().__init__(
            f"{entity} {entity_id} not found",
            details={"entity": entity, "id": entity_id},
        )


class PaymentGatewayError(EngineError):
    """The QR payment provider rejected or failed a request."""

    code = "PAYMENT_GATEWAY_ERROR"
    status = 502


class VoucherStateError(EngineError):
    """Operation not allowed in the voucher's current status."""

    code = "VOUCHER_STATE_ERROR"
    status = 409

    def __init__(self, voucher_id, status: str, message: str):
        super().__init__(message, details={"voucher_id": voucher_id, "status": status})
