# Overview: Compares a finalized order against invoice data extracted from an external document.

"""
Reconciliation

A document is either structured fields ({"order_id", "total",
"payment_method", "customer_name", "customer_phone", "vat"}) or raw text
from a printed invoice ({"text": "..."}), from which labelled lines are
read. Each field is normalized on both sides before comparison:

- order id: case-insensitive, leading "#" ignored
- total: currency strings parsed to Decimal; match when |diff| < 1
- payment method: free text mapped onto cash / qr
- customer: "name - phone"; phone compared by digits only
- VAT: compared only when the document carries a VAT field

Status is "inconclusive" when no usable order identifier was found,
otherwise "aligned" (no mismatches) or "diverged".
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Order
from ..money import amount_str, to_decimal

WALK_IN_CUSTOMER = "Walk-in customer"

ORDER_ID_LABELS = ("Order ID", "Order #", "Invoice ID", "Invoice #", "ID Hóa đơn", "ID Hoa don", "Mã hóa đơn", "Ma hoa don")
TOTAL_LABELS = ("Grand total", "TỔNG TIỀN", "TONG TIEN", "Total")
PAYMENT_LABELS = ("Payment method", "Phương thức", "Phuong thuc", "Thanh toán", "Thanh toan", "Payment")
CUSTOMER_LABELS = ("Customer", "Khách hàng", "Khach hang")
VAT_LABELS = ("VAT", "Thuế", "Thue")

CASH_WORDS = ("cash", "tiền mặt", "tien mat")
QR_WORDS = ("qr", "transfer", "chuyển khoản", "chuyen khoan", "bank")

_ORDER_REF_RE = re.compile(r"(?:order|invoice|hóa đơn|hoa don)\s*(?:id|no\.?)?\s*[:#]?\s*#?\s*(\d+)", re.IGNORECASE)
_NUMERIC_RE = re.compile(r"-?\d[\d.,\s]*")


def extract_line_value(lines: list[str], labels) -> str | None:
    """Value after the first label (in label priority order) that starts a line."""
    for label in labels:
        needle = label.lower()
        for raw in lines:
            line = raw.strip()
            if not line or not line.lower().startswith(needle):
                continue
            value = line[len(label):].lstrip().lstrip(":-").strip()
            if value:
                return value
    return None


def sanitize_amount(value) -> Decimal | None:
    """
    Parse a currency string such as "330.000 ₫", "330,000", "1.234,50" or "-12.5".

    The last separator is a decimal point only when one or two digits follow
    it; every other separator is a thousands separator.
    """
    if value is None:
        return None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return to_decimal(value)
    raw = re.sub(r"[đ₫]", "", str(value).strip(), flags=re.IGNORECASE)
    match = _NUMERIC_RE.search(raw)
    if not match:
        return None
    numeric = re.sub(r"\s+", "", match.group(0))
    if not numeric or numeric == "-":
        return None

    sign = -1 if numeric.startswith("-") else 1
    integer_end = len(numeric)
    decimal_digits = ""
    for index in sorted((numeric.rfind(","), numeric.rfind(".")), reverse=True):
        if index == -1:
            continue
        fraction = re.sub(r"[^0-9]", "", numeric[index + 1:])
        if 1 <= len(fraction) <= 2:
            decimal_digits = fraction
            integer_end = index
            break

    integer_digits = re.sub(r"[^0-9]", "", numeric[:integer_end])
    if not integer_digits and not decimal_digits:
        return None
    try:
        result = Decimal(integer_digits or "0")
        if decimal_digits:
            result += Decimal(f"0.{decimal_digits}")
    except InvalidOperation:
        return None
    return sign * result


def _split_customer(value: str | None) -> tuple[str | None, str | None]:
    if not value:
        return None, None
    if "-" not in value:
        return value.strip() or None, None
    name, _, phone = value.partition("-")
    phone_digits = re.sub(r"[^0-9+]", "", phone)
    return name.strip() or None, phone_digits or None


def extract_invoice_fields(text: str) -> dict:
    """Read the reconcilable fields out of raw printed-invoice text."""
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]

    order_id = extract_line_value(lines, ORDER_ID_LABELS)
    if order_id is None:
        match = _ORDER_REF_RE.search(text or "")
        order_id = match.group(1) if match else None

    customer_name, customer_phone = _split_customer(extract_line_value(lines, CUSTOMER_LABELS))
    return {
        "order_id": order_id,
        "total": sanitize_amount(extract_line_value(lines, TOTAL_LABELS)),
        "payment_method": extract_line_value(lines, PAYMENT_LABELS),
        "customer_name": customer_name,
        "customer_phone": customer_phone,
        "vat": extract_line_value(lines, VAT_LABELS),
    }


def normalize_document(document: dict) -> dict:
    if not isinstance(document, dict):
        raise ValidationError({"document": "document must be an object"})
    if document.get("text"):
        return extract_invoice_fields(str(document["text"]))

    customer_name = document.get("customer_name")
    customer_phone = document.get("customer_phone")
    if document.get("customer") and not (customer_name or customer_phone):
        customer_name, customer_phone = _split_customer(str(document["customer"]))

    order_id = document.get("order_id")
    return {
        "order_id": str(order_id).strip() if order_id not in (None, "") else None,
        "total": sanitize_amount(document.get("total")),
        "payment_method": document.get("payment_method"),
        "customer_name": customer_name,
        "customer_phone": customer_phone,
        "vat": document.get("vat"),
    }


def _normalize_identifier(value) -> str:
    return str(value).strip().lstrip("#").strip().lower()


def _payment_kind(value: str | None) -> str | None:
    if not value:
        return None
    text = value.lower()
    if any(word in text for word in CASH_WORDS):
        return "cash"
    if any(word in text for word in QR_WORDS):
        return "qr"
    return text.strip()


def _digits(value) -> str:
    return re.sub(r"[^0-9]", "", str(value or ""))


def _normalize_name(value) -> str:
    return " ".join(str(value or "").split()).casefold()


def _check(field: str, expected, actual, match: bool) -> dict:
    return {"field": field, "expected": expected, "actual": actual, "match": bool(match)}


def compare(order, extracted: dict) -> dict:
    """Per-field comparison report for an order record and normalized document fields."""
    checks = []

    actual_id = extracted.get("order_id")
    usable_id = bool(actual_id) and bool(_normalize_identifier(actual_id))
    checks.append(_check(
        "order_id",
        str(order.id),
        actual_id,
        usable_id and _normalize_identifier(actual_id) == _normalize_identifier(order.id),
    ))

    expected_total = to_decimal(order.total)
    actual_total = extracted.get("total")
    checks.append(_check(
        "total",
        amount_str(expected_total),
        amount_str(actual_total) if actual_total is not None else None,
        actual_total is not None and abs(to_decimal(actual_total) - expected_total) < 1,
    ))

    actual_payment = extracted.get("payment_method")
    checks.append(_check(
        "payment_method",
        order.payment_method,
        actual_payment,
        _payment_kind(actual_payment) == order.payment_method,
    ))

    expected_name = order.customer_name or WALK_IN_CUSTOMER
    actual_name = extracted.get("customer_name")
    if actual_name:
        name_match = _normalize_name(actual_name) == _normalize_name(expected_name)
    else:
        name_match = not order.customer_name
    checks.append(_check("customer_name", expected_name, actual_name, name_match))

    expected_phone = order.customer_phone or ""
    actual_phone = extracted.get("customer_phone")
    checks.append(_check(
        "customer_phone",
        expected_phone,
        actual_phone,
        _digits(actual_phone) == _digits(expected_phone) if expected_phone else not _digits(actual_phone),
    ))

    actual_vat = extracted.get("vat")
    if actual_vat is not None:
        vat_text = str(actual_vat).strip().lower()
        says_vat = bool(vat_text) and vat_text not in ("no", "none", "không", "khong", "0", "false")
        checks.append(_check(
            "vat",
            "VAT invoice" if order.is_vat_invoice else "No VAT invoice",
            actual_vat,
            says_vat == bool(order.is_vat_invoice),
        ))

    mismatched = sum(1 for c in checks if not c["match"])
    if not usable_id:
        status = "inconclusive"
    elif mismatched == 0:
        status = "aligned"
    else:
        status = "diverged"

    return {
        "order_id": order.id,
        "checks": checks,
        "summary": {
            "total_checks": len(checks),
            "mismatched": mismatched,
            "status": status,
        },
    }


def reconcile_order(order_id: int, document: dict, *, store_id: int | None = None) -> dict:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None or (store_id is not None and order.store_id != store_id):
        raise NotFoundError("Order", order_id)
    return compare(order, normalize_document(document))
