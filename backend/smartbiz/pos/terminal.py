# Overview: POS terminal driving many order tabs through submit, payment, QR polling and print.

"""
POS Terminal

One PosTerminal serves one till. It holds any number of tabs (parked
carts), each an immutable OrderTab snapshot replaced on every edit. The
store and the seller are fixed per terminal and sent with every request.

LIFECYCLE per tab:
1. EMPTY -> EDITING: lines added
2. EDITING -> PENDING_PAYMENT: submit_order creates the server order, or
   updates it in place (same order id) on every later submit
3. PENDING_PAYMENT -> PAID: confirm_cash_payment, or a QR poll tick that
   sees the payment. Payment never prints by itself.
4. PAID -> EMPTY: confirm_print prints and resets the tab

CONCURRENCY:
- Submits for one tab are serialized; a submit that finishes after the
  tab was printed or closed is discarded.
- Edits made while a pending order exists are re-submitted automatically
  so the server copy follows the cart. A failed re-submit keeps the edit
  in the tab and raises to the caller.
- At most one QR poller runs per tab. It stops on payment, expiry, QR
  cancel, print, close_tab and shutdown.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable

from ..config import Config
from ..errors import ExpiredBatchOnly, NotFoundError, PaymentWindowExpired, StaleOrderState, ValidationError
from ..money import amount_str, to_decimal
from ..services.pricing_service import OrderTotals, SaleType
from ..time_utils import parse_iso_datetime, to_utc_z, utcnow
from . import tab as tab_model
from .gateway import OrderGateway
from .poller import QrPoller
from .tab import (
    PAYMENT_CASH,
    PAYMENT_QR,
    CartLine,
    CustomerRef,
    OrderTab,
    PendingOrder,
    QrCode,
    TabState,
    VatInfo,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_PAID = "PAID"
STATUS_EXPIRED = "EXPIRED"
STATUS_CANCELLED = "CANCELLED"
STATUS_STOPPED = "STOPPED"


class TabSession:
    """Mutable holder for one tab's current snapshot and its background work."""

    def __init__(self, key, tab: OrderTab):
        self.key = key
        self.tab = tab
        # Guards tab replacement and poller bookkeeping
        self.lock = threading.RLock()
        # Serializes submits (held across the network call)
        self.submit_lock = threading.Lock()
        # Bumped when the tab is printed or closed; late results are dropped
        self.generation = 0
        self.poller: QrPoller | None = None


def _pending_from_response(order: dict, revision: int) -> PendingOrder:
    qr = None
    if order.get("payment_method") == PAYMENT_QR and order.get("qr_payload"):
        qr = QrCode(
            reference=order.get("payment_reference"),
            payload=order.get("qr_payload"),
            image=order.get("qr_image"),
            expires_at=parse_iso_datetime(order.get("qr_expires_at")),
        )
    return PendingOrder(
        order_id=order["id"],
        created_at=order.get("created_at"),
        total=to_decimal(order.get("total")),
        print_count=order.get("print_count") or 0,
        earned_points=order.get("earned_points") or 0,
        payment_method=order.get("payment_method") or PAYMENT_CASH,
        qr=qr,
        paid=order.get("status") == STATUS_PAID,
        revision=revision,
    )


class PosTerminal:
    def __init__(
        self,
        gateway: OrderGateway,
        *,
        store_id: int,
        employee_id: int | None = None,
        poll_interval: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        auto_resubmit: bool = True,
    ):
        self.gateway = gateway
        self.store_id = store_id
        self.employee_id = employee_id
        self.poll_interval = poll_interval if poll_interval is not None else Config.QR_POLL_INTERVAL_SECONDS
        self.clock = clock
        self.auto_resubmit = auto_resubmit
        self._sessions: dict = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Tabs
    # ------------------------------------------------------------------

    def _session(self, key) -> TabSession:
        with self._lock:
            session = self._sessions.get(key)
        if session is None:
            raise NotFoundError("Tab", key)
        return session

    def open_tab(self, key, *, employee_id: int | None = None) -> OrderTab:
        """Open a tab, or return the existing one under the same key."""
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                seller = employee_id if employee_id is not None else self.employee_id
                session = TabSession(key, tab_model.empty_tab(seller))
                self._sessions[key] = session
        return session.tab

    def close_tab(self, key) -> None:
        with self._lock:
            session = self._sessions.pop(key, None)
        if session is None:
            return
        with session.lock:
            session.generation += 1
        self._stop_poller(session)

    def tab(self, key) -> OrderTab:
        return self._session(key).tab

    @property
    def tab_keys(self) -> list:
        with self._lock:
            return list(self._sessions)

    def shutdown(self) -> None:
        """Stop every poller and drop all tabs."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            with session.lock:
                session.generation += 1
            self._stop_poller(session)

    # ------------------------------------------------------------------
    # Cart edits
    # ------------------------------------------------------------------

    def _edit(self, key, edit, *args, resubmit: bool = True) -> OrderTab:
        session = self._session(key)
        with session.lock:
            session.tab = edit(session.tab, *args)
            current = session.tab
        if (
            resubmit
            and self.auto_resubmit
            and current.lines
            and tab_model.is_dirty(current)
        ):
            return self.submit_order(key)
        return current

    def add_line(
        self,
        key,
        product_id: int,
        quantity: int = 1,
        *,
        sale_type=SaleType.NORMAL,
        override_price=None,
        batch_no: str | None = None,
    ) -> OrderTab:
        """
        Add a product to the cart.

        The product's current sellable quantity becomes the line's stock
        ceiling. Raises ExpiredBatchOnly when the only stock left has expired.
        """
        try:
            parsed_type = SaleType.parse(sale_type)
        except ValueError:
            raise ValidationError({"sale_type": f"Unknown sale type {sale_type!r}"})

        product = self.gateway.get_product(self.store_id, product_id)
        available = int(product.get("available") or 0)
        if available < quantity and product.get("expired_only"):
            raise ExpiredBatchOnly(product_id, quantity, int(product.get("expired_quantity") or 0))

        expiry_date = None
        if batch_no:
            for batch in product.get("batches") or ():
                if batch.get("batch_no") == batch_no:
                    expiry_date = parse_iso_datetime(batch.get("expiry_date"))
                    break

        line = CartLine(
            product_id=product_id,
            name=product.get("name") or str(product_id),
            quantity=quantity,
            list_price=to_decimal(product.get("price")),
            cost_price=to_decimal(product.get("cost_price")) if product.get("cost_price") is not None else None,
            tax_rate=to_decimal(product.get("tax_rate")),
            unit=product.get("unit"),
            sale_type=parsed_type,
            override_price=to_decimal(override_price) if override_price is not None else None,
            batch_no=batch_no,
            expiry_date=expiry_date,
            stock_ceiling=available,
        )
        return self._edit(key, tab_model.add_line, line)

    def update_quantity(self, key, index: int, quantity: int) -> OrderTab:
        return self._edit(key, tab_model.update_quantity, index, quantity)

    def remove_line(self, key, index: int) -> OrderTab:
        return self._edit(key, tab_model.remove_line, index)

    def set_sale_type(self, key, index: int, sale_type) -> OrderTab:
        return self._edit(key, tab_model.set_sale_type, index, sale_type)

    def set_override_price(self, key, index: int, price) -> OrderTab:
        return self._edit(key, tab_model.set_override_price, index, price)

    def set_customer(self, key, phone: str | None, name: str | None = None, *, loyalty_balance: int | None = None) -> OrderTab:
        customer = CustomerRef(phone=phone.strip(), name=name, loyalty_balance=loyalty_balance) if phone else None
        return self._edit(key, tab_model.set_customer, customer)

    def set_loyalty_points(self, key, points: int, currency_per_point=None) -> OrderTab:
        return self._edit(key, tab_model.set_loyalty_points, points, currency_per_point)

    def set_vat_invoice(
        self,
        key,
        enabled: bool,
        *,
        company_name: str = "",
        tax_code: str = "",
        company_address: str = "",
    ) -> OrderTab:
        vat_info = VatInfo(company_name=company_name, tax_code=tax_code, company_address=company_address)
        return self._edit(key, tab_model.set_vat_invoice, enabled, vat_info)

    def set_payment_method(self, key, method: str) -> OrderTab:
        session = self._session(key)
        if (method or "").strip().lower() != PAYMENT_QR:
            self._stop_poller(session)
        return self._edit(key, tab_model.set_payment_method, method)

    def set_cash_received(self, key, amount) -> OrderTab:
        return self._edit(key, tab_model.set_cash_received, amount, resubmit=False)

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def totals(self, key) -> OrderTotals:
        return tab_model.totals(self.tab(key))

    def change_due(self, key) -> Decimal | None:
        return tab_model.change_due(self.tab(key))

    def state(self, key) -> TabState:
        return tab_model.state(self.tab(key))

    # ------------------------------------------------------------------
    # Order lifecycle
    # ------------------------------------------------------------------

    def submit_order(self, key) -> OrderTab:
        """
        Create the server order for this tab, or update it in place.

        Raises ValidationError (empty cart, not enough cash),
        InsufficientStock / ExpiredBatchOnly from the server re-check,
        StaleOrderState once paid.
        """
        session = self._session(key)
        with session.submit_lock:
            with session.lock:
                snapshot = session.tab
                generation = session.generation

            if snapshot.pending is not None and snapshot.pending.paid:
                raise StaleOrderState(snapshot.pending.order_id, TabState.PAID.value)
            if not snapshot.lines:
                raise ValidationError({"items": "Cart is empty"})
            if snapshot.payment_method == PAYMENT_CASH and snapshot.cash_received is not None:
                if tab_model.change_due(snapshot) is None:
                    total = tab_model.totals(snapshot).grand_total
                    raise ValidationError(
                        {"cash_received": f"Not enough cash: received {amount_str(snapshot.cash_received)}, "
                                          f"total is {amount_str(total)}"}
                    )

            body = tab_model.order_request(snapshot, store_id=self.store_id)
            order = self.gateway.submit_order(body)
            pending = _pending_from_response(order, snapshot.revision)

            with session.lock:
                if session.generation != generation:
                    logger.info("Discarding submit result for tab %s: tab was reset", key)
                    return session.tab
                session.tab = tab_model.with_pending(session.tab, pending)
                current = session.tab

        logger.info(
            "Tab %s submitted order %s (total=%s, method=%s)",
            key, pending.order_id, amount_str(pending.total), pending.payment_method,
        )
        return current

    def confirm_cash_payment(self, key, cash_received=None) -> OrderTab:
        """Pending cash order -> PAID. Does not print."""
        session = self._session(key)
        current = session.tab
        if current.pending is None:
            raise ValidationError({"order": "Submit the order before confirming payment"})
        if current.pending.paid:
            return current
        if current.payment_method != PAYMENT_CASH:
            raise ValidationError({"payment_method": "Order is not a cash order"})

        if cash_received is not None:
            current = self._edit(key, tab_model.set_cash_received, cash_received, resubmit=False)
        if tab_model.is_dirty(current) or current.pending.payment_method != PAYMENT_CASH:
            current = self.submit_order(key)

        cash = current.cash_received
        if cash is not None and cash < current.pending.total:
            raise ValidationError(
                {"cash_received": f"Not enough cash: received {amount_str(cash)}, "
                                  f"total is {amount_str(current.pending.total)}"}
            )

        with session.lock:
            generation = session.generation
        order = self.gateway.confirm_cash(current.pending.order_id, cash)

        with session.lock:
            if session.generation != generation:
                return session.tab
            session.tab = replace(
                tab_model.mark_paid(session.tab),
                cash_received=to_decimal(order.get("cash_received")) if order.get("cash_received") is not None else cash,
            )
            current = session.tab
        logger.info("Tab %s order %s paid in cash", key, current.pending.order_id)
        return current

    def poll_qr_status(self, key) -> str:
        """
        One poll tick: PENDING, PAID, EXPIRED, CANCELLED, or STOPPED when
        there is nothing left to poll for this tab.
        """
        session = self._session(key)
        with session.lock:
            current = session.tab
            generation = session.generation
        pending = current.pending
        if pending is None or pending.payment_method != PAYMENT_QR:
            return STATUS_STOPPED
        if pending.paid:
            return STATUS_PAID
        if pending.qr is None:
            return STATUS_STOPPED

        # Past the window the server is still asked once: a late-seen payment wins
        window_elapsed = pending.qr.is_expired(self.clock())
        status = self.gateway.payment_status(pending.order_id)
        reported = status.get("status")

        with session.lock:
            latest = session.tab.pending
            if session.generation != generation or latest is None or latest.order_id != pending.order_id:
                return STATUS_STOPPED
            if status.get("paid") or reported == STATUS_PAID:
                session.tab = tab_model.mark_paid(session.tab)
                logger.info("Tab %s order %s paid by QR", key, pending.order_id)
                return STATUS_PAID
            if window_elapsed:
                session.tab = tab_model.without_qr(session.tab)
                logger.info("Tab %s QR for order %s expired", key, pending.order_id)
                return STATUS_EXPIRED
            if reported in (STATUS_EXPIRED, STATUS_CANCELLED):
                session.tab = tab_model.without_qr(session.tab)
                return reported
        return STATUS_PENDING

    def start_qr_polling(
        self,
        key,
        *,
        on_final: Callable[[str], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> QrPoller:
        """Start the background poller for the tab's active QR (one per tab)."""
        session = self._session(key)
        current = session.tab
        pending = current.pending
        if pending is None or pending.payment_method != PAYMENT_QR:
            raise ValidationError({"payment_method": "No pending QR order on this tab"})
        if pending.paid:
            raise StaleOrderState(pending.order_id, TabState.PAID.value)
        if pending.qr is None:
            raise ValidationError({"qr": "No active QR code; submit the order again"})
        if pending.qr.is_expired(self.clock()):
            raise PaymentWindowExpired(pending.order_id, to_utc_z(pending.qr.expires_at))

        with session.lock:
            if session.poller is not None and session.poller.running:
                return session.poller
            poller = QrPoller(
                lambda: self.poll_qr_status(key),
                interval=self.poll_interval,
                on_final=on_final,
                on_error=on_error,
                name=f"qr-poller-{key}",
            )
            session.poller = poller
        poller.start()
        logger.info("Tab %s polling QR for order %s every %ss", key, pending.order_id, self.poll_interval)
        return poller

    def stop_qr_polling(self, key) -> None:
        self._stop_poller(self._session(key))

    def _stop_poller(self, session: TabSession) -> None:
        with session.lock:
            poller = session.poller
            session.poller = None
        if poller is not None:
            poller.stop(timeout=self.poll_interval)

    def dismiss_qr(self, key) -> OrderTab:
        """Hide the QR dialog; the saved copy stays for reopen_qr."""
        session = self._session(key)
        with session.lock:
            session.tab = replace(session.tab, qr_visible=False)
            return session.tab

    def reopen_qr(self, key) -> QrCode:
        """Show the saved QR again without requesting a new code."""
        session = self._session(key)
        with session.lock:
            current = session.tab
            saved = current.saved_qr
            if saved is None:
                raise ValidationError({"qr": "No QR code to show; submit the order first"})
            if saved.is_expired(self.clock()):
                session.tab = tab_model.without_qr(current)
                order_id = current.pending.order_id if current.pending else None
                raise PaymentWindowExpired(order_id, to_utc_z(saved.expires_at))
            session.tab = replace(current, qr_visible=True)
            return saved

    def cancel_qr(self, key) -> OrderTab:
        """Cancel the active QR; the order stays pending and can be re-submitted."""
        session = self._session(key)
        pending = session.tab.pending
        if pending is None or pending.payment_method != PAYMENT_QR:
            raise ValidationError({"payment_method": "No pending QR order on this tab"})
        if pending.paid:
            raise StaleOrderState(pending.order_id, TabState.PAID.value)

        self._stop_poller(session)
        self.gateway.cancel_qr(pending.order_id)
        with session.lock:
            session.tab = tab_model.without_qr(session.tab)
            current = session.tab
        logger.info("Tab %s QR for order %s cancelled", key, pending.order_id)
        return current

    def confirm_print(self, key) -> dict:
        """
        Print the receipt and reset the tab.

        A paid order prints directly. A pending QR order is confirmed and
        printed in one server call. A cash order must be confirmed first.
        """
        session = self._session(key)
        current = session.tab
        pending = current.pending
        if pending is None:
            raise ValidationError({"order": "Nothing to print; submit the order first"})
        if not pending.paid:
            if pending.payment_method == PAYMENT_CASH:
                raise ValidationError({"status": "Confirm the cash payment before printing"})
            if tab_model.is_dirty(current):
                pending = self.submit_order(key).pending

        self._stop_poller(session)
        receipt = self.gateway.print_order(pending.order_id)

        with session.lock:
            session.tab = tab_model.reset(session.tab)
            session.generation += 1
        logger.info("Tab %s printed order %s (copy %s)", key, pending.order_id, receipt.get("print_count"))
        return receipt
