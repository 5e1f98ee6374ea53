# Overview: Cancellable background task that polls one tab's QR payment status.

from __future__ import annotations

import logging
import threading
from typing import Callable

import httpx

from ..errors import PaymentGatewayError

logger = logging.getLogger(__name__)

# Tick results that end polling
FINAL_STATUSES = frozenset({"PAID", "EXPIRED", "CANCELLED", "STOPPED"})

# Failures that are retried on the next tick instead of stopping the poller
TRANSIENT_ERRORS = (httpx.TransportError, PaymentGatewayError)


class QrPoller:
    """
    Calls `tick` every `interval` seconds on a daemon thread until the tick
    reports a final status or stop() is called.

    `tick` returns a payment status string. Transient network and provider
    failures are logged and retried on the next tick; any other exception
    stops the poller and is handed to `on_error`.
    """

    def __init__(
        self,
        tick: Callable[[], str],
        *,
        interval: float = 3.0,
        on_final: Callable[[str], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        name: str = "qr-poller",
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._tick = tick
        self._interval = interval
        self._on_final = on_final
        self._on_error = on_error
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.last_status: str | None = None

    def start(self) -> "QrPoller":
        self._thread.start()
        return self

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                status = self._tick()
            except TRANSIENT_ERRORS as exc:
                logger.warning("QR status poll failed, retrying next tick: %s", exc)
                continue
            except Exception as exc:
                logger.exception("QR status poll stopped on error")
                self._stop.set()
                if self._on_error is not None:
                    self._on_error(exc)
                return

            self.last_status = status
            if status in FINAL_STATUSES:
                self._stop.set()
                logger.info("QR polling finished: %s", status)
                if self._on_final is not None:
                    self._on_final(status)
                return
