"""
payment_status.py — Payment Status State Machine

Tracks the settlement of an online (PIX/CARD) order after creation by polling
the backend's check_payment_status action.

State flow:
    pending → paid/completed/approved (accepting: clears the cart once, stops polling)
    pending → cancelled/expired/refunded (rejecting: stops polling)

Polling model:
    • One immediate check on start, then one check every PAYMENT_POLL_INTERVAL seconds
    • Network and HTTP errors during a check are logged and retried on the next cycle
    • No attempt limit: polling runs until a terminal state or until the tracker is closed
    • check_now() performs one extra check without touching the recurring timer
    • close() cancels the timer synchronously; a check already in flight completes
      and its result is discarded
"""

import asyncio
import logging
import os
from typing import Dict, Optional

import httpx

from .cart import CartStore
from .clients import DeliveryApiClient
from .models import PaymentStatus

POLL_INTERVAL_SECONDS = float(os.environ.get("PAYMENT_POLL_INTERVAL", "5"))

log = logging.getLogger(__name__)


class PaymentStatusTracker:
    """
    Payment status state machine for one order.

    Args:
        api (DeliveryApiClient): Backend client used for status checks.
        cart (CartStore): Cleared once when the payment is confirmed.
        order_id (int): Order being tracked.
        payment_link (Optional[str]): Link to the payment page, kept for reopening.
        interval (Optional[float]): Seconds between automatic checks.
    """

    def __init__(self, api: DeliveryApiClient, cart: CartStore, order_id: int,
                 payment_link: Optional[str] = None, interval: Optional[float] = None):
        self.api = api
        self.cart = cart
        self.order_id = order_id
        self.payment_link = payment_link
        self.interval = POLL_INTERVAL_SECONDS if interval is None else interval
        self.status = PaymentStatus.PENDING
        self._task: Optional[asyncio.Task] = None
        self._polling = False
        self._closed = False
        self._cart_cleared = False
        self._log_prefix = f"[Order: {order_id}]"

    @property
    def is_polling(self) -> bool:
        return self._polling

    @property
    def is_closed(self) -> bool:
        return self._closed

    def start(self) -> "PaymentStatusTracker":
        """
        Starts the recurring check. Must be called from a running event loop.

        Calling start() on a tracker that is already polling, already terminal or
        closed does nothing, so a single timer exists per tracker.
        """
        if self._closed or self._polling or self.status.is_terminal:
            return self
        self._polling = True
        self._task = asyncio.get_running_loop().create_task(
            self._poll(), name=f"payment-status-{self.order_id}"
        )
        log.info(f"{self._log_prefix} Acompanhamento de pagamento iniciado (intervalo {self.interval}s).")
        return self

    def stop(self):
        """Stops the recurring timer. Safe to call repeatedly."""
        self._polling = False
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def close(self):
        """Tears the tracker down: timer cancelled, late results ignored, no further checks."""
        if not self._closed:
            log.info(f"{self._log_prefix} Acompanhamento encerrado (status: {self.status.value}).")
        self._closed = True
        self.stop()

    async def wait(self):
        """Waits until the polling task has finished (terminal state or stop)."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def check_now(self) -> PaymentStatus:
        """Manual one-shot check. The recurring timer is neither reset nor restarted."""
        return await self._check()

    async def _poll(self):
        try:
            while self._polling:
                # A consulta em andamento termina mesmo se o timer for cancelado
                await asyncio.shield(self._check())
                if not self._polling or self.status.is_terminal:
                    break
                await asyncio.sleep(self.interval)
        finally:
            self._polling = False

    async def _check(self) -> PaymentStatus:
        if self._closed:
            return self.status
        try:
            response = await self.api.check_payment_status(self.order_id)
        except (httpx.HTTPError, ValueError) as e:
            log.warning(f"{self._log_prefix} Falha ao consultar status, nova tentativa no próximo ciclo: {e!r}")
            return self.status

        if self._closed:
            log.debug(f"{self._log_prefix} Resultado descartado (acompanhamento encerrado).")
            return self.status

        new_status = response.to_status()
        if new_status is not None:
            self._apply(new_status)
        return self.status

    def _apply(self, new_status: PaymentStatus):
        # Estados terminais são definitivos
        if self.status.is_terminal:
            return
        if new_status != self.status:
            log.info(f"{self._log_prefix} Status de pagamento: {self.status.value} -> {new_status.value}")
        self.status = new_status

        if new_status.is_accepting:
            self.stop()
            self._on_payment_confirmed()
        elif new_status.is_rejecting:
            log.warning(f"{self._log_prefix} Pagamento não concluído ({new_status.value}). Polling parado.")
            self.stop()

    def _on_payment_confirmed(self):
        if self._cart_cleared:
            return
        self._cart_cleared = True
        self.cart.clear()
        log.info(f"{self._log_prefix} Pagamento confirmado. Carrinho limpo.")


class PaymentTrackerRegistry:
    """
    Owns the active trackers, at most one per order id.

    Re-entering the payment view of an order returns the running tracker instead
    of starting a second timer against the same order. Trackers that have
    finished are dropped the next time another order is tracked.
    """

    def __init__(self, api: DeliveryApiClient, cart: CartStore, interval: Optional[float] = None):
        self.api = api
        self.cart = cart
        self.interval = interval
        self._trackers: Dict[int, PaymentStatusTracker] = {}

    def get(self, order_id: int) -> Optional[PaymentStatusTracker]:
        return self._trackers.get(order_id)

    def __len__(self) -> int:
        return len(self._trackers)

    def _prune(self, keep: int):
        """Drops finished trackers (closed or terminal) of every order except `keep`."""
        for order_id, tracker in list(self._trackers.items()):
            if order_id == keep:
                continue
            if tracker.is_closed or (tracker.status.is_terminal and not tracker.is_polling):
                del self._trackers[order_id]
                tracker.close()

    def track(self, order_id: int, payment_link: Optional[str] = None) -> PaymentStatusTracker:
        self._prune(keep=order_id)
        tracker = self._trackers.get(order_id)
        if tracker is None or tracker.is_closed:
            tracker = PaymentStatusTracker(self.api, self.cart, order_id, payment_link, self.interval)
            self._trackers[order_id] = tracker
        elif payment_link and not tracker.payment_link:
            tracker.payment_link = payment_link
        return tracker.start()

    def release(self, order_id: int):
        tracker = self._trackers.pop(order_id, None)
        if tracker is not None:
            tracker.close()

    def close_all(self):
        for order_id in list(self._trackers):
            self.release(order_id)
