"""
coupons.py — Coupon Engine

Validates coupon codes against the cart subtotal through the backend and keeps
the single currently applied coupon and its discount. Nothing raised by the
backend call leaves validate(): failures become a rejection message.
"""

import logging
from enum import Enum
from typing import List, Optional

import httpx
from pydantic import BaseModel

from .clients import DeliveryApiClient, error_message
from .models import Coupon, DiscountType
from .money import percentage_of
from .storage import COUPON_HANDOFF_KEY, LocalStorage

log = logging.getLogger(__name__)

MSG_APPLIED = "Cupom aplicado com sucesso!"
MSG_INVALID = "Cupom inválido."
MSG_VALIDATION_FAILED = "Erro ao validar cupom."


class MessageKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class CouponMessage(BaseModel):
    kind: MessageKind
    text: str


def compute_discount(coupon: Coupon, subtotal: int) -> int:
    """
    Local fallback when the backend accepts a coupon without a precomputed discount.

    PERCENTAGE: floor(subtotal × value / 100). FIXED: value in cents, not capped here;
    the final total is clamped to zero instead.
    """
    if coupon.type == DiscountType.PERCENTAGE:
        return percentage_of(subtotal, coupon.value)
    return int(coupon.value)


class CouponEngine:
    """
    Holds at most one applied coupon.

    Every validation attempt overwrites the previous state: a failed attempt clears
    a coupon that was applied before it. The engine never revalidates on its own
    when the subtotal changes.
    """

    def __init__(self, api: DeliveryApiClient):
        self.api = api
        self.applied_coupon: Optional[Coupon] = None
        self.discount: int = 0
        self.message: Optional[CouponMessage] = None

    @property
    def applied_code(self) -> Optional[str]:
        return self.applied_coupon.code if self.applied_coupon else None

    def clear(self):
        self.applied_coupon = None
        self.discount = 0
        self.message = None

    def _reject(self, text: str) -> bool:
        self.applied_coupon = None
        self.discount = 0
        self.message = CouponMessage(kind=MessageKind.ERROR, text=text)
        return False

    async def validate(self, code: str, order_subtotal: int) -> bool:
        """
        Validates `code` for `order_subtotal` and updates the applied state.

        Args:
            code (str): Coupon code, any case.
            order_subtotal (int): Cart subtotal in cents.
        Returns:
            bool: True if the coupon is now applied. An empty code is ignored and returns False
            without touching the current state.
        """
        code = (code or "").strip().upper()
        if not code:
            return False

        self.message = None
        try:
            result = await self.api.validate_coupon(code, order_subtotal)
        except httpx.HTTPStatusError as e:
            return self._reject(error_message(e, "message", "error", default=MSG_VALIDATION_FAILED))
        except (httpx.HTTPError, ValueError) as e:
            log.warning(f"[Cupom {code}] Validação falhou: {e!r}")
            return self._reject(MSG_VALIDATION_FAILED)

        if not (result.valid and result.coupon):
            log.info(f"[Cupom {code}] Recusado: {result.message}")
            return self._reject(result.message or MSG_INVALID)

        self.applied_coupon = result.coupon
        if result.discount is not None:
            self.discount = result.discount
        else:
            self.discount = compute_discount(result.coupon, order_subtotal)
        self.message = CouponMessage(kind=MessageKind.SUCCESS, text=MSG_APPLIED)
        log.info(f"[Cupom {code}] Aplicado. Desconto: {self.discount} centavos.")
        return True

    async def list_available(self) -> List[Coupon]:
        """
        Published coupons for the promotions listing.

        Raises:
            httpx.HTTPError: If the backend cannot be reached or rejects the call.
        """
        return await self.api.list_coupons()


class CouponHandoff:
    """Carries a coupon picked in the promotions listing to the next checkout entry."""

    def __init__(self, storage: LocalStorage):
        self.storage = storage

    def select(self, code: str):
        self.storage.set_item(COUPON_HANDOFF_KEY, code.strip().upper())

    def consume(self) -> Optional[str]:
        code = self.storage.get_item(COUPON_HANDOFF_KEY)
        if code is None:
            return None
        try:
            self.storage.remove_item(COUPON_HANDOFF_KEY)
        except OSError as e:
            log.warning(f"Falha ao remover o cupom selecionado do armazenamento: {e}")
        return code or None
