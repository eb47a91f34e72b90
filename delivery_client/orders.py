"""
orders.py — Order history and repeat-order
"""

import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel

from .cart import CartStore
from .clients import DeliveryApiClient
from .models import Order

log = logging.getLogger(__name__)

MSG_REPEAT_FAILED = "Erro ao repetir pedido. Tente novamente."


class RepeatResult(BaseModel):
    ok: bool = True
    added: int = 0
    unavailable: int = 0
    message: str = ""


class OrderHistory:
    """Reads the customer's orders and rebuilds carts from them."""

    def __init__(self, api: DeliveryApiClient, cart: CartStore):
        self.api = api
        self.cart = cart

    async def list_orders(self) -> List[Order]:
        try:
            return await self.api.list_orders()
        except (httpx.HTTPError, ValueError) as e:
            log.error(f"Falha ao carregar pedidos: {e!r}")
            return []

    async def repeat(self, order: Order) -> RepeatResult:
        """
        Replaces the cart with the lines of a past order, matched against the current catalog.

        Lines whose product is no longer in the catalog are skipped and counted. If the
        catalog cannot be fetched the cart is left untouched.

        Args:
            order (Order): The past order.
        Returns:
            RepeatResult: Lines added, lines unavailable and a message for the user.
        """
        log_prefix = f"[Order: {order.id}]"
        if not order.items:
            return RepeatResult(ok=False, message="Pedido sem itens para repetir.")

        try:
            products = await self.api.list_products()
        except (httpx.HTTPError, ValueError) as e:
            log.error(f"{log_prefix} Falha ao carregar o cardápio para repetir o pedido: {e!r}")
            return RepeatResult(ok=False, message=MSG_REPEAT_FAILED)

        catalog = {product.id: product for product in products}
        self.cart.clear()

        added = 0
        unavailable = 0
        for item in order.items:
            product = catalog.get(item.product_id)
            if product is None:
                unavailable += 1
                continue
            self.cart.add(product, item.quantity, item.notes or "")
            added += 1

        message = ""
        if unavailable:
            message = f"{unavailable} item(s) deste pedido não estão mais disponíveis e foram removidos."
            log.info(f"{log_prefix} Pedido repetido com {unavailable} item(ns) indisponível(is).")
        return RepeatResult(added=added, unavailable=unavailable, message=message)

    async def find(self, order_id: int) -> Optional[Order]:
        orders = await self.list_orders()
        return next((order for order in orders if order.id == order_id), None)
