"""
cart.py — Cart Store

Owns the working set of cart lines for the whole process. Every mutation
recomputes the derived totals and then persists the full item list to local
storage; the in-memory state stays authoritative if persisting fails.
"""

import json
import logging
from typing import List, NamedTuple, Optional

from pydantic import TypeAdapter, ValidationError

from .models import CartItem, Product
from .storage import CART_KEY, LocalStorage

log = logging.getLogger(__name__)

_items_adapter = TypeAdapter(List[CartItem])


class CartTotals(NamedTuple):
    total: int
    count: int


class CartStore:
    """
    Single-writer store for the cart.

    Lines keep insertion order. The same product may appear in several lines:
    add() never merges. Mutation methods return the freshly computed totals so
    callers never read stale derived values.
    """

    def __init__(self, storage: LocalStorage):
        self.storage = storage
        self._items: List[CartItem] = self._load()
        self._totals = self._compute_totals()

    # --- Persistência ---

    def _load(self) -> List[CartItem]:
        raw = self.storage.get_item(CART_KEY)
        if not raw:
            return []
        try:
            items = _items_adapter.validate_python(json.loads(raw))
        except (ValueError, ValidationError) as e:
            log.error(f"Carrinho salvo corrompido, iniciando vazio: {e}")
            return []
        log.info(f"Carrinho restaurado com {len(items)} item(ns).")
        return items

    def _persist(self):
        payload = json.dumps([item.model_dump(mode="json") for item in self._items], ensure_ascii=False)
        try:
            self.storage.set_item(CART_KEY, payload)
        except OSError as e:
            log.warning(f"Falha ao salvar o carrinho (estado em memória mantido): {e}")

    def _commit(self) -> CartTotals:
        self._totals = self._compute_totals()
        self._persist()
        return self._totals

    def _compute_totals(self) -> CartTotals:
        return CartTotals(
            total=sum(item.product.price * item.quantity for item in self._items),
            count=sum(item.quantity for item in self._items),
        )

    # --- Consulta ---

    @property
    def items(self) -> List[CartItem]:
        return list(self._items)

    @property
    def cart_total(self) -> int:
        return self._totals.total

    @property
    def cart_count(self) -> int:
        return self._totals.count

    @property
    def totals(self) -> CartTotals:
        return self._totals

    def is_empty(self) -> bool:
        return not self._items

    def get(self, item_id: str) -> Optional[CartItem]:
        return next((item for item in self._items if item.item_id == item_id), None)

    # --- Mutação ---

    def add(self, product: Product, quantity: int = 1, notes: str = "") -> CartTotals:
        """
        Appends a new line with a fresh item id.

        Args:
            product (Product): Catalog product; a copy is frozen into the line.
            quantity (int): Positive quantity.
            notes (str): Free-text notes.
        Returns:
            CartTotals: The updated totals.
        Raises:
            pydantic.ValidationError: If quantity is not positive.
        """
        item = CartItem(product=product.model_copy(), quantity=quantity, notes=notes or "")
        self._items.append(item)
        log.debug(f"Item {item.item_id} adicionado: {quantity}x {product.name}")
        return self._commit()

    def update(self, item_id: str, quantity: int, notes: Optional[str] = None) -> CartTotals:
        """Replaces quantity and, when given, notes of a line. Unknown ids are ignored."""
        item = self.get(item_id)
        if item is None:
            return self._totals
        item.quantity = quantity
        if notes is not None:
            item.notes = notes
        return self._commit()

    def remove(self, item_id: str) -> CartTotals:
        remaining = [item for item in self._items if item.item_id != item_id]
        if len(remaining) == len(self._items):
            return self._totals
        self._items = remaining
        return self._commit()

    def clear(self) -> CartTotals:
        self._items = []
        return self._commit()
