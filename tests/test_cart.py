"""Cart Store: totals invariant, line semantics and persistence."""

import json

import pytest
from pydantic import ValidationError

from delivery_client.cart import CartStore
from delivery_client.models import Product
from delivery_client.storage import CART_KEY


def assert_invariant(cart):
    assert cart.cart_count == sum(item.quantity for item in cart.items)
    assert cart.cart_total == sum(item.product.price * item.quantity for item in cart.items)


class TestCartTotals:
    def test_single_item_scenario(self, cart, burger):
        totals = cart.add(burger, 3)
        assert totals.total == 7500
        assert totals.count == 3
        assert cart.cart_total == 7500
        assert cart.cart_count == 3

    def test_invariant_holds_after_every_mutation(self, cart, burger, fries):
        cart.add(burger, 2)
        assert_invariant(cart)
        cart.add(fries, 1, "sem sal")
        assert_invariant(cart)
        first, second = cart.items
        cart.update(first.item_id, 5)
        assert_invariant(cart)
        cart.remove(second.item_id)
        assert_invariant(cart)
        assert cart.cart_total == 5 * 2500
        assert cart.cart_count == 5

    def test_clear_empties_everything(self, cart, burger, fries):
        cart.add(burger, 2)
        cart.add(fries, 4)
        totals = cart.clear()
        assert cart.items == []
        assert totals == (0, 0)
        assert cart.cart_total == 0
        assert cart.cart_count == 0
        assert cart.is_empty()


class TestCartLines:
    def test_same_product_twice_gives_two_lines(self, cart, burger):
        cart.add(burger, 1, "sem cebola")
        cart.add(burger, 1, "bem passado")
        items = cart.items
        assert len(items) == 2
        assert items[0].item_id != items[1].item_id
        assert [i.notes for i in items] == ["sem cebola", "bem passado"]
        assert cart.cart_count == 2

    def test_same_product_same_notes_is_not_merged(self, cart, burger):
        cart.add(burger, 1)
        cart.add(burger, 1)
        assert len(cart.items) == 2

    def test_update_keeps_notes_when_not_given(self, cart, burger):
        cart.add(burger, 1, "sem cebola")
        item_id = cart.items[0].item_id
        cart.update(item_id, 4)
        assert cart.get(item_id).quantity == 4
        assert cart.get(item_id).notes == "sem cebola"
        cart.update(item_id, 4, "")
        assert cart.get(item_id).notes == ""

    def test_unknown_ids_are_no_ops(self, cart, burger):
        cart.add(burger, 2)
        before = cart.items
        assert cart.update("nope", 9) == (5000, 2)
        assert cart.remove("nope") == (5000, 2)
        assert cart.items == before

    def test_price_is_frozen_at_add_time(self, cart, burger):
        cart.add(burger, 1)
        repriced = burger.model_copy(update={"price": 9999})
        assert repriced.price == 9999
        assert cart.items[0].product.price == 2500
        assert cart.cart_total == 2500

    def test_quantity_must_be_positive(self, cart, burger):
        with pytest.raises(ValidationError):
            cart.add(burger, 0)
        assert cart.is_empty()


class TestCartPersistence:
    def test_items_survive_a_new_store(self, storage, burger, fries):
        cart = CartStore(storage)
        cart.add(burger, 2, "sem cebola")
        cart.add(fries, 1)

        restored = CartStore(storage)
        assert [(i.product.id, i.quantity, i.notes) for i in restored.items] == [
            (1, 2, "sem cebola"), (2, 1, ""),
        ]
        assert restored.items[0].item_id == cart.items[0].item_id
        assert restored.cart_total == 2 * 2500 + 1200

    def test_persisted_value_is_a_json_list(self, storage, cart, burger):
        cart.add(burger, 1)
        data = json.loads(storage.get_item(CART_KEY))
        assert isinstance(data, list)
        assert data[0]["product"]["price"] == 2500

    @pytest.mark.parametrize("raw", ["{not json", '{"a": 1}', '[{"quantity": "x"}]'])
    def test_corrupt_persisted_cart_starts_empty(self, storage, raw):
        storage.set_item(CART_KEY, raw)
        cart = CartStore(storage)
        assert cart.items == []
        assert cart.cart_total == 0

    def test_persistence_failure_is_not_fatal(self, storage, burger, monkeypatch):
        cart = CartStore(storage)

        def broken(key, value):
            raise OSError("disco cheio")

        monkeypatch.setattr(storage, "set_item", broken)
        totals = cart.add(burger, 2)
        assert totals.total == 5000
        assert len(cart.items) == 1

    def test_clear_is_persisted(self, storage, burger):
        cart = CartStore(storage)
        cart.add(burger, 1)
        cart.clear()
        assert CartStore(storage).items == []


def test_products_are_not_mutated(burger):
    with pytest.raises(ValidationError):
        burger.price = 1
    assert isinstance(burger, Product)
