"""Tests for the cart reader and cart line operations."""

import pytest
from bson import ObjectId

from carts import CartService
from errors import AccessDeniedError, EmptyCartError, InsufficientStockError, NotFoundError

from conftest import make_product


class TestGetOrCreate:
    def test_creates_cart_once(self, db, alice):
        carts = CartService(db)
        first = carts.get_or_create(alice.user_id)
        second = carts.get_or_create(alice.user_id)
        assert first["_id"] == second["_id"]
        assert db["cart"].count_documents({"user_id": alice.user_id}) == 1

    def test_separate_carts_per_user(self, db, alice, bob):
        carts = CartService(db)
        assert carts.get_or_create(alice.user_id)["_id"] != carts.get_or_create(bob.user_id)["_id"]


class TestSnapshot:
    def test_empty_cart_raises_but_cart_exists(self, db, alice):
        with pytest.raises(EmptyCartError):
            CartService(db).snapshot(alice.user_id)
        assert db["cart"].count_documents({"user_id": alice.user_id}) == 1

    def test_lines_carry_live_price_and_stock(self, db, alice):
        pid = make_product(db, "Pen", 2.0, 10)
        carts = CartService(db)
        carts.add_item(alice, pid, 3)
        db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"price": 2.5}})

        snap = carts.snapshot(alice.user_id)

        assert len(snap.lines) == 1
        line = snap.lines[0]
        assert line.product_id == pid
        assert line.unit_price == 2.5
        assert line.stock_quantity == 10
        assert line.quantity == 3
        assert snap.total == 7.5

    def test_line_for_deleted_product(self, db, alice):
        pid = make_product(db, "Pen", 2.0, 10)
        carts = CartService(db)
        carts.add_item(alice, pid, 1)
        db["product"].delete_one({"_id": ObjectId(pid)})
        with pytest.raises(NotFoundError):
            carts.snapshot(alice.user_id)

    def test_view_lists_line_for_deleted_product(self, db, alice):
        gone = make_product(db, "Pen", 2.0, 10)
        kept = make_product(db, "Ink", 4.0, 10)
        carts = CartService(db)
        stale = carts.add_item(alice, gone, 1)
        carts.add_item(alice, kept, 2)
        db["product"].delete_one({"_id": ObjectId(gone)})

        view = carts.view(alice)

        by_product = {i["product_id"]: i for i in view["items"]}
        assert by_product[gone]["available"] is False
        assert by_product[gone]["id"] == stale["id"]
        assert by_product[kept]["available"] is True
        assert view["total"] == 8.0

        carts.remove_item(alice, stale["id"])
        assert [line.product_id for line in carts.snapshot(alice.user_id).lines] == [kept]


class TestAddItem:
    def test_repeated_add_increments_single_line(self, db, alice):
        pid = make_product(db, "Pen", 2.0, 10)
        carts = CartService(db)
        carts.add_item(alice, pid, 2)
        item = carts.add_item(alice, pid, 3)
        assert item["quantity"] == 5
        assert db["cart_item"].count_documents({"product_id": pid}) == 1

    def test_add_beyond_stock(self, db, alice):
        pid = make_product(db, "Pen", 2.0, 4)
        carts = CartService(db)
        carts.add_item(alice, pid, 3)
        with pytest.raises(InsufficientStockError):
            carts.add_item(alice, pid, 2)
        assert db["cart_item"].find_one({"product_id": pid})["quantity"] == 3

    def test_add_unknown_product(self, db, alice):
        with pytest.raises(NotFoundError):
            CartService(db).add_item(alice, str(ObjectId()), 1)


class TestItemOwnership:
    def test_owner_updates_quantity(self, db, alice):
        pid = make_product(db, "Pen", 2.0, 10)
        carts = CartService(db)
        item = carts.add_item(alice, pid, 1)
        updated = carts.update_item(alice, item["id"], 4)
        assert updated["quantity"] == 4

    def test_update_beyond_stock(self, db, alice):
        pid = make_product(db, "Pen", 2.0, 2)
        carts = CartService(db)
        item = carts.add_item(alice, pid, 1)
        with pytest.raises(InsufficientStockError):
            carts.update_item(alice, item["id"], 3)

    def test_other_customer_cannot_touch_item(self, db, alice, bob):
        pid = make_product(db, "Pen", 2.0, 10)
        carts = CartService(db)
        item = carts.add_item(alice, pid, 1)
        with pytest.raises(AccessDeniedError):
            carts.update_item(bob, item["id"], 2)
        with pytest.raises(AccessDeniedError):
            carts.remove_item(bob, item["id"])
        assert db["cart_item"].count_documents({}) == 1

    def test_admin_can_remove_item(self, db, alice, admin):
        pid = make_product(db, "Pen", 2.0, 10)
        carts = CartService(db)
        item = carts.add_item(alice, pid, 1)
        carts.remove_item(admin, item["id"])
        assert db["cart_item"].count_documents({}) == 0

    def test_missing_item(self, db, alice):
        with pytest.raises(NotFoundError):
            CartService(db).remove_item(alice, str(ObjectId()))


def test_clear_keeps_cart(db, alice):
    carts = CartService(db)
    carts.add_item(alice, make_product(db, "Pen", 2.0, 10), 1)
    carts.add_item(alice, make_product(db, "Ink", 4.0, 10), 1)
    carts.clear(alice)
    view = carts.view(alice)
    assert view["items"] == []
    assert view["total"] == 0
    assert db["cart"].count_documents({"user_id": alice.user_id}) == 1
