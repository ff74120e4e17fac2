"""Pytest fixtures for shop API tests."""

import mongomock
import pytest
from bson import ObjectId

from access import Principal
from database import ensure_indexes, utcnow
from schemas import Role


@pytest.fixture
def db():
    """A fresh in-memory MongoDB database with the production indexes."""
    database = mongomock.MongoClient(tz_aware=True)["shop_test"]
    ensure_indexes(database)
    return database


def make_user(db, email, role=Role.CUSTOMER):
    res = db["user"].insert_one({
        "email": email,
        "first_name": email.split("@")[0].title(),
        "last_name": "Tester",
        "password_hash": "x",
        "role": role.value,
        "created_at": utcnow(),
    })
    return Principal(user_id=str(res.inserted_id), role=role)


def make_product(db, name, price, stock, category_id=None):
    res = db["product"].insert_one({
        "category_id": category_id or str(ObjectId()),
        "name": name,
        "price": price,
        "stock_quantity": stock,
    })
    return str(res.inserted_id)


def make_address(db, principal, kind="SHIPPING"):
    res = db["address"].insert_one({
        "user_id": principal.user_id,
        "street": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "postal_code": "62701",
        "country": "US",
        "type": kind,
    })
    return str(res.inserted_id)


def stock_of(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock_quantity"]


@pytest.fixture
def alice(db):
    return make_user(db, "alice@example.com")


@pytest.fixture
def bob(db):
    return make_user(db, "bob@example.com")


@pytest.fixture
def admin(db):
    return make_user(db, "admin@example.com", Role.ADMIN)
