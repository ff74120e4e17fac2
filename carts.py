"""Carts: one per user, created on first access, holding one line per product."""
from dataclasses import dataclass, field
from typing import List

import structlog
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from access import Principal, ensure_access
from database import serialize_document, session_kwargs, to_object_id, utcnow
from errors import EmptyCartError, InsufficientStockError, NotFoundError
from inventory import InventoryLedger

logger = structlog.get_logger(__name__)


@dataclass
class CartLine:
    item_id: str
    product_id: str
    name: str
    quantity: int
    unit_price: float
    stock_quantity: int

    @property
    def subtotal(self) -> float:
        return self.unit_price * self.quantity


@dataclass
class CartSnapshot:
    cart: dict
    lines: List[CartLine] = field(default_factory=list)
    # Cart items whose product has been deleted since they were added.
    orphans: List[dict] = field(default_factory=list)

    @property
    def cart_id(self) -> str:
        return str(self.cart["_id"])

    @property
    def total(self) -> float:
        return round(sum(line.subtotal for line in self.lines), 2)


class CartService:
    def __init__(self, db, session=None):
        self.db = db
        self.session = session
        self.carts = db["cart"]
        self.items = db["cart_item"]
        self.products = db["product"]

    # Store operations

    def find_by_user(self, user_id: str):
        return self.carts.find_one({"user_id": user_id}, **session_kwargs(self.session))

    def get_or_create(self, user_id: str) -> dict:
        try:
            return self.carts.find_one_and_update(
                {"user_id": user_id},
                {"$setOnInsert": {"created_at": utcnow()}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
                **session_kwargs(self.session),
            )
        except DuplicateKeyError:
            # Lost the insert race to a concurrent first access; the winner's cart is there now.
            return self.find_by_user(user_id)

    def list_items(self, cart_id: str) -> List[dict]:
        return list(
            self.items.find({"cart_id": cart_id}, **session_kwargs(self.session)).sort("created_at", 1)
        )

    def delete_items(self, cart_id: str) -> int:
        res = self.items.delete_many({"cart_id": cart_id}, **session_kwargs(self.session))
        return res.deleted_count

    # Snapshot

    def read(self, user_id: str) -> CartSnapshot:
        """Load the cart and its lines with live product price and stock."""
        cart = self.get_or_create(user_id)
        items = self.list_items(str(cart["_id"]))
        ids = [to_object_id(i["product_id"], "product_id") for i in items]
        products = {
            str(p["_id"]): p
            for p in self.products.find({"_id": {"$in": ids}}, **session_kwargs(self.session))
        }
        lines, orphans = [], []
        for item in items:
            product = products.get(item["product_id"])
            if product is None:
                orphans.append(item)
                continue
            lines.append(CartLine(
                item_id=str(item["_id"]),
                product_id=item["product_id"],
                name=product["name"],
                quantity=item["quantity"],
                unit_price=product["price"],
                stock_quantity=product.get("stock_quantity", 0),
            ))
        return CartSnapshot(cart=cart, lines=lines, orphans=orphans)

    def snapshot(self, user_id: str) -> CartSnapshot:
        """Cart lines ready for checkout; refuses empty carts and deleted products."""
        snap = self.read(user_id)
        if snap.orphans:
            raise NotFoundError("Product", snap.orphans[0]["product_id"])
        if not snap.lines:
            raise EmptyCartError()
        return snap

    # Cart line operations

    def view(self, principal: Principal) -> dict:
        snap = self.read(principal.user_id)
        items = [
            {
                "id": line.item_id,
                "product_id": line.product_id,
                "name": line.name,
                "price": line.unit_price,
                "quantity": line.quantity,
                "stock_quantity": line.stock_quantity,
                "available": True,
            }
            for line in snap.lines
        ]
        # Still listed so the owner can remove them by id.
        items.extend(
            {
                "id": str(item["_id"]),
                "product_id": item["product_id"],
                "name": None,
                "price": None,
                "quantity": item["quantity"],
                "stock_quantity": 0,
                "available": False,
            }
            for item in snap.orphans
        )
        return {"cart": serialize_document(snap.cart), "items": items, "total": snap.total}

    def add_item(self, principal: Principal, product_id: str, quantity: int) -> dict:
        product = InventoryLedger(self.db, self.session).find_product(product_id)
        cart = self.get_or_create(principal.user_id)
        cart_id = str(cart["_id"])
        existing = self.items.find_one({"cart_id": cart_id, "product_id": product_id})
        wanted = quantity + (existing["quantity"] if existing else 0)
        if product.get("stock_quantity", 0) < wanted:
            raise InsufficientStockError(product_id, product["name"])

        now = utcnow()
        item = self.items.find_one_and_update(
            {"cart_id": cart_id, "product_id": product_id},
            {
                "$inc": {"quantity": quantity},
                "$set": {"updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        logger.info("cart_item_added", user_id=principal.user_id, product_id=product_id,
                    quantity=item["quantity"])
        return self._present(item, product)

    def _load_owned_item(self, principal: Principal, item_id: str) -> dict:
        item = self.items.find_one({"_id": to_object_id(item_id, "item_id")})
        if not item:
            raise NotFoundError("Cart item", item_id)
        cart = self.carts.find_one({"_id": to_object_id(item["cart_id"], "cart_id")})
        if not cart:
            raise NotFoundError("Cart", item["cart_id"])
        ensure_access(principal, cart["user_id"])
        return item

    def update_item(self, principal: Principal, item_id: str, quantity: int) -> dict:
        item = self._load_owned_item(principal, item_id)
        product = InventoryLedger(self.db).find_product(item["product_id"])
        if product.get("stock_quantity", 0) < quantity:
            raise InsufficientStockError(item["product_id"], product["name"])
        item = self.items.find_one_and_update(
            {"_id": item["_id"]},
            {"$set": {"quantity": quantity, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._present(item, product)

    def remove_item(self, principal: Principal, item_id: str) -> None:
        item = self._load_owned_item(principal, item_id)
        self.items.delete_one({"_id": item["_id"]})

    def clear(self, principal: Principal) -> None:
        cart = self.find_by_user(principal.user_id)
        if cart:
            self.delete_items(str(cart["_id"]))

    @staticmethod
    def _present(item: dict, product: dict) -> dict:
        doc = serialize_document(item)
        doc["name"] = product["name"]
        doc["price"] = product["price"]
        return doc
