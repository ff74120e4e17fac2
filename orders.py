"""Order placement, status changes and order queries.

Placing an order touches four collections (product, order, order_item,
cart_item). The steps run as one unit of work: inside a MongoDB transaction
when MONGO_TRANSACTIONS is enabled, otherwise with a compensation log that
undoes every applied step, newest first, when a later step fails.
"""
from typing import Callable, List, Optional

import structlog
from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

import database
from access import Principal, ensure_access
from addresses import AddressBook
from carts import CartService, CartSnapshot
from database import serialize_document, session_kwargs, to_object_id, utcnow
from errors import InvalidStatusError, NotFoundError, StoreFailureError
from inventory import InventoryLedger
from schemas import OrderStatus

logger = structlog.get_logger(__name__)

USER_FIELDS = {"email": 1, "first_name": 1, "last_name": 1}


class Compensations:
    """Undo actions recorded while a multi-step write is in progress."""

    def __init__(self):
        self._actions: List[tuple] = []

    def add(self, description: str, action: Callable[[], None]) -> None:
        self._actions.append((description, action))

    def run(self) -> None:
        while self._actions:
            description, action = self._actions.pop()
            try:
                action()
            except PyMongoError:
                # Keep undoing the rest; the caller re-raises the first failure.
                logger.exception("compensation_failed", step=description)

    def discard(self) -> None:
        self._actions = []


class OrderAssembler:
    def __init__(self, db, use_transactions: Optional[bool] = None):
        self.db = db
        if use_transactions is None:
            use_transactions = database.MONGO_TRANSACTIONS
        self.use_transactions = use_transactions

    def place_order(self, principal: Principal, shipping_address_id: str,
                    billing_address_id: str) -> dict:
        """Turn the principal's cart into a PENDING order and debit stock.

        Raises NotFoundError / AccessDeniedError for bad address references,
        EmptyCartError, InsufficientStockError for the first line that cannot
        be covered, and StoreFailureError when the store fails. In every
        failure case no order exists afterwards and stock is as it was.
        """
        book = AddressBook(self.db)
        for address_id in (shipping_address_id, billing_address_id):
            book.get(principal, address_id)

        snapshot = CartService(self.db).snapshot(principal.user_id)

        try:
            if self.use_transactions:
                with self.db.client.start_session() as session:
                    result = session.with_transaction(
                        lambda s: self._apply(principal, snapshot, shipping_address_id,
                                              billing_address_id, s, None)
                    )
            else:
                undo = Compensations()
                try:
                    result = self._apply(principal, snapshot, shipping_address_id,
                                         billing_address_id, None, undo)
                except Exception:
                    undo.run()
                    raise
                undo.discard()
        except PyMongoError as e:
            logger.error("order_store_failure", user_id=principal.user_id, error=str(e))
            raise StoreFailureError(f"Order could not be placed: {e}") from e

        result = {
            "order": OrderBook(self.db).populate(result["order"]),
            "items": [serialize_document(i) for i in result["items"]],
        }
        logger.info(
            "order_placed",
            order_id=result["order"]["id"],
            user_id=principal.user_id,
            total_amount=result["order"]["total_amount"],
            items=len(result["items"]),
        )
        return result

    def _apply(self, principal: Principal, snapshot: CartSnapshot, shipping_address_id: str,
               billing_address_id: str, session, undo: Optional[Compensations]) -> dict:
        ledger = InventoryLedger(self.db, session)
        orders = self.db["order"]
        order_items = self.db["order_item"]
        kw = session_kwargs(session)

        for line in snapshot.lines:
            ledger.reserve(line.product_id, line.quantity, line.name)
            if undo is not None:
                undo.add(f"release {line.product_id}",
                         lambda pid=line.product_id, q=line.quantity: ledger.release(pid, q))

        now = utcnow()
        order = {
            "user_id": principal.user_id,
            "shipping_address_id": shipping_address_id,
            "billing_address_id": billing_address_id,
            "total_amount": snapshot.total,
            "status": OrderStatus.PENDING.value,
            "created_at": now,
            "updated_at": now,
        }
        order["_id"] = orders.insert_one(order, **kw).inserted_id
        order_id = str(order["_id"])
        if undo is not None:
            undo.add(f"delete order {order_id}", lambda: orders.delete_one({"_id": order["_id"]}))
            undo.add(f"delete items of {order_id}",
                     lambda: order_items.delete_many({"order_id": order_id}))

        items = [
            {
                "order_id": order_id,
                "product_id": line.product_id,
                "product_name": line.name,
                "quantity": line.quantity,
                "price_at_purchase": line.unit_price,
            }
            for line in snapshot.lines
        ]
        res = order_items.insert_many(items, **kw)
        for item, item_id in zip(items, res.inserted_ids):
            item["_id"] = item_id

        CartService(self.db, session).delete_items(snapshot.cart_id)

        return {"order": order, "items": items}


class OrderBook:
    """Order reads and the admin-side writes."""

    def __init__(self, db):
        self.orders = db["order"]
        self.order_items = db["order_item"]
        self.users = db["user"]
        self.addresses = db["address"]

    @staticmethod
    def _lookup(collection, ref, projection=None) -> Optional[dict]:
        if not ObjectId.is_valid(ref):
            return None
        return serialize_document(collection.find_one({"_id": ObjectId(ref)}, projection))

    def populate(self, order: dict) -> dict:
        """Serialize an order with its user and both addresses embedded."""
        doc = serialize_document(order)
        doc["user"] = self._lookup(self.users, order["user_id"], USER_FIELDS)
        doc["shipping_address"] = self._lookup(self.addresses, order["shipping_address_id"])
        doc["billing_address"] = self._lookup(self.addresses, order["billing_address_id"])
        return doc

    def _load(self, order_id: str) -> dict:
        order = self.orders.find_one({"_id": to_object_id(order_id, "order_id")})
        if not order:
            raise NotFoundError("Order", order_id)
        return order

    def _items(self, order_id: str) -> List[dict]:
        return [serialize_document(i) for i in self.order_items.find({"order_id": order_id})]

    def get_order(self, principal: Principal, order_id: str) -> dict:
        order = self._load(order_id)
        ensure_access(principal, order["user_id"])
        return {"order": self.populate(order), "items": self._items(str(order["_id"]))}

    def list_orders(self, principal: Principal) -> List[dict]:
        query = {} if principal.is_admin else {"user_id": principal.user_id}
        return [self.populate(o) for o in self.orders.find(query).sort("created_at", DESCENDING)]

    def set_status(self, order_id: str, status: str) -> dict:
        # Any of the three statuses may follow any other.
        try:
            new_status = OrderStatus(status)
        except ValueError:
            raise InvalidStatusError(str(status))
        order = self.orders.find_one_and_update(
            {"_id": to_object_id(order_id, "order_id")},
            {"$set": {"status": new_status.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not order:
            raise NotFoundError("Order", order_id)
        logger.info("order_status_changed", order_id=order_id, status=new_status.value)
        return self.populate(order)

    def delete_order(self, order_id: str) -> None:
        order = self._load(order_id)
        self.order_items.delete_many({"order_id": str(order["_id"])})
        self.orders.delete_one({"_id": order["_id"]})
        logger.info("order_deleted", order_id=order_id)
