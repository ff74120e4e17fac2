"""Inventory ledger: the only writer of Product.stock_quantity.

Every decrement is a single conditional update on the product document, so
two requests racing for the last units cannot both succeed.
"""
from typing import Optional

import structlog

from database import session_kwargs, to_object_id
from errors import InsufficientStockError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)


def _check_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("quantity", "must be a positive integer")
    return quantity


class InventoryLedger:
    def __init__(self, db, session=None):
        self.products = db["product"]
        self.session = session

    def find_product(self, product_id: str) -> dict:
        product = self.products.find_one(
            {"_id": to_object_id(product_id, "product_id")},
            {"name": 1, "price": 1, "stock_quantity": 1},
            **session_kwargs(self.session),
        )
        if not product:
            raise NotFoundError("Product", product_id)
        return product

    def reserve(self, product_id: str, quantity: int, name: Optional[str] = None) -> None:
        """Take `quantity` units off the shelf or raise InsufficientStockError."""
        _check_quantity(quantity)
        oid = to_object_id(product_id, "product_id")
        res = self.products.update_one(
            {"_id": oid, "stock_quantity": {"$gte": quantity}},
            {"$inc": {"stock_quantity": -quantity}},
            **session_kwargs(self.session),
        )
        if res.matched_count == 1:
            logger.debug("stock_reserved", product_id=product_id, quantity=quantity)
            return
        if self.products.count_documents({"_id": oid}, **session_kwargs(self.session)) == 0:
            raise NotFoundError("Product", product_id)
        logger.info("stock_insufficient", product_id=product_id, quantity=quantity)
        raise InsufficientStockError(product_id, name)

    def release(self, product_id: str, quantity: int) -> None:
        """Put back units taken by `reserve`."""
        _check_quantity(quantity)
        self.products.update_one(
            {"_id": to_object_id(product_id, "product_id")},
            {"$inc": {"stock_quantity": quantity}},
            **session_kwargs(self.session),
        )
        logger.debug("stock_released", product_id=product_id, quantity=quantity)

    def apply_stock_delta(self, product_id: str, delta: int) -> None:
        if delta < 0:
            self.reserve(product_id, -delta)
        elif delta > 0:
            self.release(product_id, delta)
