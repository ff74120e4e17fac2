"""Postal addresses owned by a single user."""
from typing import List

from pymongo import ReturnDocument

from access import Principal, ensure_access
from database import create_document, serialize_document, session_kwargs, to_object_id, utcnow
from errors import AccessDeniedError, NotFoundError
from schemas import AddressCreate, AddressUpdate


class AddressBook:
    def __init__(self, db, session=None):
        self.addresses = db["address"]
        self.db = db
        self.session = session

    def exists(self, address_id: str) -> bool:
        query = {"_id": to_object_id(address_id, "address_id")}
        return self.addresses.count_documents(query, **session_kwargs(self.session)) > 0

    def _load(self, principal: Principal, address_id: str) -> dict:
        doc = self.addresses.find_one(
            {"_id": to_object_id(address_id, "address_id")}, **session_kwargs(self.session)
        )
        if not doc:
            raise NotFoundError("Address", address_id)
        ensure_access(principal, doc["user_id"])
        return doc

    def get(self, principal: Principal, address_id: str) -> dict:
        return serialize_document(self._load(principal, address_id))

    def list(self, principal: Principal) -> List[dict]:
        query = {} if principal.is_admin else {"user_id": principal.user_id}
        return [serialize_document(a) for a in self.addresses.find(query)]

    def create(self, principal: Principal, body: AddressCreate) -> dict:
        # Only admins may file an address under another user.
        if body.user_id and body.user_id != principal.user_id and not principal.is_admin:
            raise AccessDeniedError()
        doc = body.model_dump(mode="json")
        doc["user_id"] = body.user_id or principal.user_id
        new_id = create_document(self.db, "address", doc)
        return serialize_document(self.addresses.find_one({"_id": to_object_id(new_id)}))

    def update(self, principal: Principal, address_id: str, body: AddressUpdate) -> dict:
        current = self._load(principal, address_id)
        update = body.model_dump(mode="json", exclude_none=True)
        if "user_id" in update and not principal.is_admin:
            update.pop("user_id")
        update["updated_at"] = utcnow()
        doc = self.addresses.find_one_and_update(
            {"_id": current["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        return serialize_document(doc)

    def delete(self, principal: Principal, address_id: str) -> None:
        current = self._load(principal, address_id)
        self.addresses.delete_one({"_id": current["_id"]})
