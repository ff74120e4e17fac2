"""Principal and ownership checks shared by addresses, carts and orders."""
from dataclasses import dataclass

from errors import AccessDeniedError
from schemas import Role


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @classmethod
    def from_user(cls, user: dict) -> "Principal":
        return cls(user_id=str(user["_id"]), role=Role(user.get("role", Role.CUSTOMER)))


def can_access(principal: Principal, owner_id) -> bool:
    return principal.is_admin or principal.user_id == str(owner_id)


def ensure_access(principal: Principal, owner_id) -> None:
    if not can_access(principal, owner_id):
        raise AccessDeniedError()


def require_admin(principal: Principal) -> None:
    if not principal.is_admin:
        raise AccessDeniedError("Admin only")
