from __future__ import annotations

from dataclasses import dataclass

from kmarket.services.errors import ForbiddenError


class Role:
    BUYER = "buyer"
    SELLER = "seller"
    DELIVERY = "delivery"
    ADMIN = "admin"

    ALL = (BUYER, SELLER, DELIVERY, ADMIN)


@dataclass(frozen=True)
class Principal:
    """Verified caller identity, passed explicitly into every core operation."""

    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def actor(self) -> dict:
        return {"type": self.role, "id": int(self.user_id)}

    def require(self, *roles: str) -> "Principal":
        if self.role not in roles:
            raise ForbiddenError(f"{self.role} accounts cannot perform this action")
        return self
