"""
Role-based access rules for the API layer.

Identity comes from the upstream authenticator, which forwards the caller's id
and role in ``X-User-ID`` / ``X-User-Role``; it is trusted as-is. Routers ask
this table whether a caller holds a capability; services never look at roles.
"""

import uuid
from dataclasses import dataclass
from enum import Enum

from marketplace.errors import ForbiddenError


class Role(str, Enum):
    BUYER = "buyer"
    VENDOR = "vendor"
    ADMIN = "admin"


class Capability(str, Enum):
    PLACE_ORDER = "place_order"
    VIEW_ORDERS = "view_orders"
    VIEW_ALL_ORDERS = "view_all_orders"
    MANAGE_ORDERS = "manage_orders"
    DELETE_ORDERS = "delete_orders"
    PAY = "pay"
    INSPECT_TRANSACTIONS = "inspect_transactions"


_EVERYONE = frozenset(Role)

POLICY: dict[Capability, frozenset[Role]] = {
    Capability.PLACE_ORDER: _EVERYONE,
    Capability.VIEW_ORDERS: _EVERYONE,
    Capability.VIEW_ALL_ORDERS: frozenset({Role.VENDOR, Role.ADMIN}),
    Capability.MANAGE_ORDERS: frozenset({Role.VENDOR, Role.ADMIN}),
    Capability.DELETE_ORDERS: frozenset({Role.ADMIN}),
    Capability.PAY: _EVERYONE,
    Capability.INSPECT_TRANSACTIONS: frozenset({Role.ADMIN}),
}


@dataclass(frozen=True)
class Caller:
    id: uuid.UUID
    role: Role

    def can(self, capability: Capability) -> bool:
        return self.role in POLICY[capability]

    def require(self, capability: Capability) -> None:
        if not self.can(capability):
            raise ForbiddenError(f"Role '{self.role.value}' may not {capability.value.replace('_', ' ')}")

    def ensure_owner(self, owner_id: uuid.UUID) -> None:
        """Callers without VIEW_ALL_ORDERS may only touch their own orders."""
        if owner_id != self.id and not self.can(Capability.VIEW_ALL_ORDERS):
            raise ForbiddenError("This order belongs to another user")
