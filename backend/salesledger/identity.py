# Overview: Caller identity passed into ledger operations by the request layer.

from __future__ import annotations

from dataclasses import dataclass

ROLE_SUPER_ADMIN = "SUPER_ADMIN"
ROLE_ADMIN = "ADMIN"
ROLE_STAFF = "STAFF"

ADMIN_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_ADMIN})


@dataclass(frozen=True)
class Actor:
    """
    Authenticated caller as supplied by the gateway.

    The engine does not authenticate; it trusts these values and only
    records them for attribution.
    """
    id: int
    role: str = ROLE_STAFF
    branch_id: int | None = None
    name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def label(self) -> str:
        return self.name or f"user:{self.id}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "branch_id": self.branch_id,
            "name": self.name,
        }


SYSTEM_ACTOR = Actor(id=0, role=ROLE_SUPER_ADMIN, name="system")
