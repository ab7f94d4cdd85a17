from dataclasses import dataclass
from typing import Optional

from services.errors import Forbidden

ADMIN = "ADMIN"
PARTNER = "PARTNER"
SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class Actor:
    """Who performs an operation. Built by the route layer, passed into the core."""

    role: str
    user_id: Optional[int] = None
    partner_id: Optional[int] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(role=SYSTEM)

    @classmethod
    def from_user(cls, user) -> Optional["Actor"]:
        if user is None:
            return None
        names = user.role_names()
        if ADMIN in names:
            return cls(role=ADMIN, user_id=user.id, partner_id=user.partner_id)
        if PARTNER in names and user.partner_id:
            return cls(role=PARTNER, user_id=user.id, partner_id=user.partner_id)
        return None

    @property
    def is_admin(self) -> bool:
        return self.role in (ADMIN, SYSTEM)

    def can_manage(self, partner_id: int) -> bool:
        if self.is_admin:
            return True
        return self.partner_id is not None and self.partner_id == partner_id

    def require_partner(self, partner_id: int) -> None:
        if not self.can_manage(partner_id):
            raise Forbidden("Not allowed for this partner", code="FORBIDDEN_WRONG_PARTNER")
