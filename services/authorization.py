import logging
from enum import Enum

import config
from models import Role
from services.errors import AuthorizationError

logger = logging.getLogger("Authorization")


class Access(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    PARTICIPANT = "buyer_or_seller"
    PARTICIPANT_OR_ADMIN = "buyer_or_seller_or_admin"
    ADMIN = "admin"


class AuthorizationPolicy:
    """Single place where role and admin checks are resolved for trade operations."""

    def __init__(self, admin_ids=None, admin_usernames=None):
        self.admin_ids = admin_ids
        self.admin_usernames = admin_usernames

    def is_admin(self, user_id, username=None):
        if self.admin_ids is None and self.admin_usernames is None:
            return config.is_admin(user_id, username)
        if user_id is not None and int(user_id) in {int(i) for i in (self.admin_ids or [])}:
            return True
        if username:
            names = {u.lstrip("@").lower() for u in (self.admin_usernames or [])}
            return username.lstrip("@").lower() in names
        return False

    def require(self, trade, actor, access):
        """Raise AuthorizationError unless `actor` satisfies `access` on `trade`.

        Returns the actor's role on the trade (None for a non-participant admin).
        """
        access = Access(access)
        role = trade.role_of(actor.user_id)
        admin = self.is_admin(actor.user_id, actor.username)

        if access == Access.BUYER and role == Role.BUYER:
            return role
        if access == Access.SELLER and role == Role.SELLER:
            return role
        if access == Access.PARTICIPANT and role is not None:
            return role
        if access == Access.PARTICIPANT_OR_ADMIN and (role is not None or admin):
            return role
        if access == Access.ADMIN and admin:
            return role

        logger.info(f"[AUTH] {actor.label} denied {access.value} on {trade.trade_id}")
        raise AuthorizationError(_DENIED.get(access, "You are not allowed to do that."))


_DENIED = {
    Access.BUYER: "Only the buyer can do that.",
    Access.SELLER: "Only the seller can do that.",
    Access.PARTICIPANT: "Only the buyer or seller can do that.",
    Access.PARTICIPANT_OR_ADMIN: "Only the buyer, seller or an admin can do that.",
    Access.ADMIN: "Only an admin can do that.",
}
