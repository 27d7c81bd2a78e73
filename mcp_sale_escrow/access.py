"""
Admin access gate shared by the registry and every sale it deploys.

Sales hold a reference to the gate and ask it `is_admin` on each privileged call, so
admin changes take effect immediately across all sales.
"""
from typing import FrozenSet, Iterable, Optional, Set

from solders.pubkey import Pubkey
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_sale_escrow.config import NULL_ADDRESS
from mcp_sale_escrow.errors import AuthorizationError, ValidationError

logger = get_logger(__name__)


def is_null(identity: Optional[Pubkey]) -> bool:
    """True for a missing identity or the all-zero key."""
    return identity is None or identity == NULL_ADDRESS


class AccessGate:
    def __init__(self, admins: Iterable[Pubkey] = ()):
        self._admins: Set[Pubkey] = set()
        for admin in admins:
            if is_null(admin):
                raise ValidationError("Admin address can not be null.")
            self._admins.add(admin)
        logger.info(f"Access gate created with {len(self._admins)} admin(s)")

    @property
    def admins(self) -> FrozenSet[Pubkey]:
        return frozenset(self._admins)

    def is_admin(self, identity: Optional[Pubkey]) -> bool:
        return identity in self._admins

    def require_admin(self, caller: Optional[Pubkey]) -> None:
        if not self.is_admin(caller):
            raise AuthorizationError("Only admin can call this function.")

    def add_admin(self, caller: Pubkey, identity: Pubkey) -> None:
        self.require_admin(caller)
        if is_null(identity):
            raise ValidationError("Admin address can not be null.")
        if identity in self._admins:
            logger.debug(f"{identity} is already an admin")
            return
        self._admins.add(identity)
        logger.info(f"Admin {identity} added by {caller}")

    def remove_admin(self, caller: Pubkey, identity: Pubkey) -> None:
        self.require_admin(caller)
        if identity not in self._admins:
            raise ValidationError(f"{identity} is not an admin.")
        self._admins.remove(identity)
        logger.info(f"Admin {identity} removed by {caller}")
        if not self._admins:
            logger.warning("Last admin removed; admin-gated operations are now locked")
