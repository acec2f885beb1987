"""
Capability table for the Liquidation Insurance Protocol.

Roles are granted to account addresses and checked by the component that
receives the call, before it touches any state.
"""

import logging
from enum import Enum

from insurance_model.errors import AccessDeniedError

logger = logging.getLogger(__name__)


class Role(Enum):
    """Capabilities a caller can hold."""
    GOVERNANCE = 0          # parameter changes, claim settlement, premium override
    KEEPER = 1              # liquidation purchases, batch withdrawal processing
    LIQUIDATION_MODULE = 2  # fund reservation, profit/loss application, reinsurance trigger
    GUARDIAN = 3            # emergency shutdown


class PermissionTable:
    """
    Explicit role -> accounts table.

    Replaces per-contract owner/role modifiers: every component receives the
    same table and asks it before dispatching a restricted call.
    """

    def __init__(self, governance=None):
        self.members = {role: set() for role in Role}
        if governance is not None:
            self.members[Role.GOVERNANCE].add(governance)
            self.members[Role.GUARDIAN].add(governance)

    def grant(self, role, account):
        self.members[role].add(account)
        logger.info("Granted %s to %s", role.name, account)

    def revoke(self, role, account):
        self.members[role].discard(account)
        logger.info("Revoked %s from %s", role.name, account)

    def has_role(self, role, account):
        return account in self.members[role]

    def require(self, role, account):
        """Raise AccessDeniedError unless account holds role."""
        if account not in self.members[role]:
            raise AccessDeniedError(f"{account} lacks role {role.name}")
