"""
Account contracts and their embeddable components.
"""

from guardian_account.core.contracts.escape import (
    Escape,
    EscapeStatus,
    EscapeType,
    get_escape_status,
)
from guardian_account.core.contracts.guardian_account import GuardianAccount
from guardian_account.core.contracts.multisig_account import MultisigAccount

__all__ = [
    "Escape",
    "EscapeStatus",
    "EscapeType",
    "GuardianAccount",
    "MultisigAccount",
    "get_escape_status",
]
