"""
Identity and system dependencies

Credentials are verified upstream by the identity gateway, which forwards the
caller as ``X-User-Id`` / ``X-User-Role`` headers. The ledger trusts those
headers and nothing else.
"""

import threading
from typing import Optional

from fastapi import Header

from ..rbac import Identity
from ..system import LoanLedgerSystem


USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"

# Global ledger system instance, created on first use
ledger_system: Optional[LoanLedgerSystem] = None
_ledger_system_lock = threading.Lock()


def get_ledger_system() -> LoanLedgerSystem:
    global ledger_system
    if ledger_system is None:
        with _ledger_system_lock:
            # Re-check: another request may have built it while we waited
            if ledger_system is None:
                ledger_system = LoanLedgerSystem()
    return ledger_system


def get_identity(
    x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER),
    x_user_role: Optional[str] = Header(None, alias=USER_ROLE_HEADER)
) -> Identity:
    """Verified caller; AuthenticationError (401) when the headers are missing or invalid"""
    return Identity.of(x_user_id, x_user_role)


def get_optional_identity(
    x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER),
    x_user_role: Optional[str] = Header(None, alias=USER_ROLE_HEADER)
) -> Optional[Identity]:
    """Like get_identity, but anonymous callers get None"""
    if not x_user_id and not x_user_role:
        return None
    return Identity.of(x_user_id, x_user_role)
