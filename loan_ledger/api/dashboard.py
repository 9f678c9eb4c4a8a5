"""
Dashboard endpoint
"""

from fastapi import APIRouter, Depends

from .auth import get_identity, get_ledger_system
from ..rbac import Identity
from ..system import LoanLedgerSystem


router = APIRouter()


@router.get("")
def get_dashboard_summary(
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    """Role-scoped counts and outstanding totals"""
    return system.get_dashboard_summary(identity)
