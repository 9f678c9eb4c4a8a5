"""
Reporting endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from .auth import get_identity, get_ledger_system
from ..rbac import Identity
from ..system import LoanLedgerSystem


router = APIRouter()


@router.get("/late")
def get_arrears(
    as_of: Optional[str] = Query(None, description="Reference date (YYYY-MM-DD)"),
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    """Active loans in arrears"""
    records = system.get_arrears(identity, as_of)
    return {"late": [record.to_dict() for record in records]}


@router.get("/payments")
def payments_report(
    from_date: Optional[str] = Query(None, alias="from"),
    to_date: Optional[str] = Query(None, alias="to"),
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    return {"rows": system.payments_report(identity, from_date, to_date)}


@router.get("/export")
def export_payments(
    format: Optional[str] = Query("csv"),
    from_date: Optional[str] = Query(None, alias="from"),
    to_date: Optional[str] = Query(None, alias="to"),
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    """Payments as a CSV or PDF attachment"""
    result = system.export_payments(identity, from_date, to_date, format)
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'}
    )
