"""
Loan and repayment endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import get_identity, get_ledger_system
from .schemas import CreateLoanRequest, DecisionRequest, RepaymentRequest
from ..rbac import Identity
from ..system import LoanLedgerSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    """Create a pending loan"""
    loan = system.create_loan(
        identity,
        debtor_id=request.debtor_id,
        principal=request.principal,
        interest_rate=request.interest_rate,
        term_months=request.term_months,
        start_date=request.start_date
    )
    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "message": "Loan created"
    }


@router.get("")
def list_loans(
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    """Loans visible to the caller"""
    return {"loans": system.list_loans(identity)}


@router.post("/{loan_id}/decision")
def decide_loan(
    loan_id: str,
    request: DecisionRequest,
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    """Approve or reject a pending loan"""
    return system.decide_loan(identity, loan_id, request.action)


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    return system.get_loan(identity, loan_id)


@router.get("/{loan_id}/amortization")
def get_amortization_schedule(
    loan_id: str,
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    schedule = system.get_amortization_schedule(identity, loan_id)
    return {"schedule": [row.to_dict() for row in schedule]}


@router.post("/{loan_id}/repay", status_code=status.HTTP_201_CREATED)
def post_repayment(
    loan_id: str,
    request: RepaymentRequest,
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    """Record a repayment by the owning debtor"""
    repayment = system.post_repayment(
        identity, loan_id, request.amount,
        method=request.method, note=request.note, paid_on=request.paid_on
    )
    loan = system.loan_manager.require_loan(loan_id)
    return {
        "repayment_id": repayment.id,
        "loan_status": loan.status.value,
        "message": "Repayment recorded"
    }


@router.get("/{loan_id}/repayments")
def list_repayments(
    loan_id: str,
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    repayments = system.list_repayments(identity, loan_id)
    return {"repayments": [r.to_view() for r in repayments]}


@router.delete("/{loan_id}")
def delete_loan(
    loan_id: str,
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    """Delete a loan and its repayments (admin only)"""
    removed = system.delete_loan(identity, loan_id)
    return {"loan_id": loan_id, "repayments_removed": removed, "message": "Loan deleted"}
