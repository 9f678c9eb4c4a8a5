"""
User, creditor and debtor endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import get_identity, get_ledger_system, get_optional_identity
from .schemas import CreateDebtorRequest, RegisterUserRequest, UpdateCreditorRequest
from ..rbac import Identity
from ..system import LoanLedgerSystem


users_router = APIRouter()
debtors_router = APIRouter()
creditors_router = APIRouter()


@users_router.post("", status_code=status.HTTP_201_CREATED)
def register_user(
    request: RegisterUserRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    """Register a user and their profile"""
    user = system.register_user(
        identity,
        name=request.name,
        email=request.email,
        role=request.role,
        company=request.company,
        phone=request.phone,
        national_id=request.national_id,
        address=request.address
    )
    creditor = system.parties.get_creditor_by_user(user.id)
    debtor = system.parties.get_debtor_by_user(user.id)
    return {
        "user_id": user.id,
        "role": user.role.value,
        "creditor_id": creditor.id if creditor else None,
        "debtor_id": debtor.id if debtor else None,
        "message": "Registered"
    }


@debtors_router.post("", status_code=status.HTTP_201_CREATED)
def create_debtor(
    request: CreateDebtorRequest,
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    debtor = system.create_debtor(
        identity,
        name=request.name,
        email=request.email,
        national_id=request.national_id,
        phone=request.phone,
        address=request.address
    )
    return {"debtor_id": debtor.id, "user_id": debtor.user_id, "message": "Debtor created"}


@debtors_router.get("")
def list_debtors(
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    return {"debtors": system.list_debtors(identity)}


@debtors_router.get("/{debtor_id}")
def get_debtor(
    debtor_id: str,
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    return system.get_debtor(identity, debtor_id)


@creditors_router.get("")
def list_creditors(
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    return {"creditors": system.list_creditors(identity)}


@creditors_router.put("/{creditor_id}")
def update_creditor(
    creditor_id: str,
    request: UpdateCreditorRequest,
    identity: Identity = Depends(get_identity),
    system: LoanLedgerSystem = Depends(get_ledger_system)
):
    creditor = system.update_creditor(identity, creditor_id, request.company, request.phone)
    return {
        "id": creditor.id,
        "company": creditor.company,
        "phone": creditor.phone,
        "message": "Creditor updated"
    }
