"""
Pydantic schemas for API requests
"""

from typing import Optional, Union

from pydantic import BaseModel, Field


Amount = Union[str, int, float]


class RegisterUserRequest(BaseModel):
    name: str
    email: str
    role: str = Field(..., description="admin, creditor or debtor")
    company: str = ""
    phone: str = ""
    national_id: str = ""
    address: str = ""


class CreateDebtorRequest(BaseModel):
    name: str
    email: str
    national_id: str = ""
    phone: str = ""
    address: str = ""


class UpdateCreditorRequest(BaseModel):
    company: Optional[str] = None
    phone: Optional[str] = None


class CreateLoanRequest(BaseModel):
    debtor_id: str
    principal: Amount = Field(..., description="Decimal amount as string")
    interest_rate: Amount = Field(..., description="Annual rate in percent, e.g. 12")
    term_months: int = Field(..., description="Number of monthly installments")
    start_date: Optional[str] = Field(None, description="Requested start date (YYYY-MM-DD)")


class DecisionRequest(BaseModel):
    action: str = Field(..., description="approve or reject")


class RepaymentRequest(BaseModel):
    amount: Amount = Field(..., description="Decimal amount as string")
    method: Optional[str] = None
    note: Optional[str] = None
    paid_on: Optional[str] = Field(None, description="Payment date (YYYY-MM-DD), today when omitted")
