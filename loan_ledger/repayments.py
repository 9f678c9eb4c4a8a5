"""
Repayment Ledger Module

Append-only record of repayments against active loans. Posting a repayment,
recomputing the loan's paid total and closing the loan when it is fully
repaid happen in one transaction under the loan's row lock, so concurrent
repayments can neither under-count the sum nor close a loan twice.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional
import uuid

from .audit import AuditAction, AuditTrail
from .clock import parse_date
from .errors import IllegalStateTransitionError, ValidationError
from .loans import Loan, LoanManager, LoanStatus
from .logging_config import get_logger, log_action
from .money import ZERO, to_decimal
from .rbac import Actor, Permission, require_loan_access, require_permission, require_repayment_rights
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_ledger.repayments")

DEFAULT_CLOSING_TOLERANCE = Decimal('0.0001')


@dataclass
class Repayment(StorageRecord):
    """Single repayment; never edited or removed once posted"""
    loan_id: str
    amount: Decimal
    paid_on: date
    method: str = ""
    note: str = ""

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['paid_on'] = self.paid_on.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Repayment':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['paid_on'] = date.fromisoformat(data['paid_on'])
        return super().from_dict(data)

    def to_view(self) -> Dict:
        return {
            "id": self.id,
            "loan_id": self.loan_id,
            "amount": str(self.amount),
            "paid_on": self.paid_on.isoformat(),
            "method": self.method,
            "note": self.note,
            "created_at": self.created_at.isoformat()
        }


class RepaymentLedger:
    """
    Posts and reads repayments
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        closing_tolerance: Decimal = DEFAULT_CLOSING_TOLERANCE
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.closing_tolerance = Decimal(str(closing_tolerance))

        self.repayments_table = "repayments"

    def post_repayment(
        self,
        actor: Actor,
        loan_id: str,
        amount,
        method: Optional[str] = None,
        note: Optional[str] = None,
        paid_on=None
    ) -> Repayment:
        """
        Record a repayment and close the loan once it is fully repaid

        Args:
            actor: Owning debtor
            loan_id: Loan being repaid
            amount: Amount paid, > 0
            method: Free-form payment method (cash, mobile money, ...)
            note: Free-form note
            paid_on: Payment date; today when omitted

        Returns:
            The stored Repayment

        Raises:
            ValidationError: Non-positive amount or bad date
            AuthorizationError: Caller is not the owning debtor
            NotFoundError: Unknown loan
            IllegalStateTransitionError: Loan is not active
        """
        amount = to_decimal(amount, "amount")
        if amount <= ZERO:
            raise ValidationError("amount must be greater than zero")
        paid_on = parse_date(paid_on, "paid_on")
        require_permission(actor, Permission.POST_REPAYMENT)

        closed = False
        with self.storage.atomic():
            self.storage.lock_record(self.loan_manager.loans_table, loan_id)
            loan = self.loan_manager.require_loan(loan_id)
            require_repayment_rights(actor, loan)
            if loan.status != LoanStatus.ACTIVE:
                raise IllegalStateTransitionError(loan.id, loan.status.value, "repay")

            now = self.loan_manager.clock.now()
            repayment = Repayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=amount,
                paid_on=paid_on or now.date(),
                method=(method or "").strip(),
                note=(note or "").strip()
            )
            self.storage.save(self.repayments_table, repayment.id, repayment.to_dict())

            paid = self.total_paid(loan.id)
            if paid + self.closing_tolerance >= loan.total_due:
                self.loan_manager.close_loan(loan)
                closed = True

        self.audit_trail.record(AuditAction.REPAYMENT, {
            "repayment_id": repayment.id,
            "loan_id": loan.id,
            "amount": amount,
            "paid_on": repayment.paid_on,
            "method": repayment.method,
            "paid_total": paid
        })
        log_action(logger, "info", "Repayment posted", user_id=actor.user_id,
                   action="post_repayment", resource=loan.id,
                   extra={"amount": str(amount)})

        if closed:
            self.audit_trail.record(AuditAction.LOAN_CLOSED, {
                "loan_id": loan.id,
                "paid_total": paid,
                "total_due": loan.total_due
            })
            log_action(logger, "info", "Loan closed", user_id=actor.user_id,
                       action="close_loan", resource=loan.id)
        return repayment

    def repayments_for_loan(self, loan_id: str) -> List[Repayment]:
        """Repayments for a loan, most recent first"""
        repayments = [Repayment.from_dict(data) for data in
                      self.storage.find(self.repayments_table, {"loan_id": loan_id})]
        repayments.sort(key=lambda r: (r.paid_on, r.created_at), reverse=True)
        return repayments

    def all_repayments(self) -> List[Repayment]:
        return [Repayment.from_dict(data) for data in self.storage.load_all(self.repayments_table)]

    def total_paid(self, loan_id: str) -> Decimal:
        """Cumulative paid sum for a loan"""
        return sum((Decimal(data['amount']) for data in
                    self.storage.find(self.repayments_table, {"loan_id": loan_id})), ZERO)

    def paid_by_loan(self) -> Dict[str, Decimal]:
        """Cumulative paid sum keyed by loan id, in one pass over the table"""
        totals: Dict[str, Decimal] = {}
        for data in self.storage.load_all(self.repayments_table):
            totals[data['loan_id']] = totals.get(data['loan_id'], ZERO) + Decimal(data['amount'])
        return totals

    def list_repayments(self, actor: Actor, loan_id: str) -> List[Repayment]:
        """Repayments for a loan the actor may see, most recent first"""
        require_permission(actor, Permission.VIEW_REPAYMENTS)
        loan: Loan = self.loan_manager.require_loan(loan_id)
        require_loan_access(actor, loan)
        return self.repayments_for_loan(loan.id)
