"""
Loan Module

Loan origination and the loan state machine:

    pending -> active | rejected
    active  -> closed

``rejected`` and ``closed`` are terminal. Approval fixes the monthly
installment and the start date together with the status change, under the
loan's row lock. Closing happens only through the repayment ledger.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
import uuid

from .amortization import ScheduleCache, ScheduleRow, calculate_installment, total_due, validate_terms
from .audit import AuditAction, AuditTrail
from .clock import Clock, SystemClock, parse_date
from .errors import AuthorizationError, IllegalStateTransitionError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .money import ZERO
from .parties import PartyRegistry
from .rbac import (
    Actor, AdminActor, CreditorActor, DebtorActor, Permission,
    require_decision_rights, require_loan_access, require_permission, unhandled_actor
)
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_ledger.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"      # Awaiting a decision
    REJECTED = "rejected"    # Declined; terminal
    ACTIVE = "active"        # Approved, installment fixed, accepting repayments
    CLOSED = "closed"        # Fully repaid; terminal


ALLOWED_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.ACTIVE, LoanStatus.REJECTED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.CLOSED}),
    LoanStatus.REJECTED: frozenset(),
    LoanStatus.CLOSED: frozenset(),
}


class DecisionAction(Enum):
    """Decisions a creditor or admin may take on a pending loan"""
    APPROVE = "approve"
    REJECT = "reject"

    @classmethod
    def parse(cls, value) -> 'DecisionAction':
        if isinstance(value, DecisionAction):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid action: {value!r} (expected approve or reject)")


@dataclass
class Loan(StorageRecord):
    """Fixed-rate, fixed-term installment loan"""
    debtor_id: str
    creditor_id: str
    principal: Decimal
    interest_rate: Decimal               # Annual percent, e.g. 12 for 12%
    term_months: int
    status: LoanStatus = LoanStatus.PENDING
    monthly_installment: Optional[Decimal] = None
    start_date: Optional[date] = None
    requested_start_date: Optional[date] = None
    decided_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def total_due(self) -> Optional[Decimal]:
        """installment x term once activated, None before"""
        if self.monthly_installment is None:
            return None
        return total_due(self.monthly_installment, self.term_months)

    def outstanding(self, paid: Decimal) -> Decimal:
        """Amount still owed given the cumulative paid sum; never below zero"""
        owed = self.total_due if self.total_due is not None else self.principal
        return max(owed - paid, ZERO)

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['status'] = self.status.value
        for field in ('start_date', 'requested_start_date', 'decided_at', 'closed_at'):
            value = getattr(self, field)
            result[field] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Loan':
        data = dict(data)
        data['principal'] = Decimal(data['principal'])
        data['interest_rate'] = Decimal(data['interest_rate'])
        data['term_months'] = int(data['term_months'])
        data['status'] = LoanStatus(data['status'])
        if data.get('monthly_installment') is not None:
            data['monthly_installment'] = Decimal(data['monthly_installment'])
        for field in ('start_date', 'requested_start_date'):
            if data.get(field):
                data[field] = date.fromisoformat(data[field])
        for field in ('decided_at', 'closed_at'):
            if data.get(field):
                data[field] = datetime.fromisoformat(data[field])
        return super().from_dict(data)


def loan_view(loan: Loan) -> Dict:
    """JSON-friendly rendering of a loan with amounts as decimal strings"""
    return {
        "id": loan.id,
        "debtor_id": loan.debtor_id,
        "creditor_id": loan.creditor_id,
        "principal": str(loan.principal),
        "interest_rate": str(loan.interest_rate),
        "term_months": loan.term_months,
        "status": loan.status.value,
        "monthly_installment": (None if loan.monthly_installment is None
                                else str(loan.monthly_installment)),
        "start_date": loan.start_date.isoformat() if loan.start_date else None,
        "requested_start_date": (loan.requested_start_date.isoformat()
                                 if loan.requested_start_date else None),
        "created_at": loan.created_at.isoformat(),
        "decided_at": loan.decided_at.isoformat() if loan.decided_at else None,
        "closed_at": loan.closed_at.isoformat() if loan.closed_at else None,
    }


class LoanManager:
    """
    Manages loan origination, decisions and the loan lifecycle
    """

    def __init__(
        self,
        storage: StorageInterface,
        parties: PartyRegistry,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None,
        schedule_cache: Optional[ScheduleCache] = None,
        installment_precision: int = 4
    ):
        self.storage = storage
        self.parties = parties
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.schedule_cache = schedule_cache or ScheduleCache()
        self.installment_precision = installment_precision

        self.loans_table = "loans"
        self.repayments_table = "repayments"

    def create_loan(
        self,
        actor: Actor,
        debtor_id: str,
        principal,
        interest_rate,
        term_months,
        start_date=None
    ) -> Loan:
        """
        Originate a pending loan

        Args:
            actor: Creditor issuing the loan
            debtor_id: Borrower profile id
            principal: Amount lent, > 0
            interest_rate: Annual percent, >= 0
            term_months: Number of monthly installments, > 0
            start_date: Optional requested start; the real start date is set
                on approval

        Returns:
            Created Loan in ``pending``

        Raises:
            AuthorizationError: Caller is not a creditor
            ValidationError: Invalid terms or date
            NotFoundError: Unknown debtor
        """
        require_permission(actor, Permission.CREATE_LOAN)
        if isinstance(actor, CreditorActor):
            creditor_id = actor.creditor_id
        elif isinstance(actor, (AdminActor, DebtorActor)):
            raise AuthorizationError("Only creditors may create loans")
        else:
            unhandled_actor(actor)

        principal, rate, term = validate_terms(principal, interest_rate, term_months)
        requested_start = parse_date(start_date, "start_date")

        if not debtor_id or self.parties.get_debtor(debtor_id) is None:
            raise NotFoundError("debtor", debtor_id or "")

        now = self.clock.now()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            debtor_id=debtor_id,
            creditor_id=creditor_id,
            principal=principal,
            interest_rate=rate,
            term_months=term,
            status=LoanStatus.PENDING,
            requested_start_date=requested_start
        )

        with self.storage.atomic():
            self._save_loan(loan)

        self.audit_trail.record(AuditAction.CREATE_LOAN, {
            "loan_id": loan.id,
            "creditor_id": creditor_id,
            "debtor_id": debtor_id,
            "principal": principal,
            "interest_rate": rate,
            "term_months": term,
            "requested_start_date": requested_start
        })
        log_action(logger, "info", "Loan created", user_id=actor.user_id,
                   action="create_loan", resource=loan.id)
        return loan

    def decide_loan(self, actor: Actor, loan_id: str, action) -> Loan:
        """
        Approve or reject a pending loan

        Approval computes the installment from the stored terms and sets the
        start date to today, in the same transaction as the status change.

        Raises:
            ValidationError: Action is neither approve nor reject
            AuthorizationError: Debtor, or a creditor who does not own the loan
            NotFoundError: Unknown loan
            IllegalStateTransitionError: Loan is not pending
        """
        decision = DecisionAction.parse(action)
        require_permission(actor, Permission.DECIDE_LOAN)

        with self.storage.atomic():
            self.storage.lock_record(self.loans_table, loan_id)
            loan = self.require_loan(loan_id)
            require_decision_rights(actor, loan)

            now = self.clock.now()
            if decision == DecisionAction.APPROVE:
                self._transition(loan, LoanStatus.ACTIVE, "approve")
                loan.monthly_installment = calculate_installment(
                    loan.principal, loan.interest_rate, loan.term_months,
                    precision=self.installment_precision
                )
                loan.start_date = now.date()
            else:
                self._transition(loan, LoanStatus.REJECTED, "reject")
            loan.decided_at = now
            loan.updated_at = now
            self._save_loan(loan)

        self.schedule_cache.invalidate(loan.id)

        if decision == DecisionAction.APPROVE:
            self.audit_trail.record(AuditAction.LOAN_APPROVED, {
                "loan_id": loan.id,
                "by": actor.user_id,
                "monthly_installment": loan.monthly_installment,
                "start_date": loan.start_date
            })
        else:
            self.audit_trail.record(AuditAction.LOAN_REJECTED, {
                "loan_id": loan.id,
                "by": actor.user_id
            })
        log_action(logger, "info", f"Loan {loan.status.value}", user_id=actor.user_id,
                   action="decide_loan", resource=loan.id,
                   extra={"decision": decision.value})
        return loan

    def close_loan(self, loan: Loan) -> Loan:
        """
        Move an active loan to ``closed``

        Must run inside the caller's transaction while it holds the loan's
        row lock; the repayment ledger is the only caller.
        """
        if not self.storage.in_transaction:
            raise RuntimeError("close_loan() must be called inside atomic()")
        self._transition(loan, LoanStatus.CLOSED, "close")
        now = self.clock.now()
        loan.closed_at = now
        loan.updated_at = now
        self._save_loan(loan)
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    def view_loan(self, actor: Actor, loan_id: str) -> Loan:
        """Load a loan the actor is allowed to see"""
        require_permission(actor, Permission.VIEW_LOAN)
        loan = self.require_loan(loan_id)
        require_loan_access(actor, loan)
        return loan

    def all_loans(self) -> List[Loan]:
        loans = [Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def loans_for_actor(self, actor: Actor) -> List[Loan]:
        """Loans in the actor's scope, newest first"""
        if isinstance(actor, AdminActor):
            return self.all_loans()
        elif isinstance(actor, CreditorActor):
            found = self.storage.find(self.loans_table, {"creditor_id": actor.creditor_id})
        elif isinstance(actor, DebtorActor):
            found = self.storage.find(self.loans_table, {"debtor_id": actor.debtor_id})
        else:
            unhandled_actor(actor)
        loans = [Loan.from_dict(data) for data in found]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def list_loans(self, actor: Actor) -> List[Dict]:
        """
        Role-scoped loan listing

        Creditors get their loans with the debtor's name, debtors get theirs
        with the creditor's name, admins get every loan with both.
        """
        require_permission(actor, Permission.LIST_LOANS)
        rows = []
        for loan in self.loans_for_actor(actor):
            row = loan_view(loan)
            if isinstance(actor, (AdminActor, CreditorActor)):
                row["debtor_name"] = self.parties.display_name(self.parties.get_debtor(loan.debtor_id))
            if isinstance(actor, (AdminActor, DebtorActor)):
                row["creditor_name"] = self.parties.display_name(
                    self.parties.get_creditor(loan.creditor_id))
            rows.append(row)
        return rows

    def get_amortization_schedule(self, actor: Actor, loan_id: str) -> List[ScheduleRow]:
        """
        Schedule for a loan the actor may see

        Activated loans use their fixed installment; a pending or rejected
        loan gets a preview computed from its terms.
        """
        loan = self.view_loan(actor, loan_id)
        return self.schedule_cache.get_or_build(
            loan.id, loan.principal, loan.interest_rate, loan.term_months,
            loan.monthly_installment
        )

    def delete_loan(self, actor: Actor, loan_id: str) -> int:
        """
        Delete a loan and its repayments (admin maintenance)

        Returns:
            Number of repayments removed with the loan
        """
        require_permission(actor, Permission.MANAGE_LOANS)
        if not isinstance(actor, AdminActor):
            raise AuthorizationError("Only admins may delete loans")

        with self.storage.atomic():
            self.storage.lock_record(self.loans_table, loan_id)
            loan = self.require_loan(loan_id)
            repayments = self.storage.find(self.repayments_table, {"loan_id": loan.id})
            for repayment in repayments:
                self.storage.delete(self.repayments_table, repayment["id"])
            self.storage.delete(self.loans_table, loan.id)

        self.schedule_cache.invalidate(loan.id)
        self.audit_trail.record(AuditAction.LOAN_DELETED, {
            "loan_id": loan.id,
            "by": actor.user_id,
            "status": loan.status,
            "repayments_removed": len(repayments)
        })
        log_action(logger, "warning", "Loan deleted", user_id=actor.user_id,
                   action="delete_loan", resource=loan.id)
        return len(repayments)

    def _transition(self, loan: Loan, target: LoanStatus, attempted: str) -> None:
        if target not in ALLOWED_TRANSITIONS[loan.status]:
            raise IllegalStateTransitionError(loan.id, loan.status.value, attempted)
        loan.status = target

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
