"""
Arrears Module

Read-only comparison of what each active loan should have repaid by now
against what it actually has.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from .clock import Clock, SystemClock, parse_date
from .errors import AuthorizationError
from .loans import Loan, LoanManager, LoanStatus
from .money import ZERO, format_amount
from .parties import PartyRegistry
from .rbac import Actor, AdminActor, CreditorActor, DebtorActor, Permission, require_permission, unhandled_actor
from .repayments import RepaymentLedger


DEFAULT_ARREARS_THRESHOLD = Decimal('0.01')


def months_between(start: date, as_of: date) -> int:
    """Whole calendar months from ``start`` to ``as_of``; day of month is ignored, never negative"""
    months = (as_of.year - start.year) * 12 + (as_of.month - start.month)
    return max(months, 0)


@dataclass(frozen=True)
class ArrearsRecord:
    """Active loan whose repayments lag the installments due so far"""
    loan_id: str
    debtor_id: str
    creditor_id: str
    creditor_name: str
    months_elapsed: int
    expected_paid: Decimal
    actual_paid: Decimal
    deficit: Decimal

    def to_dict(self) -> Dict:
        return {
            "loan_id": self.loan_id,
            "debtor_id": self.debtor_id,
            "creditor_id": self.creditor_id,
            "creditor_name": self.creditor_name,
            "months_elapsed": self.months_elapsed,
            "expected_paid": format_amount(self.expected_paid),
            "actual_paid": format_amount(self.actual_paid),
            "deficit": format_amount(self.deficit)
        }


class ArrearsDetector:
    """
    Flags active loans in arrears
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        repayment_ledger: RepaymentLedger,
        parties: PartyRegistry,
        clock: Optional[Clock] = None,
        threshold: Decimal = DEFAULT_ARREARS_THRESHOLD
    ):
        self.loan_manager = loan_manager
        self.repayment_ledger = repayment_ledger
        self.parties = parties
        self.clock = clock or SystemClock()
        self.threshold = Decimal(str(threshold))

    def _scoped_loans(self, actor: Actor) -> List[Loan]:
        if isinstance(actor, (AdminActor, CreditorActor)):
            return self.loan_manager.loans_for_actor(actor)
        elif isinstance(actor, DebtorActor):
            raise AuthorizationError("Debtors may not view arrears reports")
        unhandled_actor(actor)

    def detect_arrears(self, actor: Actor, as_of=None) -> List[ArrearsRecord]:
        """
        Active loans whose deficit exceeds the threshold

        Args:
            actor: Admin (all loans) or creditor (own loans)
            as_of: Reference date; today when omitted

        Returns:
            ArrearsRecord list, largest deficit first
        """
        require_permission(actor, Permission.VIEW_ARREARS)
        loans = self._scoped_loans(actor)
        as_of = parse_date(as_of, "as_of") or self.clock.today()
        paid_by_loan = self.repayment_ledger.paid_by_loan()

        records = []
        for loan in loans:
            if loan.status != LoanStatus.ACTIVE or loan.start_date is None:
                continue

            months_elapsed = months_between(loan.start_date, as_of)
            expected = (loan.monthly_installment or ZERO) * Decimal(months_elapsed)
            actual = paid_by_loan.get(loan.id, ZERO)
            deficit = expected - actual

            if deficit > self.threshold:
                records.append(ArrearsRecord(
                    loan_id=loan.id,
                    debtor_id=loan.debtor_id,
                    creditor_id=loan.creditor_id,
                    creditor_name=self.parties.display_name(
                        self.parties.get_creditor(loan.creditor_id)),
                    months_elapsed=months_elapsed,
                    expected_paid=expected,
                    actual_paid=actual,
                    deficit=deficit
                ))

        records.sort(key=lambda record: record.deficit, reverse=True)
        return records
