"""
Loan Ledger System

Composition root wiring storage, parties, loans, repayments, arrears,
reporting and audit together. Every caller-facing operation takes the
verified Identity handed over by the identity gateway and resolves it into
an actor before touching any component.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from .amortization import ScheduleCache, ScheduleRow
from .arrears import ArrearsDetector, ArrearsRecord
from .audit import AuditTrail
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .errors import AuthorizationError
from .loans import Loan, LoanManager, loan_view
from .logging_config import get_logger
from .money import format_amount
from .parties import Creditor, Debtor, PartyRegistry, User
from .rbac import Actor, AdminActor, Identity, Role, resolve_actor
from .reporting import ExportResult, ReportingEngine
from .repayments import Repayment, RepaymentLedger
from .storage import StorageInterface, create_storage


logger = get_logger("loan_ledger.system")


class LoanLedgerSystem:
    """Loan ledger with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.clock = clock or SystemClock()

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.parties = PartyRegistry(self.storage, self.audit_trail)
        self.schedule_cache = ScheduleCache(self.config.schedule_cache_size)
        self.loan_manager = LoanManager(
            self.storage, self.parties, self.audit_trail,
            clock=self.clock,
            schedule_cache=self.schedule_cache,
            installment_precision=self.config.installment_precision
        )
        self.repayment_ledger = RepaymentLedger(
            self.storage, self.loan_manager, self.audit_trail,
            closing_tolerance=Decimal(self.config.closing_tolerance)
        )
        self.arrears_detector = ArrearsDetector(
            self.loan_manager, self.repayment_ledger, self.parties,
            clock=self.clock,
            threshold=Decimal(self.config.arrears_threshold)
        )
        self.reporting_engine = ReportingEngine(
            self.loan_manager, self.repayment_ledger, self.parties,
            row_limit=self.config.export_row_limit
        )
        logger.info(f"Loan ledger ready (audit logging {'on' if self.audit_trail.enabled else 'off'})")

    def actor(self, identity: Identity) -> Actor:
        return resolve_actor(identity, self.parties)

    # Parties

    def register_user(self, identity: Optional[Identity], name: str, email: str, role,
                      **profile) -> User:
        """
        Register a user with their creditor or debtor profile

        Creditors and debtors may self-register without an identity. Admin
        accounts need an admin caller, except for the very first user.
        """
        role_value = role.value if isinstance(role, Role) else str(role or "").strip().lower()
        if role_value == Role.ADMIN.value and self.storage.count(self.parties.users_table) > 0:
            if identity is None or not isinstance(self.actor(identity), AdminActor):
                raise AuthorizationError("Only admins may register admin accounts")
        return self.parties.register_user(name=name, email=email, role=role, **profile)

    def create_debtor(self, identity: Identity, name: str, email: str, **profile) -> Debtor:
        return self.parties.create_debtor(self.actor(identity), name, email, **profile)

    def list_debtors(self, identity: Identity) -> List[Dict]:
        return self.parties.list_debtors(self.actor(identity))

    def get_debtor(self, identity: Identity, debtor_id: str) -> Dict:
        return self.parties.get_debtor_details(self.actor(identity), debtor_id)

    def list_creditors(self, identity: Identity) -> List[Dict]:
        return self.parties.list_creditors(self.actor(identity))

    def update_creditor(self, identity: Identity, creditor_id: str,
                        company: Optional[str] = None, phone: Optional[str] = None) -> Creditor:
        return self.parties.update_creditor(self.actor(identity), creditor_id, company, phone)

    # Loans

    def create_loan(self, identity: Identity, debtor_id: str, principal, interest_rate,
                    term_months, start_date=None) -> Loan:
        return self.loan_manager.create_loan(
            self.actor(identity), debtor_id, principal, interest_rate, term_months, start_date
        )

    def decide_loan(self, identity: Identity, loan_id: str, action) -> Dict[str, Any]:
        loan = self.loan_manager.decide_loan(self.actor(identity), loan_id, action)
        result = {"loan_id": loan.id, "status": loan.status.value}
        if loan.monthly_installment is not None:
            result["monthly_installment"] = str(loan.monthly_installment)
        return result

    def list_loans(self, identity: Identity) -> List[Dict]:
        return self.loan_manager.list_loans(self.actor(identity))

    def get_loan(self, identity: Identity, loan_id: str) -> Dict[str, Any]:
        """Loan with both parties' names, its repayments (newest first), paid and outstanding"""
        loan = self.loan_manager.view_loan(self.actor(identity), loan_id)
        repayments = self.repayment_ledger.repayments_for_loan(loan.id)
        paid = sum((r.amount for r in repayments), Decimal('0'))

        view = loan_view(loan)
        view["debtor_name"] = self.parties.display_name(self.parties.get_debtor(loan.debtor_id))
        view["creditor_name"] = self.parties.display_name(self.parties.get_creditor(loan.creditor_id))
        return {
            "loan": view,
            "repayments": [r.to_view() for r in repayments],
            "paid": format_amount(paid),
            "outstanding": format_amount(loan.outstanding(paid))
        }

    def get_amortization_schedule(self, identity: Identity, loan_id: str) -> List[ScheduleRow]:
        return self.loan_manager.get_amortization_schedule(self.actor(identity), loan_id)

    def delete_loan(self, identity: Identity, loan_id: str) -> int:
        return self.loan_manager.delete_loan(self.actor(identity), loan_id)

    # Repayments

    def post_repayment(self, identity: Identity, loan_id: str, amount,
                       method: Optional[str] = None, note: Optional[str] = None,
                       paid_on=None) -> Repayment:
        return self.repayment_ledger.post_repayment(
            self.actor(identity), loan_id, amount, method=method, note=note, paid_on=paid_on
        )

    def list_repayments(self, identity: Identity, loan_id: str) -> List[Repayment]:
        return self.repayment_ledger.list_repayments(self.actor(identity), loan_id)

    # Reports

    def get_arrears(self, identity: Identity, as_of=None) -> List[ArrearsRecord]:
        return self.arrears_detector.detect_arrears(self.actor(identity), as_of)

    def payments_report(self, identity: Identity, from_date=None, to_date=None) -> List[Dict]:
        return self.reporting_engine.payments_report(self.actor(identity), from_date, to_date)

    def export_payments(self, identity: Identity, from_date=None, to_date=None,
                        format: Optional[str] = "csv") -> ExportResult:
        return self.reporting_engine.export_payments(
            self.actor(identity), from_date, to_date, format
        )

    def get_dashboard_summary(self, identity: Identity) -> Dict[str, Any]:
        return self.reporting_engine.dashboard_summary(self.actor(identity))

    def close(self) -> None:
        self.storage.close()
