"""
Reporting Module

Payment reports, CSV/PDF export and role-scoped dashboard aggregates. All
reads; nothing here takes a lock or writes to the store.
"""

import csv
import io
from dataclasses import dataclass
from html import escape
from typing import Any, Dict, List, Optional

from xhtml2pdf import pisa

from .clock import parse_date
from .errors import AuthorizationError, LedgerError, UnsupportedFormatError, ValidationError
from .loans import LoanManager, LoanStatus
from .logging_config import get_logger, log_action
from .money import ZERO, format_amount
from .parties import PartyRegistry
from .rbac import Actor, AdminActor, CreditorActor, DebtorActor, Permission, require_permission, unhandled_actor
from .repayments import RepaymentLedger


logger = get_logger("loan_ledger.reporting")

# Column order is part of the export contract
CSV_COLUMNS = ("paid_on", "repayment_id", "loan_id", "debtor_id", "debtor_name",
               "amount", "method", "note")

SUPPORTED_FORMATS = ("csv", "pdf")

DEFAULT_ROW_LIMIT = 500


@dataclass(frozen=True)
class ExportResult:
    """Rendered export ready to hand to a transport"""
    content: bytes
    media_type: str
    filename: str


class ReportingEngine:
    """
    Payment reports, exports and dashboards
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        repayment_ledger: RepaymentLedger,
        parties: PartyRegistry,
        row_limit: int = DEFAULT_ROW_LIMIT
    ):
        self.loan_manager = loan_manager
        self.repayment_ledger = repayment_ledger
        self.parties = parties
        self.row_limit = row_limit

    @staticmethod
    def _require_report_access(actor: Actor, permission: Permission) -> None:
        require_permission(actor, permission)
        if isinstance(actor, (AdminActor, CreditorActor)):
            return
        elif isinstance(actor, DebtorActor):
            raise AuthorizationError("Debtors may not run payment reports")
        unhandled_actor(actor)

    def payment_rows(self, from_date=None, to_date=None) -> List[Dict[str, Any]]:
        """
        Repayments joined with their loan's debtor, newest first

        Both bounds are inclusive and each may be given alone. With no bounds
        the result is capped at ``row_limit`` rows.
        """
        start = parse_date(from_date, "from")
        end = parse_date(to_date, "to")
        if start and end and start > end:
            raise ValidationError("from must not be after to")

        debtor_by_loan: Dict[str, str] = {}
        names: Dict[str, str] = {}
        for loan in self.loan_manager.all_loans():
            debtor_by_loan[loan.id] = loan.debtor_id

        repayments = []
        for repayment in self.repayment_ledger.all_repayments():
            if start and repayment.paid_on < start:
                continue
            if end and repayment.paid_on > end:
                continue
            # Loan deleted between the two reads
            if repayment.loan_id not in debtor_by_loan:
                continue
            repayments.append(repayment)

        repayments.sort(key=lambda r: (r.paid_on, r.created_at), reverse=True)
        if start is None and end is None:
            repayments = repayments[:self.row_limit]

        rows = []
        for repayment in repayments:
            debtor_id = debtor_by_loan[repayment.loan_id]
            if debtor_id not in names:
                names[debtor_id] = self.parties.display_name(self.parties.get_debtor(debtor_id))
            rows.append({
                "paid_on": repayment.paid_on.isoformat(),
                "repayment_id": repayment.id,
                "loan_id": repayment.loan_id,
                "debtor_id": debtor_id,
                "debtor_name": names[debtor_id],
                "amount": str(repayment.amount),
                "method": repayment.method,
                "note": repayment.note
            })
        return rows

    def payments_report(self, actor: Actor, from_date=None, to_date=None) -> List[Dict[str, Any]]:
        """Raw payment rows for admins and creditors"""
        self._require_report_access(actor, Permission.VIEW_REPORTS)
        return self.payment_rows(from_date, to_date)

    def export_payments(self, actor: Actor, from_date=None, to_date=None,
                        format: Optional[str] = "csv") -> ExportResult:
        """
        Export payment rows as CSV or PDF

        Args:
            actor: Admin or creditor; a creditor's export is not narrowed to
                their own loans
            from_date: Inclusive lower bound on ``paid_on``
            to_date: Inclusive upper bound on ``paid_on``
            format: ``csv`` or ``pdf``, case-insensitive

        Raises:
            AuthorizationError: Debtor caller
            UnsupportedFormatError: Any other format
        """
        self._require_report_access(actor, Permission.EXPORT_PAYMENTS)

        fmt = (format or "csv").strip().lower()
        if fmt not in SUPPORTED_FORMATS:
            raise UnsupportedFormatError(format, SUPPORTED_FORMATS)

        rows = self.payment_rows(from_date, to_date)
        if fmt == "csv":
            result = ExportResult(
                content=self.render_csv(rows),
                media_type="text/csv",
                filename="payments-report.csv"
            )
        else:
            result = ExportResult(
                content=self.render_pdf(rows),
                media_type="application/pdf",
                filename="payments-report.pdf"
            )

        log_action(logger, "info", f"Exported {len(rows)} payments", user_id=actor.user_id,
                   action="export_payments", resource=fmt)
        return result

    @staticmethod
    def render_csv(rows: List[Dict[str, Any]]) -> bytes:
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=CSV_COLUMNS, lineterminator="\r\n")
        writer.writeheader()
        for row in rows:
            writer.writerow({column: row.get(column, "") for column in CSV_COLUMNS})
        content = output.getvalue()
        output.close()
        return content.encode("utf-8")

    @staticmethod
    def render_pdf(rows: List[Dict[str, Any]]) -> bytes:
        lines = "".join(
            "<p>{}</p>".format(escape(" | ".join([
                row["paid_on"], row["loan_id"], row["debtor_name"], row["amount"], row["method"]
            ])))
            for row in rows
        )
        html = (
            "<html><head><meta charset='utf-8'/>"
            "<style>@page { size: a4; margin: 1cm; } "
            "h1 { text-align: center; font-size: 14pt; } p { font-size: 10pt; margin: 0; }</style>"
            "</head><body><h1>Payments Report</h1>"
            f"{lines}</body></html>"
        )

        pdf_io = io.BytesIO()
        pisa_status = pisa.CreatePDF(html, dest=pdf_io, encoding="utf-8")
        if pisa_status.err:
            raise LedgerError("PDF rendering failed", {"errors": pisa_status.err})
        return pdf_io.getvalue()

    def dashboard_summary(self, actor: Actor) -> Dict[str, Any]:
        """
        Role-scoped counts and outstanding totals

        Outstanding is installment x term minus repayments, summed over
        active loans.
        """
        require_permission(actor, Permission.VIEW_DASHBOARD)
        loans = self.loan_manager.loans_for_actor(actor)
        paid_by_loan = self.repayment_ledger.paid_by_loan()

        outstanding = ZERO
        counts = {status: 0 for status in LoanStatus}
        for loan in loans:
            counts[loan.status] += 1
            if loan.status == LoanStatus.ACTIVE:
                outstanding += loan.outstanding(paid_by_loan.get(loan.id, ZERO))

        if isinstance(actor, CreditorActor):
            return {
                "total_loans": len(loans),
                "active_loans": counts[LoanStatus.ACTIVE],
                "pending_loans": counts[LoanStatus.PENDING],
                "total_outstanding": format_amount(outstanding)
            }
        elif isinstance(actor, DebtorActor):
            return {
                "my_loans": len(loans),
                "active_loans": counts[LoanStatus.ACTIVE],
                "outstanding": format_amount(outstanding)
            }
        elif isinstance(actor, AdminActor):
            return {
                "total_creditors": self.parties.storage.count(self.parties.creditors_table),
                "total_debtors": self.parties.storage.count(self.parties.debtors_table),
                "total_loans": len(loans),
                "total_outstanding": format_amount(outstanding)
            }
        unhandled_actor(actor)
