"""
Test suite for loans module

Tests loan origination, the pending/active/rejected/closed state machine,
decision authorization, role-scoped listings and amortization access.
"""

import threading
import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

from loan_ledger.clock import FixedClock
from loan_ledger.config import LedgerConfig
from loan_ledger.errors import (
    AuthorizationError, IllegalStateTransitionError, NotFoundError, ValidationError
)
from loan_ledger.loans import ALLOWED_TRANSITIONS, DecisionAction, Loan, LoanStatus
from loan_ledger.rbac import Identity, Role
from loan_ledger.storage import InMemoryStorage
from loan_ledger.system import LoanLedgerSystem


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def system(clock):
    config = LedgerConfig(database_url="memory://")
    return LoanLedgerSystem(config=config, storage=InMemoryStorage(), clock=clock)


@pytest.fixture
def people(system):
    """Admin, two creditors and two debtors"""
    admin = system.register_user(None, "Root Admin", "admin@example.com", "admin")
    lender = system.register_user(None, "Lender One", "lender@example.com", "creditor",
                                  company="Lend Co")
    rival = system.register_user(None, "Lender Two", "rival@example.com", "creditor")
    alice = system.register_user(None, "Alice Debtor", "alice@example.com", "debtor")
    bob = system.register_user(None, "Bob Debtor", "bob@example.com", "debtor")

    return SimpleNamespace(
        admin=Identity(admin.id, Role.ADMIN),
        lender=Identity(lender.id, Role.CREDITOR),
        lender_id=system.parties.get_creditor_by_user(lender.id).id,
        rival=Identity(rival.id, Role.CREDITOR),
        alice=Identity(alice.id, Role.DEBTOR),
        alice_id=system.parties.get_debtor_by_user(alice.id).id,
        bob=Identity(bob.id, Role.DEBTOR),
        bob_id=system.parties.get_debtor_by_user(bob.id).id,
    )


@pytest.fixture
def loan(system, people):
    """Pending 1000 / 12% / 12-month loan from lender to alice"""
    return system.create_loan(people.lender, people.alice_id, "1000", "12", 12)


class TestCreateLoan:
    """Test loan origination"""

    def test_create_pending_loan(self, system, people):
        loan = system.create_loan(people.lender, people.alice_id, Decimal('1000'), Decimal('12'), 12)

        assert loan.status == LoanStatus.PENDING
        assert loan.creditor_id == people.lender_id
        assert loan.debtor_id == people.alice_id
        assert loan.principal == Decimal('1000')
        assert loan.monthly_installment is None
        assert loan.start_date is None
        assert loan.total_due is None

        stored = system.loan_manager.get_loan(loan.id)
        assert stored == loan

    def test_requested_start_date_is_not_activation(self, system, people):
        loan = system.create_loan(people.lender, people.alice_id, 1000, 12, 12,
                                  start_date="2024-03-01")
        assert loan.requested_start_date == date(2024, 3, 1)
        assert loan.start_date is None

    def test_zero_rate_allowed(self, system, people):
        loan = system.create_loan(people.lender, people.alice_id, 1200, 0, 12)
        assert loan.interest_rate == Decimal('0')

    @pytest.mark.parametrize("principal,rate,term", [
        (0, 12, 12), (-5, 12, 12), (1000, -1, 12), (1000, 12, 0), (1000, 12, 2.5),
    ])
    def test_invalid_terms(self, system, people, principal, rate, term):
        with pytest.raises(ValidationError):
            system.create_loan(people.lender, people.alice_id, principal, rate, term)
        assert system.loan_manager.all_loans() == []

    def test_invalid_start_date(self, system, people):
        with pytest.raises(ValidationError):
            system.create_loan(people.lender, people.alice_id, 1000, 12, 12, start_date="next week")

    def test_unknown_debtor(self, system, people):
        with pytest.raises(NotFoundError):
            system.create_loan(people.lender, "missing-debtor", 1000, 12, 12)

    def test_only_creditors_create_loans(self, system, people):
        with pytest.raises(AuthorizationError):
            system.create_loan(people.admin, people.alice_id, 1000, 12, 12)
        with pytest.raises(AuthorizationError):
            system.create_loan(people.alice, people.alice_id, 1000, 12, 12)

    def test_create_loan_is_audited(self, system, loan):
        entries = system.audit_trail.get_entries(action="create_loan")
        assert len(entries) == 1
        assert entries[0].payload["loan_id"] == loan.id
        assert entries[0].payload["principal"] == "1000"


class TestDecideLoan:
    """Test approve/reject decisions"""

    def test_approve_sets_installment_and_start_date(self, system, people, loan):
        result = system.decide_loan(people.lender, loan.id, "approve")

        assert result == {
            "loan_id": loan.id,
            "status": "active",
            "monthly_installment": "88.8488"
        }
        stored = system.loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.ACTIVE
        assert stored.monthly_installment == Decimal('88.8488')
        assert stored.start_date == date(2024, 1, 15)
        assert stored.decided_at is not None
        assert stored.total_due == Decimal('1066.1856')

    def test_reject_computes_nothing(self, system, people, loan):
        result = system.decide_loan(people.lender, loan.id, "reject")

        assert result == {"loan_id": loan.id, "status": "rejected"}
        stored = system.loan_manager.get_loan(loan.id)
        assert stored.monthly_installment is None
        assert stored.start_date is None

    def test_unknown_loans_leave_no_row_locks(self, system, people):
        for i in range(50):
            with pytest.raises(NotFoundError):
                system.decide_loan(people.admin, f"no-such-loan-{i}", "approve")
        assert system.storage._row_locks == {}

    def test_admin_may_decide_any_loan(self, system, people, loan):
        system.decide_loan(people.admin, loan.id, "APPROVE")
        assert system.loan_manager.get_loan(loan.id).status == LoanStatus.ACTIVE

    def test_other_creditor_may_not_decide(self, system, people, loan):
        with pytest.raises(AuthorizationError):
            system.decide_loan(people.rival, loan.id, "approve")
        assert system.loan_manager.get_loan(loan.id).status == LoanStatus.PENDING

    def test_debtor_never_decides(self, system, people, loan):
        """Even the owning debtor"""
        with pytest.raises(AuthorizationError):
            system.decide_loan(people.alice, loan.id, "approve")
        with pytest.raises(AuthorizationError):
            system.decide_loan(people.bob, loan.id, "reject")

    def test_invalid_action(self, system, people, loan):
        with pytest.raises(ValidationError):
            system.decide_loan(people.lender, loan.id, "maybe")
        with pytest.raises(ValidationError):
            system.decide_loan(people.lender, loan.id, None)

    def test_unknown_loan(self, system, people):
        with pytest.raises(NotFoundError):
            system.decide_loan(people.lender, "missing-loan", "approve")

    @pytest.mark.parametrize("first,second", [
        ("approve", "approve"), ("approve", "reject"),
        ("reject", "approve"), ("reject", "reject"),
    ])
    def test_decided_loan_rejects_further_decisions(self, system, people, loan, first, second):
        system.decide_loan(people.lender, loan.id, first)
        with pytest.raises(IllegalStateTransitionError):
            system.decide_loan(people.lender, loan.id, second)

    def test_decisions_are_audited(self, system, people, loan):
        system.decide_loan(people.lender, loan.id, "approve")
        entries = system.audit_trail.get_entries(action="loan_approved")
        assert len(entries) == 1
        assert entries[0].payload["monthly_installment"] == "88.8488"
        assert entries[0].payload["start_date"] == "2024-01-15"

    def test_concurrent_approvals_activate_once(self, system, people, loan):
        outcomes = []
        barrier = threading.Barrier(8)

        def approve():
            barrier.wait()
            try:
                system.decide_loan(people.lender, loan.id, "approve")
                outcomes.append("approved")
            except IllegalStateTransitionError:
                outcomes.append("illegal")

        threads = [threading.Thread(target=approve) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("approved") == 1
        assert outcomes.count("illegal") == 7
        assert len(system.audit_trail.get_entries(action="loan_approved")) == 1


class TestStateMachine:
    """Test the transition table"""

    def test_terminal_states(self):
        assert ALLOWED_TRANSITIONS[LoanStatus.REJECTED] == frozenset()
        assert ALLOWED_TRANSITIONS[LoanStatus.CLOSED] == frozenset()

    def test_pending_and_active_edges(self):
        assert ALLOWED_TRANSITIONS[LoanStatus.PENDING] == {LoanStatus.ACTIVE, LoanStatus.REJECTED}
        assert ALLOWED_TRANSITIONS[LoanStatus.ACTIVE] == {LoanStatus.CLOSED}

    def test_decision_action_parse(self):
        assert DecisionAction.parse(" Reject ") == DecisionAction.REJECT
        with pytest.raises(ValidationError):
            DecisionAction.parse("")

    def test_close_requires_transaction(self, system, people, loan):
        system.decide_loan(people.lender, loan.id, "approve")
        active = system.loan_manager.get_loan(loan.id)
        with pytest.raises(RuntimeError):
            system.loan_manager.close_loan(active)

    def test_pending_loan_cannot_close(self, system, loan):
        with pytest.raises(IllegalStateTransitionError):
            with system.storage.atomic():
                system.loan_manager.close_loan(system.loan_manager.get_loan(loan.id))
        assert system.loan_manager.get_loan(loan.id).status == LoanStatus.PENDING

    def test_loan_serialization(self, system, people, loan):
        system.decide_loan(people.lender, loan.id, "approve")
        stored = system.loan_manager.get_loan(loan.id)
        assert Loan.from_dict(stored.to_dict()) == stored


class TestListAndView:
    """Test role-scoped reads"""

    def test_creditor_sees_own_loans_with_debtor_name(self, system, people, loan):
        system.create_loan(people.rival, people.bob_id, 500, 10, 6)

        rows = system.list_loans(people.lender)
        assert [row["id"] for row in rows] == [loan.id]
        assert rows[0]["debtor_name"] == "Alice Debtor"
        assert "creditor_name" not in rows[0]

    def test_debtor_sees_own_loans_with_creditor_name(self, system, people, loan):
        system.create_loan(people.lender, people.bob_id, 500, 10, 6)

        rows = system.list_loans(people.alice)
        assert [row["id"] for row in rows] == [loan.id]
        assert rows[0]["creditor_name"] == "Lender One"
        assert "debtor_name" not in rows[0]

    def test_admin_sees_all_with_both_names(self, system, people, loan):
        system.create_loan(people.rival, people.bob_id, 500, 10, 6)

        rows = system.list_loans(people.admin)
        assert len(rows) == 2
        assert all("debtor_name" in row and "creditor_name" in row for row in rows)

    def test_get_loan_details(self, system, people, loan):
        details = system.get_loan(people.alice, loan.id)
        assert details["loan"]["id"] == loan.id
        assert details["loan"]["debtor_name"] == "Alice Debtor"
        assert details["loan"]["creditor_name"] == "Lender One"
        assert details["repayments"] == []
        assert details["paid"] == "0.00"
        assert details["outstanding"] == "1000.00"

    def test_overpaid_loan_owes_nothing(self, system, people, loan):
        system.decide_loan(people.lender, loan.id, "approve")
        system.post_repayment(people.alice, loan.id, "1066.19")

        details = system.get_loan(people.alice, loan.id)
        assert details["loan"]["status"] == "closed"
        assert details["paid"] == "1066.19"
        assert details["outstanding"] == "0.00"
        assert system.loan_manager.get_loan(loan.id).outstanding(Decimal('2000')) == Decimal('0')

    def test_get_loan_access(self, system, people, loan):
        with pytest.raises(AuthorizationError):
            system.get_loan(people.bob, loan.id)
        with pytest.raises(AuthorizationError):
            system.get_loan(people.rival, loan.id)
        with pytest.raises(NotFoundError):
            system.get_loan(people.admin, "missing-loan")


class TestAmortizationAccess:
    """Test schedules served through the loan manager"""

    def test_owner_debtor_creditor_and_admin(self, system, people, loan):
        for identity in (people.alice, people.lender, people.admin):
            schedule = system.get_amortization_schedule(identity, loan.id)
            assert len(schedule) == 12
            assert schedule[-1].remaining_balance == Decimal('0')

    def test_outsiders_denied(self, system, people, loan):
        with pytest.raises(AuthorizationError):
            system.get_amortization_schedule(people.bob, loan.id)
        with pytest.raises(AuthorizationError):
            system.get_amortization_schedule(people.rival, loan.id)

    def test_active_schedule_uses_stored_installment(self, system, people, loan):
        system.get_amortization_schedule(people.alice, loan.id)
        system.decide_loan(people.lender, loan.id, "approve")
        schedule = system.get_amortization_schedule(people.alice, loan.id)
        assert schedule[0].payment == Decimal('88.85')
        assert system.schedule_cache.misses == 2

    def test_repeat_reads_hit_cache(self, system, people, loan):
        system.get_amortization_schedule(people.alice, loan.id)
        system.get_amortization_schedule(people.lender, loan.id)
        assert system.schedule_cache.hits == 1


class TestDeleteLoan:
    """Test admin loan deletion"""

    def test_delete_cascades_repayments(self, system, people, loan):
        system.decide_loan(people.lender, loan.id, "approve")
        system.post_repayment(people.alice, loan.id, "100")
        system.post_repayment(people.alice, loan.id, "50")

        assert system.delete_loan(people.admin, loan.id) == 2
        assert system.loan_manager.get_loan(loan.id) is None
        assert system.repayment_ledger.total_paid(loan.id) == Decimal('0')
        assert system.audit_trail.get_entries(action="loan_deleted")[0].payload["repayments_removed"] == 2

    def test_only_admin_deletes(self, system, people, loan):
        with pytest.raises(AuthorizationError):
            system.delete_loan(people.lender, loan.id)
        with pytest.raises(AuthorizationError):
            system.delete_loan(people.alice, loan.id)
        assert system.loan_manager.get_loan(loan.id) is not None
