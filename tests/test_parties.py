"""
Test suite for parties module

Tests user registration, creditor/debtor profiles and who may read or
change them.
"""

import threading
import pytest
from types import SimpleNamespace

from loan_ledger.audit import AuditTrail
from loan_ledger.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from loan_ledger.parties import PartyRegistry
from loan_ledger.rbac import AdminActor, CreditorActor, DebtorActor, Role
from loan_ledger.storage import InMemoryStorage


@pytest.fixture
def registry():
    storage = InMemoryStorage()
    return PartyRegistry(storage, AuditTrail(storage))


@pytest.fixture
def actors(registry):
    root = registry.register_user("Root Admin", "root@example.com", "admin")
    lender = registry.register_user("Lender One", "lender@example.com", "creditor",
                                    company="Lending Co", phone="+256700000001")
    rival = registry.register_user("Lender Two", "rival@example.com", "creditor")
    alice = registry.register_user("Alice Debtor", "alice@example.com", "debtor",
                                   national_id="NIN-001", address="Kampala")
    lender_profile = registry.get_creditor_by_user(lender.id)
    alice_profile = registry.get_debtor_by_user(alice.id)
    return SimpleNamespace(
        admin=AdminActor(root.id),
        lender=CreditorActor(lender.id, lender_profile.id),
        rival=CreditorActor(rival.id, registry.get_creditor_by_user(rival.id).id),
        alice=DebtorActor(alice.id, alice_profile.id),
    )


class TestRegisterUser:
    """Test user registration"""

    def test_creditor_gets_profile(self, registry):
        user = registry.register_user("Lender", "Lender@Example.com ", "creditor",
                                      company="Lending Co", phone="123")
        assert user.role == Role.CREDITOR
        assert user.email == "lender@example.com"

        creditor = registry.get_creditor_by_user(user.id)
        assert creditor.company == "Lending Co"
        assert creditor.phone == "123"
        assert registry.get_debtor_by_user(user.id) is None

    def test_debtor_gets_profile(self, registry):
        user = registry.register_user("Alice", "alice@example.com", Role.DEBTOR,
                                      national_id="NIN-001", address="Kampala")
        debtor = registry.get_debtor_by_user(user.id)
        assert debtor.national_id == "NIN-001"
        assert debtor.address == "Kampala"
        assert registry.display_name(debtor) == "Alice"

    def test_admin_has_no_profile(self, registry):
        user = registry.register_user("Root", "root@example.com", "admin")
        assert registry.get_creditor_by_user(user.id) is None
        assert registry.get_debtor_by_user(user.id) is None

    def test_lookup(self, registry):
        user = registry.register_user("Root", "root@example.com", "admin")
        assert registry.get_user(user.id) == user
        assert registry.get_user_by_email("ROOT@example.com").id == user.id
        assert registry.get_user("missing") is None

    def test_duplicate_email(self, registry):
        registry.register_user("Alice", "alice@example.com", "debtor")
        with pytest.raises(ConflictError):
            registry.register_user("Alice Again", "ALICE@example.com", "creditor")
        assert registry.storage.count(registry.users_table) == 1

    def test_concurrent_duplicate_email(self, registry):
        outcomes = []
        barrier = threading.Barrier(6)

        def register():
            barrier.wait()
            try:
                registry.register_user("Alice", "alice@example.com", "debtor")
                outcomes.append("created")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=register) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("created") == 1
        assert registry.storage.count(registry.debtors_table) == 1

    @pytest.mark.parametrize("name,email,role", [
        ("", "alice@example.com", "debtor"),
        ("Alice", "", "debtor"),
        ("Alice", "not-an-email", "debtor"),
        ("Alice", "alice@example.com", "auditor"),
    ])
    def test_invalid_input(self, registry, name, email, role):
        with pytest.raises(ValidationError):
            registry.register_user(name, email, role)

    def test_registration_is_audited(self, registry):
        user = registry.register_user("Alice", "alice@example.com", "debtor")
        entry = registry.audit_trail.get_entries(action="register_user")[0]
        assert entry.payload["id"] == user.id
        assert entry.payload["role"] == "debtor"


class TestDebtors:
    """Test debtor onboarding and reads"""

    def test_creditor_onboards_debtor(self, registry, actors):
        debtor = registry.create_debtor(actors.lender, "Bob Debtor", "bob@example.com",
                                        national_id="NIN-002", address="Entebbe")
        assert registry.get_user(debtor.user_id).role == Role.DEBTOR
        assert registry.audit_trail.get_entries(action="create_debtor")[0].payload["by"] == actors.lender.user_id

    def test_debtor_cannot_onboard(self, registry, actors):
        with pytest.raises(AuthorizationError):
            registry.create_debtor(actors.alice, "Bob", "bob@example.com")

    def test_list_debtors(self, registry, actors):
        rows = registry.list_debtors(actors.admin)
        assert [row["name"] for row in rows] == ["Alice Debtor"]
        assert rows[0]["national_id"] == "NIN-001"
        assert registry.list_debtors(actors.lender) == rows
        with pytest.raises(AuthorizationError):
            registry.list_debtors(actors.alice)

    def test_debtor_details(self, registry, actors):
        own = registry.get_debtor_details(actors.alice, actors.alice.debtor_id)
        assert own["email"] == "alice@example.com"
        assert registry.get_debtor_details(actors.lender, actors.alice.debtor_id) == own

    def test_debtor_cannot_read_others(self, registry, actors):
        other = registry.create_debtor(actors.lender, "Bob", "bob@example.com")
        with pytest.raises(AuthorizationError):
            registry.get_debtor_details(actors.alice, other.id)

    def test_unknown_debtor(self, registry, actors):
        with pytest.raises(NotFoundError):
            registry.get_debtor_details(actors.admin, "missing")


class TestCreditors:
    """Test creditor reads and updates"""

    def test_list_creditors(self, registry, actors):
        rows = registry.list_creditors(actors.lender)
        assert {row["name"] for row in rows} == {"Lender One", "Lender Two"}
        with pytest.raises(AuthorizationError):
            registry.list_creditors(actors.alice)

    def test_update_own_profile(self, registry, actors):
        updated = registry.update_creditor(actors.lender, actors.lender.creditor_id,
                                           company="New Co")
        assert updated.company == "New Co"
        assert updated.phone == "+256700000001"
        assert registry.get_creditor(actors.lender.creditor_id).company == "New Co"

    def test_admin_updates_any(self, registry, actors):
        updated = registry.update_creditor(actors.admin, actors.rival.creditor_id, phone="999")
        assert updated.phone == "999"

    def test_other_creditor_denied(self, registry, actors):
        with pytest.raises(AuthorizationError):
            registry.update_creditor(actors.rival, actors.lender.creditor_id, company="Hijack")
        assert registry.get_creditor(actors.lender.creditor_id).company == "Lending Co"

    def test_debtor_denied(self, registry, actors):
        with pytest.raises(AuthorizationError):
            registry.update_creditor(actors.alice, actors.lender.creditor_id, company="X")

    def test_unknown_creditor(self, registry, actors):
        with pytest.raises(NotFoundError):
            registry.update_creditor(actors.admin, "missing", company="X")
