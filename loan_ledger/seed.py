"""
Sample data for demos and local development

Only runs against an empty ledger (no users yet).
"""

from typing import Dict, Optional

from .logging_config import get_logger
from .rbac import Identity, Role
from .system import LoanLedgerSystem


logger = get_logger("loan_ledger.seed")


def seed_sample_data(system: LoanLedgerSystem) -> Optional[Dict[str, str]]:
    """
    Create one creditor, two debtors and a pending loan

    Returns:
        Ids of the created records, or None when the ledger already has users
    """
    if system.storage.count(system.parties.users_table) > 0:
        return None

    logger.info("Seeding sample data...")
    creditor_user = system.register_user(
        None, name="UETCL Admin", email="admin@uetcl.local", role=Role.CREDITOR,
        company="Uganda Electricity Co", phone="+256700000001"
    )
    alice = system.register_user(
        None, name="Alice Debtor", email="alice@example.com", role=Role.DEBTOR,
        national_id="NIN-001", phone="+256700000002", address="Kampala"
    )
    bob = system.register_user(
        None, name="Bob Debtor", email="bob@example.com", role=Role.DEBTOR,
        national_id="NIN-002", phone="+256700000003", address="Entebbe"
    )

    alice_debtor = system.parties.get_debtor_by_user(alice.id)
    loan = system.create_loan(
        Identity(user_id=creditor_user.id, role=Role.CREDITOR),
        debtor_id=alice_debtor.id,
        principal="1000.00",
        interest_rate="12",
        term_months=12
    )

    logger.info("Seeding complete")
    return {
        "creditor_user_id": creditor_user.id,
        "alice_user_id": alice.id,
        "bob_user_id": bob.id,
        "loan_id": loan.id
    }
