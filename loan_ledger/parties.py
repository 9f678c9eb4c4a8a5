"""
Party Registry Module

Users and their one-to-one creditor or debtor profiles. Credentials are not
kept here: the identity gateway owns authentication, the ledger only needs to
know who a verified user is and which profile they act through.
"""

import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .audit import AuditAction, AuditTrail
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .rbac import (
    Actor, AdminActor, CreditorActor, DebtorActor, Permission, Role,
    require_permission, unhandled_actor
)
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_ledger.parties")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+$")


@dataclass
class User(StorageRecord):
    """Ledger user"""
    name: str
    email: str
    role: Role

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['role'] = self.role.value
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'User':
        data = dict(data)
        data['role'] = Role(data['role'])
        return super().from_dict(data)


@dataclass
class Creditor(StorageRecord):
    """Lender profile"""
    user_id: str
    company: str = ""
    phone: str = ""


@dataclass
class Debtor(StorageRecord):
    """Borrower profile"""
    user_id: str
    national_id: str = ""
    phone: str = ""
    address: str = ""


class PartyRegistry:
    """
    Manages users, creditors and debtors
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail

        self.users_table = "users"
        self.creditors_table = "creditors"
        self.debtors_table = "debtors"

        # Serializes the email uniqueness check with the insert
        self._registration_lock = threading.Lock()

    # Users

    def register_user(
        self,
        name: str,
        email: str,
        role,
        company: str = "",
        phone: str = "",
        national_id: str = "",
        address: str = ""
    ) -> User:
        """
        Register a user and, for creditors and debtors, their profile

        Args:
            name: Display name
            email: Unique email address
            role: admin, creditor or debtor

        Returns:
            Created User

        Raises:
            ValidationError: Missing name/email, malformed email or unknown role
            ConflictError: Email already registered
        """
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name or not email:
            raise ValidationError("name and email are required")
        if not EMAIL_PATTERN.match(email):
            raise ValidationError(f"Invalid email address: {email}")
        try:
            role = role if isinstance(role, Role) else Role(str(role).strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid role: {role}")

        with self._registration_lock:
            if self.storage.find(self.users_table, {"email": email}):
                raise ConflictError(f"Email {email} is already registered", {"email": email})

            now = datetime.now(timezone.utc)
            user = User(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                name=name,
                email=email,
                role=role
            )

            with self.storage.atomic():
                self.storage.save(self.users_table, user.id, user.to_dict())
                profile_id = None
                if role == Role.CREDITOR:
                    profile_id = self._create_creditor_profile(user, company, phone).id
                elif role == Role.DEBTOR:
                    profile_id = self._create_debtor_profile(user, national_id, phone, address).id

        self.audit_trail.record(AuditAction.REGISTER_USER, {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "role": user.role.value,
            "profile_id": profile_id
        })
        log_action(logger, "info", "User registered", user_id=user.id,
                   action="register_user", resource=role.value)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        data = self.storage.load(self.users_table, user_id)
        if data:
            return User.from_dict(data)
        return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        found = self.storage.find(self.users_table, {"email": (email or "").strip().lower()})
        if found:
            return User.from_dict(found[0])
        return None

    # Creditors

    def _create_creditor_profile(self, user: User, company: str, phone: str) -> Creditor:
        if self.get_creditor_by_user(user.id) or self.get_debtor_by_user(user.id):
            raise ConflictError(f"User {user.id} already has a profile")
        creditor = Creditor(
            id=str(uuid.uuid4()),
            created_at=user.created_at,
            updated_at=user.created_at,
            user_id=user.id,
            company=company or "",
            phone=phone or ""
        )
        self.storage.save(self.creditors_table, creditor.id, creditor.to_dict())
        return creditor

    def get_creditor(self, creditor_id: str) -> Optional[Creditor]:
        data = self.storage.load(self.creditors_table, creditor_id)
        if data:
            return Creditor.from_dict(data)
        return None

    def get_creditor_by_user(self, user_id: str) -> Optional[Creditor]:
        found = self.storage.find(self.creditors_table, {"user_id": user_id})
        if found:
            return Creditor.from_dict(found[0])
        return None

    def list_creditors(self, actor: Actor) -> List[Dict]:
        """Creditor profiles joined with their user's name and email"""
        require_permission(actor, Permission.VIEW_CREDITORS)
        rows = []
        for data in self.storage.load_all(self.creditors_table):
            creditor = Creditor.from_dict(data)
            user = self.get_user(creditor.user_id)
            rows.append({
                "id": creditor.id,
                "name": user.name if user else "",
                "email": user.email if user else "",
                "company": creditor.company,
                "phone": creditor.phone
            })
        return rows

    def update_creditor(self, actor: Actor, creditor_id: str,
                        company: Optional[str] = None,
                        phone: Optional[str] = None) -> Creditor:
        """
        Update a creditor's company/phone; blank values keep the current ones
        """
        require_permission(actor, Permission.UPDATE_CREDITOR)
        creditor = self.get_creditor(creditor_id)
        if creditor is None:
            raise NotFoundError("creditor", creditor_id)

        if isinstance(actor, CreditorActor):
            if actor.creditor_id != creditor.id:
                raise AuthorizationError("Creditors may only update their own profile")
        elif isinstance(actor, DebtorActor):
            raise AuthorizationError("Debtors may not update creditor profiles")
        elif not isinstance(actor, AdminActor):
            unhandled_actor(actor)

        creditor.company = company or creditor.company
        creditor.phone = phone or creditor.phone
        creditor.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.creditors_table, creditor.id, creditor.to_dict())

        self.audit_trail.record(AuditAction.UPDATE_CREDITOR, {"id": creditor.id, "by": actor.user_id})
        return creditor

    # Debtors

    def _create_debtor_profile(self, user: User, national_id: str, phone: str,
                               address: str) -> Debtor:
        if self.get_creditor_by_user(user.id) or self.get_debtor_by_user(user.id):
            raise ConflictError(f"User {user.id} already has a profile")
        debtor = Debtor(
            id=str(uuid.uuid4()),
            created_at=user.created_at,
            updated_at=user.created_at,
            user_id=user.id,
            national_id=national_id or "",
            phone=phone or "",
            address=address or ""
        )
        self.storage.save(self.debtors_table, debtor.id, debtor.to_dict())
        return debtor

    def create_debtor(self, actor: Actor, name: str, email: str, national_id: str = "",
                      phone: str = "", address: str = "") -> Debtor:
        """Onboard a borrower on behalf of a creditor or admin"""
        require_permission(actor, Permission.MANAGE_DEBTORS)
        user = self.register_user(
            name=name, email=email, role=Role.DEBTOR,
            national_id=national_id, phone=phone, address=address
        )
        debtor = self.get_debtor_by_user(user.id)
        self.audit_trail.record(AuditAction.CREATE_DEBTOR, {
            "user_id": user.id,
            "debtor_id": debtor.id,
            "by": actor.user_id
        })
        return debtor

    def get_debtor(self, debtor_id: str) -> Optional[Debtor]:
        data = self.storage.load(self.debtors_table, debtor_id)
        if data:
            return Debtor.from_dict(data)
        return None

    def get_debtor_by_user(self, user_id: str) -> Optional[Debtor]:
        found = self.storage.find(self.debtors_table, {"user_id": user_id})
        if found:
            return Debtor.from_dict(found[0])
        return None

    def _debtor_view(self, debtor: Debtor) -> Dict:
        user = self.get_user(debtor.user_id)
        return {
            "id": debtor.id,
            "name": user.name if user else "",
            "email": user.email if user else "",
            "national_id": debtor.national_id,
            "phone": debtor.phone,
            "address": debtor.address
        }

    def list_debtors(self, actor: Actor) -> List[Dict]:
        """All debtor profiles; admins and creditors only"""
        require_permission(actor, Permission.MANAGE_DEBTORS)
        return [self._debtor_view(Debtor.from_dict(data))
                for data in self.storage.load_all(self.debtors_table)]

    def get_debtor_details(self, actor: Actor, debtor_id: str) -> Dict:
        """One debtor profile; a debtor may only read their own"""
        require_permission(actor, Permission.VIEW_DEBTORS)
        if isinstance(actor, DebtorActor):
            if actor.debtor_id != debtor_id:
                raise AuthorizationError("Debtors may only view their own profile")
        elif not isinstance(actor, (AdminActor, CreditorActor)):
            unhandled_actor(actor)

        debtor = self.get_debtor(debtor_id)
        if debtor is None:
            raise NotFoundError("debtor", debtor_id)
        return self._debtor_view(debtor)

    def display_name(self, profile) -> str:
        """Name of the user behind a creditor or debtor profile"""
        if profile is None:
            return ""
        user = self.get_user(profile.user_id)
        return user.name if user else ""
