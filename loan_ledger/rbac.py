"""
Role-Based Access Control Module

The identity gateway hands the ledger a verified ``(user_id, role)`` pair.
That pair is resolved once per request into a closed set of actor variants
(AdminActor, CreditorActor, DebtorActor); every authorization check handles
each variant explicitly and rejects anything else.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, NoReturn, Optional, Union

from .errors import AuthenticationError, AuthorizationError


class Role(Enum):
    """Roles a user may hold"""
    ADMIN = "admin"
    CREDITOR = "creditor"
    DEBTOR = "debtor"

    @classmethod
    def parse(cls, value) -> 'Role':
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise AuthenticationError(f"Unknown role: {value!r}")


class Permission(Enum):
    """Ledger permissions"""
    CREATE_LOAN = "create_loan"
    DECIDE_LOAN = "decide_loan"
    VIEW_LOAN = "view_loan"
    LIST_LOANS = "list_loans"
    POST_REPAYMENT = "post_repayment"
    VIEW_REPAYMENTS = "view_repayments"
    VIEW_ARREARS = "view_arrears"
    VIEW_REPORTS = "view_reports"
    EXPORT_PAYMENTS = "export_payments"
    VIEW_DASHBOARD = "view_dashboard"
    MANAGE_DEBTORS = "manage_debtors"
    VIEW_DEBTORS = "view_debtors"
    VIEW_CREDITORS = "view_creditors"
    UPDATE_CREDITOR = "update_creditor"
    MANAGE_LOANS = "manage_loans"


ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: frozenset({
        Permission.DECIDE_LOAN,
        Permission.VIEW_LOAN,
        Permission.LIST_LOANS,
        Permission.VIEW_REPAYMENTS,
        Permission.VIEW_ARREARS,
        Permission.VIEW_REPORTS,
        Permission.EXPORT_PAYMENTS,
        Permission.VIEW_DASHBOARD,
        Permission.MANAGE_DEBTORS,
        Permission.VIEW_DEBTORS,
        Permission.VIEW_CREDITORS,
        Permission.UPDATE_CREDITOR,
        Permission.MANAGE_LOANS,
    }),
    Role.CREDITOR: frozenset({
        Permission.CREATE_LOAN,
        Permission.DECIDE_LOAN,
        Permission.VIEW_LOAN,
        Permission.LIST_LOANS,
        Permission.VIEW_REPAYMENTS,
        Permission.VIEW_ARREARS,
        Permission.VIEW_REPORTS,
        Permission.EXPORT_PAYMENTS,
        Permission.VIEW_DASHBOARD,
        Permission.MANAGE_DEBTORS,
        Permission.VIEW_DEBTORS,
        Permission.VIEW_CREDITORS,
        Permission.UPDATE_CREDITOR,
    }),
    Role.DEBTOR: frozenset({
        Permission.VIEW_LOAN,
        Permission.LIST_LOANS,
        Permission.POST_REPAYMENT,
        Permission.VIEW_REPAYMENTS,
        Permission.VIEW_DASHBOARD,
        Permission.VIEW_DEBTORS,
    }),
}


@dataclass(frozen=True)
class Identity:
    """Verified caller identity supplied by the identity gateway"""
    user_id: str
    role: Role

    @classmethod
    def of(cls, user_id: Optional[str], role) -> 'Identity':
        if not user_id:
            raise AuthenticationError("Missing verified identity")
        return cls(user_id=user_id, role=Role.parse(role))


@dataclass(frozen=True)
class AdminActor:
    user_id: str
    role = Role.ADMIN


@dataclass(frozen=True)
class CreditorActor:
    user_id: str
    creditor_id: str
    role = Role.CREDITOR


@dataclass(frozen=True)
class DebtorActor:
    user_id: str
    debtor_id: str
    role = Role.DEBTOR


Actor = Union[AdminActor, CreditorActor, DebtorActor]


def unhandled_actor(actor) -> NoReturn:
    """Fallthrough for every actor dispatch; reaching it is a programming error"""
    raise AuthorizationError(f"Unhandled actor type: {type(actor).__name__}")


def resolve_actor(identity: Identity, registry) -> Actor:
    """
    Resolve a verified identity into an actor variant

    Args:
        identity: Verified ``(user_id, role)`` pair
        registry: Party registry used to look up the user and its profile

    Raises:
        AuthenticationError: Unknown user, or the claimed role does not match
        AuthorizationError: Creditor or debtor without a profile
    """
    user = registry.get_user(identity.user_id)
    if user is None:
        raise AuthenticationError(f"Unknown user {identity.user_id}")
    if user.role != identity.role:
        raise AuthenticationError(
            f"Role mismatch for user {identity.user_id}: claimed {identity.role.value}"
        )

    if identity.role == Role.ADMIN:
        return AdminActor(user_id=user.id)
    elif identity.role == Role.CREDITOR:
        creditor = registry.get_creditor_by_user(user.id)
        if creditor is None:
            raise AuthorizationError("Creditor profile not found")
        return CreditorActor(user_id=user.id, creditor_id=creditor.id)
    elif identity.role == Role.DEBTOR:
        debtor = registry.get_debtor_by_user(user.id)
        if debtor is None:
            raise AuthorizationError("Debtor profile not found")
        return DebtorActor(user_id=user.id, debtor_id=debtor.id)
    unhandled_actor(identity)


def actor_role(actor: Actor) -> Role:
    if isinstance(actor, (AdminActor, CreditorActor, DebtorActor)):
        return actor.role
    unhandled_actor(actor)


def has_permission(actor: Actor, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS[actor_role(actor)]


def require_permission(actor: Actor, permission: Permission) -> None:
    """Raise AuthorizationError unless the actor's role grants ``permission``"""
    if not has_permission(actor, permission):
        raise AuthorizationError(
            f"Role '{actor_role(actor).value}' may not {permission.value.replace('_', ' ')}"
        )


def owns_loan(actor: Actor, loan) -> bool:
    """True for admins, the owning creditor and the owning debtor"""
    if isinstance(actor, AdminActor):
        return True
    elif isinstance(actor, CreditorActor):
        return loan.creditor_id == actor.creditor_id
    elif isinstance(actor, DebtorActor):
        return loan.debtor_id == actor.debtor_id
    unhandled_actor(actor)


def require_loan_access(actor: Actor, loan) -> None:
    if not owns_loan(actor, loan):
        raise AuthorizationError(f"Loan {loan.id} is not accessible to this user")


def require_decision_rights(actor: Actor, loan) -> None:
    """Owning creditor or admin; a debtor never decides, owner or not"""
    if isinstance(actor, AdminActor):
        return
    elif isinstance(actor, CreditorActor):
        if loan.creditor_id != actor.creditor_id:
            raise AuthorizationError(f"Loan {loan.id} belongs to another creditor")
        return
    elif isinstance(actor, DebtorActor):
        raise AuthorizationError("Debtors may not decide loans")
    unhandled_actor(actor)


def require_repayment_rights(actor: Actor, loan) -> None:
    """Only the owning debtor posts repayments"""
    if isinstance(actor, DebtorActor):
        if loan.debtor_id != actor.debtor_id:
            raise AuthorizationError(f"Loan {loan.id} belongs to another debtor")
        return
    elif isinstance(actor, (AdminActor, CreditorActor)):
        raise AuthorizationError("Only the owning debtor may post repayments")
    unhandled_actor(actor)
