"""
Error Taxonomy Module

Every failure surfaced to a caller carries a distinguishing kind so the
transport layer can map it without inspecting messages.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all loan ledger errors"""
    kind = "ledger_error"
    http_status = 500
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.kind, "detail": self.message}
        if self.details:
            result["context"] = self.details
        return result


class ValidationError(LedgerError, ValueError):
    """Missing or invalid input (non-positive principal, zero term, bad action)"""
    kind = "validation_error"
    http_status = 400


class AuthenticationError(LedgerError):
    """No verified identity, or an identity the ledger does not know"""
    kind = "authentication_error"
    http_status = 401


class AuthorizationError(LedgerError):
    """Verified identity lacks permission over the targeted resource"""
    kind = "authorization_error"
    http_status = 403


class NotFoundError(LedgerError):
    """Referenced loan, debtor, creditor or user is absent"""
    kind = "not_found"
    http_status = 404
    
    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type.capitalize()} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": entity_id}
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class IllegalStateTransitionError(LedgerError):
    """Decision on an already-decided loan, or repayment on a non-active loan"""
    kind = "illegal_state_transition"
    http_status = 409
    
    def __init__(self, loan_id: str, current_status: str, attempted: str):
        super().__init__(
            f"Cannot {attempted} loan {loan_id} in status '{current_status}'",
            {"loan_id": loan_id, "status": current_status, "attempted": attempted}
        )
        self.loan_id = loan_id
        self.current_status = current_status
        self.attempted = attempted


class UnsupportedFormatError(LedgerError):
    """Export format outside the supported set"""
    kind = "unsupported_format"
    http_status = 400
    
    def __init__(self, requested: str, supported):
        super().__init__(
            f"Unsupported export format: {requested}",
            {"requested": requested, "supported": list(supported)}
        )
        self.requested = requested


class ConflictError(LedgerError):
    """Uniqueness violation (duplicate email, second profile for one user)"""
    kind = "conflict"
    http_status = 409
