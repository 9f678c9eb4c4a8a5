"""
Audit Trail Module

Hash-chained, append-only audit log with SHA-256 for tamper detection.
Every state-changing ledger action is recorded here for external compliance
tooling; nothing inside the ledger reads it back. Recording is best effort:
a failure is logged and discarded, never raised into the triggering operation.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_ledger.audit")


class AuditAction(Enum):
    """Action tags written to the audit log"""
    REGISTER_USER = "register_user"
    CREATE_CREDITOR = "create_creditor"
    CREATE_DEBTOR = "create_debtor"
    UPDATE_CREDITOR = "update_creditor"
    CREATE_LOAN = "create_loan"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    REPAYMENT = "repayment"
    LOAN_CLOSED = "loan_closed"
    LOAN_DELETED = "loan_deleted"


def _convert_value(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class AuditEntry(StorageRecord):
    """
    Immutable audit entry with hash chaining for tamper detection
    """
    sequence: int
    action: str
    payload: Dict[str, Any]
    previous_hash: str
    current_hash: str

    def __post_init__(self):
        # Payload snapshot must be JSON serializable
        self.payload = {k: _convert_value(v) for k, v in (self.payload or {}).items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'action': self.action,
            'previous_hash': self.previous_hash,
            'payload': self.payload
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Append-only audit sink
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_log",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._last_hash: Optional[str] = None
        self._last_sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()

    def _sorted_entries(self) -> List[AuditEntry]:
        entries = [AuditEntry.from_dict(data) for data in self.storage.load_all(self.table_name)]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit entry"""
        try:
            entries = self._sorted_entries()
        except Exception:
            logger.exception("Could not load audit chain head")
            return
        if entries:
            self._last_hash = entries[-1].current_hash
            self._last_sequence = entries[-1].sequence

    def record(self, action, payload: Optional[Dict[str, Any]] = None) -> Optional[AuditEntry]:
        """
        Append an audit entry

        Args:
            action: AuditAction or free-form action tag
            payload: Structured snapshot of the change

        Returns:
            The stored AuditEntry, or None when disabled or the write failed
        """
        if not self.enabled:
            return None

        action_tag = action.value if isinstance(action, AuditAction) else str(action)

        try:
            with self._lock:
                now = datetime.now(timezone.utc)
                entry = AuditEntry(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    sequence=self._last_sequence + 1,
                    action=action_tag,
                    payload=payload or {},
                    previous_hash=self._last_hash or "",
                    current_hash=""
                )
                entry.current_hash = entry.calculate_hash()

                self.storage.save(self.table_name, entry.id, entry.to_dict())
                self._last_hash = entry.current_hash
                self._last_sequence = entry.sequence
                return entry
        except Exception as e:
            log_action(
                logger, "error", f"Audit record failed: {e}",
                action=action_tag, resource=self.table_name
            )
            return None

    def get_entries(self, action: Optional[str] = None,
                    limit: Optional[int] = None) -> List[AuditEntry]:
        """
        Get audit entries in chain order

        Args:
            action: Only entries with this action tag
            limit: Keep the most recent N entries
        """
        entries = self._sorted_entries()
        if action:
            action_tag = action.value if isinstance(action, AuditAction) else action
            entries = [e for e in entries if e.action == action_tag]
        if limit:
            entries = entries[-limit:]
        return entries

    def count_entries(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = self._sorted_entries()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for i, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result
