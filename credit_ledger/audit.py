"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every mutation of a facility, credit line, loan, collateral assignment or
snapshot is logged here with its full before and after state.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, to_storable
from .logging_config import get_logger, log_action


class AuditAction(Enum):
    """Types of audited mutations"""
    # Bank and facility events
    BANK_CREATED = "bank_created"
    FACILITY_CREATED = "facility_created"
    FACILITY_UPDATED = "facility_updated"
    FACILITY_LIMIT_CHANGED = "facility_limit_changed"
    FACILITY_DEACTIVATED = "facility_deactivated"
    CREDIT_LINE_CREATED = "credit_line_created"
    CREDIT_LINE_UPDATED = "credit_line_updated"
    CREDIT_LINE_LIMIT_CHANGED = "credit_line_limit_changed"
    CREDIT_LINE_DEACTIVATED = "credit_line_deactivated"

    # Loan lifecycle events
    LOAN_DRAWN = "loan_drawn"
    LOAN_REPAYMENT = "loan_repayment"
    LOAN_SETTLED = "loan_settled"
    LOAN_SETTLEMENT_REVERSED = "loan_settlement_reversed"
    LOAN_REVOLVED = "loan_revolved"
    LOAN_CANCELLED = "loan_cancelled"
    LOAN_PERMANENTLY_DELETED = "loan_permanently_deleted"

    # Collateral events
    COLLATERAL_REGISTERED = "collateral_registered"
    COLLATERAL_ASSIGNED = "collateral_assigned"
    COLLATERAL_RELEASED = "collateral_released"

    # Snapshot events
    EXPOSURE_SNAPSHOT_UPSERTED = "exposure_snapshot_upserted"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    action: AuditAction
    entity_type: str
    entity_id: str
    before_state: Optional[Dict[str, Any]]
    after_state: Optional[Dict[str, Any]]
    previous_hash: str
    current_hash: str
    actor: Optional[str] = None
    reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        # Snapshots must be JSON serializable before they are hashed
        self.before_state = to_storable(self.before_state)
        self.after_state = to_storable(self.after_state)
        self.metadata = to_storable(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'before_state': self.before_state,
            'after_state': self.after_state,
            'previous_hash': self.previous_hash,
            'actor': self.actor,
            'reason': self.reason,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    The chain head (last sequence number and hash) is stored alongside the
    events, so a unit of work that rolls back also rolls back the head.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.enabled = enabled
        self._lock = threading.Lock()
        self.logger = get_logger("credit_ledger.audit")

    def _load_head(self) -> Dict[str, Any]:
        head = self.storage.load(self.head_table, self.HEAD_ID)
        return head or {"sequence": 0, "hash": ""}

    def log_event(
        self,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        before_state: Optional[Dict[str, Any]] = None,
        after_state: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Append an audit event to the chain

        Args:
            action: Audited action
            entity_type: Type of entity (loan, facility, ...)
            entity_id: ID of the entity
            before_state: Full state before the mutation (None on creation)
            after_state: Full state after the mutation (None on deletion)
            actor: User who initiated the action
            reason: Free-text reason, where the action takes one
            metadata: Additional event-specific data

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic(), self._lock:
            head = self._load_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=head["sequence"] + 1,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                before_state=before_state,
                after_state=after_state,
                previous_hash=head["hash"],
                current_hash="",
                actor=actor,
                reason=reason,
                metadata=metadata
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict(),
                              unique_keys={"sequence": str(event.sequence)})
            try:
                self.storage.save(self.head_table, self.HEAD_ID,
                                  {"sequence": event.sequence, "hash": event.current_hash})
            except Exception:
                # An enclosing unit may still commit; the row must not outlive its head
                self.storage.delete(self.table_name, event.id)
                raise

            return event

    def record_mutation(
        self,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        before_state: Optional[Dict[str, Any]],
        after_state: Optional[Dict[str, Any]],
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """
        Best-effort audit write for a primary mutation

        A failure here never fails the mutation; it is reported on the
        error log with the full snapshot so the record can be recovered.
        """
        if not self.enabled:
            return None
        try:
            return self.log_event(action, entity_type, entity_id, before_state,
                                  after_state, actor, reason, metadata)
        except Exception:
            log_action(
                self.logger, "error", f"Audit write failed for {entity_type} {entity_id}",
                user_id=actor, action=action.value, resource=f"{entity_type}:{entity_id}",
                extra={
                    "before_state": to_storable(before_state),
                    "after_state": to_storable(after_state),
                    "reason": reason
                },
                exc_info=True
            )
            return None

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of events to return (most recent N)
        """
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(data) for data in events_data),
                        key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_action(
        self,
        action: AuditAction,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> List[AuditEvent]:
        """Get audit events of one action within an optional time range"""
        events = [e for e in self.get_all_events(start_time, end_time) if e.action == action]
        return events

    def get_all_events(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get all audit events within time range, in chain order"""
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]

        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        if end_time:
            events = [e for e in events if e.created_at <= end_time]

        events.sort(key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> str:
        """Get the hash of the most recent audit event"""
        return self._load_head()["hash"]
