"""
Audit Trail Module

Append-only record of committed engine operations. Each event's SHA-256
digest covers the digest of the event before it, so editing any event
breaks verification from that point on.
"""

import hashlib
import json
import threading
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

from .clock import Clock, SystemClock


GENESIS_HASH = "0" * 64


class AuditEventType(Enum):
    """What happened"""
    ACCOUNT_OPENED = "account_opened"
    LOAN_CREATED = "loan_created"
    LOAN_DISBURSED = "loan_disbursed"
    PAYMENT_RECORDED = "payment_recorded"
    TRANSACTION_POSTED = "transaction_posted"
    TRANSACTION_REVERSED = "transaction_reversed"
    OPERATION_ROLLED_BACK = "operation_rolled_back"


@dataclass
class AuditEvent:
    sequence: int
    event_type: AuditEventType
    entity_type: str                    # loan, account, transaction, operation
    entity_id: str
    recorded_at: datetime
    previous_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    current_hash: str = ""

    def digest(self) -> str:
        """SHA-256 over every field except current_hash"""
        payload = json.dumps(
            [self.sequence, self.event_type.value, self.entity_type, self.entity_id,
             self.recorded_at.isoformat(), self.previous_hash, self.metadata],
            sort_keys=True, separators=(',', ':'), default=str
        )
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def is_intact(self) -> bool:
        return self.current_hash == self.digest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'recorded_at': self.recorded_at.isoformat(),
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata
        }


@dataclass(frozen=True)
class ChainReport:
    """Result of walking the whole chain"""
    valid: bool
    total_events: int
    tampered: Tuple[int, ...] = ()      # Sequences whose digest no longer matches
    broken_links: Tuple[int, ...] = ()  # Sequences not chained to their predecessor


class AuditTrail:
    """
    In-memory hash chain of audit events

    Metadata is normalised through JSON on the way in, so Decimal, Money
    strings and datetimes hash the same way they serialise.
    """

    def __init__(self, clock: Optional[Clock] = None, enabled: bool = True):
        self.clock = clock or SystemClock()
        self.enabled = enabled
        self._chain: List[AuditEvent] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._chain)

    @property
    def head(self) -> str:
        """Digest of the newest event, or the genesis hash for an empty chain"""
        with self._lock:
            return self._chain[-1].current_hash if self._chain else GENESIS_HASH

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """Append an event; returns None without recording when disabled"""
        if not self.enabled:
            return None

        normalised = json.loads(json.dumps(metadata or {}, default=str))
        with self._lock:
            event = AuditEvent(
                sequence=len(self._chain) + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                recorded_at=self.clock.now(),
                previous_hash=self._chain[-1].current_hash if self._chain else GENESIS_HASH,
                metadata=normalised
            )
            event.current_hash = event.digest()
            self._chain.append(event)
        return event

    def events(
        self,
        event_type: Optional[AuditEventType] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None
    ) -> List[AuditEvent]:
        """Events matching every given criterion, oldest first"""
        with self._lock:
            chain = list(self._chain)
        return [
            e for e in chain
            if (event_type is None or e.event_type == event_type)
            and (entity_type is None or e.entity_type == entity_type)
            and (entity_id is None or e.entity_id == entity_id)
        ]

    def verify_integrity(self) -> ChainReport:
        with self._lock:
            chain = list(self._chain)

        tampered = []
        broken = []
        expected_previous = GENESIS_HASH
        for event in chain:
            if not event.is_intact():
                tampered.append(event.sequence)
            if event.previous_hash != expected_previous:
                broken.append(event.sequence)
            expected_previous = event.current_hash

        return ChainReport(
            valid=not tampered and not broken,
            total_events=len(chain),
            tampered=tuple(tampered),
            broken_links=tuple(broken)
        )
