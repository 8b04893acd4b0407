"""
InvoiceFlow Audit Trail

Immutable, hash-chained audit entries for every invoice workflow transition.
Entries are sealed inside the same transaction that commits the status change,
so their sequence matches commit order.
"""

import json
import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from dataclasses import dataclass, field, asdict, replace
import uuid
import logging

logger = logging.getLogger(__name__)

GENESIS_CHECKSUM = "0" * 64


@dataclass(frozen=True)
class RequestMetadata:
    """Forensic context captured from the HTTP request."""
    ip_address: str = "unknown"
    user_agent: str = "unknown"

    def to_dict(self) -> Dict[str, str]:
        return {"ipAddress": self.ip_address, "userAgent": self.user_agent}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RequestMetadata":
        data = data or {}
        return cls(
            ip_address=data.get("ipAddress") or "unknown",
            user_agent=data.get("userAgent") or "unknown",
        )


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry for one invoice transition."""
    invoice_id: str
    action: str
    actor_id: str
    actor_role: str
    new_status: str
    previous_status: Optional[str] = None
    notes: Optional[str] = None
    request_metadata: RequestMetadata = field(default_factory=RequestMetadata)
    id: str = field(default_factory=lambda: f"AUD-{uuid.uuid4().hex}")
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    sequence: Optional[int] = None
    previous_checksum: Optional[str] = None
    checksum: str = ""

    @property
    def is_sealed(self) -> bool:
        return self.sequence is not None and bool(self.checksum)

    def seal(self, sequence: int, previous_checksum: Optional[str]) -> "AuditEntry":
        """Fix the entry's position and commit time in the chain, then compute its checksum."""
        positioned = replace(
            self,
            sequence=sequence,
            timestamp=datetime.now(timezone.utc).isoformat(),
            previous_checksum=previous_checksum or GENESIS_CHECKSUM,
            checksum="",
        )
        return replace(positioned, checksum=positioned._calculate_checksum())

    def _calculate_checksum(self) -> str:
        """SHA-256 over the entry content and its predecessor's checksum."""
        data = {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "sequence": self.sequence,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "timestamp": self.timestamp,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "notes": self.notes,
            "request_metadata": self.request_metadata.to_dict(),
            "previous_checksum": self.previous_checksum,
        }
        data_str = json.dumps(data, sort_keys=True)
        return hashlib.sha256(data_str.encode()).hexdigest()

    def verify(self) -> bool:
        """Verify entry hasn't been tampered with."""
        return self.is_sealed and self.checksum == self._calculate_checksum()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoiceId": self.invoice_id,
            "sequence": self.sequence,
            "action": self.action,
            "actorId": self.actor_id,
            "actorRole": self.actor_role,
            "timestamp": self.timestamp,
            "previousStatus": self.previous_status,
            "newStatus": self.new_status,
            "notes": self.notes,
            "requestMetadata": self.request_metadata.to_dict(),
            "previousChecksum": self.previous_checksum,
            "checksum": self.checksum,
        }

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["request_metadata"] = json.dumps(self.request_metadata.to_dict())
        return record

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "AuditEntry":
        metadata = row.get("request_metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except json.JSONDecodeError:
                metadata = {}
        return cls(
            id=row["id"],
            invoice_id=row["invoice_id"],
            sequence=int(row["sequence"]),
            action=row["action"],
            actor_id=row["actor_id"],
            actor_role=row["actor_role"],
            timestamp=row["timestamp"],
            previous_status=row.get("previous_status"),
            new_status=row["new_status"],
            notes=row.get("notes"),
            request_metadata=RequestMetadata.from_dict(metadata),
            previous_checksum=row.get("previous_checksum"),
            checksum=row.get("checksum") or "",
        )


def verify_chain(entries: Sequence[AuditEntry]) -> bool:
    """True when every entry is intact, contiguous, and linked to its predecessor."""
    previous = GENESIS_CHECKSUM
    for expected_sequence, entry in enumerate(entries, start=1):
        if entry.sequence != expected_sequence:
            return False
        if entry.previous_checksum != previous or not entry.verify():
            return False
        previous = entry.checksum
    return True


class AuditTrailRecorder:
    """
    Append-only recorder for invoice audit trails.

    Appends only happen through an open transaction from InvoiceDB, alongside
    the invoice write they describe; there is no update or delete path.
    """

    def __init__(self, db):
        self.db = db

    def build_entry(
        self,
        invoice_id: str,
        action: str,
        actor_id: str,
        actor_role: str,
        previous_status: Optional[str],
        new_status: str,
        notes: Optional[str] = None,
        request_metadata: Optional[RequestMetadata] = None,
    ) -> AuditEntry:
        return AuditEntry(
            invoice_id=invoice_id,
            action=action,
            actor_id=actor_id,
            actor_role=actor_role,
            previous_status=previous_status,
            new_status=new_status,
            notes=notes,
            request_metadata=request_metadata or RequestMetadata(),
        )

    def append(self, tx, invoice_id: str, entry: AuditEntry) -> AuditEntry:
        """Seal and insert `entry` inside transaction `tx`."""
        if entry.invoice_id != invoice_id:
            raise ValueError(f"Audit entry belongs to {entry.invoice_id}, not {invoice_id}")
        if entry.is_sealed:
            raise ValueError(f"Audit entry {entry.id} was already appended")
        last = tx.last_audit_entry(invoice_id)
        sequence = (last.sequence + 1) if last else 1
        sealed = entry.seal(sequence, last.checksum if last else None)
        tx.insert_audit_entry(sealed)
        logger.debug("Audit %s #%s for %s: %s", sealed.action, sequence, invoice_id, sealed.new_status)
        return sealed

    def history(self, invoice_id: str) -> List[AuditEntry]:
        return self.db.list_audit_entries(invoice_id)
