import sqlite3
import sys
from dataclasses import replace
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from invoiceflow.core.audit import GENESIS_CHECKSUM, AuditTrailRecorder, RequestMetadata, verify_chain
from invoiceflow.core.database import InvoiceDB
from invoiceflow.core.models import Invoice


@pytest.fixture()
def db(tmp_path):
    db = InvoiceDB(db_path=str(tmp_path / "audit.db"))
    db.initialize()
    return db


@pytest.fixture()
def recorder(db):
    return AuditTrailRecorder(db)


def _seed(db, recorder, invoice_id="INV-audit", steps=3):
    invoice = Invoice(id=invoice_id, vendor_id="V-1", vendor_name="Acme", submitted_by_user_id="vendor-user", amount=10.0)
    with db.transaction("seed") as tx:
        tx.insert_invoice(invoice)
        for step in range(steps):
            recorder.append(
                tx,
                invoice_id,
                recorder.build_entry(
                    invoice_id=invoice_id,
                    action="APPROVE",
                    actor_id=f"user-{step}",
                    actor_role="PM",
                    previous_status="PENDING_PM_APPROVAL",
                    new_status="PENDING_FINANCE_REVIEW",
                    notes=f"step {step}",
                    request_metadata=RequestMetadata(ip_address="10.0.0.1", user_agent="pytest"),
                ),
            )
    return invoice


def test_entries_are_sequenced_and_chained(db, recorder):
    _seed(db, recorder)
    trail = recorder.history("INV-audit")

    assert [entry.sequence for entry in trail] == [1, 2, 3]
    assert trail[0].previous_checksum == GENESIS_CHECKSUM
    assert trail[1].previous_checksum == trail[0].checksum
    assert trail[2].request_metadata.ip_address == "10.0.0.1"
    assert verify_chain(trail)


def test_tampered_entry_breaks_chain(db, recorder):
    _seed(db, recorder)
    trail = recorder.history("INV-audit")

    tampered = list(trail)
    tampered[1] = replace(trail[1], notes="rewritten")
    assert not tampered[1].verify()
    assert not verify_chain(tampered)

    assert not verify_chain([trail[0], trail[2]])


def test_audit_rows_reject_update_and_delete(db, recorder):
    _seed(db, recorder)
    conn = sqlite3.connect(db.db_path)
    try:
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            conn.execute("UPDATE audit_entries SET notes = 'rewritten'")
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            conn.execute("DELETE FROM audit_entries")
    finally:
        conn.close()
    assert len(recorder.history("INV-audit")) == 3


def test_append_rejects_foreign_or_sealed_entries(db, recorder):
    _seed(db, recorder, steps=1)
    sealed = recorder.history("INV-audit")[0]
    other = recorder.build_entry("INV-other", "APPROVE", "u", "PM", None, "PENDING_FINANCE_REVIEW")

    with db.transaction("bad_append") as tx:
        with pytest.raises(ValueError):
            recorder.append(tx, "INV-audit", sealed)
        with pytest.raises(ValueError):
            recorder.append(tx, "INV-audit", other)


def test_failed_transaction_leaves_no_trace(db, recorder):
    with pytest.raises(RuntimeError):
        with db.transaction("doomed") as tx:
            tx.insert_invoice(Invoice(id="INV-doomed", vendor_id="V-1", vendor_name="Acme", submitted_by_user_id="u", amount=1.0))
            recorder.append(tx, "INV-doomed", recorder.build_entry("INV-doomed", "SUBMIT", "u", "VENDOR", None, "SUBMITTED"))
            raise RuntimeError("boom")

    assert db.get_invoice("INV-doomed") is None
    assert recorder.history("INV-doomed") == []


def test_timestamps_follow_sequence_not_build_time(db, recorder):
    invoice = Invoice(id="INV-late", vendor_id="V-1", vendor_name="Acme", submitted_by_user_id="u", amount=1.0)
    stale = replace(
        recorder.build_entry("INV-late", "APPROVE", "pm-1", "PM", "PENDING_PM_APPROVAL", "PENDING_FINANCE_REVIEW"),
        timestamp="2000-01-01T00:00:00+00:00",
    )
    fresh = recorder.build_entry("INV-late", "SUBMIT", "u", "VENDOR", None, "SUBMITTED")

    with db.transaction("late") as tx:
        tx.insert_invoice(invoice)
        recorder.append(tx, "INV-late", fresh)
        recorder.append(tx, "INV-late", stale)

    first, second = recorder.history("INV-late")
    assert second.timestamp != "2000-01-01T00:00:00+00:00"
    assert first.timestamp <= second.timestamp
    assert verify_chain([first, second])
