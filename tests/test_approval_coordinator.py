import asyncio
import sqlite3
import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from invoiceflow.core import config as config_module
from invoiceflow.core.audit import verify_chain
from invoiceflow.core.auth import Actor
from invoiceflow.core.database import InvoiceDB
from invoiceflow.core.event_bus import EventBus, EventType
from invoiceflow.core.models import LineItem, RateContract, RateEntry, ReconciliationStatus
from invoiceflow.services.approval_coordinator import ApprovalCoordinator, recipients_for
from invoiceflow.services.errors import ConflictError, NotFoundError, PreconditionFailed, ValidationError, WorkflowError
from invoiceflow.services.metrics import get_metrics, reset_metrics
from invoiceflow.services.submission import SubmissionService
from invoiceflow.services.workflow_state import Action, ApprovalState, InvoiceStatus, Stage

VENDOR = Actor(user_id="vendor-user", role="VENDOR", vendor_id="V-1", name="Acme Staffing")
PM = Actor(user_id="pm-1", role="PM")
FINANCE = Actor(user_id="fin-1", role="FINANCE")


@pytest.fixture(autouse=True)
def _settings(monkeypatch):
    monkeypatch.setenv("INVOICEFLOW_SECRET_KEY", "test-secret")
    config_module.get_settings.cache_clear()
    reset_metrics()
    yield
    config_module.get_settings.cache_clear()


@pytest.fixture()
def db(tmp_path):
    db = InvoiceDB(db_path=str(tmp_path / "workflow.db"))
    db.initialize()
    db.save_rate_contract(RateContract(
        id="RC-1",
        vendor_id="V-1",
        rates=[RateEntry(role="Developer", experience_range="3-5 years", rate=50.0)],
    ))
    return db


@pytest.fixture()
def bus():
    return EventBus()


@pytest.fixture()
def coordinator(db, bus):
    return ApprovalCoordinator(db=db, event_bus=bus, max_retries=1)


def _submit(db, bus, amount=500.0, rate=50.0):
    service = SubmissionService(db=db, event_bus=bus)
    outcome = service.create(
        VENDOR,
        amount=amount,
        line_items=[LineItem(role="Developer", experience_range="3-5 years", quantity=10, rate=rate, amount=amount)],
        invoice_number="A-100",
        assigned_pm="pm-1",
        assigned_finance_user="fin-1",
    )
    return outcome.invoice


def test_submission_routes_to_pm_with_two_audit_entries(db, bus):
    invoice = _submit(db, bus)
    stored = db.get_invoice(invoice.id)

    assert stored.status == InvoiceStatus.PENDING_PM_APPROVAL
    assert stored.line_items[0].reconciliation_status == ReconciliationStatus.MATCH
    trail = db.list_audit_entries(invoice.id)
    assert [(e.action, e.previous_status, e.new_status) for e in trail] == [
        ("SUBMIT", None, "SUBMITTED"),
        ("ROUTE", "SUBMITTED", "PENDING_PM_APPROVAL"),
    ]
    assert verify_chain(trail)


def test_submission_requires_linked_vendor(db, bus):
    service = SubmissionService(db=db, event_bus=bus)
    with pytest.raises(ValidationError) as exc:
        service.create(Actor(user_id="orphan", role="VENDOR"), amount=0.0)
    assert exc.value.message == "No vendor entity linked to this account. Rate validation cannot be performed."


def test_full_approval_path(db, bus, coordinator):
    invoice = _submit(db, bus)

    pm_outcome = coordinator.apply(invoice.id, PM, Action.APPROVE, Stage.PM, notes="Hours verified")
    assert pm_outcome.previous_status == "PENDING_PM_APPROVAL"
    assert pm_outcome.new_status == "PENDING_FINANCE_REVIEW"
    assert pm_outcome.workflow["nextStep"] == "Proceeding to Finance review"
    assert pm_outcome.invoice.pm_approval.approved_by == "pm-1"

    fin_outcome = coordinator.apply(invoice.id, FINANCE, Action.APPROVE, Stage.FINANCE)
    assert fin_outcome.new_status == "FINANCE_APPROVED"
    assert fin_outcome.audit_entry.notes == "FINANCE approve this invoice"

    stored = db.get_invoice(invoice.id)
    assert stored.status == InvoiceStatus.FINANCE_APPROVED
    assert stored.version == 2
    trail = db.list_audit_entries(invoice.id)
    assert [e.action for e in trail] == ["SUBMIT", "ROUTE", "APPROVE", "APPROVE"]
    assert verify_chain(trail)

    metrics = get_metrics()
    assert metrics["transitions"]["by_stage_action_status"]["FINANCE:APPROVE:FINANCE_APPROVED"] == 1


def test_finance_before_pm_is_rejected_without_side_effects(db, bus, coordinator):
    invoice = _submit(db, bus)
    with pytest.raises(PreconditionFailed):
        coordinator.apply(invoice.id, FINANCE, Action.APPROVE, Stage.FINANCE)
    assert db.get_invoice(invoice.id).version == 0
    assert len(db.list_audit_entries(invoice.id)) == 2


def test_request_info_and_resubmit_resets_approvals(db, bus, coordinator):
    invoice = _submit(db, bus)
    coordinator.apply(invoice.id, PM, Action.APPROVE, Stage.PM)
    coordinator.apply(invoice.id, FINANCE, Action.REQUEST_INFO, Stage.FINANCE, notes="Need timesheets")
    assert db.get_invoice(invoice.id).status == InvoiceStatus.MORE_INFO_NEEDED

    service = SubmissionService(db=db, event_bus=bus, coordinator=coordinator)
    outcome = asyncio.run(service.resubmit(
        invoice.id,
        VENDOR,
        notes="Timesheets attached",
        line_items=[LineItem(role="Developer", experience_range="3-5 years", quantity=8, rate=55.0, amount=440.0)],
        amount=440.0,
    ))

    assert outcome.new_status == "PENDING_PM_APPROVAL"
    stored = db.get_invoice(invoice.id)
    assert stored.amount == 440.0
    assert stored.pm_approval.status == ApprovalState.PENDING
    assert stored.finance_approval.status == ApprovalState.PENDING
    assert stored.line_items[0].reconciliation_status == ReconciliationStatus.MISMATCH


def test_terminal_invoice_cannot_move(db, bus, coordinator):
    invoice = _submit(db, bus)
    coordinator.apply(invoice.id, PM, Action.REJECT, Stage.PM)
    with pytest.raises(WorkflowError):
        coordinator.apply(invoice.id, PM, Action.APPROVE, Stage.PM)


def test_missing_invoice(coordinator):
    with pytest.raises(NotFoundError):
        coordinator.apply("INV-missing", PM, Action.APPROVE, Stage.PM)


class _RacingDB(InvoiceDB):
    """Holds each thread's first read until both threads have read."""

    def __init__(self, *args, barrier, **kwargs):
        super().__init__(*args, **kwargs)
        self.barrier = barrier
        self.local = threading.local()

    def get_invoice(self, invoice_id):
        invoice = super().get_invoice(invoice_id)
        if not getattr(self.local, "waited", False):
            self.local.waited = True
            self.barrier.wait(timeout=10)
        return invoice


def test_concurrent_approvals_one_wins(tmp_path, bus):
    path = str(tmp_path / "race.db")
    seed_db = InvoiceDB(db_path=path)
    invoice = _submit(seed_db, bus)

    racing = _RacingDB(db_path=path, barrier=threading.Barrier(2))
    racing.initialize()
    coordinator = ApprovalCoordinator(db=racing, event_bus=bus, max_retries=1)
    results = {}

    def decide(name, action):
        try:
            results[name] = coordinator.apply(invoice.id, PM, action, Stage.PM)
        except Exception as exc:  # noqa: BLE001
            results[name] = exc

    threads = [
        threading.Thread(target=decide, args=("first", Action.APPROVE)),
        threading.Thread(target=decide, args=("second", Action.APPROVE)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    conflicts = [r for r in results.values() if isinstance(r, ConflictError)]
    successes = [r for r in results.values() if not isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(conflicts) == 1
    assert conflicts[0].status_code == 409
    assert conflicts[0].current_status == successes[0].new_status

    trail = seed_db.list_audit_entries(invoice.id)
    assert [e.action for e in trail if e.actor_role == "PM"] == ["APPROVE"]
    assert verify_chain(trail)


class _VersionBumpingDB(InvoiceDB):
    """Simulates a concurrent write that leaves the status alone."""

    bumps = 1

    def get_invoice(self, invoice_id):
        invoice = super().get_invoice(invoice_id)
        if self.bumps:
            self.bumps -= 1
            conn = sqlite3.connect(self.db_path)
            conn.execute("UPDATE invoices SET version = version + 1 WHERE id = ?", (invoice_id,))
            conn.commit()
            conn.close()
        return invoice


def test_conflict_without_status_change_is_retried_once(tmp_path, bus):
    path = str(tmp_path / "retry.db")
    invoice = _submit(InvoiceDB(db_path=path), bus)

    outcome = ApprovalCoordinator(db=_VersionBumpingDB(db_path=path), event_bus=bus, max_retries=1).apply(
        invoice.id, PM, Action.APPROVE, Stage.PM,
    )
    assert outcome.new_status == "PENDING_FINANCE_REVIEW"

    with pytest.raises(ConflictError):
        ApprovalCoordinator(db=_VersionBumpingDB(db_path=path), event_bus=bus, max_retries=0).apply(
            invoice.id, FINANCE, Action.APPROVE, Stage.FINANCE,
        )
    assert InvoiceDB(db_path=path).get_invoice(invoice.id).status == InvoiceStatus.PENDING_FINANCE_REVIEW


def test_failing_subscriber_does_not_fail_approval(db, bus, coordinator):
    invoice = _submit(db, bus)
    seen = []

    async def broken(event):
        raise RuntimeError("subscriber down")

    bus.subscribe(EventType.INVOICE_TRANSITIONED, broken)
    bus.subscribe(EventType.INVOICE_TRANSITIONED, seen.append)

    outcome = asyncio.run(coordinator.approve(invoice.id, PM, Action.REQUEST_INFO, Stage.PM))

    assert outcome.new_status == "MORE_INFO_NEEDED"
    assert db.get_invoice(invoice.id).status == InvoiceStatus.MORE_INFO_NEEDED
    assert len(seen) == 1
    assert seen[0].data["recipients"] == ["vendor-user"]


def test_recipients(db, bus):
    invoice = _submit(db, bus)
    assert recipients_for(invoice, Stage.PM, Action.APPROVE) == ["fin-1"]
    assert recipients_for(invoice, Stage.PM, Action.REJECT) == ["vendor-user", "fin-1"]
    assert recipients_for(invoice, Stage.FINANCE, Action.APPROVE) == ["vendor-user", "pm-1"]
    assert recipients_for(invoice, Stage.FINANCE, Action.REQUEST_INFO) == ["vendor-user"]
    assert recipients_for(invoice, Stage.VENDOR, Action.RESUBMIT) == ["pm-1"]
