import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from main import app
from invoiceflow.core import config as config_module
from invoiceflow.core import database as db_module
from invoiceflow.core.auth import create_access_token
from invoiceflow.core.event_bus import EventBus
from invoiceflow.services.metrics import reset_metrics


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("INVOICEFLOW_DB_PATH", str(tmp_path / "invoices.db"))
    monkeypatch.setenv("INVOICEFLOW_SECRET_KEY", "test-secret")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("INVOICEFLOW_NOTIFY_WEBHOOK_URL", raising=False)
    config_module.get_settings.cache_clear()
    db_module.reset_db()
    EventBus.reset()
    reset_metrics()
    with TestClient(app) as test_client:
        yield test_client
    db_module.reset_db()
    config_module.get_settings.cache_clear()


def _headers(user_id, role, vendor_id=None):
    token = create_access_token(user_id, role, vendor_id=vendor_id)
    return {"Authorization": f"Bearer {token}"}


VENDOR = ("vendor-user", "VENDOR", "V-1")
OTHER_VENDOR = ("rival-user", "VENDOR", "V-2")
PM = ("pm-1", "PM")
ADMIN = ("admin-1", "ADMIN")

LINE_ITEMS = [
    {"role": "Developer", "experienceRange": "3-5 years", "quantity": 10, "rate": 50, "amount": 500},
    {"role": "Architect", "experienceRange": "10+ years", "quantity": 2, "rate": 120, "amount": 240},
]


def _register_contract(client, **overrides):
    payload = {
        "vendorId": "V-1",
        "rates": [{"role": "Developer", "experienceRange": "3-5 years", "rate": 50}],
        **overrides,
    }
    response = client.post("/api/rate-contracts", headers=_headers(*ADMIN), json=payload)
    assert response.status_code == 201, response.text
    return response.json()["contract"]


def _submit(client, amount=740, line_items=LINE_ITEMS, headers=None):
    return client.post(
        "/api/invoices",
        headers=headers or _headers(*VENDOR),
        json={"amount": amount, "invoiceNumber": "A-200", "assignedPM": "pm-1", "lineItems": line_items},
    )


def test_submission_reconciles_line_items(client):
    _register_contract(client)
    response = _submit(client)

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["status"] == "PENDING_PM_APPROVAL"
    assert body["workflow"]["nextStep"] == "Awaiting PM review"
    reconciliation = body["reconciliation"]
    assert reconciliation["counts"] == {"MATCH": 1, "MISMATCH": 0, "MANUAL": 1}
    assert reconciliation["needsReview"] is True
    statuses = [item["reconciliationStatus"] for item in reconciliation["lineItems"]]
    assert statuses == ["MATCH", "MANUAL"]
    assert reconciliation["lineItems"][1]["reconciliationNote"] == "No rate contract found for Architect (10+ years)"


def test_submission_rejects_header_total_mismatch(client):
    response = _submit(client, amount=900)
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "VALIDATION_FAILED"
    assert body["message"] == "Invoice Amount (900) does not match Line Items Total (740)"


def test_submission_requires_vendor_link(client):
    response = _submit(client, headers=_headers("orphan", "VENDOR"))
    assert response.status_code == 400
    assert response.json()["message"] == "No vendor entity linked to this account. Rate validation cannot be performed."


def test_pm_cannot_submit(client):
    response = _submit(client, headers=_headers(*PM))
    assert response.status_code == 403


def test_malformed_submission(client):
    response = client.post("/api/invoices", headers=_headers(*VENDOR), json={"lineItems": "nope"})
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_FAILED"


def test_invoice_visibility(client):
    invoice_id = _submit(client).json()["invoiceId"]

    own = client.get(f"/api/invoices/{invoice_id}", headers=_headers(*VENDOR))
    assert own.status_code == 200
    body = own.json()
    assert body["status"] == "PENDING_PM_APPROVAL"
    assert body["stage"]["title"] == "Pending PM Approval"
    assert len(body["auditTrail"]) == 2
    assert body["allowedActions"] == []

    assert client.get(f"/api/invoices/{invoice_id}", headers=_headers(*OTHER_VENDOR)).status_code == 404

    as_pm = client.get(f"/api/invoices/{invoice_id}", headers=_headers(*PM)).json()
    assert len(as_pm["allowedActions"]) == 3


def test_vendor_resubmits_after_info_request(client):
    _register_contract(client)
    invoice_id = _submit(client).json()["invoiceId"]
    client.post(f"/pm-approve/{invoice_id}", headers=_headers(*PM), json={"action": "REQUEST_INFO", "notes": "Rate?"})

    blocked = client.post(f"/api/invoices/{invoice_id}/resubmit", headers=_headers(*OTHER_VENDOR), json={})
    assert blocked.status_code == 403

    response = client.post(
        f"/api/invoices/{invoice_id}/resubmit",
        headers=_headers(*VENDOR),
        json={"notes": "Dropped architect line", "amount": 500, "lineItems": LINE_ITEMS[:1]},
    )
    assert response.status_code == 200, response.text
    assert response.json()["previousStatus"] == "MORE_INFO_NEEDED"
    assert response.json()["newStatus"] == "PENDING_PM_APPROVAL"

    invoice = client.get(f"/api/invoices/{invoice_id}", headers=_headers(*PM)).json()
    assert invoice["amount"] == 500
    assert [item["reconciliationStatus"] for item in invoice["lineItems"]] == ["MATCH"]
    assert invoice["pmApproval"]["status"] == "PENDING"

    audit = client.get(f"/api/invoices/{invoice_id}/audit", headers=_headers(*VENDOR)).json()
    assert audit["count"] == 4
    assert audit["entries"][-1]["action"] == "RESUBMIT"
    assert audit["chainValid"] is True


def test_rate_contract_listing(client):
    _register_contract(client)
    _register_contract(client, projectId="P-9", rates=[{"role": "Developer", "experienceRange": "3-5 years", "rate": 55}])
    _register_contract(client, status="DRAFT")

    listing = client.get("/api/rate-contracts?projectId=P-9", headers=_headers(*VENDOR)).json()
    assert listing["vendorId"] == "V-1"
    assert [c["projectId"] for c in listing["contracts"]] == ["P-9", None]

    assert client.get("/api/rate-contracts?vendorId=V-1", headers=_headers(*OTHER_VENDOR)).status_code == 403
    assert client.get("/api/rate-contracts", headers=_headers(*PM)).status_code == 400


def test_only_admin_registers_contracts(client):
    response = client.post(
        "/api/rate-contracts",
        headers=_headers(*PM),
        json={"vendorId": "V-1", "rates": []},
    )
    assert response.status_code == 403

    bad_status = client.post(
        "/api/rate-contracts",
        headers=_headers(*ADMIN),
        json={"vendorId": "V-1", "status": "ARCHIVED"},
    )
    assert bad_status.status_code == 400


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["database"] == "sqlite"
