"""
HTTP tests for the bill, vendor and webhook routes.
"""

import asyncio
import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from billpay.core.auth import create_access_token
from billpay.di.container import get_container
from billpay.api.processor_webhooks import sign_payload
from main import app

from conftest import ORG, utc_today

CLERK = {"X-Organization-ID": ORG, "X-User-ID": "u_clerk"}
MANAGER = {"X-Organization-ID": ORG, "X-User-ID": "u_manager"}
CFO = {"X-Organization-ID": ORG, "X-User-ID": "u_cfo", "X-User-Roles": "finance_lead, board"}


@pytest.fixture()
def client(services):
    app.dependency_overrides[get_container] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def vendor_id(client):
    response = client.post(
        "/vendors",
        json={"name": "Acme Utilities", "email": "billing@acme.test", "category": "utilities"},
        headers=CLERK,
    )
    assert response.status_code == 200
    return response.json()["vendor"]["id"]


def _workflow(client, approvers, threshold="1500"):
    response = client.post(
        "/workflows",
        json={"name": "Large bills", "amount_threshold": threshold, "required_approvers": approvers},
        headers=CLERK,
    )
    assert response.status_code == 200
    return response.json()["workflow"]


def _submit_bill(client, vendor_id, amount="2000.00"):
    due = utc_today() + timedelta(days=2)
    response = client.post(
        "/bills",
        json={"vendor_id": vendor_id, "amount": amount, "due_date": due.isoformat(), "submit": True},
        headers=CLERK,
    )
    assert response.status_code == 200
    return response.json()


def test_bill_is_approved_paid_and_reconciled(client, services, vendor_id):
    _workflow(client, [["u_manager"]])

    submitted = _submit_bill(client, vendor_id)
    assert submitted["outcome"] == "requires_workflow"
    assert submitted["bill"]["status"] == "pending_approval"
    bill_id = submitted["bill"]["id"]

    decided = client.post(f"/bills/{bill_id}/decisions", json={"decision": "approve"}, headers=MANAGER)
    assert decided.status_code == 200
    assert decided.json()["outcome"] == "approve"
    assert decided.json()["bill"]["status"] == "scheduled"

    assert services.scheduler().run_scan()["submitted"] == 1
    history = client.get(f"/bills/{bill_id}/history", headers=CLERK).json()
    assert history["bill"]["status"] == "scheduled"
    assert history["payments"][0]["status"] == "processing"
    reference = history["payments"][0]["processor_reference"]

    hook = client.post("/webhooks/payment-processor", json={"processor_reference": reference, "status": "completed"})
    assert hook.status_code == 200
    assert hook.json()["applied"] is True
    assert client.get(f"/bills/{bill_id}", headers=CLERK).json()["bill"]["status"] == "paid"

    replay = client.post("/webhooks/payment-processor", json={"reference": reference, "outcome": "completed"})
    assert replay.status_code == 200
    assert replay.json()["replay"] is True


def test_small_bill_below_every_workflow_is_parked(client, vendor_id):
    _workflow(client, [["u_manager"]])

    response = client.post(
        "/bills",
        json={"vendor_id": vendor_id, "amount": "20.00", "submit": True},
        headers=CLERK,
    )

    assert response.status_code == 422
    assert response.json()["error"] == "NO_MATCHING_WORKFLOW"


def test_roles_from_gateway_headers_satisfy_role_steps(client, vendor_id):
    _workflow(client, [["finance_lead"]])
    bill_id = _submit_bill(client, vendor_id)["bill"]["id"]

    refused = client.post(f"/bills/{bill_id}/decisions", json={"decision": "approve"}, headers=MANAGER)
    assert refused.status_code == 403
    assert refused.json()["error"] == "APPROVER_NOT_AUTHORIZED"

    approved = client.post(f"/bills/{bill_id}/decisions", json={"decision": "approve"}, headers=CFO)
    assert approved.status_code == 200
    assert approved.json()["approval"]["steps"][0]["satisfies"] == "finance_lead"


def test_duplicate_decision_is_a_conflict(client, vendor_id):
    _workflow(client, [["u_manager", "u_cfo"]])
    bill_id = _submit_bill(client, vendor_id)["bill"]["id"]

    first = client.post(f"/bills/{bill_id}/decisions", json={"decision": "approve"}, headers=MANAGER)
    assert first.status_code == 200
    again = client.post(f"/bills/{bill_id}/decisions", json={"decision": "approve"}, headers=MANAGER)

    assert again.status_code == 409
    assert again.json()["error"] == "DUPLICATE_APPROVAL_DECISION"


def test_draft_lifecycle(client, vendor_id):
    created = client.post("/bills", json={"vendor_id": vendor_id, "amount": "120.00"}, headers=CLERK)
    assert created.json()["outcome"] == "draft"
    assert created.json()["bill"]["issue_date"] == utc_today().isoformat()
    assert created.json()["bill"]["due_date"] == (utc_today() + timedelta(days=30)).isoformat()
    bill_id = created.json()["bill"]["id"]

    edited = client.patch(f"/bills/{bill_id}", json={"description": "March power"}, headers=CLERK)
    assert edited.status_code == 200
    assert edited.json()["bill"]["description"] == "March power"

    listed = client.get("/bills", params={"status": "draft"}, headers=CLERK).json()
    assert listed["count"] == 1

    assert client.delete(f"/bills/{bill_id}", headers=CLERK).json() == {"deleted": bill_id}
    assert client.get(f"/bills/{bill_id}", headers=CLERK).status_code == 404


def test_cancel_pending_bill(client, vendor_id):
    _workflow(client, [["u_manager"]])
    bill_id = _submit_bill(client, vendor_id)["bill"]["id"]

    response = client.post(f"/bills/{bill_id}/cancel", json={"reason": "duplicate invoice"}, headers=CLERK)

    assert response.status_code == 200
    assert response.json()["bill"]["status"] == "cancelled"


def test_unknown_bill_is_404(client):
    response = client.get("/bills/BILL-missing", headers=CLERK)
    assert response.status_code == 404
    assert response.json()["error"] == "BILL_NOT_FOUND"


def test_requests_without_identity_are_401(client):
    assert client.get("/bills").status_code == 401


def test_bearer_token_identifies_the_caller(client, vendor_id):
    token = create_access_token("u_clerk", ORG, roles=["ap_clerk"])

    response = client.get("/vendors", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert [v["id"] for v in response.json()["vendors"]] == [vendor_id]


def test_organizations_do_not_see_each_others_bills(client, vendor_id):
    client.post("/bills", json={"vendor_id": vendor_id, "amount": "10.00"}, headers=CLERK)
    other = {"X-Organization-ID": "org_other", "X-User-ID": "u_other"}
    assert client.get("/bills", headers=other).json()["count"] == 0


def test_csv_export(client, vendor_id):
    client.post("/bills", json={"vendor_id": vendor_id, "amount": "10.00"}, headers=CLERK)

    response = client.get("/bills/export.csv", headers=CLERK)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.strip().splitlines()
    assert lines[0] == "Name,Type,Amount,Paid,Remaining,Status,Due Date,Year,Quarter"
    assert lines[1].startswith("Acme Utilities,utilities,10.00,0.00,10.00,draft,")


def test_document_intake_route(client, vendor_id):
    _workflow(client, [["u_manager"]], threshold="0")
    response = client.post(
        "/bills/documents",
        json={
            "document_id": "DOC-9",
            "confidence": 0.99,
            "extracted_data": {"vendor_name": "Acme Utilities", "amount": "300.00", "due_date": "2026-12-01"},
        },
        headers=CLERK,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["bill"]["vendor_id"] == vendor_id
    assert body["bill"]["status"] == "pending_approval"


class TestProcessorWebhook:
    @pytest.fixture()
    def reference(self, client, services, vendor_id):
        _workflow(client, [["u_manager"]])
        bill_id = _submit_bill(client, vendor_id)["bill"]["id"]
        client.post(f"/bills/{bill_id}/decisions", json={"decision": "approve"}, headers=MANAGER)
        services.scheduler().run_scan()
        return services.db().list_payments_for_bill(bill_id)[0]["processor_reference"]

    def test_signature_required_when_secret_configured(self, client, config, reference):
        config.webhook_secret = "whsec_test"
        body = json.dumps({"processor_reference": reference, "status": "completed"}).encode()

        unsigned = client.post("/webhooks/payment-processor", content=body)
        assert unsigned.status_code == 401

        forged = client.post(
            "/webhooks/payment-processor", content=body, headers={"X-Processor-Signature": "00" * 32}
        )
        assert forged.status_code == 401

        signed = client.post(
            "/webhooks/payment-processor",
            content=body,
            headers={"X-Processor-Signature": sign_payload(body, "whsec_test")},
        )
        assert signed.status_code == 200
        assert signed.json()["payment"]["status"] == "completed"

    def test_malformed_payloads(self, client):
        assert client.post("/webhooks/payment-processor", content=b"{not json").status_code == 400
        assert client.post("/webhooks/payment-processor", json=["completed"]).status_code == 400
        assert client.post("/webhooks/payment-processor", json={"status": "completed"}).status_code == 400

    def test_contradicting_outcome_is_409(self, client, reference):
        client.post("/webhooks/payment-processor", json={"processor_reference": reference, "status": "completed"})

        response = client.post(
            "/webhooks/payment-processor",
            json={"processor_reference": reference, "status": "failed", "reason": "late return"},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "RECONCILIATION_CONFLICT"

    def test_unknown_reference_is_404(self, client):
        response = client.post(
            "/webhooks/payment-processor", json={"processor_reference": "ach_PAY-missing", "status": "completed"}
        )
        assert response.status_code == 404

    def test_reconciliation_runs_in_a_worker_thread(self, client, reference, monkeypatch):
        offloaded = []
        to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(func.__name__)
            return await to_thread(func, *args, **kwargs)

        monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)

        response = client.post(
            "/webhooks/payment-processor", json={"processor_reference": reference, "status": "completed"}
        )

        assert response.status_code == 200
        assert "reconcile" in offloaded
