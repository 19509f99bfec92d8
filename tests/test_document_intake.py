"""
Tests for turning OCR output into bills.
"""

from datetime import date
from decimal import Decimal

import pytest

from billpay.services.errors import ReviewRequired, ValidationFailed

from conftest import ORG, make_vendor, make_workflow


def _payload(document_id="DOC-1", confidence=0.95, **extracted):
    data = {
        "vendor_name": "acme utilities",
        "amount": "2000.00",
        "issue_date": "2026-04-01",
        "due_date": "2026-05-01",
        "invoice_number": "INV-77",
        "line_items": [{"description": "Electricity", "amount": "2000.00", "quantity": "1"}],
    }
    data.update(extracted)
    return {"document_id": document_id, "confidence": confidence, "extracted_data": data}


@pytest.fixture()
def vendor(db):
    return make_vendor(db, currency="EUR")


@pytest.fixture()
def intake(services):
    return services.intake()


def test_confident_extraction_is_submitted(intake, vendor, db):
    workflow = make_workflow(db, threshold="1500")

    result = intake.ingest_document(ORG, "u_clerk", _payload())

    assert result["duplicate"] is False
    assert result["submission_error"] is None
    assert result["submission"]["outcome"] == "requires_workflow"
    assert result["submission"]["approval"]["workflow_id"] == workflow["id"]
    bill = result["bill"]
    assert bill["status"] == "pending_approval"
    assert bill["vendor_id"] == vendor["id"]
    assert bill["document_id"] == "DOC-1"
    assert bill["currency"] == "EUR"
    assert bill["requires_review"] is False
    assert bill["metadata"]["line_items"][0]["description"] == "Electricity"
    assert result["document"]["bill_id"] == bill["id"]
    assert result["document"]["confidence"] == 0.95


def test_low_confidence_is_held_for_review(intake, vendor, db, services):
    make_workflow(db, threshold="0")

    result = intake.ingest_document(ORG, "u_clerk", _payload(confidence=0.6))

    bill = result["bill"]
    assert result["submission"] is None
    assert bill["status"] == "draft"
    assert bill["requires_review"] is True
    assert "confidence 0.60 below 0.85" in bill["metadata"]["review_reasons"]

    with pytest.raises(ReviewRequired):
        services.engine().submit_bill(ORG, bill["id"], "u_clerk")


def test_unknown_vendor_is_held_for_review(intake, vendor):
    result = intake.ingest_document(ORG, "u_clerk", _payload(vendor_name="Nobody Ltd"))

    bill = result["bill"]
    assert bill["vendor_id"] is None
    assert bill["requires_review"] is True
    assert bill["metadata"]["review_reasons"] == ["no vendor matches 'Nobody Ltd'"]


def test_same_document_is_ingested_once(intake, vendor, db):
    make_workflow(db, threshold="0")
    first = intake.ingest_document(ORG, "u_clerk", _payload())
    second = intake.ingest_document(ORG, "u_clerk", _payload(amount="9999.00"))

    assert second["duplicate"] is True
    assert second["bill"]["id"] == first["bill"]["id"]
    assert len(db.list_bills(ORG)) == 1


def test_due_date_defaults_from_issue_date(intake, vendor, config):
    result = intake.ingest_document(ORG, "u_clerk", _payload(due_date=None, confidence=0.5))
    assert result["bill"]["due_date"] == "2026-05-01"
    assert config.default_payment_terms_days == 30


@pytest.mark.parametrize(
    "payload,field",
    [
        (_payload(confidence=1.5), "confidence"),
        (_payload(amount=None), "amount"),
        (_payload(amount="-10"), "amount"),
        (_payload(due_date="not-a-date"), "extracted_data"),
    ],
)
def test_invalid_extractions_are_refused(intake, vendor, payload, field):
    with pytest.raises(ValidationFailed) as exc_info:
        intake.ingest_document(ORG, "u_clerk", payload)
    assert exc_info.value.context["field"] == field


def test_no_workflow_is_reported_not_raised(intake, vendor, notifier):
    result = intake.ingest_document(ORG, "u_clerk", _payload())

    assert result["submission"] is None
    assert result["submission_error"]["error"] == "NO_MATCHING_WORKFLOW"
    assert result["bill"]["status"] == "pending_approval"
    assert "no_matching_workflow" in notifier.alert_kinds()


def test_complete_review_assigns_vendor_and_submits(intake, vendor, db):
    make_workflow(db, threshold="0", approvers=[["u_manager"]])
    held = intake.ingest_document(ORG, "u_clerk", _payload(vendor_name="ACME Util.", confidence=0.7))
    bill_id = held["bill"]["id"]

    with pytest.raises(ValidationFailed):
        intake.complete_review(ORG, bill_id, "u_reviewer")

    result = intake.complete_review(
        ORG, bill_id, "u_reviewer", vendor_id=vendor["id"], amount="1980.00", due_date=date(2026, 5, 3)
    )

    assert result["outcome"] == "requires_workflow"
    bill = result["bill"]
    assert bill["status"] == "pending_approval"
    assert bill["vendor_id"] == vendor["id"]
    assert Decimal(bill["amount"]) == Decimal("1980.00")
    assert bill["requires_review"] is False
    assert bill["metadata"]["reviewed_by"] == "u_reviewer"
    assert "review_reasons" not in bill["metadata"]

    with pytest.raises(ValidationFailed):
        intake.complete_review(ORG, bill_id, "u_reviewer")
