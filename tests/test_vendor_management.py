from decimal import Decimal

import pytest

from billpay.core.models import PaymentMethod, VendorStatus
from billpay.services.errors import StaleApprovalState, ValidationFailed, VendorNotFound, WorkflowNotFound

from conftest import ORG


@pytest.fixture()
def vendors(services):
    return services.vendors()


class TestVendors:
    def test_add_vendor(self, vendors):
        vendor = vendors.add_vendor(ORG, {
            "name": "  Northwind Freight ",
            "email": "ap@northwind.test",
            "category": "logistics",
            "payment_terms": "45",
            "approval_threshold": "250",
            "payment_methods": ["ach", "wire"],
            "preferred_payment_method": "wire",
        })

        assert vendor.name == "Northwind Freight"
        assert vendor.payment_terms == 45
        assert vendor.approval_threshold == Decimal("250.00")
        assert vendor.payment_methods == [PaymentMethod.ACH, PaymentMethod.WIRE]
        assert vendor.preferred_payment_method is PaymentMethod.WIRE
        assert vendor.status is VendorStatus.ACTIVE

    def test_same_name_and_email_updates_instead_of_duplicating(self, vendors):
        first = vendors.add_vendor(ORG, {"name": "Northwind", "email": "ap@northwind.test"})
        second = vendors.add_vendor(ORG, {"name": "NORTHWIND", "email": "AP@northwind.test", "payment_terms": 15})

        assert second.id == first.id
        assert second.payment_terms == 15
        assert len(vendors.list_vendors(ORG)) == 1

    @pytest.mark.parametrize(
        "payload,field",
        [
            ({"name": "  "}, "name"),
            ({"name": "X", "approval_threshold": "-1"}, "approval_threshold"),
            ({"name": "X", "payment_terms": -5}, "payment_terms"),
            ({"name": "X", "payment_methods": ["barter"]}, "payment_methods"),
        ],
    )
    def test_invalid_vendor_fields(self, vendors, payload, field):
        with pytest.raises(ValidationFailed) as exc_info:
            vendors.add_vendor(ORG, payload)
        assert exc_info.value.context["field"] == field

    def test_deactivate_and_reactivate(self, vendors):
        vendor = vendors.add_vendor(ORG, {"name": "Northwind"})

        inactive = vendors.deactivate_vendor(ORG, vendor.id, "switched supplier")
        assert inactive.is_active is False
        assert [v.id for v in vendors.list_vendors(ORG, status="inactive")] == [vendor.id]

        assert vendors.activate_vendor(ORG, vendor.id).is_active is True

    def test_update_is_version_guarded(self, vendors, db, monkeypatch):
        vendor = vendors.add_vendor(ORG, {"name": "Northwind"})
        stale_row = db.get_vendor(ORG, vendor.id)
        db.update_vendor(vendor.id, vendor.version, phone="555-0100")

        monkeypatch.setattr(db, "get_vendor", lambda org, vendor_id: stale_row)
        with pytest.raises(StaleApprovalState):
            vendors.update_vendor(ORG, vendor.id, payment_terms=10)

    def test_unknown_vendor(self, vendors):
        with pytest.raises(VendorNotFound):
            vendors.get_vendor(ORG, "VEN-missing")


class TestWorkflows:
    def test_create_workflow_normalizes_steps(self, vendors):
        workflow = vendors.create_workflow(ORG, {
            "name": "Large bills",
            "amount_threshold": "5000",
            "vendor_categories": ["utilities"],
            "required_approvers": ["u_controller", ["u_cfo", "board"]],
        })

        assert workflow.amount_threshold == Decimal("5000.00")
        assert workflow.required_approvers == [["u_controller"], ["u_cfo", "board"]]
        assert workflow.is_active is True

    @pytest.mark.parametrize(
        "approvers",
        [[], [[]], [["u_a", "u_a"]]],
    )
    def test_workflow_needs_well_formed_steps(self, vendors, approvers):
        with pytest.raises(ValidationFailed):
            vendors.create_workflow(ORG, {"name": "Bad", "required_approvers": approvers})

    def test_update_and_deactivate_workflow(self, vendors):
        workflow = vendors.create_workflow(ORG, {"name": "Default", "required_approvers": [["u_manager"]]})

        updated = vendors.update_workflow(ORG, workflow.id, amount_threshold="100")
        assert updated.amount_threshold == Decimal("100.00")

        vendors.deactivate_workflow(ORG, workflow.id)
        assert vendors.list_workflows(ORG, active_only=True) == []
        assert len(vendors.list_workflows(ORG)) == 1

    def test_unknown_workflow(self, vendors):
        with pytest.raises(WorkflowNotFound):
            vendors.update_workflow(ORG, "WF-missing", name="x")
