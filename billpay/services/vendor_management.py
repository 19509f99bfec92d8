"""
Vendor Management Service

Vendor master data and approval workflow configuration:
- Vendor create (deduplicated on name + email), update, activate, deactivate
- Approval workflows: create, update, deactivate

Deactivating a vendor never touches existing bills; the scheduler refuses
to pay inactive vendors instead.
"""

import logging
from typing import Any, Dict, List, Optional

from billpay.core.database import StaleRowError, get_db
from billpay.core.models import ApprovalWorkflow, PaymentMethod, Vendor, VendorStatus, to_money
from billpay.services.errors import StaleApprovalState, ValidationFailed, VendorNotFound, WorkflowNotFound

logger = logging.getLogger(__name__)

VENDOR_FIELDS = {
    "name",
    "email",
    "phone",
    "category",
    "payment_terms",
    "auto_pay",
    "approval_required",
    "approval_threshold",
    "payment_methods",
    "preferred_payment_method",
    "currency",
    "status",
}

WORKFLOW_FIELDS = {
    "name",
    "description",
    "amount_threshold",
    "vendor_categories",
    "required_approvers",
    "is_active",
}


def _validate_vendor_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = dict(fields)
    if "name" in cleaned:
        name = (cleaned["name"] or "").strip()
        if not name:
            raise ValidationFailed("name", "Vendor name is required")
        cleaned["name"] = name
    if "approval_threshold" in cleaned:
        try:
            threshold = to_money(cleaned["approval_threshold"] if cleaned["approval_threshold"] is not None else 0)
        except ValueError as exc:
            raise ValidationFailed("approval_threshold", str(exc))
        if threshold < 0:
            raise ValidationFailed("approval_threshold", "Approval threshold cannot be negative")
        cleaned["approval_threshold"] = threshold
    if "payment_terms" in cleaned:
        try:
            terms = int(cleaned["payment_terms"])
        except (TypeError, ValueError):
            raise ValidationFailed("payment_terms", "Payment terms must be a whole number of days")
        if terms < 0:
            raise ValidationFailed("payment_terms", "Payment terms cannot be negative")
        cleaned["payment_terms"] = terms
    if "payment_methods" in cleaned:
        try:
            cleaned["payment_methods"] = [PaymentMethod(m).value for m in cleaned["payment_methods"] or []]
        except ValueError as exc:
            raise ValidationFailed("payment_methods", str(exc))
    if "preferred_payment_method" in cleaned and cleaned["preferred_payment_method"] is not None:
        try:
            cleaned["preferred_payment_method"] = PaymentMethod(cleaned["preferred_payment_method"])
        except ValueError as exc:
            raise ValidationFailed("preferred_payment_method", str(exc))
    if "status" in cleaned and cleaned["status"] is not None:
        try:
            cleaned["status"] = VendorStatus(cleaned["status"])
        except ValueError as exc:
            raise ValidationFailed("status", str(exc))
    for flag in ("auto_pay", "approval_required"):
        if flag in cleaned:
            cleaned[flag] = bool(cleaned[flag])
    return cleaned


def _validate_workflow_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = dict(fields)
    if "name" in cleaned:
        name = (cleaned["name"] or "").strip()
        if not name:
            raise ValidationFailed("name", "Workflow name is required")
        cleaned["name"] = name
    if "amount_threshold" in cleaned:
        try:
            threshold = to_money(cleaned["amount_threshold"] if cleaned["amount_threshold"] is not None else 0)
        except ValueError as exc:
            raise ValidationFailed("amount_threshold", str(exc))
        if threshold < 0:
            raise ValidationFailed("amount_threshold", "Amount threshold cannot be negative")
        cleaned["amount_threshold"] = threshold
    if "vendor_categories" in cleaned:
        cleaned["vendor_categories"] = [str(c) for c in cleaned["vendor_categories"] or []]
    if "required_approvers" in cleaned:
        steps = cleaned["required_approvers"] or []
        if not steps:
            raise ValidationFailed("required_approvers", "A workflow needs at least one approval step")
        normalized: List[List[str]] = []
        for index, step in enumerate(steps):
            if isinstance(step, str):
                step = [step]
            entries = [str(entry).strip() for entry in step or [] if str(entry).strip()]
            if not entries:
                raise ValidationFailed("required_approvers", f"Step {index} has no approvers")
            if len(set(entries)) != len(entries):
                raise ValidationFailed("required_approvers", f"Step {index} lists an approver twice")
            normalized.append(entries)
        cleaned["required_approvers"] = normalized
    if "is_active" in cleaned:
        cleaned["is_active"] = bool(cleaned["is_active"])
    return cleaned


class VendorManagementService:
    def __init__(self, db=None):
        self.db = db or get_db()

    # ------------------------------------------------------------------
    # Vendors
    # ------------------------------------------------------------------

    def get_vendor(self, organization_id: str, vendor_id: str) -> Vendor:
        row = self.db.get_vendor(organization_id, vendor_id)
        if not row:
            raise VendorNotFound(vendor_id)
        return Vendor.from_row(row)

    def list_vendors(self, organization_id: str, status: Optional[str] = None) -> List[Vendor]:
        return [Vendor.from_row(row) for row in self.db.list_vendors(organization_id, status)]

    def add_vendor(self, organization_id: str, payload: Dict[str, Any]) -> Vendor:
        """Create a vendor, or update the existing one with the same name and email."""
        fields = _validate_vendor_fields({k: v for k, v in payload.items() if k in VENDOR_FIELDS})
        if "name" not in fields:
            raise ValidationFailed("name", "Vendor name is required")

        if fields.get("email"):
            existing = self.db.find_vendor_by_name(organization_id, fields["name"], fields["email"])
            if existing:
                logger.info("Vendor %s already exists; updating", existing["id"])
                return self.update_vendor(organization_id, existing["id"], **fields)

        row = self.db.create_vendor({**fields, "organization_id": organization_id})
        logger.info("Created vendor %s (%s) for %s", row["id"], row["name"], organization_id)
        return Vendor.from_row(row)

    def update_vendor(self, organization_id: str, vendor_id: str, **changes) -> Vendor:
        vendor = self.get_vendor(organization_id, vendor_id)
        unknown = set(changes) - VENDOR_FIELDS
        if unknown:
            raise ValidationFailed(sorted(unknown)[0], "Unknown vendor field")
        fields = _validate_vendor_fields(changes)
        if not fields:
            return vendor
        try:
            self.db.update_vendor(vendor.id, vendor.version, **fields)
        except StaleRowError:
            raise StaleApprovalState(vendor.id, "Vendor changed concurrently; refetch and retry")
        return self.get_vendor(organization_id, vendor_id)

    def deactivate_vendor(self, organization_id: str, vendor_id: str, reason: str = "") -> Vendor:
        vendor = self.update_vendor(organization_id, vendor_id, status=VendorStatus.INACTIVE)
        logger.info("Deactivated vendor %s: %s", vendor_id, reason or "no reason given")
        return vendor

    def activate_vendor(self, organization_id: str, vendor_id: str) -> Vendor:
        return self.update_vendor(organization_id, vendor_id, status=VendorStatus.ACTIVE)

    # ------------------------------------------------------------------
    # Approval workflows
    # ------------------------------------------------------------------

    def get_workflow(self, organization_id: str, workflow_id: str) -> ApprovalWorkflow:
        row = self.db.get_workflow(organization_id, workflow_id)
        if not row:
            raise WorkflowNotFound(workflow_id)
        return ApprovalWorkflow.from_row(row)

    def list_workflows(self, organization_id: str, active_only: bool = False) -> List[ApprovalWorkflow]:
        return [ApprovalWorkflow.from_row(row) for row in self.db.list_workflows(organization_id, active_only)]

    def create_workflow(self, organization_id: str, payload: Dict[str, Any]) -> ApprovalWorkflow:
        fields = _validate_workflow_fields({k: v for k, v in payload.items() if k in WORKFLOW_FIELDS})
        if "name" not in fields:
            raise ValidationFailed("name", "Workflow name is required")
        if "required_approvers" not in fields:
            raise ValidationFailed("required_approvers", "A workflow needs at least one approval step")
        row = self.db.create_workflow({**fields, "organization_id": organization_id})
        logger.info(
            "Created workflow %s (threshold=%s, steps=%s)",
            row["id"], row["amount_threshold"], len(fields["required_approvers"]),
        )
        return ApprovalWorkflow.from_row(row)

    def update_workflow(self, organization_id: str, workflow_id: str, **changes) -> ApprovalWorkflow:
        """Edits apply to future submissions only; in-flight approvals keep their snapshot."""
        self.get_workflow(organization_id, workflow_id)
        unknown = set(changes) - WORKFLOW_FIELDS
        if unknown:
            raise ValidationFailed(sorted(unknown)[0], "Unknown workflow field")
        fields = _validate_workflow_fields(changes)
        if fields:
            self.db.update_workflow(workflow_id, **fields)
        return self.get_workflow(organization_id, workflow_id)

    def deactivate_workflow(self, organization_id: str, workflow_id: str) -> ApprovalWorkflow:
        return self.update_workflow(organization_id, workflow_id, is_active=False)
