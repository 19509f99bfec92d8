"""
Bill Approval Engine

Drives a bill from draft to approved:
- create/edit drafts
- submit: resolve the approval route (auto-pay, workflow, or none)
- record approver decisions step by step; any rejection ends the approval
- cancel

Approval instances are never reused: a resubmitted bill gets a fresh one,
so earlier decision logs stay intact. Every write is version-guarded; a
caller that loses a race gets ``StaleApprovalState`` and should refetch.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from billpay.core.database import RowUpdate, StaleRowError, UniqueConflict, get_db
from billpay.core.models import (
    ApprovalDecision,
    ApprovalStatus,
    Bill,
    BillApproval,
    BillPriority,
    BillStatus,
    PaymentStatus,
    Vendor,
    parse_date,
    to_money,
)
from billpay.services.bill_state import (
    CANCELLABLE_STATES,
    EDITABLE_STATES,
    SUBMITTABLE_STATES,
    assert_valid_transition,
    audit_payload,
)
from billpay.services.errors import (
    ApproverNotAuthorized,
    BillNotEditable,
    BillNotFound,
    BillPayError,
    CancellationNotSupported,
    DuplicateApprovalDecision,
    InvalidBillTransition,
    NoMatchingWorkflow,
    ReviewRequired,
    StaleApprovalState,
    ValidationFailed,
    VendorNotFound,
)
from billpay.services.logging import log_error, log_transition
from billpay.services.notifications import get_notification_service
from billpay.services.payment_scheduler import PaymentScheduler
from billpay.services.workflow_resolver import ResolutionKind, WorkflowResolver

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "vendor_id",
    "amount",
    "currency",
    "issue_date",
    "due_date",
    "category",
    "description",
    "invoice_number",
    "priority",
    "scheduled_date",
    "metadata",
}


def _validate_bill_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize and validate bill fields. Returns the cleaned copy."""
    cleaned = dict(fields)
    if "amount" in cleaned:
        try:
            cleaned["amount"] = to_money(cleaned["amount"])
        except ValueError as exc:
            raise ValidationFailed("amount", str(exc))
        if cleaned["amount"] <= 0:
            raise ValidationFailed("amount", "Bill amount must be greater than zero")
    if "due_date" in cleaned and cleaned["due_date"] is None:
        raise ValidationFailed("due_date", "Due date cannot be cleared")
    for name in ("issue_date", "due_date", "scheduled_date"):
        if name in cleaned and cleaned[name] is not None:
            try:
                cleaned[name] = parse_date(cleaned[name])
            except ValueError:
                raise ValidationFailed(name, f"Invalid date: {cleaned[name]!r}")
    if "priority" in cleaned and cleaned["priority"] is not None:
        try:
            cleaned["priority"] = BillPriority(cleaned["priority"])
        except ValueError:
            raise ValidationFailed("priority", f"Unknown priority '{cleaned['priority']}'")
    return cleaned


def _date_order_warning(bill_id: str, issue_date: Optional[date], due_date: Optional[date]) -> Optional[str]:
    if issue_date and due_date and issue_date > due_date:
        logger.warning("Bill %s issue date %s is after due date %s", bill_id, issue_date, due_date)
        return f"issue_date {issue_date.isoformat()} is after due_date {due_date.isoformat()}"
    return None


class ApprovalEngine:
    def __init__(
        self,
        db=None,
        resolver: Optional[WorkflowResolver] = None,
        scheduler: Optional[PaymentScheduler] = None,
        notifier=None,
    ):
        self.db = db or get_db()
        self.notifier = notifier or get_notification_service()
        self.resolver = resolver or WorkflowResolver(db=self.db)
        self.scheduler = scheduler or PaymentScheduler(db=self.db, notifier=self.notifier)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def get_bill(self, organization_id: str, bill_id: str) -> Bill:
        row = self.db.get_bill(organization_id, bill_id)
        if not row:
            raise BillNotFound(bill_id)
        return Bill.from_row(row)

    def _get_vendor(self, organization_id: str, vendor_id: Optional[str]) -> Vendor:
        if not vendor_id:
            raise ValidationFailed("vendor_id", "Bill has no vendor")
        row = self.db.get_vendor(organization_id, vendor_id)
        if not row:
            raise VendorNotFound(vendor_id)
        return Vendor.from_row(row)

    def get_active_approval(self, bill_id: str) -> Optional[BillApproval]:
        row = self.db.get_latest_bill_approval(bill_id)
        if not row:
            return None
        return BillApproval.from_row(row, self.db.list_approval_steps(row["id"]))

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def create_bill(self, organization_id: str, actor_id: Optional[str], payload: Dict[str, Any]) -> Bill:
        allowed = EDITABLE_FIELDS | {"document_id", "requires_review"}
        fields = _validate_bill_fields({k: v for k, v in payload.items() if k in allowed and v is not None})
        if "amount" not in fields:
            raise ValidationFailed("amount", "Bill amount is required")
        vendor = self._get_vendor(organization_id, fields.get("vendor_id"))
        metadata = dict(fields.get("metadata") or {})
        warning = _date_order_warning("new", fields.get("issue_date"), fields.get("due_date"))
        if warning:
            metadata["date_warning"] = warning
        if not fields.get("issue_date"):
            fields["issue_date"] = datetime.now(timezone.utc).date()
        if not fields.get("due_date"):
            fields["due_date"] = fields["issue_date"] + timedelta(days=vendor.payment_terms)

        row = self.db.create_bill({
            **fields,
            "organization_id": organization_id,
            "category": fields.get("category") or vendor.category,
            "currency": fields.get("currency") or vendor.currency,
            "status": BillStatus.DRAFT,
            "created_by": actor_id,
            "metadata": metadata,
        })
        self.db.append_audit_event(audit_payload(
            row, "bill_created", None, BillStatus.DRAFT.value,
            actor_type="user" if actor_id else "system", actor_id=actor_id,
            payload={"amount": str(row["amount"]), "vendor_id": vendor.id},
        ))
        log_transition(row["id"], None, BillStatus.DRAFT.value, actor_id)
        return Bill.from_row(row)

    def edit_bill(self, organization_id: str, bill_id: str, actor_id: Optional[str] = None, **changes) -> Bill:
        bill = self.get_bill(organization_id, bill_id)
        if bill.status.value not in EDITABLE_STATES:
            raise BillNotEditable(bill.id, bill.status.value)
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationFailed(sorted(unknown)[0], "Field cannot be edited")
        fields = _validate_bill_fields(changes)
        if "vendor_id" in fields:
            self._get_vendor(organization_id, fields["vendor_id"])

        metadata = dict(fields.get("metadata", bill.metadata) or {})
        warning = _date_order_warning(
            bill.id,
            fields.get("issue_date", bill.issue_date),
            fields.get("due_date", bill.due_date),
        )
        if warning:
            metadata["date_warning"] = warning
        else:
            metadata.pop("date_warning", None)
        fields["metadata"] = metadata

        try:
            self.db.commit_changes(
                updates=[RowUpdate("bills", bill.id, fields, bill.version)],
                inserts=[self.db.audit_insert(audit_payload(
                    bill.to_dict(), "bill_edited", bill.status.value, bill.status.value,
                    actor_type="user" if actor_id else "system", actor_id=actor_id,
                    payload={"fields": sorted(changes)},
                ))],
            )
        except StaleRowError:
            raise StaleApprovalState(bill.id, "Bill changed while editing")
        return self.get_bill(organization_id, bill_id)

    def delete_draft(self, organization_id: str, bill_id: str) -> None:
        bill = self.get_bill(organization_id, bill_id)
        if bill.status is not BillStatus.DRAFT:
            raise BillNotEditable(bill.id, bill.status.value)
        if not self.db.delete_draft_bill(organization_id, bill_id):
            raise StaleApprovalState(bill.id, "Bill left draft before it could be deleted")
        logger.info("Deleted draft bill %s", bill_id)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_bill(self, organization_id: str, bill_id: str, actor_id: Optional[str]) -> Dict[str, Any]:
        """Route a draft (or rejected, or parked) bill into approval."""
        bill = self.get_bill(organization_id, bill_id)
        parked = bill.status is BillStatus.PENDING_APPROVAL and not self._has_pending_approval(bill.id)
        if bill.status.value not in SUBMITTABLE_STATES and not parked:
            raise InvalidBillTransition(bill.status.value, BillStatus.PENDING_APPROVAL.value, bill.id)
        if bill.requires_review:
            raise ReviewRequired(bill.id)

        vendor = self._get_vendor(organization_id, bill.vendor_id)
        outcome = self.resolver.resolve(bill, vendor)
        actor_type = "user" if actor_id else "system"
        bill_dict = bill.to_dict()

        if outcome.kind is ResolutionKind.AUTO_PAY:
            assert_valid_transition(bill.status, BillStatus.APPROVED, bill.id)
            self._commit_bill(bill, {
                "status": BillStatus.APPROVED,
                "approved_amount": bill.amount,
                "last_error": None,
            }, audit_payload(
                bill_dict, "bill_auto_approved", bill.status.value, BillStatus.APPROVED.value,
                actor_type="system", actor_id=None,
                payload={"submitted_by": actor_id, "vendor_id": vendor.id,
                         "approval_threshold": str(vendor.approval_threshold)},
            ))
            self._after_transition(bill_dict, bill.status.value, BillStatus.APPROVED.value, actor_id)
            scheduling_error = self._schedule_after_approval(organization_id, bill.id)
            return self._result(organization_id, bill.id, "auto_pay", None, scheduling_error)

        if outcome.kind is ResolutionKind.REQUIRES_WORKFLOW:
            workflow = outcome.workflow
            approval_insert = self.db.bill_approval_insert({
                "bill_id": bill.id,
                "workflow_id": workflow.id,
                "organization_id": organization_id,
                "required_approvers": workflow.required_approvers,
                "requested_by": actor_id,
            })
            updates: List[RowUpdate] = []
            if bill.status is not BillStatus.PENDING_APPROVAL:
                assert_valid_transition(bill.status, BillStatus.PENDING_APPROVAL, bill.id)
            updates.append(RowUpdate("bills", bill.id, {
                "status": BillStatus.PENDING_APPROVAL,
                "approved_amount": None,
                "last_error": None,
            }, bill.version))
            try:
                self.db.commit_changes(updates=updates, inserts=[
                    approval_insert,
                    self.db.audit_insert(audit_payload(
                        bill_dict, "bill_submitted", bill.status.value, BillStatus.PENDING_APPROVAL.value,
                        actor_type=actor_type, actor_id=actor_id,
                        payload={"workflow_id": workflow.id, "approval_id": approval_insert.values["id"]},
                    )),
                ])
            except StaleRowError:
                raise StaleApprovalState(bill.id, "Bill changed while submitting")
            if bill.status is not BillStatus.PENDING_APPROVAL:
                self._after_transition(bill_dict, bill.status.value, BillStatus.PENDING_APPROVAL.value, actor_id)
            return self._result(organization_id, bill.id, "requires_workflow", approval_insert.values["id"])

        # No workflow applies and the vendor requires approval: park the bill.
        if bill.status is not BillStatus.PENDING_APPROVAL:
            assert_valid_transition(bill.status, BillStatus.PENDING_APPROVAL, bill.id)
            self._commit_bill(bill, {
                "status": BillStatus.PENDING_APPROVAL,
                "approved_amount": None,
                "last_error": "No matching approval workflow",
            }, audit_payload(
                bill_dict, "no_matching_workflow", bill.status.value, BillStatus.PENDING_APPROVAL.value,
                actor_type=actor_type, actor_id=actor_id,
                payload={"vendor_category": vendor.category, "amount": str(bill.amount)},
            ))
            self._after_transition(bill_dict, bill.status.value, BillStatus.PENDING_APPROVAL.value, actor_id)
        self.notifier.send_operator_alert(
            "no_matching_workflow",
            bill_dict,
            f"No active approval workflow covers category '{vendor.category}' at amount {bill.amount}",
        )
        raise NoMatchingWorkflow(bill.id, vendor.category, str(bill.amount))

    def _has_pending_approval(self, bill_id: str) -> bool:
        approval = self.db.get_latest_bill_approval(bill_id)
        return bool(approval and approval.get("status") == ApprovalStatus.PENDING.value)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def record_approval_decision(
        self,
        organization_id: str,
        bill_id: str,
        approver_id: str,
        decision,
        comment: Optional[str] = None,
        approver_roles: Iterable[str] = (),
        expected_step: Optional[int] = None,
    ) -> Dict[str, Any]:
        try:
            decision = ApprovalDecision(decision)
        except ValueError:
            raise ValidationFailed("decision", f"Unknown decision '{decision}'")

        bill = self.get_bill(organization_id, bill_id)
        approval = self.get_active_approval(bill.id)
        if approval is None or approval.organization_id != organization_id:
            raise StaleApprovalState(bill.id, "Bill has no approval in progress")
        if approval.status.is_terminal or bill.status is not BillStatus.PENDING_APPROVAL:
            raise StaleApprovalState(
                bill.id,
                f"Approval is {approval.status.value}; bill is {bill.status.value}",
                {"approval_id": approval.id},
            )
        if expected_step is not None and expected_step != approval.current_step:
            raise StaleApprovalState(
                bill.id,
                f"Approval is at step {approval.current_step}, not {expected_step}",
                {"approval_id": approval.id, "current_step": approval.current_step},
            )

        step_index = approval.current_step
        required = approval.required_approvers[step_index]
        identities = [approver_id, *approver_roles]
        prior = approval.decisions_for_step(step_index)
        if any(record.approver_id == approver_id for record in prior):
            raise DuplicateApprovalDecision(approver_id, step_index)

        satisfied = {r.satisfies for r in prior if r.decision is ApprovalDecision.APPROVE}
        open_entries = [entry for entry in required if entry not in satisfied]
        if decision is ApprovalDecision.REJECT:
            eligible = [entry for entry in required if entry in identities]
        else:
            eligible = [entry for entry in open_entries if entry in identities]
        if not eligible:
            raise ApproverNotAuthorized(approver_id, step_index, open_entries or required)
        # A direct user-id entry takes precedence over a role entry.
        satisfies = approver_id if approver_id in eligible else eligible[0]

        now = datetime.now(timezone.utc)
        approval_fields: Dict[str, Any] = {}
        bill_fields: Dict[str, Any] = {}
        if decision is ApprovalDecision.REJECT:
            approval_fields = {"status": ApprovalStatus.REJECTED, "completed_at": now}
            bill_fields = {"status": BillStatus.REJECTED}
        elif len(open_entries) == 1:
            next_step = step_index + 1
            if next_step >= approval.total_steps:
                approval_fields = {
                    "status": ApprovalStatus.APPROVED,
                    "current_step": next_step,
                    "approved_amount": bill.amount,
                    "completed_at": now,
                }
                bill_fields = {"status": BillStatus.APPROVED, "approved_amount": bill.amount, "last_error": None}
            else:
                approval_fields = {"current_step": next_step}
        new_status = bill_fields.get("status")
        if new_status is not None:
            assert_valid_transition(bill.status, new_status, bill.id)

        bill_dict = bill.to_dict()
        try:
            self.db.commit_changes(
                updates=[
                    RowUpdate("bill_approvals", approval.id, approval_fields, approval.version),
                    RowUpdate("bills", bill.id, bill_fields, bill.version),
                ],
                inserts=[
                    self.db.approval_step_insert({
                        "approval_id": approval.id,
                        "step_index": step_index,
                        "approver_id": approver_id,
                        "decision": decision,
                        "comment": comment,
                        "satisfies": satisfies,
                        "decided_at": now,
                    }),
                    self.db.audit_insert(audit_payload(
                        bill_dict,
                        f"approval_{decision.value}",
                        bill.status.value,
                        (new_status or bill.status).value,
                        actor_type="user",
                        actor_id=approver_id,
                        payload={
                            "approval_id": approval.id,
                            "step_index": step_index,
                            "satisfies": satisfies,
                            "comment": comment,
                        },
                        idempotency_key=f"decision:{approval.id}:{step_index}:{approver_id}",
                    )),
                ],
            )
        except StaleRowError:
            raise StaleApprovalState(
                bill.id,
                "Approval changed concurrently",
                {"approval_id": approval.id, "expected_version": approval.version},
            )
        except UniqueConflict:
            raise DuplicateApprovalDecision(approver_id, step_index)

        logger.info(
            "Approval %s step %s: %s by %s (satisfies %s)",
            approval.id, step_index, decision.value, approver_id, satisfies,
        )
        scheduling_error = None
        if new_status is not None:
            self._after_transition(bill_dict, bill.status.value, new_status.value, approver_id)
            if new_status is BillStatus.APPROVED:
                scheduling_error = self._schedule_after_approval(organization_id, bill.id)
        return self._result(organization_id, bill.id, decision.value, approval.id, scheduling_error)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_bill(
        self,
        organization_id: str,
        bill_id: str,
        actor_id: Optional[str],
        reason: Optional[str] = None,
    ) -> Bill:
        bill = self.get_bill(organization_id, bill_id)
        if bill.status.value not in CANCELLABLE_STATES:
            raise InvalidBillTransition(bill.status.value, BillStatus.CANCELLED.value, bill.id)

        updates = [RowUpdate("bills", bill.id, {"status": BillStatus.CANCELLED}, bill.version)]
        payment = self.db.get_in_flight_payment(bill.id)
        if payment:
            if payment["status"] == PaymentStatus.PROCESSING.value:
                raise CancellationNotSupported(bill.id, payment["id"])
            updates.append(RowUpdate(
                "payments",
                payment["id"],
                {"status": PaymentStatus.FAILED, "failure_reason": "cancelled"},
                payment["version"],
            ))

        bill_dict = bill.to_dict()
        try:
            self.db.commit_changes(updates=updates, inserts=[self.db.audit_insert(audit_payload(
                bill_dict, "bill_cancelled", bill.status.value, BillStatus.CANCELLED.value,
                actor_type="user" if actor_id else "system", actor_id=actor_id,
                payload={"reason": reason, "payment_id": payment["id"] if payment else None},
            ))])
        except StaleRowError:
            in_flight = self.db.get_in_flight_payment(bill.id)
            if in_flight and in_flight["status"] == PaymentStatus.PROCESSING.value:
                raise CancellationNotSupported(bill.id, in_flight["id"])
            raise StaleApprovalState(bill.id, "Bill changed while cancelling")

        self._after_transition(bill_dict, bill.status.value, BillStatus.CANCELLED.value, actor_id)
        return self.get_bill(organization_id, bill_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _commit_bill(self, bill: Bill, fields: Dict[str, Any], audit: Dict[str, Any]) -> None:
        try:
            self.db.commit_changes(
                updates=[RowUpdate("bills", bill.id, fields, bill.version)],
                inserts=[self.db.audit_insert(audit)],
            )
        except StaleRowError:
            raise StaleApprovalState(bill.id, "Bill changed concurrently")

    def _after_transition(self, bill_dict: Dict[str, Any], prev: str, new: str, actor_id: Optional[str]) -> None:
        log_transition(bill_dict["id"], prev, new, actor_id)
        self.notifier.notify_status_change(bill_dict, prev, new, actor_id)

    def _schedule_after_approval(self, organization_id: str, bill_id: str) -> Optional[Dict[str, Any]]:
        """Schedule the payment right away. Failures keep the approval and are reported."""
        try:
            self.scheduler.schedule(organization_id, bill_id)
            return None
        except BillPayError as exc:
            message = exc.message if not exc.detail else f"{exc.message}: {exc.detail}"
            row = self.db.get_bill(organization_id, bill_id)
            try:
                self.db.update_bill(bill_id, row.get("version"), last_error=message)
            except StaleRowError:
                logger.info("Bill %s changed before last_error could be recorded", bill_id)
            log_error("scheduling_failed", message, {"bill_id": bill_id, "code": exc.code.value})
            self.notifier.send_operator_alert("scheduling_failed", row, message)
            return exc.to_dict()

    def _result(
        self,
        organization_id: str,
        bill_id: str,
        outcome: str,
        approval_id: Optional[str],
        scheduling_error: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        approval = None
        if approval_id:
            row = self.db.get_bill_approval(approval_id)
            approval = BillApproval.from_row(row, self.db.list_approval_steps(approval_id)).to_dict()
        return {
            "outcome": outcome,
            "bill": self.get_bill(organization_id, bill_id).to_dict(),
            "approval": approval,
            "scheduling_error": scheduling_error,
        }
