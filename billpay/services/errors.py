"""
Bill Pay Error Handling

Named error types for the approval and payment engine, with structured
context for operators and API clients.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Lookup errors (404s)
    BILL_NOT_FOUND = "BILL_NOT_FOUND"
    VENDOR_NOT_FOUND = "VENDOR_NOT_FOUND"
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"

    # Input errors (422)
    VALIDATION_FAILED = "VALIDATION_FAILED"

    # Policy errors (409 / 422)
    VENDOR_INACTIVE = "VENDOR_INACTIVE"
    NO_MATCHING_WORKFLOW = "NO_MATCHING_WORKFLOW"
    INVALID_BILL_TRANSITION = "INVALID_BILL_TRANSITION"
    BILL_NOT_EDITABLE = "BILL_NOT_EDITABLE"
    APPROVER_NOT_AUTHORIZED = "APPROVER_NOT_AUTHORIZED"
    DUPLICATE_APPROVAL_DECISION = "DUPLICATE_APPROVAL_DECISION"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    APPROVED_AMOUNT_MISMATCH = "APPROVED_AMOUNT_MISMATCH"
    INTERVENTION_REQUIRED = "INTERVENTION_REQUIRED"
    CANCELLATION_NOT_SUPPORTED = "CANCELLATION_NOT_SUPPORTED"

    # Concurrency errors (409)
    STALE_APPROVAL_STATE = "STALE_APPROVAL_STATE"
    DUPLICATE_PAYMENT_ATTEMPT = "DUPLICATE_PAYMENT_ATTEMPT"
    RECONCILIATION_REPLAY = "RECONCILIATION_REPLAY"
    RECONCILIATION_CONFLICT = "RECONCILIATION_CONFLICT"

    # External service errors
    PROCESSOR_SUBMISSION_FAILED = "PROCESSOR_SUBMISSION_FAILED"


class BillPayError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class BillNotFound(BillPayError):
    def __init__(self, bill_id: str):
        super().__init__(
            code=ErrorCode.BILL_NOT_FOUND,
            message=f"Bill {bill_id} not found",
            context={"bill_id": bill_id}
        )


class VendorNotFound(BillPayError):
    def __init__(self, vendor_id: str):
        super().__init__(
            code=ErrorCode.VENDOR_NOT_FOUND,
            message=f"Vendor {vendor_id} not found",
            context={"vendor_id": vendor_id}
        )


class WorkflowNotFound(BillPayError):
    def __init__(self, workflow_id: str):
        super().__init__(
            code=ErrorCode.WORKFLOW_NOT_FOUND,
            message=f"Approval workflow {workflow_id} not found",
            context={"workflow_id": workflow_id}
        )


class PaymentNotFound(BillPayError):
    def __init__(self, reference: str):
        super().__init__(
            code=ErrorCode.PAYMENT_NOT_FOUND,
            message=f"No payment matches '{reference}'",
            context={"reference": reference}
        )


class ValidationFailed(BillPayError):
    """Input violates a record invariant."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.VALIDATION_FAILED,
            message=f"Invalid value for '{field}'",
            detail=detail,
            context={"field": field}
        )


class VendorInactive(BillPayError):
    """Scheduling attempted against a deactivated vendor."""

    def __init__(self, vendor_id: str, status: str, bill_id: Optional[str] = None):
        super().__init__(
            code=ErrorCode.VENDOR_INACTIVE,
            message=f"Vendor {vendor_id} is {status}; payment cannot be scheduled",
            detail="Reactivate the vendor or cancel the bill",
            context={"vendor_id": vendor_id, "vendor_status": status, "bill_id": bill_id}
        )


class NoMatchingWorkflow(BillPayError):
    """Approval is required but no active workflow applies to the bill."""

    def __init__(self, bill_id: str, vendor_category: str, amount: str):
        super().__init__(
            code=ErrorCode.NO_MATCHING_WORKFLOW,
            message=f"No approval workflow matches bill {bill_id}",
            detail="Bill is parked in pending_approval until a workflow is configured and the bill is resubmitted",
            context={"bill_id": bill_id, "vendor_category": vendor_category, "amount": amount}
        )


class InvalidBillTransition(BillPayError, ValueError):
    """Raised when an invalid bill status transition is attempted."""

    def __init__(self, from_state: str, to_state: str, bill_id: Optional[str] = None):
        super().__init__(
            code=ErrorCode.INVALID_BILL_TRANSITION,
            message=f"Invalid transition: {from_state} -> {to_state}",
            context={"from_state": from_state, "to_state": to_state, "bill_id": bill_id}
        )


class BillNotEditable(BillPayError):
    def __init__(self, bill_id: str, status: str):
        super().__init__(
            code=ErrorCode.BILL_NOT_EDITABLE,
            message=f"Bill {bill_id} is {status} and can no longer be edited",
            detail="Only draft or rejected bills can be edited",
            context={"bill_id": bill_id, "status": status}
        )


class ApproverNotAuthorized(BillPayError):
    def __init__(self, approver_id: str, step_index: int, required: list):
        super().__init__(
            code=ErrorCode.APPROVER_NOT_AUTHORIZED,
            message=f"User {approver_id} is not an approver for step {step_index}",
            context={"approver_id": approver_id, "step_index": step_index, "required": required}
        )


class DuplicateApprovalDecision(BillPayError):
    def __init__(self, approver_id: str, step_index: int):
        super().__init__(
            code=ErrorCode.DUPLICATE_APPROVAL_DECISION,
            message=f"User {approver_id} already decided step {step_index}",
            context={"approver_id": approver_id, "step_index": step_index}
        )


class ReviewRequired(BillPayError):
    def __init__(self, bill_id: str):
        super().__init__(
            code=ErrorCode.REVIEW_REQUIRED,
            message=f"Bill {bill_id} needs a human review before submission",
            detail="Extracted data is below the confidence threshold or has no matching vendor",
            context={"bill_id": bill_id}
        )


class StaleApprovalState(BillPayError):
    """Concurrent-write conflict on a BillApproval. Refetch and retry."""

    def __init__(self, bill_id: str, detail: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.STALE_APPROVAL_STATE,
            message=f"Approval state for bill {bill_id} changed; refetch and retry",
            detail=detail,
            context={"bill_id": bill_id, **(context or {})}
        )


class DuplicatePaymentAttempt(BillPayError):
    """A non-terminal payment is already in flight for the bill."""

    def __init__(self, bill_id: str, payment_id: Optional[str] = None):
        super().__init__(
            code=ErrorCode.DUPLICATE_PAYMENT_ATTEMPT,
            message=f"Bill {bill_id} already has a payment in flight",
            context={"bill_id": bill_id, "payment_id": payment_id}
        )


class ApprovedAmountMismatch(BillPayError):
    def __init__(self, bill_id: str, amount: str, approved_amount: Optional[str]):
        super().__init__(
            code=ErrorCode.APPROVED_AMOUNT_MISMATCH,
            message=f"Bill {bill_id} amount changed after approval",
            detail=f"amount={amount} approved_amount={approved_amount}",
            context={"bill_id": bill_id, "amount": amount, "approved_amount": approved_amount}
        )


class InterventionRequired(BillPayError):
    def __init__(self, bill_id: str, reason: Optional[str]):
        super().__init__(
            code=ErrorCode.INTERVENTION_REQUIRED,
            message=f"Bill {bill_id} is flagged for manual intervention",
            detail=reason,
            context={"bill_id": bill_id}
        )


class CancellationNotSupported(BillPayError):
    def __init__(self, bill_id: str, payment_id: str):
        super().__init__(
            code=ErrorCode.CANCELLATION_NOT_SUPPORTED,
            message=f"Bill {bill_id} has a payment with the processor and cannot be cancelled",
            detail="Wait for reconciliation, then handle any reversal externally",
            context={"bill_id": bill_id, "payment_id": payment_id}
        )


class ProcessorSubmissionFailed(BillPayError):
    """Transient processor failure; retried by the scheduler."""

    def __init__(self, payment_id: str, detail: str):
        super().__init__(
            code=ErrorCode.PROCESSOR_SUBMISSION_FAILED,
            message=f"Payment processor rejected submission of {payment_id}",
            detail=detail,
            context={"payment_id": payment_id}
        )


class ReconciliationReplay(BillPayError):
    """Duplicate terminal outcome delivery. Treated as a no-op."""

    def __init__(self, processor_reference: str, status: str):
        super().__init__(
            code=ErrorCode.RECONCILIATION_REPLAY,
            message=f"Outcome '{status}' already applied for {processor_reference}",
            context={"processor_reference": processor_reference, "status": status}
        )


class ReconciliationConflict(BillPayError):
    def __init__(self, processor_reference: str, current: str, incoming: str):
        super().__init__(
            code=ErrorCode.RECONCILIATION_CONFLICT,
            message=f"Payment {processor_reference} is already {current}; refusing '{incoming}'",
            context={"processor_reference": processor_reference, "current": current, "incoming": incoming}
        )


def to_http_exception(error: BillPayError) -> HTTPException:
    """Convert BillPayError to HTTPException."""
    status_map = {
        ErrorCode.BILL_NOT_FOUND: 404,
        ErrorCode.VENDOR_NOT_FOUND: 404,
        ErrorCode.WORKFLOW_NOT_FOUND: 404,
        ErrorCode.PAYMENT_NOT_FOUND: 404,
        ErrorCode.VALIDATION_FAILED: 422,
        ErrorCode.VENDOR_INACTIVE: 422,
        ErrorCode.NO_MATCHING_WORKFLOW: 422,
        ErrorCode.INVALID_BILL_TRANSITION: 409,
        ErrorCode.BILL_NOT_EDITABLE: 409,
        ErrorCode.APPROVER_NOT_AUTHORIZED: 403,
        ErrorCode.DUPLICATE_APPROVAL_DECISION: 409,
        ErrorCode.REVIEW_REQUIRED: 409,
        ErrorCode.APPROVED_AMOUNT_MISMATCH: 409,
        ErrorCode.INTERVENTION_REQUIRED: 409,
        ErrorCode.CANCELLATION_NOT_SUPPORTED: 409,
        ErrorCode.STALE_APPROVAL_STATE: 409,
        ErrorCode.DUPLICATE_PAYMENT_ATTEMPT: 409,
        ErrorCode.RECONCILIATION_REPLAY: 200,
        ErrorCode.RECONCILIATION_CONFLICT: 409,
        ErrorCode.PROCESSOR_SUBMISSION_FAILED: 502,
    }

    return HTTPException(
        status_code=status_map.get(error.code, 500),
        detail=error.to_dict()
    )
