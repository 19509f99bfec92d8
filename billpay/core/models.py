"""
Bill Pay domain records.

Vendors, bills, source documents, approval workflows, per-bill approval
instances and payment attempts. Every status is a closed Enum; rows coming
back from the database are dicts and are hydrated with ``from_row``.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional


CENT = Decimal("0.01")


class VendorStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    SUSPENDED = "suspended"


class BillStatus(str, Enum):
    """Bill lifecycle states."""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    SCHEDULED = "scheduled"
    PAID = "paid"
    CANCELLED = "cancelled"


class BillPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class PaymentMethod(str, Enum):
    ACH = "ach"
    WIRE = "wire"
    CHECK = "check"
    CREDIT_CARD = "credit_card"
    PAYPAL = "paypal"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.FAILED)


IN_FLIGHT_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ActorType(str, Enum):
    USER = "user"
    SYSTEM = "system"
    PROCESSOR = "processor"


# ----------------------------------------------------------------------
# Value helpers
# ----------------------------------------------------------------------

def to_money(value: Any) -> Decimal:
    """Coerce a number/str to a 2dp Decimal."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _opt_money(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_money(value)


def _opt_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _json_list(raw: Any) -> List[Any]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return raw
    try:
        decoded = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return []
    return decoded if isinstance(decoded, list) else []


def _json_dict(raw: Any) -> Dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        decoded = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------

@dataclass
class Vendor:
    """Organization-scoped payee."""
    id: str
    organization_id: str
    name: str
    category: str = "other"
    email: Optional[str] = None
    phone: Optional[str] = None
    payment_terms: int = 30  # net days
    auto_pay: bool = False
    approval_required: bool = True
    approval_threshold: Decimal = Decimal("0.00")
    payment_methods: List[PaymentMethod] = field(default_factory=list)
    preferred_payment_method: PaymentMethod = PaymentMethod.ACH
    currency: str = "USD"
    status: VendorStatus = VendorStatus.ACTIVE
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status is VendorStatus.ACTIVE

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Vendor":
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            category=row.get("category") or "other",
            email=row.get("email"),
            phone=row.get("phone"),
            payment_terms=int(row.get("payment_terms") or 0),
            auto_pay=bool(row.get("auto_pay")),
            approval_required=bool(row.get("approval_required")),
            approval_threshold=to_money(row.get("approval_threshold") or 0),
            payment_methods=[PaymentMethod(m) for m in _json_list(row.get("payment_methods"))],
            preferred_payment_method=PaymentMethod(row.get("preferred_payment_method") or "ach"),
            currency=row.get("currency") or "USD",
            status=VendorStatus(row.get("status") or "active"),
            version=int(row.get("version") or 0),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "category": self.category,
            "email": self.email,
            "phone": self.phone,
            "payment_terms": self.payment_terms,
            "auto_pay": self.auto_pay,
            "approval_required": self.approval_required,
            "approval_threshold": str(self.approval_threshold),
            "payment_methods": [m.value for m in self.payment_methods],
            "preferred_payment_method": self.preferred_payment_method.value,
            "currency": self.currency,
            "status": self.status.value,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Bill:
    """An obligation to pay a vendor."""
    id: str
    organization_id: str
    vendor_id: Optional[str]
    amount: Decimal
    due_date: date
    currency: str = "USD"
    issue_date: Optional[date] = None
    category: str = "other"
    description: str = ""
    invoice_number: Optional[str] = None
    status: BillStatus = BillStatus.DRAFT
    priority: BillPriority = BillPriority.MEDIUM
    scheduled_date: Optional[date] = None
    paid_date: Optional[datetime] = None
    document_id: Optional[str] = None
    approved_amount: Optional[Decimal] = None
    requires_review: bool = False
    needs_intervention: bool = False
    intervention_reason: Optional[str] = None
    last_error: Optional[str] = None
    created_by: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Bill":
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            vendor_id=row.get("vendor_id"),
            amount=to_money(row["amount"]),
            due_date=parse_date(row["due_date"]),
            currency=row.get("currency") or "USD",
            issue_date=parse_date(row.get("issue_date")),
            category=row.get("category") or "other",
            description=row.get("description") or "",
            invoice_number=row.get("invoice_number"),
            status=BillStatus(row["status"]),
            priority=BillPriority(row.get("priority") or "medium"),
            scheduled_date=parse_date(row.get("scheduled_date")),
            paid_date=parse_datetime(row.get("paid_date")),
            document_id=row.get("document_id"),
            approved_amount=_opt_money(row.get("approved_amount")),
            requires_review=bool(row.get("requires_review")),
            needs_intervention=bool(row.get("needs_intervention")),
            intervention_reason=row.get("intervention_reason"),
            last_error=row.get("last_error"),
            created_by=row.get("created_by"),
            metadata=_json_dict(row.get("metadata")),
            version=int(row.get("version") or 0),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "vendor_id": self.vendor_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "issue_date": _iso(self.issue_date),
            "due_date": _iso(self.due_date),
            "category": self.category,
            "description": self.description,
            "invoice_number": self.invoice_number,
            "status": self.status.value,
            "priority": self.priority.value,
            "scheduled_date": _iso(self.scheduled_date),
            "paid_date": _iso(self.paid_date),
            "document_id": self.document_id,
            "approved_amount": str(self.approved_amount) if self.approved_amount is not None else None,
            "requires_review": self.requires_review,
            "needs_intervention": self.needs_intervention,
            "intervention_reason": self.intervention_reason,
            "last_error": self.last_error,
            "created_by": self.created_by,
            "metadata": self.metadata,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class LineItem:
    description: str
    amount: Decimal
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "amount": str(self.amount),
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "unit_price": str(self.unit_price) if self.unit_price is not None else None,
        }


@dataclass
class ExtractedBillData:
    """Structured output of the external OCR/extraction step."""
    vendor_name: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    due_date: Optional[date] = None
    issue_date: Optional[date] = None
    invoice_number: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    line_items: List[LineItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractedBillData":
        return cls(
            vendor_name=data.get("vendor_name"),
            amount=_opt_money(data.get("amount")),
            currency=data.get("currency") or None,
            due_date=parse_date(data.get("due_date")),
            issue_date=parse_date(data.get("issue_date")),
            invoice_number=data.get("invoice_number"),
            description=data.get("description"),
            category=data.get("category"),
            line_items=[
                LineItem(
                    description=item.get("description", ""),
                    amount=to_money(item.get("amount") or 0),
                    quantity=_opt_decimal(item.get("quantity")),
                    unit_price=_opt_money(item.get("unit_price")),
                )
                for item in data.get("line_items") or []
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_name": self.vendor_name,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "due_date": _iso(self.due_date),
            "issue_date": _iso(self.issue_date),
            "invoice_number": self.invoice_number,
            "description": self.description,
            "category": self.category,
            "line_items": [item.to_dict() for item in self.line_items],
        }


@dataclass
class Document:
    """Scanned source artifact. Read-only once processed."""
    id: str
    organization_id: str
    extracted_data: ExtractedBillData
    confidence: float
    bill_id: Optional[str] = None
    status: str = "processed"
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Document":
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            extracted_data=ExtractedBillData.from_dict(_json_dict(row.get("extracted_data"))),
            confidence=float(row.get("confidence") or 0),
            bill_id=row.get("bill_id"),
            status=row.get("status") or "processed",
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "extracted_data": self.extracted_data.to_dict(),
            "confidence": self.confidence,
            "bill_id": self.bill_id,
            "status": self.status,
            "created_at": self.created_at,
        }


@dataclass
class ApprovalWorkflow:
    """Reusable approval policy.

    ``required_approvers`` is ordered: one entry per step, each entry the
    list of approver ids or role names that must all approve that step.
    """
    id: str
    organization_id: str
    name: str
    amount_threshold: Decimal
    required_approvers: List[List[str]]
    vendor_categories: List[str] = field(default_factory=list)
    description: str = ""
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def applies_to_category(self, category: str) -> bool:
        return not self.vendor_categories or category in self.vendor_categories

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ApprovalWorkflow":
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            amount_threshold=to_money(row.get("amount_threshold") or 0),
            required_approvers=[list(step) for step in _json_list(row.get("required_approvers"))],
            vendor_categories=list(_json_list(row.get("vendor_categories"))),
            description=row.get("description") or "",
            is_active=bool(row.get("is_active")),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "amount_threshold": str(self.amount_threshold),
            "vendor_categories": self.vendor_categories,
            "required_approvers": self.required_approvers,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class ApprovalStepRecord:
    """One entry of a BillApproval's append-only decision log."""
    id: str
    approval_id: str
    step_index: int
    approver_id: str
    decision: ApprovalDecision
    comment: Optional[str] = None
    satisfies: Optional[str] = None  # which required approver entry this decision fills
    decided_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ApprovalStepRecord":
        return cls(
            id=row["id"],
            approval_id=row["approval_id"],
            step_index=int(row["step_index"]),
            approver_id=row["approver_id"],
            decision=ApprovalDecision(row["decision"]),
            comment=row.get("comment"),
            satisfies=row.get("satisfies"),
            decided_at=row.get("decided_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "step_index": self.step_index,
            "approver_id": self.approver_id,
            "decision": self.decision.value,
            "comment": self.comment,
            "satisfies": self.satisfies,
            "decided_at": self.decided_at,
        }


@dataclass
class BillApproval:
    """A workflow instance applied to one bill."""
    id: str
    bill_id: str
    workflow_id: str
    organization_id: str
    required_approvers: List[List[str]]
    current_step: int = 0
    status: ApprovalStatus = ApprovalStatus.PENDING
    approved_amount: Optional[Decimal] = None
    requested_by: Optional[str] = None
    steps: List[ApprovalStepRecord] = field(default_factory=list)
    version: int = 0
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def total_steps(self) -> int:
        return len(self.required_approvers)

    def decisions_for_step(self, step_index: int) -> List[ApprovalStepRecord]:
        return [s for s in self.steps if s.step_index == step_index]

    @classmethod
    def from_row(cls, row: Dict[str, Any], steps: Optional[List[Dict[str, Any]]] = None) -> "BillApproval":
        return cls(
            id=row["id"],
            bill_id=row["bill_id"],
            workflow_id=row["workflow_id"],
            organization_id=row["organization_id"],
            required_approvers=[list(step) for step in _json_list(row.get("required_approvers"))],
            current_step=int(row.get("current_step") or 0),
            status=ApprovalStatus(row.get("status") or "pending"),
            approved_amount=_opt_money(row.get("approved_amount")),
            requested_by=row.get("requested_by"),
            steps=[ApprovalStepRecord.from_row(s) for s in steps or []],
            version=int(row.get("version") or 0),
            created_at=row.get("created_at"),
            completed_at=row.get("completed_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bill_id": self.bill_id,
            "workflow_id": self.workflow_id,
            "organization_id": self.organization_id,
            "required_approvers": self.required_approvers,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "status": self.status.value,
            "approved_amount": str(self.approved_amount) if self.approved_amount is not None else None,
            "requested_by": self.requested_by,
            "steps": [s.to_dict() for s in self.steps],
            "version": self.version,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


@dataclass
class Payment:
    """One attempt to transfer funds for a bill."""
    id: str
    bill_id: str
    organization_id: str
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    scheduled_date: Optional[date] = None
    processor_reference: Optional[str] = None
    processed_date: Optional[datetime] = None
    fees: Decimal = Decimal("0.00")
    exchange_rate: Optional[Decimal] = None
    attempt_count: int = 0
    next_attempt_at: Optional[str] = None
    claimed_at: Optional[str] = None
    failure_reason: Optional[str] = None
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Payment":
        return cls(
            id=row["id"],
            bill_id=row["bill_id"],
            organization_id=row["organization_id"],
            amount=to_money(row["amount"]),
            currency=row.get("currency") or "USD",
            payment_method=PaymentMethod(row.get("payment_method") or "ach"),
            status=PaymentStatus(row["status"]),
            scheduled_date=parse_date(row.get("scheduled_date")),
            processor_reference=row.get("processor_reference"),
            processed_date=parse_datetime(row.get("processed_date")),
            fees=to_money(row.get("fees") or 0),
            exchange_rate=_opt_decimal(row.get("exchange_rate")),
            attempt_count=int(row.get("attempt_count") or 0),
            next_attempt_at=row.get("next_attempt_at"),
            claimed_at=row.get("claimed_at"),
            failure_reason=row.get("failure_reason"),
            version=int(row.get("version") or 0),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bill_id": self.bill_id,
            "organization_id": self.organization_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "payment_method": self.payment_method.value,
            "status": self.status.value,
            "scheduled_date": _iso(self.scheduled_date),
            "processor_reference": self.processor_reference,
            "processed_date": _iso(self.processed_date),
            "fees": str(self.fees),
            "exchange_rate": str(self.exchange_rate) if self.exchange_rate is not None else None,
            "attempt_count": self.attempt_count,
            "next_attempt_at": self.next_attempt_at,
            "claimed_at": self.claimed_at,
            "failure_reason": self.failure_reason,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
