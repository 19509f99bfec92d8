"""
Bill API Endpoints

Bill lifecycle for an organization:
- draft create / edit / delete
- submit for approval, approver decisions, cancellation
- document intake and review completion
- attention queue, history, CSV export
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from billpay.core.auth import CallerIdentity, get_caller
from billpay.core.models import Bill
from billpay.di.container import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bills", tags=["bills"])


# ============================================================================
# REQUEST MODELS
# ============================================================================

class CreateBillRequest(BaseModel):
    vendor_id: str
    amount: Decimal
    due_date: Optional[date] = None
    issue_date: Optional[date] = None
    currency: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    invoice_number: Optional[str] = None
    priority: Optional[str] = None
    scheduled_date: Optional[date] = None
    metadata: Optional[Dict[str, Any]] = None
    submit: bool = False


class UpdateBillRequest(BaseModel):
    vendor_id: Optional[str] = None
    amount: Optional[Decimal] = None
    due_date: Optional[date] = None
    issue_date: Optional[date] = None
    currency: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    invoice_number: Optional[str] = None
    priority: Optional[str] = None
    scheduled_date: Optional[date] = None
    metadata: Optional[Dict[str, Any]] = None


class DecisionRequest(BaseModel):
    decision: str  # approve | reject
    comment: Optional[str] = None
    expected_step: Optional[int] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class CompleteReviewRequest(UpdateBillRequest):
    pass


class DocumentRequest(BaseModel):
    document_id: Optional[str] = None
    extracted_data: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = 0.0


# ============================================================================
# API ENDPOINTS
# ============================================================================

@router.post("")
def create_bill(
    request: CreateBillRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    """Create a draft bill; ``submit=true`` also routes it for approval."""
    payload = request.model_dump(exclude={"submit"}, exclude_none=True)
    bill = services.engine().create_bill(caller.organization_id, caller.user_id, payload)
    if request.submit:
        return services.engine().submit_bill(caller.organization_id, bill.id, caller.user_id)
    return {"outcome": "draft", "bill": bill.to_dict(), "approval": None, "scheduling_error": None}


@router.get("")
def list_bills(
    status: Optional[str] = None,
    limit: int = Query(500, ge=1, le=5000),
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    rows = services.db().list_bills(caller.organization_id, status=status, limit=limit)
    bills: List[Dict[str, Any]] = [Bill.from_row(row).to_dict() for row in rows]
    return {"bills": bills, "count": len(bills)}


@router.get("/attention")
def bills_requiring_attention(
    today: Optional[date] = None,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    return services.reports().bills_requiring_attention(caller.organization_id, today)


@router.get("/export.csv")
def export_bills_csv(
    year: Optional[int] = None,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    content = services.reports().export_bills_csv(caller.organization_id, year)
    filename = f"bills-{year}.csv" if year else "bills.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.post("/documents")
def ingest_document(
    request: DocumentRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    """Create a bill from OCR output."""
    return services.intake().ingest_document(caller.organization_id, caller.user_id, request.model_dump())


@router.get("/{bill_id}")
def get_bill(
    bill_id: str,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    engine = services.engine()
    bill = engine.get_bill(caller.organization_id, bill_id)
    approval = engine.get_active_approval(bill_id)
    return {"bill": bill.to_dict(), "approval": approval.to_dict() if approval else None}


@router.patch("/{bill_id}")
def edit_bill(
    bill_id: str,
    request: UpdateBillRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    changes = request.model_dump(exclude_unset=True)
    bill = services.engine().edit_bill(caller.organization_id, bill_id, caller.user_id, **changes)
    return {"bill": bill.to_dict()}


@router.delete("/{bill_id}")
def delete_draft(
    bill_id: str,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    services.engine().delete_draft(caller.organization_id, bill_id)
    return {"deleted": bill_id}


@router.post("/{bill_id}/submit")
def submit_bill(
    bill_id: str,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    return services.engine().submit_bill(caller.organization_id, bill_id, caller.user_id)


@router.post("/{bill_id}/decisions")
def record_decision(
    bill_id: str,
    request: DecisionRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    return services.engine().record_approval_decision(
        caller.organization_id,
        bill_id,
        caller.user_id,
        request.decision,
        comment=request.comment,
        approver_roles=caller.roles,
        expected_step=request.expected_step,
    )


@router.post("/{bill_id}/cancel")
def cancel_bill(
    bill_id: str,
    request: Optional[CancelRequest] = None,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    reason = request.reason if request else None
    bill = services.engine().cancel_bill(caller.organization_id, bill_id, caller.user_id, reason)
    return {"bill": bill.to_dict()}


@router.post("/{bill_id}/release-intervention")
def release_intervention(
    bill_id: str,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    bill = services.scheduler().release_intervention(caller.organization_id, bill_id, caller.user_id)
    return {"bill": bill.to_dict()}


@router.post("/{bill_id}/complete-review")
def complete_review(
    bill_id: str,
    request: CompleteReviewRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    changes = request.model_dump(exclude_unset=True)
    vendor_id = changes.pop("vendor_id", None)
    return services.intake().complete_review(
        caller.organization_id, bill_id, caller.user_id, vendor_id=vendor_id, **changes
    )


@router.get("/{bill_id}/history")
def bill_history(
    bill_id: str,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    return services.reports().bill_history(caller.organization_id, bill_id)
