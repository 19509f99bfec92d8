"""
Vendor and approval workflow endpoints.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from billpay.core.auth import CallerIdentity, get_caller
from billpay.di.container import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(tags=["vendors"])


class VendorRequest(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    category: str = "other"
    payment_terms: int = 30
    auto_pay: bool = False
    approval_required: bool = True
    approval_threshold: Decimal = Decimal("0")
    payment_methods: List[str] = Field(default_factory=lambda: ["ach"])
    preferred_payment_method: str = "ach"
    currency: str = "USD"


class VendorUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    category: Optional[str] = None
    payment_terms: Optional[int] = None
    auto_pay: Optional[bool] = None
    approval_required: Optional[bool] = None
    approval_threshold: Optional[Decimal] = None
    payment_methods: Optional[List[str]] = None
    preferred_payment_method: Optional[str] = None
    currency: Optional[str] = None


class DeactivateRequest(BaseModel):
    reason: Optional[str] = None


class WorkflowRequest(BaseModel):
    name: str
    description: Optional[str] = None
    amount_threshold: Decimal = Decimal("0")
    vendor_categories: List[str] = Field(default_factory=list)
    required_approvers: List[Any]
    is_active: bool = True


class WorkflowUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    amount_threshold: Optional[Decimal] = None
    vendor_categories: Optional[List[str]] = None
    required_approvers: Optional[List[Any]] = None
    is_active: Optional[bool] = None


# ==================== VENDORS ====================

@router.post("/vendors")
def add_vendor(
    request: VendorRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    vendor = services.vendors().add_vendor(caller.organization_id, request.model_dump(exclude_none=True))
    return {"vendor": vendor.to_dict()}


@router.get("/vendors")
def list_vendors(
    status: Optional[str] = None,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    vendors: List[Dict[str, Any]] = [
        v.to_dict() for v in services.vendors().list_vendors(caller.organization_id, status)
    ]
    return {"vendors": vendors, "count": len(vendors)}


@router.get("/vendors/{vendor_id}")
def get_vendor(
    vendor_id: str,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    return {"vendor": services.vendors().get_vendor(caller.organization_id, vendor_id).to_dict()}


@router.patch("/vendors/{vendor_id}")
def update_vendor(
    vendor_id: str,
    request: VendorUpdateRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    changes = request.model_dump(exclude_unset=True)
    vendor = services.vendors().update_vendor(caller.organization_id, vendor_id, **changes)
    return {"vendor": vendor.to_dict()}


@router.post("/vendors/{vendor_id}/deactivate")
def deactivate_vendor(
    vendor_id: str,
    request: Optional[DeactivateRequest] = None,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    """Existing bills are left alone; scheduling against this vendor fails until reactivated."""
    reason = request.reason if request else ""
    vendor = services.vendors().deactivate_vendor(caller.organization_id, vendor_id, reason or "")
    return {"vendor": vendor.to_dict()}


@router.post("/vendors/{vendor_id}/activate")
def activate_vendor(
    vendor_id: str,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    return {"vendor": services.vendors().activate_vendor(caller.organization_id, vendor_id).to_dict()}


# ==================== APPROVAL WORKFLOWS ====================

@router.post("/workflows")
def create_workflow(
    request: WorkflowRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    workflow = services.vendors().create_workflow(caller.organization_id, request.model_dump(exclude_none=True))
    return {"workflow": workflow.to_dict()}


@router.get("/workflows")
def list_workflows(
    active_only: bool = False,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    workflows = [w.to_dict() for w in services.vendors().list_workflows(caller.organization_id, active_only)]
    return {"workflows": workflows, "count": len(workflows)}


@router.get("/workflows/{workflow_id}")
def get_workflow(
    workflow_id: str,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    return {"workflow": services.vendors().get_workflow(caller.organization_id, workflow_id).to_dict()}


@router.patch("/workflows/{workflow_id}")
def update_workflow(
    workflow_id: str,
    request: WorkflowUpdateRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    changes = request.model_dump(exclude_unset=True)
    workflow = services.vendors().update_workflow(caller.organization_id, workflow_id, **changes)
    return {"workflow": workflow.to_dict()}


@router.post("/workflows/{workflow_id}/deactivate")
def deactivate_workflow(
    workflow_id: str,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_container),
):
    workflow = services.vendors().deactivate_workflow(caller.organization_id, workflow_id)
    return {"workflow": workflow.to_dict()}
