"""
Approval Workflow Resolver

Decides how a bill gets approved:
- Auto-pay vendors below their approval threshold skip approval entirely
- Otherwise the active workflow with the largest amount threshold that the
  bill meets, restricted to workflows covering the vendor's category
- No applicable workflow either auto-pays (vendor does not require
  approval) or is reported so an operator can configure one
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from billpay.core.database import get_db
from billpay.core.models import ApprovalWorkflow, Bill, Vendor

logger = logging.getLogger(__name__)


class ResolutionKind(Enum):
    AUTO_PAY = "auto_pay"
    REQUIRES_WORKFLOW = "requires_workflow"
    NO_MATCHING_WORKFLOW = "no_matching_workflow"


@dataclass(frozen=True)
class ResolutionOutcome:
    kind: ResolutionKind
    workflow: Optional[ApprovalWorkflow] = None

    @property
    def workflow_id(self) -> Optional[str]:
        return self.workflow.id if self.workflow else None


def _candidate_key(workflow: ApprovalWorkflow, category: str):
    # Largest threshold first, category-specific before catch-all, then oldest, then id.
    names_category = 0 if category in workflow.vendor_categories else 1
    return (-workflow.amount_threshold, names_category, workflow.created_at or "", workflow.id)


def resolve(bill: Bill, vendor: Vendor, workflows: Iterable[ApprovalWorkflow]) -> ResolutionOutcome:
    """Pick the approval route for ``bill``. Pure; no I/O."""
    if vendor.auto_pay and bill.amount < vendor.approval_threshold:
        return ResolutionOutcome(ResolutionKind.AUTO_PAY)

    candidates: List[ApprovalWorkflow] = [
        wf for wf in workflows
        if wf.is_active
        and wf.applies_to_category(vendor.category)
        and wf.amount_threshold <= bill.amount
    ]
    if candidates:
        chosen = min(candidates, key=lambda wf: _candidate_key(wf, vendor.category))
        return ResolutionOutcome(ResolutionKind.REQUIRES_WORKFLOW, chosen)

    if vendor.approval_required:
        return ResolutionOutcome(ResolutionKind.NO_MATCHING_WORKFLOW)
    return ResolutionOutcome(ResolutionKind.AUTO_PAY)


class WorkflowResolver:
    """Loads an organization's active workflows and resolves a bill against them."""

    def __init__(self, db=None):
        self.db = db or get_db()

    def active_workflows(self, organization_id: str) -> List[ApprovalWorkflow]:
        rows = self.db.list_workflows(organization_id, active_only=True)
        return [ApprovalWorkflow.from_row(row) for row in rows]

    def resolve(self, bill: Bill, vendor: Vendor) -> ResolutionOutcome:
        outcome = resolve(bill, vendor, self.active_workflows(bill.organization_id))
        logger.info(
            "Resolved bill %s (amount=%s, category=%s): %s %s",
            bill.id, bill.amount, vendor.category, outcome.kind.value, outcome.workflow_id or "",
        )
        return outcome
