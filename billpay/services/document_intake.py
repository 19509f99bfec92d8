"""
Document intake

Turns OCR output into draft bills. Extraction itself happens upstream; this
module receives the structured result plus a confidence score.

Low-confidence extractions and bills whose vendor could not be matched are
held as drafts flagged ``requires_review``. Everything else is submitted
for approval straight away.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from billpay.core.database import RowUpdate, StaleRowError, UniqueConflict, get_db, new_id
from billpay.core.models import Bill, BillStatus, Document, ExtractedBillData, Vendor
from billpay.core.org_config import BillPayConfig, get_config
from billpay.services.approval_engine import ApprovalEngine
from billpay.services.bill_state import audit_payload
from billpay.services.errors import BillPayError, StaleApprovalState, ValidationFailed

logger = logging.getLogger(__name__)


class DocumentIntakeService:
    def __init__(self, db=None, engine: Optional[ApprovalEngine] = None, config: Optional[BillPayConfig] = None):
        self.db = db or get_db()
        self.engine = engine or ApprovalEngine(db=self.db)
        self.config = config or get_config()

    def _existing(self, organization_id: str, document_id: str) -> Optional[Dict[str, Any]]:
        bill_row = self.db.get_bill_by_document(organization_id, document_id)
        if not bill_row:
            return None
        doc_row = self.db.get_document(organization_id, document_id)
        return {
            "duplicate": True,
            "bill": Bill.from_row(bill_row).to_dict(),
            "document": Document.from_row(doc_row).to_dict() if doc_row else None,
            "submission": None,
            "submission_error": None,
        }

    def ingest_document(self, organization_id: str, actor_id: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        document_id = payload.get("document_id") or new_id("DOC")
        existing = self._existing(organization_id, document_id)
        if existing:
            logger.info("Document %s already ingested as bill %s", document_id, existing["bill"]["id"])
            return existing

        try:
            data = ExtractedBillData.from_dict(payload.get("extracted_data") or {})
        except ValueError as exc:
            raise ValidationFailed("extracted_data", str(exc))
        try:
            confidence = float(payload.get("confidence", 0))
        except (TypeError, ValueError):
            raise ValidationFailed("confidence", "Confidence must be a number")
        if not 0.0 <= confidence <= 1.0:
            raise ValidationFailed("confidence", "Confidence must be within [0, 1]")
        if data.amount is None or data.amount <= 0:
            raise ValidationFailed("amount", "Extracted amount must be greater than zero")

        vendor = None
        if data.vendor_name:
            row = self.db.find_vendor_by_name(organization_id, data.vendor_name.strip())
            vendor = Vendor.from_row(row) if row else None

        review_reasons: List[str] = []
        if confidence < self.config.ocr_confidence_threshold:
            review_reasons.append(
                f"confidence {confidence:.2f} below {self.config.ocr_confidence_threshold:.2f}"
            )
        if vendor is None:
            review_reasons.append(f"no vendor matches '{data.vendor_name or ''}'")

        due_date = data.due_date
        if due_date is None:
            base = data.issue_date or datetime.now(timezone.utc).date()
            due_date = base + timedelta(days=self.config.default_payment_terms_days)

        metadata: Dict[str, Any] = {
            "source": "document",
            "line_items": [item.to_dict() for item in data.line_items],
            "extracted_vendor_name": data.vendor_name,
        }
        if review_reasons:
            metadata["review_reasons"] = review_reasons
        if data.issue_date and data.issue_date > due_date:
            logger.warning("Document %s issue date is after its due date", document_id)
            metadata["date_warning"] = (
                f"issue_date {data.issue_date.isoformat()} is after due_date {due_date.isoformat()}"
            )

        bill_insert = self.db.bill_insert({
            "organization_id": organization_id,
            "vendor_id": vendor.id if vendor else None,
            "amount": data.amount,
            "currency": data.currency or (vendor.currency if vendor else "USD"),
            "issue_date": data.issue_date,
            "due_date": due_date,
            "category": data.category or (vendor.category if vendor else "other"),
            "description": data.description or "",
            "invoice_number": data.invoice_number,
            "status": BillStatus.DRAFT,
            "document_id": document_id,
            "requires_review": bool(review_reasons),
            "created_by": actor_id,
            "metadata": metadata,
        })
        bill_id = bill_insert.values["id"]
        try:
            self.db.commit_changes(inserts=[
                self.db.document_insert({
                    "id": document_id,
                    "organization_id": organization_id,
                    "extracted_data": data.to_dict(),
                    "confidence": confidence,
                    "bill_id": bill_id,
                    "created_by": actor_id,
                }),
                bill_insert,
                self.db.audit_insert(audit_payload(
                    bill_insert.values, "bill_ingested", None, BillStatus.DRAFT.value,
                    actor_type="user" if actor_id else "system", actor_id=actor_id,
                    payload={"document_id": document_id, "confidence": confidence, "review_reasons": review_reasons},
                )),
            ])
        except UniqueConflict:
            existing = self._existing(organization_id, document_id)
            if existing:
                return existing
            raise ValidationFailed("document_id", f"Document {document_id} already exists")

        logger.info(
            "Ingested document %s as bill %s (confidence=%.2f, review=%s)",
            document_id, bill_id, confidence, bool(review_reasons),
        )

        submission = None
        submission_error = None
        if not review_reasons:
            try:
                submission = self.engine.submit_bill(organization_id, bill_id, actor_id)
            except BillPayError as exc:
                submission_error = exc.to_dict()

        return {
            "duplicate": False,
            "bill": self.engine.get_bill(organization_id, bill_id).to_dict(),
            "document": Document.from_row(self.db.get_document(organization_id, document_id)).to_dict(),
            "submission": submission,
            "submission_error": submission_error,
        }

    def complete_review(
        self,
        organization_id: str,
        bill_id: str,
        actor_id: str,
        vendor_id: Optional[str] = None,
        **changes,
    ) -> Dict[str, Any]:
        """Apply reviewer corrections, clear the review flag, and submit."""
        bill = self.engine.get_bill(organization_id, bill_id)
        if not bill.requires_review:
            raise ValidationFailed("requires_review", f"Bill {bill_id} is not awaiting review")
        vendor_id = vendor_id or bill.vendor_id
        if not vendor_id:
            raise ValidationFailed("vendor_id", "A vendor must be assigned before submission")

        bill = self.engine.edit_bill(organization_id, bill_id, actor_id, vendor_id=vendor_id, **changes)
        metadata = dict(bill.metadata)
        metadata.pop("review_reasons", None)
        metadata["reviewed_by"] = actor_id
        try:
            self.db.commit_changes(
                updates=[RowUpdate("bills", bill.id, {"requires_review": False, "metadata": metadata}, bill.version)],
                inserts=[self.db.audit_insert(audit_payload(
                    bill.to_dict(), "review_completed", bill.status.value, bill.status.value,
                    actor_type="user", actor_id=actor_id,
                    payload={"fields": sorted(changes), "vendor_id": vendor_id},
                ))],
            )
        except StaleRowError:
            raise StaleApprovalState(bill.id, "Bill changed during review")
        return self.engine.submit_bill(organization_id, bill_id, actor_id)
