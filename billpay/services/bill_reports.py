"""
Bill reports: CSV export, attention queue, per-bill history.
"""

import csv
import io
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from billpay.core.database import get_db
from billpay.core.models import Bill, BillApproval, BillStatus, Payment, PaymentStatus, Vendor
from billpay.services.bill_state import TERMINAL_STATES
from billpay.services.errors import BillNotFound

logger = logging.getLogger(__name__)

CSV_HEADER = ["Name", "Type", "Amount", "Paid", "Remaining", "Status", "Due Date", "Year", "Quarter"]


def quarter_of(value: date) -> str:
    return f"Q{(value.month - 1) // 3 + 1}"


class BillReportService:
    def __init__(self, db=None):
        self.db = db or get_db()

    def _bills(self, organization_id: str) -> List[Bill]:
        return [Bill.from_row(row) for row in self.db.list_bills(organization_id, limit=100000)]

    def _paid_total(self, bill_id: str) -> Decimal:
        total = Decimal("0.00")
        for row in self.db.list_payments_for_bill(bill_id):
            payment = Payment.from_row(row)
            if payment.status is PaymentStatus.COMPLETED:
                total += payment.amount
        return total

    def export_bills_csv(self, organization_id: str, year: Optional[int] = None) -> str:
        """One row per bill, ordered by due date."""
        vendors = {v["id"]: Vendor.from_row(v) for v in self.db.list_vendors(organization_id)}
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(CSV_HEADER)

        count = 0
        for bill in self._bills(organization_id):
            if year is not None and bill.due_date.year != year:
                continue
            paid = self._paid_total(bill.id)
            vendor = vendors.get(bill.vendor_id)
            writer.writerow([
                vendor.name if vendor else "",
                bill.category,
                f"{bill.amount:.2f}",
                f"{paid:.2f}",
                f"{bill.amount - paid:.2f}",
                bill.status.value,
                bill.due_date.isoformat(),
                bill.due_date.year,
                quarter_of(bill.due_date),
            ])
            count += 1

        logger.info("Exported %s bills for %s (year=%s)", count, organization_id, year)
        return output.getvalue()

    def bills_requiring_attention(self, organization_id: str, today: Optional[date] = None) -> Dict[str, List[Dict[str, Any]]]:
        today = today or datetime.now(timezone.utc).date()
        buckets: Dict[str, List[Dict[str, Any]]] = {
            "overdue": [],
            "pending_approval": [],
            "stuck": [],
            "scheduled_today": [],
            "needs_intervention": [],
            "unconfirmed_payments": [],
            "requires_review": [],
        }
        for bill in self._bills(organization_id):
            data = bill.to_dict()
            if bill.status.value not in TERMINAL_STATES and bill.due_date < today:
                buckets["overdue"].append(data)
            if bill.status is BillStatus.PENDING_APPROVAL:
                buckets["pending_approval"].append(data)
                latest = self.db.get_latest_bill_approval(bill.id)
                if not latest or latest.get("status") != "pending":
                    buckets["stuck"].append(data)
            if bill.status is BillStatus.SCHEDULED:
                if bill.scheduled_date == today:
                    buckets["scheduled_today"].append(data)
                in_flight = self.db.get_in_flight_payment(bill.id)
                if (
                    in_flight
                    and in_flight["status"] == PaymentStatus.PROCESSING.value
                    and not in_flight.get("processor_reference")
                ):
                    buckets["unconfirmed_payments"].append(data)
            if bill.needs_intervention:
                buckets["needs_intervention"].append(data)
            if bill.requires_review:
                buckets["requires_review"].append(data)
        return buckets

    def bill_history(self, organization_id: str, bill_id: str) -> Dict[str, Any]:
        row = self.db.get_bill(organization_id, bill_id)
        if not row:
            raise BillNotFound(bill_id)
        approvals = [
            BillApproval.from_row(a, self.db.list_approval_steps(a["id"])).to_dict()
            for a in self.db.list_bill_approvals(bill_id)
        ]
        return {
            "bill": Bill.from_row(row).to_dict(),
            "approvals": approvals,
            "payments": [Payment.from_row(p).to_dict() for p in self.db.list_payments_for_bill(bill_id)],
            "events": self.db.list_audit_events(bill_id),
        }
