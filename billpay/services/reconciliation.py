"""
Payment Reconciliation

Applies terminal processor outcomes to payments and their bills:
- completed: payment completed, bill paid (one transaction)
- failed: payment failed, bill back to approved so a new attempt can be made

Outcomes arrive from the processor webhook or from ``ReconciliationPoller``.
Both deliver at-least-once, so a repeated outcome is a no-op.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from billpay.core.database import RowUpdate, StaleRowError, get_db
from billpay.core.models import Bill, BillStatus, Payment, PaymentStatus
from billpay.core.org_config import get_config
from billpay.services.bill_state import assert_valid_transition, audit_payload
from billpay.services.errors import (
    PaymentNotFound,
    ReconciliationConflict,
    ReconciliationReplay,
    ValidationFailed,
)
from billpay.services.logging import log_error, log_transition
from billpay.services.notifications import get_notification_service
from billpay.services.payment_processor import get_processor

logger = logging.getLogger(__name__)

MAX_CAS_RETRIES = 3


def _parse_outcome(outcome) -> PaymentStatus:
    try:
        status = outcome if isinstance(outcome, PaymentStatus) else PaymentStatus(str(outcome).strip().lower())
    except ValueError:
        raise ValidationFailed("outcome", f"Unknown outcome '{outcome}'")
    if not status.is_terminal:
        raise ValidationFailed("outcome", "Outcome must be 'completed' or 'failed'")
    return status


class PaymentReconciler:
    """Applies processor outcomes keyed by processor reference."""

    def __init__(self, db=None, notifier=None, clock: Optional[Callable[[], datetime]] = None):
        self.db = db or get_db()
        self.notifier = notifier or get_notification_service()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def reconcile(
        self,
        processor_reference: str,
        outcome,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        status = _parse_outcome(outcome)
        for _ in range(MAX_CAS_RETRIES):
            row = self.db.get_payment_by_reference(processor_reference)
            if row is None:
                raise PaymentNotFound(processor_reference)
            payment = Payment.from_row(row)

            if payment.status.is_terminal:
                if payment.status == status:
                    replay = ReconciliationReplay(processor_reference, status.value)
                    logger.info("%s (payment %s)", replay.message, payment.id)
                    return {"applied": False, "replay": True, "payment": payment.to_dict()}
                raise ReconciliationConflict(processor_reference, payment.status.value, status.value)

            try:
                return self._apply(payment, status, reason)
            except StaleRowError:
                logger.info("Concurrent update on payment %s; re-reading", payment.id)
        raise ReconciliationConflict(processor_reference, "changing", status.value)

    def _apply(self, payment: Payment, status: PaymentStatus, reason: Optional[str]) -> Dict[str, Any]:
        bill = Bill.from_row(self.db.get_bill(payment.organization_id, payment.bill_id))
        now = self.clock()
        if status is PaymentStatus.COMPLETED:
            target = BillStatus.PAID
            payment_fields = {"status": status, "processed_date": now, "failure_reason": None}
            bill_fields = {"status": target, "paid_date": now, "last_error": None}
        else:
            target = BillStatus.APPROVED
            failure = reason or "Processor reported failure"
            payment_fields = {"status": status, "processed_date": now, "failure_reason": failure}
            bill_fields = {"status": target, "scheduled_date": None, "last_error": failure}
        assert_valid_transition(bill.status, target, bill.id)

        bill_dict = bill.to_dict()
        self.db.commit_changes(
            updates=[
                RowUpdate("payments", payment.id, payment_fields, payment.version),
                RowUpdate("bills", bill.id, bill_fields, bill.version),
            ],
            inserts=[
                self.db.audit_insert(audit_payload(
                    bill_dict,
                    f"payment_{status.value}",
                    bill.status.value,
                    target.value,
                    actor_type="processor",
                    payload={
                        "payment_id": payment.id,
                        "processor_reference": payment.processor_reference,
                        "reason": reason,
                    },
                    idempotency_key=f"reconcile:{payment.processor_reference}:{status.value}",
                )),
            ],
        )
        log_transition(bill.id, bill.status.value, target.value, payment_id=payment.id)
        self.notifier.notify_status_change(bill_dict, bill.status.value, target.value)
        if status is PaymentStatus.FAILED:
            self.notifier.send_operator_alert("payment_failed", bill_dict, payment_fields["failure_reason"])

        updated = self.db.get_payment(payment.id)
        return {"applied": True, "replay": False, "payment": Payment.from_row(updated).to_dict()}


class ReconciliationPoller:
    """Polls the processor for payments still processing and reconciles terminal ones."""

    def __init__(self, db=None, processor=None, reconciler=None, interval: Optional[float] = None):
        config = get_config()
        self.db = db or get_db()
        self.processor = processor or get_processor()
        self.reconciler = reconciler or PaymentReconciler(db=self.db)
        self.enabled = config.reconcile_poll_enabled
        self.interval = interval or config.reconcile_poll_interval_sec
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._status: Dict[str, Any] = {"state": "idle"}

    def get_status(self) -> Dict[str, Any]:
        return self._status

    def poll_once(self) -> Dict[str, int]:
        checked = applied = errors = 0
        for row in self.db.list_payments_by_status(PaymentStatus.PROCESSING.value):
            reference = row.get("processor_reference")
            if not reference:
                continue
            checked += 1
            try:
                result = self.processor.get_status(reference)
                if result.status.is_terminal:
                    outcome = self.reconciler.reconcile(reference, result.status, result.reason)
                    applied += 1 if outcome.get("applied") else 0
            except Exception as exc:
                errors += 1
                log_error("reconcile_poll_failed", str(exc), {"processor_reference": reference}, exc)
        return {"checked": checked, "applied": applied, "errors": errors}

    async def start(self) -> None:
        if not self.enabled:
            self._status = {"state": "disabled"}
            return
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        self._status = {"state": "running"}
        logger.info("Reconciliation poller started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
        self._status = {"state": "stopped"}
        logger.info("Reconciliation poller stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                summary = await asyncio.to_thread(self.poll_once)
                self._status = {
                    "state": "degraded" if summary["errors"] else "idle",
                    **summary,
                    "last_run": datetime.now(timezone.utc).isoformat(),
                }
            except Exception as exc:
                logger.exception("Reconciliation poller loop error: %s", exc)
                self._status = {"state": "error", "error": str(exc)}
            await asyncio.sleep(self.interval)
