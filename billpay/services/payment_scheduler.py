"""
Payment Scheduler

Turns approved bills into payment attempts and submits due attempts to the
payment processor.

- ``schedule``: approved bill -> pending payment, bill -> scheduled
- ``run_scan``: one pass of the background loop (schedule retries, claim
  and submit due payments, back off or escalate on processor failure)
- ``PaymentSchedulerLoop``: runs ``run_scan`` on a fixed interval

Every pending payment is claimed with a version-guarded update before it
is submitted, so concurrent scanners never submit the same payment twice.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from billpay.core.database import RowUpdate, StaleRowError, UniqueConflict, get_db
from billpay.core.models import Bill, BillStatus, Payment, PaymentStatus, Vendor
from billpay.core.org_config import BillPayConfig, get_config
from billpay.services.bill_state import assert_valid_transition, audit_payload
from billpay.services.errors import (
    ApprovedAmountMismatch,
    BillNotFound,
    BillPayError,
    DuplicatePaymentAttempt,
    InterventionRequired,
    ProcessorSubmissionFailed,
    StaleApprovalState,
    ValidationFailed,
    VendorInactive,
    VendorNotFound,
)
from billpay.services.logging import log_error, log_transition
from billpay.services.notifications import get_notification_service
from billpay.services.payment_processor import PaymentIntent, get_processor
from billpay.services.reconciliation import PaymentReconciler

logger = logging.getLogger(__name__)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PaymentScheduler:
    def __init__(
        self,
        db=None,
        processor=None,
        notifier=None,
        config: Optional[BillPayConfig] = None,
        reconciler: Optional[PaymentReconciler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db or get_db()
        self.config = config or get_config()
        self._processor = processor
        self.notifier = notifier or get_notification_service()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.reconciler = reconciler or PaymentReconciler(db=self.db, notifier=self.notifier, clock=self.clock)

    @property
    def processor(self):
        if self._processor is None:
            self._processor = get_processor()
        return self._processor

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _load_bill(self, organization_id: str, bill_id: str) -> Bill:
        row = self.db.get_bill(organization_id, bill_id)
        if not row:
            raise BillNotFound(bill_id)
        return Bill.from_row(row)

    def _load_vendor(self, organization_id: str, vendor_id: Optional[str]) -> Vendor:
        row = self.db.get_vendor(organization_id, vendor_id) if vendor_id else None
        if not row:
            raise VendorNotFound(vendor_id or "")
        return Vendor.from_row(row)

    def compute_scheduled_date(self, bill: Bill, vendor: Vendor, today: date) -> date:
        if bill.scheduled_date:
            return max(today, bill.scheduled_date)
        lead = self.config.lead_times.for_method(vendor.preferred_payment_method.value)
        return max(today, bill.due_date - timedelta(days=lead))

    def schedule(
        self,
        organization_id: str,
        bill_id: str,
        actor_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Payment:
        """Create the pending payment for an approved bill and mark the bill scheduled."""
        bill = self._load_bill(organization_id, bill_id)
        assert_valid_transition(bill.status, BillStatus.SCHEDULED, bill.id)
        if bill.needs_intervention:
            raise InterventionRequired(bill.id, bill.intervention_reason)

        vendor = self._load_vendor(organization_id, bill.vendor_id)
        if not vendor.is_active:
            raise VendorInactive(vendor.id, vendor.status.value, bill.id)

        existing = self.db.get_in_flight_payment(bill.id)
        if existing:
            raise DuplicatePaymentAttempt(bill.id, existing["id"])

        if bill.approved_amount is None or bill.amount != bill.approved_amount:
            raise ApprovedAmountMismatch(
                bill.id,
                str(bill.amount),
                str(bill.approved_amount) if bill.approved_amount is not None else None,
            )

        today = today or self.clock().date()
        scheduled_date = self.compute_scheduled_date(bill, vendor, today)
        payment_insert = self.db.payment_insert({
            "bill_id": bill.id,
            "organization_id": organization_id,
            "amount": bill.amount,
            "currency": bill.currency,
            "payment_method": vendor.preferred_payment_method,
            "scheduled_date": scheduled_date,
        })
        payment_id = payment_insert.values["id"]
        bill_dict = bill.to_dict()
        try:
            self.db.commit_changes(
                updates=[RowUpdate(
                    "bills",
                    bill.id,
                    {"status": BillStatus.SCHEDULED, "scheduled_date": scheduled_date, "last_error": None},
                    bill.version,
                )],
                inserts=[
                    payment_insert,
                    self.db.audit_insert(audit_payload(
                        bill_dict,
                        "payment_scheduled",
                        bill.status.value,
                        BillStatus.SCHEDULED.value,
                        actor_type="user" if actor_id else "system",
                        actor_id=actor_id,
                        payload={
                            "payment_id": payment_id,
                            "scheduled_date": scheduled_date.isoformat(),
                            "payment_method": vendor.preferred_payment_method.value,
                        },
                    )),
                ],
            )
        except (StaleRowError, UniqueConflict):
            in_flight = self.db.get_in_flight_payment(bill.id)
            if in_flight:
                raise DuplicatePaymentAttempt(bill.id, in_flight["id"])
            raise StaleApprovalState(bill.id, "Bill changed while scheduling its payment")

        log_transition(bill.id, bill.status.value, BillStatus.SCHEDULED.value, actor_id, payment_id=payment_id)
        self.notifier.notify_status_change(bill_dict, bill.status.value, BillStatus.SCHEDULED.value, actor_id)
        return Payment.from_row(self.db.get_payment(payment_id))

    def release_intervention(self, organization_id: str, bill_id: str, actor_id: str) -> Bill:
        """Clear the intervention flag so the next scan schedules a new attempt."""
        bill = self._load_bill(organization_id, bill_id)
        if not bill.needs_intervention:
            raise ValidationFailed("needs_intervention", f"Bill {bill_id} is not flagged for intervention")
        try:
            self.db.commit_changes(
                updates=[RowUpdate(
                    "bills",
                    bill.id,
                    {"needs_intervention": False, "intervention_reason": None},
                    bill.version,
                )],
                inserts=[self.db.audit_insert(audit_payload(
                    bill.to_dict(),
                    "intervention_released",
                    bill.status.value,
                    bill.status.value,
                    actor_type="user",
                    actor_id=actor_id,
                    payload={"previous_reason": bill.intervention_reason},
                ))],
            )
        except StaleRowError:
            raise StaleApprovalState(bill.id, "Bill changed while releasing the intervention flag")
        logger.info("Intervention released on bill %s by %s", bill.id, actor_id)
        return self._load_bill(organization_id, bill_id)

    # ------------------------------------------------------------------
    # Background scan
    # ------------------------------------------------------------------

    def run_scan(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """One scheduler pass. Returns counters for the loop status."""
        now = _utc(now or self.clock())
        summary = {
            "scheduled": 0, "submitted": 0, "retried": 0, "failed": 0, "skipped": 0, "reclaimed": 0, "errors": 0,
        }

        cutoff = now - timedelta(seconds=self.config.claim_lease_sec)
        for row in self.db.list_expired_claims(cutoff.isoformat()):
            try:
                result = self.expire_claim(Payment.from_row(row), now)
            except Exception as exc:
                summary["errors"] += 1
                log_error("claim_expiry_error", str(exc), {"payment_id": row["id"]}, exc)
                continue
            summary["reclaimed"] += 1
            summary[result] += 1

        for row in self.db.list_schedulable_bills():
            try:
                self.schedule(row["organization_id"], row["id"], today=now.date())
                summary["scheduled"] += 1
            except BillPayError as exc:
                summary["errors"] += 1
                self._record_scheduling_error(row, exc)

        for row in self.db.list_due_payments(now.date().isoformat(), now.isoformat()):
            try:
                result = self.submit_payment(Payment.from_row(row), now)
            except Exception as exc:
                summary["errors"] += 1
                log_error("payment_submission_error", str(exc), {"payment_id": row["id"]}, exc)
                continue
            summary[result] += 1

        if any(summary.values()):
            logger.info("Scheduler scan: %s", summary)
        return summary

    def _record_scheduling_error(self, bill_row: Dict[str, Any], exc: BillPayError) -> None:
        message = exc.message if not exc.detail else f"{exc.message}: {exc.detail}"
        if bill_row.get("last_error") == message:
            return
        try:
            self.db.update_bill(bill_row["id"], bill_row.get("version"), last_error=message)
        except StaleRowError:
            return
        log_error("scheduling_failed", message, {"bill_id": bill_row["id"], "code": exc.code.value})
        self.notifier.send_operator_alert("scheduling_failed", bill_row, message)

    def submit_payment(self, payment: Payment, now: datetime) -> str:
        """Claim, submit and record one due payment. Returns the counter name."""
        attempt = payment.attempt_count + 1
        try:
            self.db.update_payment(
                payment.id,
                payment.version,
                status=PaymentStatus.PROCESSING,
                attempt_count=attempt,
                next_attempt_at=None,
                claimed_at=now,
            )
        except StaleRowError:
            logger.info("Payment %s claimed by another worker; skipping", payment.id)
            return "skipped"
        claimed_version = payment.version + 1

        bill_row = self.db.get_bill(payment.organization_id, payment.bill_id)
        vendor_row = self.db.get_vendor(payment.organization_id, bill_row.get("vendor_id")) if bill_row.get("vendor_id") else None
        intent = PaymentIntent(
            payment_id=payment.id,
            bill_id=payment.bill_id,
            organization_id=payment.organization_id,
            amount=payment.amount,
            currency=payment.currency,
            payment_method=payment.payment_method,
            vendor_id=bill_row.get("vendor_id"),
            vendor_name=(vendor_row or {}).get("name"),
            bill_reference=bill_row.get("invoice_number") or bill_row["id"],
        )

        try:
            result = self.processor.submit(intent)
        except ProcessorSubmissionFailed as exc:
            return self._handle_submission_failure(payment, claimed_version, attempt, exc.detail or exc.message, now)
        except Exception as exc:
            return self._handle_submission_failure(payment, claimed_version, attempt, str(exc), now)

        try:
            self.db.commit_changes(
                updates=[RowUpdate(
                    "payments",
                    payment.id,
                    {
                        "processor_reference": result.processor_reference,
                        "fees": result.fees,
                        "exchange_rate": result.exchange_rate,
                        "failure_reason": None,
                    },
                    claimed_version,
                )],
                inserts=[self.db.audit_insert(audit_payload(
                    bill_row,
                    "payment_submitted",
                    bill_row["status"],
                    bill_row["status"],
                    actor_type="system",
                    payload={
                        "payment_id": payment.id,
                        "processor_reference": result.processor_reference,
                        "attempt": attempt,
                    },
                    idempotency_key=f"submit:{payment.id}:{attempt}",
                ))],
            )
        except (StaleRowError, UniqueConflict) as exc:
            log_error(
                "payment_reference_not_recorded",
                f"Submitted payment {payment.id} but could not record reference {result.processor_reference}",
                {"payment_id": payment.id, "processor_reference": result.processor_reference},
                exc,
            )
            return "skipped"

        logger.info("Submitted payment %s (attempt %s) as %s", payment.id, attempt, result.processor_reference)
        if result.status.is_terminal:
            self.reconciler.reconcile(result.processor_reference, result.status)
        return "submitted"

    def expire_claim(self, payment: Payment, now: datetime) -> str:
        """Treat a claim that outlived its lease without a processor reference as a failed attempt.

        Resubmission reuses the payment id as the idempotency key, so a
        transfer the processor did accept is not duplicated.
        """
        logger.warning(
            "Payment %s claimed at %s has no processor reference; releasing the claim",
            payment.id, payment.claimed_at,
        )
        return self._handle_submission_failure(
            payment,
            payment.version,
            payment.attempt_count,
            "Claim expired before a processor reference was recorded",
            now,
        )

    def _handle_submission_failure(
        self,
        payment: Payment,
        claimed_version: int,
        attempt: int,
        detail: str,
        now: datetime,
    ) -> str:
        if attempt < self.config.max_submission_attempts:
            delay = self.config.retry_backoff_sec * (2 ** (attempt - 1))
            next_attempt_at = now + timedelta(seconds=delay)
            try:
                self.db.update_payment(
                    payment.id,
                    claimed_version,
                    status=PaymentStatus.PENDING,
                    next_attempt_at=next_attempt_at,
                    claimed_at=None,
                    failure_reason=detail,
                )
            except StaleRowError:
                logger.info("Payment %s changed before its claim was released; skipping", payment.id)
                return "skipped"
            logger.warning(
                "Submission of payment %s failed (attempt %s/%s); retrying at %s: %s",
                payment.id, attempt, self.config.max_submission_attempts, next_attempt_at.isoformat(), detail,
            )
            return "retried"

        bill = self._load_bill(payment.organization_id, payment.bill_id)
        reason = f"Payment {payment.id} failed after {attempt} submission attempts: {detail}"
        bill_updates: Dict[str, Any] = {
            "needs_intervention": True,
            "intervention_reason": reason,
            "last_error": detail,
        }
        if bill.status is BillStatus.SCHEDULED:
            assert_valid_transition(bill.status, BillStatus.APPROVED, bill.id)
            bill_updates["status"] = BillStatus.APPROVED
            bill_updates["scheduled_date"] = None
        bill_dict = bill.to_dict()
        try:
            self.db.commit_changes(
                updates=[
                    RowUpdate(
                        "payments",
                        payment.id,
                        {"status": PaymentStatus.FAILED, "failure_reason": detail, "processed_date": now},
                        claimed_version,
                    ),
                    RowUpdate("bills", bill.id, bill_updates, bill.version),
                ],
                inserts=[self.db.audit_insert(audit_payload(
                    bill_dict,
                    "payment_submission_exhausted",
                    bill.status.value,
                    BillStatus.APPROVED.value,
                    actor_type="system",
                    payload={"payment_id": payment.id, "attempts": attempt, "detail": detail},
                ))],
            )
        except StaleRowError as exc:
            log_error("intervention_not_recorded", reason, {"payment_id": payment.id, "bill_id": bill.id}, exc)
            return "skipped"

        log_error("payment_submission_exhausted", reason, {"payment_id": payment.id, "bill_id": bill.id})
        self.notifier.send_operator_alert("payment_submission_exhausted", bill_dict, reason)
        return "failed"


class PaymentSchedulerLoop:
    """Runs ``PaymentScheduler.run_scan`` on a fixed interval."""

    def __init__(self, scheduler: Optional[PaymentScheduler] = None, interval: Optional[float] = None):
        config = get_config()
        self.scheduler = scheduler or PaymentScheduler()
        self.enabled = config.scheduler_enabled
        self.interval = interval or config.scheduler_interval_sec
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._status: Dict[str, Any] = {"state": "idle"}

    def get_status(self) -> Dict[str, Any]:
        return self._status

    async def start(self) -> None:
        if not self.enabled:
            self._status = {"state": "disabled"}
            return
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        self._status = {"state": "running"}
        logger.info("Payment scheduler started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
        self._status = {"state": "stopped"}
        logger.info("Payment scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self._tick()
            await asyncio.sleep(self.interval)

    async def _tick(self) -> None:
        try:
            summary = await asyncio.to_thread(self.scheduler.run_scan)
        except Exception as exc:
            logger.exception("Payment scheduler loop error: %s", exc)
            self._status = {"state": "error", "error": str(exc)}
            return
        self._status = {
            "state": "degraded" if summary["errors"] else "idle",
            **summary,
            "last_run": datetime.now(timezone.utc).isoformat(),
        }
