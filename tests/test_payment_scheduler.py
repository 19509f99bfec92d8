"""
Tests for payment scheduling, submission, retry backoff and escalation.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billpay.core.models import Bill, Payment, PaymentStatus, Vendor
from billpay.services.errors import (
    ApprovedAmountMismatch,
    DuplicatePaymentAttempt,
    InterventionRequired,
    InvalidBillTransition,
    ProcessorSubmissionFailed,
    ValidationFailed,
)
from billpay.services.payment_processor import PaymentProcessorAdapter, ProcessorStatus, SubmissionResult
from billpay.services.payment_scheduler import PaymentScheduler, PaymentSchedulerLoop

from conftest import ORG, make_approved_bill, make_vendor, utc_today


class FailingProcessor(PaymentProcessorAdapter):
    name = "failing"

    def __init__(self):
        self.calls = []

    def submit(self, intent):
        self.calls.append(intent.idempotency_key)
        raise ProcessorSubmissionFailed(intent.payment_id, "HTTP 503: upstream unavailable")

    def get_status(self, processor_reference):
        return ProcessorStatus(processor_reference, PaymentStatus.PROCESSING)


class InstantProcessor(PaymentProcessorAdapter):
    name = "instant"

    def submit(self, intent):
        return SubmissionResult(
            processor_reference=f"inst_{intent.payment_id}",
            fees=Decimal("1.00"),
            status=PaymentStatus.COMPLETED,
        )

    def get_status(self, processor_reference):
        return ProcessorStatus(processor_reference, PaymentStatus.COMPLETED)


@pytest.fixture()
def vendor(db):
    return make_vendor(db)


@pytest.fixture()
def scheduler(services):
    return services.scheduler()


def _insert_pending_payment(db, bill_row):
    insert = db.payment_insert({
        "bill_id": bill_row["id"],
        "organization_id": ORG,
        "amount": Decimal(bill_row["amount"]),
        "payment_method": "ach",
        "scheduled_date": utc_today(),
    })
    db.commit_changes(inserts=[insert])
    return insert.values["id"]


class TestScheduledDate:
    @pytest.mark.parametrize(
        "method,expected",
        [("ach", date(2026, 3, 17)), ("check", date(2026, 3, 15)), ("wire", date(2026, 3, 19))],
    )
    def test_lead_days_per_method(self, db, scheduler, method, expected):
        vendor = make_vendor(db, preferred_payment_method=method, payment_methods=[method])
        bill = make_approved_bill(db, vendor["id"], due=date(2026, 3, 20))

        payment = scheduler.schedule(ORG, bill["id"], today=date(2026, 3, 2))

        assert payment.scheduled_date == expected
        assert payment.payment_method.value == method
        assert Bill.from_row(db.get_bill(ORG, bill["id"])).scheduled_date == expected

    def test_never_schedules_in_the_past(self, scheduler):
        bill = Bill(id="B", organization_id=ORG, vendor_id="V", amount=Decimal("10"), due_date=date(2026, 3, 20))
        vendor = Vendor(id="V", organization_id=ORG, name="Acme")
        assert scheduler.compute_scheduled_date(bill, vendor, date(2026, 3, 19)) == date(2026, 3, 19)

    def test_explicit_scheduled_date_wins(self, scheduler):
        bill = Bill(
            id="B", organization_id=ORG, vendor_id="V", amount=Decimal("10"),
            due_date=date(2026, 3, 20), scheduled_date=date(2026, 3, 10),
        )
        vendor = Vendor(id="V", organization_id=ORG, name="Acme")
        assert scheduler.compute_scheduled_date(bill, vendor, date(2026, 3, 2)) == date(2026, 3, 10)


class TestSchedule:
    def test_schedule_moves_bill_and_creates_pending_payment(self, db, vendor, scheduler, notifier):
        bill = make_approved_bill(db, vendor["id"], amount="750.00")

        payment = scheduler.schedule(ORG, bill["id"], actor_id="u_ops")

        assert payment.status is PaymentStatus.PENDING
        assert payment.amount == Decimal("750.00")
        assert db.get_bill(ORG, bill["id"])["status"] == "scheduled"
        assert (bill["id"], "approved", "scheduled") in notifier.status_changes

    def test_only_approved_bills_can_be_scheduled(self, db, vendor, scheduler):
        bill = db.create_bill({"organization_id": ORG, "vendor_id": vendor["id"], "amount": Decimal("5"), "due_date": utc_today()})
        with pytest.raises(InvalidBillTransition):
            scheduler.schedule(ORG, bill["id"])

    def test_existing_in_flight_payment_blocks_a_second(self, db, vendor, scheduler):
        bill = make_approved_bill(db, vendor["id"])
        existing_id = _insert_pending_payment(db, bill)

        with pytest.raises(DuplicatePaymentAttempt) as exc_info:
            scheduler.schedule(ORG, bill["id"])
        assert exc_info.value.context["payment_id"] == existing_id

    def test_race_past_the_check_is_caught_by_the_database(self, db, vendor, scheduler, monkeypatch):
        bill = make_approved_bill(db, vendor["id"])
        existing_id = _insert_pending_payment(db, bill)

        real_lookup = db.get_in_flight_payment
        calls = []

        def lookup_missing_first_time(bill_id):
            calls.append(bill_id)
            return None if len(calls) == 1 else real_lookup(bill_id)

        monkeypatch.setattr(db, "get_in_flight_payment", lookup_missing_first_time)

        with pytest.raises(DuplicatePaymentAttempt) as exc_info:
            scheduler.schedule(ORG, bill["id"])

        assert exc_info.value.context["payment_id"] == existing_id
        assert [p["id"] for p in db.list_payments_for_bill(bill["id"])] == [existing_id]
        assert db.get_bill(ORG, bill["id"])["status"] == "approved"

    def test_amount_changed_after_approval_is_refused(self, db, vendor, scheduler):
        bill = make_approved_bill(db, vendor["id"], amount="750.00")
        db.update_bill(bill["id"], bill["version"], amount=Decimal("800.00"))

        with pytest.raises(ApprovedAmountMismatch):
            scheduler.schedule(ORG, bill["id"])

    def test_flagged_bill_needs_release_first(self, db, vendor, scheduler):
        bill = make_approved_bill(db, vendor["id"])
        db.update_bill(bill["id"], bill["version"], needs_intervention=True, intervention_reason="manual hold")

        with pytest.raises(InterventionRequired):
            scheduler.schedule(ORG, bill["id"])

        released = scheduler.release_intervention(ORG, bill["id"], "u_ops")
        assert released.needs_intervention is False
        assert scheduler.schedule(ORG, bill["id"]).status is PaymentStatus.PENDING

    def test_release_requires_a_flag(self, db, vendor, scheduler):
        bill = make_approved_bill(db, vendor["id"])
        with pytest.raises(ValidationFailed):
            scheduler.release_intervention(ORG, bill["id"], "u_ops")


class TestScan:
    def test_scan_schedules_and_submits_due_payments(self, db, vendor, scheduler, processor):
        bill = make_approved_bill(db, vendor["id"], amount="750.00")

        summary = scheduler.run_scan()

        assert summary["scheduled"] == 1
        assert summary["submitted"] == 1
        payment = Payment.from_row(db.list_payments_for_bill(bill["id"])[0])
        assert payment.status is PaymentStatus.PROCESSING
        assert payment.processor_reference == f"ach_{payment.id}"
        assert payment.fees == Decimal("0.25")
        assert payment.attempt_count == 1
        assert db.get_bill(ORG, bill["id"])["status"] == "scheduled"

    def test_future_payments_are_left_alone(self, db, vendor, scheduler, processor):
        make_approved_bill(db, vendor["id"], due=utc_today() + timedelta(days=30))

        summary = scheduler.run_scan()

        assert summary["scheduled"] == 1
        assert summary["submitted"] == 0
        assert processor._submissions == {}

    def test_lost_claim_is_skipped(self, db, vendor, scheduler, processor):
        bill = make_approved_bill(db, vendor["id"])
        scheduler.schedule(ORG, bill["id"])
        row = db.list_payments_for_bill(bill["id"])[0]
        stale = Payment.from_row(row)
        db.update_payment(row["id"], row["version"], failure_reason=None)

        assert scheduler.submit_payment(stale, datetime.now(timezone.utc)) == "skipped"
        assert processor._submissions == {}

    def test_scheduling_errors_alert_once(self, db, vendor, scheduler, notifier, services):
        bill = make_approved_bill(db, vendor["id"])
        services.vendors().deactivate_vendor(ORG, vendor["id"])

        first = scheduler.run_scan()
        second = scheduler.run_scan()

        assert first["errors"] == 1 and second["errors"] == 1
        assert notifier.alert_kinds().count("scheduling_failed") == 1
        assert "inactive" in db.get_bill(ORG, bill["id"])["last_error"]

    def test_immediate_terminal_result_is_reconciled(self, db, vendor, notifier, config):
        scheduler = PaymentScheduler(db=db, processor=InstantProcessor(), notifier=notifier, config=config)
        bill = make_approved_bill(db, vendor["id"])

        summary = scheduler.run_scan()

        assert summary["submitted"] == 1
        assert db.get_bill(ORG, bill["id"])["status"] == "paid"
        assert db.list_payments_for_bill(bill["id"])[0]["status"] == "completed"


class TestRetries:
    def test_backoff_then_intervention_after_max_attempts(self, db, vendor, notifier, config):
        failing = FailingProcessor()
        scheduler = PaymentScheduler(db=db, processor=failing, notifier=notifier, config=config)
        bill = make_approved_bill(db, vendor["id"])
        now = datetime.now(timezone.utc)

        assert scheduler.run_scan(now)["retried"] == 1
        payment = Payment.from_row(db.list_payments_for_bill(bill["id"])[0])
        assert payment.status is PaymentStatus.PENDING
        assert payment.attempt_count == 1
        assert payment.failure_reason == "HTTP 503: upstream unavailable"

        # Backoff not elapsed yet.
        assert scheduler.run_scan(now + timedelta(seconds=30))["retried"] == 0

        second = now + timedelta(seconds=61)
        assert scheduler.run_scan(second)["retried"] == 1

        third = second + timedelta(seconds=121)
        assert scheduler.run_scan(third)["failed"] == 1

        payment = Payment.from_row(db.get_payment(payment.id))
        assert payment.status is PaymentStatus.FAILED
        assert payment.attempt_count == 3
        assert failing.calls == [payment.id] * 3

        flagged = Bill.from_row(db.get_bill(ORG, bill["id"]))
        assert flagged.status.value == "approved"
        assert flagged.needs_intervention is True
        assert "3 submission attempts" in flagged.intervention_reason
        assert "payment_submission_exhausted" in notifier.alert_kinds()

        # Flagged bills are not rescheduled until released.
        assert scheduler.run_scan(third + timedelta(seconds=1))["scheduled"] == 0

        scheduler.release_intervention(ORG, bill["id"], "u_ops")
        assert scheduler.run_scan(third + timedelta(seconds=2))["scheduled"] == 1
        assert len(db.list_payments_for_bill(bill["id"])) == 2


def test_scheduler_loop_tick_records_status(db, vendor, scheduler):
    make_approved_bill(db, vendor["id"])
    loop = PaymentSchedulerLoop(scheduler=scheduler, interval=5)

    asyncio.run(loop._tick())

    status = loop.get_status()
    assert status["state"] == "idle"
    assert status["scheduled"] == 1
    assert "last_run" in status


class TestExpiredClaims:
    def _claim_without_reference(self, db, scheduler, bill, claimed_at, attempts=1):
        scheduler.schedule(ORG, bill["id"])
        row = db.list_payments_for_bill(bill["id"])[0]
        db.update_payment(
            row["id"],
            row["version"],
            status=PaymentStatus.PROCESSING,
            attempt_count=attempts,
            claimed_at=claimed_at,
        )
        return row["id"]

    def test_expired_claim_is_released_and_resubmitted(self, db, vendor, scheduler, processor, services):
        bill = make_approved_bill(db, vendor["id"])
        now = datetime.now(timezone.utc)
        payment_id = self._claim_without_reference(db, scheduler, bill, now - timedelta(hours=1))

        attention = services.reports().bills_requiring_attention(ORG)
        assert [b["id"] for b in attention["unconfirmed_payments"]] == [bill["id"]]

        summary = scheduler.run_scan(now)
        assert summary["reclaimed"] == 1
        assert summary["retried"] == 1
        released = Payment.from_row(db.get_payment(payment_id))
        assert released.status is PaymentStatus.PENDING
        assert released.claimed_at is None
        assert "Claim expired" in released.failure_reason

        assert scheduler.run_scan(now + timedelta(seconds=61))["submitted"] == 1
        resubmitted = Payment.from_row(db.get_payment(payment_id))
        assert resubmitted.processor_reference == f"ach_{payment_id}"
        assert resubmitted.attempt_count == 2
        assert services.reports().bills_requiring_attention(ORG)["unconfirmed_payments"] == []

    def test_claim_within_lease_is_left_alone(self, db, vendor, scheduler, processor):
        bill = make_approved_bill(db, vendor["id"])
        now = datetime.now(timezone.utc)
        payment_id = self._claim_without_reference(db, scheduler, bill, now - timedelta(seconds=30))

        assert scheduler.run_scan(now)["reclaimed"] == 0
        assert db.get_payment(payment_id)["status"] == "processing"

    def test_expired_claim_on_last_attempt_flags_the_bill(self, db, vendor, scheduler, notifier):
        bill = make_approved_bill(db, vendor["id"])
        now = datetime.now(timezone.utc)
        payment_id = self._claim_without_reference(db, scheduler, bill, now - timedelta(hours=1), attempts=3)

        summary = scheduler.run_scan(now)

        assert summary["failed"] == 1
        assert db.get_payment(payment_id)["status"] == "failed"
        flagged = Bill.from_row(db.get_bill(ORG, bill["id"]))
        assert flagged.status.value == "approved"
        assert flagged.needs_intervention is True
        assert flagged.scheduled_date is None
        assert "payment_submission_exhausted" in notifier.alert_kinds()


class TestRetryDates:
    def test_past_scheduled_date_is_moved_to_today(self, scheduler):
        today = date(2026, 11, 15)
        bill = Bill(
            id="BILL-1",
            organization_id=ORG,
            vendor_id="VEN-1",
            amount=Decimal("10.00"),
            due_date=date(2026, 10, 28),
            scheduled_date=date(2026, 10, 26),
        )
        vendor = Vendor(id="VEN-1", organization_id=ORG, name="Acme")

        assert scheduler.compute_scheduled_date(bill, vendor, today) == today

    def test_retry_after_failed_payment_is_not_dated_in_the_past(self, db, vendor, scheduler, services):
        bill = make_approved_bill(db, vendor["id"])
        scheduler.run_scan()
        first = db.list_payments_for_bill(bill["id"])[0]
        services.reconciler().reconcile(first["processor_reference"], "failed", "account closed")
        assert db.get_bill(ORG, bill["id"])["scheduled_date"] is None

        later = datetime.now(timezone.utc) + timedelta(days=20)
        assert scheduler.run_scan(later)["scheduled"] == 1

        retry = Payment.from_row(db.list_payments_for_bill(bill["id"])[1])
        assert retry.scheduled_date == later.date()
        assert Bill.from_row(db.get_bill(ORG, bill["id"])).scheduled_date == later.date()
