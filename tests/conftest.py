from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from billpay.core.database import BillPayDB
from billpay.core.org_config import BillPayConfig
from billpay.di.container import ServiceContainer
from billpay.services.payment_processor import SimulatedPaymentProcessor

ORG = "org_test"


class RecordingNotifier:
    """Stands in for NotificationService; keeps everything it was asked to send."""

    def __init__(self):
        self.status_changes = []
        self.alerts = []

    def notify_status_change(self, bill, prev_state, new_state, actor_id=None):
        self.status_changes.append((bill.get("id"), prev_state, new_state))

    def send_operator_alert(self, kind, bill, detail):
        self.alerts.append((kind, (bill or {}).get("id"), detail))

    def alert_kinds(self):
        return [kind for kind, _, _ in self.alerts]


@pytest.fixture()
def db(tmp_path: Path, monkeypatch) -> BillPayDB:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    database = BillPayDB(str(tmp_path / "billpay-test.db"))
    database.initialize()
    return database


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def processor() -> SimulatedPaymentProcessor:
    return SimulatedPaymentProcessor()


@pytest.fixture()
def config() -> BillPayConfig:
    return BillPayConfig(max_submission_attempts=3, retry_backoff_sec=60.0)


@pytest.fixture()
def services(db, processor, notifier, config) -> ServiceContainer:
    return ServiceContainer(db=db, processor=processor, notifier=notifier, config=config)


def make_vendor(db: BillPayDB, **overrides) -> dict:
    payload = {
        "organization_id": ORG,
        "name": "Acme Utilities",
        "email": "billing@acme.test",
        "category": "utilities",
        "payment_terms": 30,
        "auto_pay": False,
        "approval_required": True,
        "approval_threshold": Decimal("0.00"),
        "payment_methods": ["ach"],
        "preferred_payment_method": "ach",
    }
    payload.update(overrides)
    return db.create_vendor(payload)


def make_workflow(db: BillPayDB, threshold="0", approvers=None, categories=None, **overrides) -> dict:
    payload = {
        "organization_id": ORG,
        "name": f"Approvals over {threshold}",
        "amount_threshold": Decimal(str(threshold)),
        "vendor_categories": categories or [],
        "required_approvers": approvers or [["u_manager"]],
    }
    payload.update(overrides)
    return db.create_workflow(payload)


def make_bill(services: ServiceContainer, vendor_id: str, amount="2000.00", due=None, **extra):
    payload = {"vendor_id": vendor_id, "amount": amount, "due_date": due or utc_today() + timedelta(days=2), **extra}
    return services.engine().create_bill(ORG, "u_clerk", payload)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def make_approved_bill(db: BillPayDB, vendor_id: str, amount="750.00", due=None, **extra) -> dict:
    """Insert a bill directly in ``approved`` with a matching approved amount."""
    row = db.create_bill({
        "organization_id": ORG,
        "vendor_id": vendor_id,
        "amount": Decimal(amount),
        "due_date": due or utc_today() + timedelta(days=2),
        "status": "approved",
        **extra,
    })
    db.update_bill(row["id"], row["version"], approved_amount=Decimal(amount))
    return db.get_bill(ORG, row["id"])
