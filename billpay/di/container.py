"""Dependency injection container for bill pay services."""
from typing import Optional

from billpay.core.database import BillPayDB, get_db
from billpay.core.org_config import BillPayConfig, get_config
from billpay.services.approval_engine import ApprovalEngine
from billpay.services.bill_reports import BillReportService
from billpay.services.document_intake import DocumentIntakeService
from billpay.services.notifications import NotificationService, get_notification_service
from billpay.services.payment_processor import PaymentProcessorAdapter, get_processor
from billpay.services.payment_scheduler import PaymentScheduler
from billpay.services.reconciliation import PaymentReconciler
from billpay.services.vendor_management import VendorManagementService


class ServiceContainer:
    def __init__(
        self,
        db: Optional[BillPayDB] = None,
        processor: Optional[PaymentProcessorAdapter] = None,
        notifier: Optional[NotificationService] = None,
        config: Optional[BillPayConfig] = None,
    ) -> None:
        self._db = db
        self._processor = processor
        self._notifier = notifier
        self._config = config
        self._reconciler = None
        self._scheduler = None
        self._engine = None
        self._intake = None
        self._vendors = None
        self._reports = None

    def db(self) -> BillPayDB:
        if not self._db:
            self._db = get_db()
        return self._db

    def config(self) -> BillPayConfig:
        if not self._config:
            self._config = get_config()
        return self._config

    def processor(self) -> PaymentProcessorAdapter:
        if not self._processor:
            self._processor = get_processor()
        return self._processor

    def notifier(self) -> NotificationService:
        if not self._notifier:
            self._notifier = get_notification_service()
        return self._notifier

    def reconciler(self) -> PaymentReconciler:
        if not self._reconciler:
            self._reconciler = PaymentReconciler(db=self.db(), notifier=self.notifier())
        return self._reconciler

    def scheduler(self) -> PaymentScheduler:
        if not self._scheduler:
            self._scheduler = PaymentScheduler(
                db=self.db(),
                processor=self.processor(),
                notifier=self.notifier(),
                config=self.config(),
                reconciler=self.reconciler(),
            )
        return self._scheduler

    def engine(self) -> ApprovalEngine:
        if not self._engine:
            self._engine = ApprovalEngine(db=self.db(), scheduler=self.scheduler(), notifier=self.notifier())
        return self._engine

    def intake(self) -> DocumentIntakeService:
        if not self._intake:
            self._intake = DocumentIntakeService(db=self.db(), engine=self.engine(), config=self.config())
        return self._intake

    def vendors(self) -> VendorManagementService:
        if not self._vendors:
            self._vendors = VendorManagementService(db=self.db())
        return self._vendors

    def reports(self) -> BillReportService:
        if not self._reports:
            self._reports = BillReportService(db=self.db())
        return self._reports


container = ServiceContainer()


def get_container() -> ServiceContainer:
    return container
