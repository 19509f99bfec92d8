# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "ApprovalEngine":
        from billpay.services.approval_engine import ApprovalEngine
        return ApprovalEngine
    elif name == "PaymentScheduler":
        from billpay.services.payment_scheduler import PaymentScheduler
        return PaymentScheduler
    elif name == "PaymentReconciler":
        from billpay.services.reconciliation import PaymentReconciler
        return PaymentReconciler
    elif name == "DocumentIntakeService":
        from billpay.services.document_intake import DocumentIntakeService
        return DocumentIntakeService
    elif name == "VendorManagementService":
        from billpay.services.vendor_management import VendorManagementService
        return VendorManagementService
    elif name == "BillReportService":
        from billpay.services.bill_reports import BillReportService
        return BillReportService
    raise AttributeError(f"module 'billpay.services' has no attribute '{name}'")
