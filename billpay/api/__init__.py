from billpay.api.bills import router as bills_router
from billpay.api.processor_webhooks import router as processor_webhooks_router
from billpay.api.vendors import router as vendors_router

__all__ = ["bills_router", "vendors_router", "processor_webhooks_router"]
