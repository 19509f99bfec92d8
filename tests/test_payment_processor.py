import json
from decimal import Decimal

import httpx
import pytest

from billpay.core.models import PaymentMethod, PaymentStatus
from billpay.core.org_config import BillPayConfig
from billpay.services.errors import ProcessorSubmissionFailed
from billpay.services.payment_processor import (
    HttpPaymentProcessor,
    PaymentIntent,
    SimulatedPaymentProcessor,
    build_processor,
)


def _intent(method=PaymentMethod.ACH, amount="100.00") -> PaymentIntent:
    return PaymentIntent(
        payment_id="PAY-1",
        bill_id="BILL-1",
        organization_id="org_1",
        amount=Decimal(amount),
        currency="USD",
        payment_method=method,
        vendor_name="Acme",
    )


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestHttpPaymentProcessor:
    def test_submit_sends_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("Idempotency-Key")
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"reference": "ref_123", "fees": "0.25", "status": "submitted"})

        adapter = HttpPaymentProcessor("https://pay.test/v1/", api_key="sk_test", client=_client(handler))
        result = adapter.submit(_intent())

        assert seen["path"] == "/v1/payments"
        assert seen["key"] == "PAY-1"
        assert seen["auth"] == "Bearer sk_test"
        assert seen["body"]["amount"] == "100.00"
        assert result.processor_reference == "ref_123"
        assert result.fees == Decimal("0.25")
        assert result.status is PaymentStatus.PROCESSING

    def test_server_error_is_a_submission_failure(self):
        adapter = HttpPaymentProcessor(
            "https://pay.test",
            client=_client(lambda request: httpx.Response(503, text="busy")),
        )
        with pytest.raises(ProcessorSubmissionFailed) as exc_info:
            adapter.submit(_intent())
        assert "HTTP 503" in exc_info.value.detail

    def test_response_without_reference_is_a_submission_failure(self):
        adapter = HttpPaymentProcessor(
            "https://pay.test",
            client=_client(lambda request: httpx.Response(200, json={"status": "processing"})),
        )
        with pytest.raises(ProcessorSubmissionFailed):
            adapter.submit(_intent())

    def test_get_status_maps_processor_vocabulary(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/payments/ref_123"
            return httpx.Response(200, json={"status": "returned", "reason": "R01 insufficient funds"})

        adapter = HttpPaymentProcessor("https://pay.test", client=_client(handler))
        status = adapter.get_status("ref_123")

        assert status.status is PaymentStatus.FAILED
        assert status.reason == "R01 insufficient funds"


class TestSimulatedPaymentProcessor:
    @pytest.mark.parametrize(
        "method,amount,fee",
        [
            (PaymentMethod.CREDIT_CARD, "100.00", Decimal("3.20")),
            (PaymentMethod.PAYPAL, "50.00", Decimal("1.75")),
            (PaymentMethod.ACH, "10000.00", Decimal("0.25")),
            (PaymentMethod.WIRE, "10000.00", Decimal("25.00")),
            (PaymentMethod.CHECK, "10000.00", Decimal("0.00")),
        ],
    )
    def test_fee_schedule(self, method, amount, fee):
        assert SimulatedPaymentProcessor.fee_for(method, Decimal(amount)) == fee

    def test_reference_is_method_and_payment_id(self):
        processor = SimulatedPaymentProcessor()
        result = processor.submit(_intent(PaymentMethod.WIRE))
        assert result.processor_reference == "wire_PAY-1"
        assert processor.get_status("wire_PAY-1").status is PaymentStatus.PROCESSING

        processor.settle("wire_PAY-1", PaymentStatus.COMPLETED)
        assert processor.get_status("wire_PAY-1").status is PaymentStatus.COMPLETED


def test_build_processor_from_config():
    assert isinstance(build_processor(BillPayConfig()), SimulatedPaymentProcessor)
    http = build_processor(BillPayConfig(processor="http", processor_url="https://pay.test"))
    assert isinstance(http, HttpPaymentProcessor)
    assert http.base_url == "https://pay.test"


def test_http_processor_requires_a_url():
    with pytest.raises(ValueError):
        BillPayConfig(processor="http")
