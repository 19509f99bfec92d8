"""
Payment Processor Adapters

The scheduler hands a PaymentIntent to an adapter and gets back the
processor's reference for the transfer. Final outcomes arrive later,
through the webhook or by polling ``get_status``.

Implementations:
- HttpPaymentProcessor: generic JSON/HTTP processor API
- SimulatedPaymentProcessor: in-process stand-in with the standard fee schedule
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

import httpx

from billpay.core.models import PaymentMethod, PaymentStatus, to_money
from billpay.core.org_config import BillPayConfig, get_config
from billpay.services.errors import ProcessorSubmissionFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    """Everything a processor needs to move the money once."""
    payment_id: str
    bill_id: str
    organization_id: str
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    bill_reference: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return self.payment_id

    def to_dict(self) -> Dict[str, object]:
        return {
            "payment_id": self.payment_id,
            "bill_id": self.bill_id,
            "organization_id": self.organization_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "payment_method": self.payment_method.value,
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "bill_reference": self.bill_reference,
        }


@dataclass(frozen=True)
class SubmissionResult:
    processor_reference: str
    fees: Decimal = Decimal("0.00")
    exchange_rate: Optional[Decimal] = None
    status: PaymentStatus = PaymentStatus.PROCESSING


@dataclass(frozen=True)
class ProcessorStatus:
    processor_reference: str
    status: PaymentStatus
    reason: Optional[str] = None


class PaymentProcessorAdapter(ABC):
    name: str = "unknown"

    @abstractmethod
    def submit(self, intent: PaymentIntent) -> SubmissionResult:
        """Submit a transfer. Raises ProcessorSubmissionFailed on transient failure."""

    @abstractmethod
    def get_status(self, processor_reference: str) -> ProcessorStatus:
        """Poll the processor for the current state of a transfer."""


def _status_from(raw: Optional[str]) -> PaymentStatus:
    value = (raw or "processing").strip().lower()
    aliases = {
        "succeeded": "completed",
        "success": "completed",
        "successful": "completed",
        "paid": "completed",
        "error": "failed",
        "declined": "failed",
        "returned": "failed",
        "submitted": "processing",
        "in_transit": "processing",
    }
    value = aliases.get(value, value)
    try:
        return PaymentStatus(value)
    except ValueError:
        return PaymentStatus.PROCESSING


class HttpPaymentProcessor(PaymentProcessorAdapter):
    """
    Client for a JSON payment API.

    POST {base_url}/payments        -> {"reference", "fees", "exchange_rate", "status"}
    GET  {base_url}/payments/{ref}  -> {"status", "reason"}

    Every submission carries ``Idempotency-Key: <payment id>`` so a retried
    submission never moves money twice.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.Client(timeout=timeout)

    def submit(self, intent: PaymentIntent) -> SubmissionResult:
        headers = dict(self.headers)
        headers["Idempotency-Key"] = intent.idempotency_key
        try:
            response = self.client.post(
                f"{self.base_url}/payments",
                headers=headers,
                json=intent.to_dict(),
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ProcessorSubmissionFailed(
                intent.payment_id, f"HTTP {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ProcessorSubmissionFailed(intent.payment_id, str(exc)) from exc

        reference = data.get("reference") or data.get("processor_reference")
        if not reference:
            raise ProcessorSubmissionFailed(intent.payment_id, "Processor response has no reference")

        exchange_rate = data.get("exchange_rate")
        return SubmissionResult(
            processor_reference=str(reference),
            fees=to_money(data.get("fees") or 0),
            exchange_rate=Decimal(str(exchange_rate)) if exchange_rate is not None else None,
            status=_status_from(data.get("status")),
        )

    def get_status(self, processor_reference: str) -> ProcessorStatus:
        response = self.client.get(
            f"{self.base_url}/payments/{processor_reference}",
            headers=self.headers,
        )
        response.raise_for_status()
        data = response.json()
        return ProcessorStatus(
            processor_reference=processor_reference,
            status=_status_from(data.get("status")),
            reason=data.get("reason") or data.get("failure_reason"),
        )


class SimulatedPaymentProcessor(PaymentProcessorAdapter):
    """
    Accepts every submission and leaves it processing until ``settle`` is called.

    Fees:
    - credit card / PayPal: 2.9% + 0.30
    - ACH: 0.25 flat
    - wire: 25.00 flat
    - check / other: none
    """

    name = "simulated"

    PERCENT_FEE = Decimal("0.029")
    FIXED_FEES = {
        PaymentMethod.CREDIT_CARD: Decimal("0.30"),
        PaymentMethod.PAYPAL: Decimal("0.30"),
        PaymentMethod.ACH: Decimal("0.25"),
        PaymentMethod.WIRE: Decimal("25.00"),
        PaymentMethod.CHECK: Decimal("0.00"),
        PaymentMethod.OTHER: Decimal("0.00"),
    }

    def __init__(self):
        self._submissions: Dict[str, PaymentIntent] = {}
        self._outcomes: Dict[str, ProcessorStatus] = {}

    @classmethod
    def fee_for(cls, method: PaymentMethod, amount: Decimal) -> Decimal:
        fee = cls.FIXED_FEES.get(method, Decimal("0.00"))
        if method in (PaymentMethod.CREDIT_CARD, PaymentMethod.PAYPAL):
            fee += cls.PERCENT_FEE * amount
        return to_money(fee)

    def submit(self, intent: PaymentIntent) -> SubmissionResult:
        reference = f"{intent.payment_method.value}_{intent.payment_id}"
        self._submissions[reference] = intent
        logger.info("Simulated submission %s for payment %s", reference, intent.payment_id)
        return SubmissionResult(
            processor_reference=reference,
            fees=self.fee_for(intent.payment_method, intent.amount),
            status=PaymentStatus.PROCESSING,
        )

    def settle(self, processor_reference: str, status: PaymentStatus, reason: Optional[str] = None) -> None:
        self._outcomes[processor_reference] = ProcessorStatus(processor_reference, status, reason)

    def get_status(self, processor_reference: str) -> ProcessorStatus:
        return self._outcomes.get(
            processor_reference,
            ProcessorStatus(processor_reference, PaymentStatus.PROCESSING),
        )


def build_processor(config: Optional[BillPayConfig] = None) -> PaymentProcessorAdapter:
    config = config or get_config()
    if config.processor == "http":
        return HttpPaymentProcessor(config.processor_url, api_key=config.processor_api_key)
    return SimulatedPaymentProcessor()


_PROCESSOR: Optional[PaymentProcessorAdapter] = None


def get_processor() -> PaymentProcessorAdapter:
    global _PROCESSOR
    if _PROCESSOR is None:
        _PROCESSOR = build_processor()
        logger.info("Using %s payment processor", _PROCESSOR.name)
    return _PROCESSOR
