"""
Bill Pay Configuration

Runtime settings for:
- Document intake (OCR confidence gate, default payment terms)
- Payment scheduling (lead days per method, scan interval, retry policy)
- Processor selection and webhook verification
- Operator notifications

Values come from the environment; ``get_config()`` caches one instance.
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass
class PaymentLeadTimes:
    """
    Business days a payment must be submitted ahead of the due date.

    Example:
        ach -> 3 (settles in 1-3 days)
        check -> 5 (mail time)
    """
    ach: int = 3
    wire: int = 1
    check: int = 5
    credit_card: int = 1
    paypal: int = 1
    other: int = 2

    def for_method(self, method: str) -> int:
        return int(getattr(self, str(method), self.other))

    def __post_init__(self):
        for name, value in asdict(self).items():
            if value < 0:
                raise ValueError(f"Lead days for {name} must be >= 0")


@dataclass
class BillPayConfig:
    """Complete runtime configuration."""
    db_path: str = "billpay.db"
    database_url: Optional[str] = None

    # Document intake
    ocr_confidence_threshold: float = 0.85
    default_payment_terms_days: int = 30

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_sec: float = 60.0
    max_submission_attempts: int = 3
    retry_backoff_sec: float = 300.0
    claim_lease_sec: float = 900.0
    lead_times: PaymentLeadTimes = field(default_factory=PaymentLeadTimes)

    # Reconciliation
    reconcile_poll_enabled: bool = False
    reconcile_poll_interval_sec: float = 300.0

    # Processor
    processor: str = "simulated"  # simulated | http
    processor_url: Optional[str] = None
    processor_api_key: Optional[str] = None
    webhook_secret: Optional[str] = None

    # Notifications
    notify_webhook_url: Optional[str] = None

    def __post_init__(self):
        if not (0.0 <= self.ocr_confidence_threshold <= 1.0):
            raise ValueError("ocr_confidence_threshold must be within [0, 1]")
        if self.max_submission_attempts < 1:
            raise ValueError("max_submission_attempts must be >= 1")
        if self.scheduler_interval_sec <= 0 or self.reconcile_poll_interval_sec <= 0:
            raise ValueError("Loop intervals must be positive")
        if self.retry_backoff_sec < 0:
            raise ValueError("retry_backoff_sec must be >= 0")
        if self.claim_lease_sec <= 0:
            raise ValueError("claim_lease_sec must be positive")
        if self.default_payment_terms_days < 0:
            raise ValueError("default_payment_terms_days must be >= 0")
        if self.processor not in {"simulated", "http"}:
            raise ValueError(f"Unknown processor '{self.processor}'")
        if self.processor == "http" and not self.processor_url:
            raise ValueError("BILLPAY_PROCESSOR_URL is required for the http processor")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("processor_api_key", None)
        data.pop("webhook_secret", None)
        return data

    @classmethod
    def from_env(cls) -> "BillPayConfig":
        return cls(
            db_path=os.getenv("BILLPAY_DB_PATH", "billpay.db"),
            database_url=os.getenv("DATABASE_URL") or None,
            ocr_confidence_threshold=_env_float("BILLPAY_OCR_CONFIDENCE_THRESHOLD", 0.85),
            default_payment_terms_days=_env_int("BILLPAY_DEFAULT_PAYMENT_TERMS_DAYS", 30),
            scheduler_enabled=_env_bool("BILLPAY_SCHEDULER_ENABLED", True),
            scheduler_interval_sec=_env_float("BILLPAY_SCHEDULER_INTERVAL_SEC", 60.0),
            max_submission_attempts=_env_int("BILLPAY_MAX_SUBMISSION_ATTEMPTS", 3),
            retry_backoff_sec=_env_float("BILLPAY_RETRY_BACKOFF_SEC", 300.0),
            claim_lease_sec=_env_float("BILLPAY_CLAIM_LEASE_SEC", 900.0),
            reconcile_poll_enabled=_env_bool("BILLPAY_RECONCILE_POLL_ENABLED", False),
            reconcile_poll_interval_sec=_env_float("BILLPAY_RECONCILE_POLL_INTERVAL_SEC", 300.0),
            processor=(os.getenv("BILLPAY_PROCESSOR") or "simulated").strip().lower(),
            processor_url=os.getenv("BILLPAY_PROCESSOR_URL") or None,
            processor_api_key=os.getenv("BILLPAY_PROCESSOR_API_KEY") or None,
            webhook_secret=os.getenv("BILLPAY_WEBHOOK_SECRET") or None,
            notify_webhook_url=os.getenv("BILLPAY_NOTIFY_WEBHOOK_URL") or None,
        )


_CONFIG: Optional[BillPayConfig] = None


def get_config() -> BillPayConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = BillPayConfig.from_env()
        logger.info("Loaded bill pay config (processor=%s)", _CONFIG.processor)
    return _CONFIG


def reset_config() -> None:
    """Drop the cached config so the next ``get_config()`` re-reads the environment."""
    global _CONFIG
    _CONFIG = None
