"""Notification service for bill status changes and operator alerts."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from billpay.core.org_config import get_config


class NotificationService:
    """
    Fire-and-forget outbound notifications.
    Posts JSON to BILLPAY_NOTIFY_WEBHOOK_URL when configured, otherwise only logs.
    """

    def __init__(self, webhook_url: Optional[str] = None) -> None:
        self.logger = logging.getLogger("billpay.notifications")
        self.webhook_url = webhook_url if webhook_url is not None else get_config().notify_webhook_url

    def notify_status_change(
        self,
        bill: Dict[str, Any],
        prev_state: Optional[str],
        new_state: str,
        actor_id: Optional[str] = None,
    ) -> None:
        payload = {
            "type": "bill_status_changed",
            "organization_id": bill.get("organization_id"),
            "bill_id": bill.get("id"),
            "vendor_id": bill.get("vendor_id"),
            "amount": str(bill.get("amount")),
            "from_state": prev_state,
            "to_state": new_state,
            "actor_id": actor_id,
        }
        self.logger.info("Bill %s status %s -> %s", bill.get("id"), prev_state, new_state)
        self._post(payload)

    def send_operator_alert(
        self,
        kind: str,
        bill: Optional[Dict[str, Any]],
        detail: str,
    ) -> None:
        payload = {
            "type": "operator_alert",
            "kind": kind,
            "organization_id": (bill or {}).get("organization_id"),
            "bill_id": (bill or {}).get("id"),
            "detail": detail,
        }
        self.logger.warning("Operator alert [%s] bill=%s: %s", kind, payload["bill_id"], detail)
        self._post(payload)

    def _post(self, payload: Dict[str, Any]) -> None:
        if not self.webhook_url:
            return
        try:
            httpx.post(self.webhook_url, json=payload, timeout=8.0)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("Notification delivery failed: %s", exc)


_NOTIFIER: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    global _NOTIFIER
    if _NOTIFIER is None:
        _NOTIFIER = NotificationService()
    return _NOTIFIER
