"""Bill lifecycle state machine and transition helpers."""
from __future__ import annotations

from typing import Dict, Optional

from billpay.core.models import BillStatus
from billpay.services.errors import InvalidBillTransition


BILL_STATES = {status.value for status in BillStatus}


VALID_TRANSITIONS: Dict[str, set[str]] = {
    "draft": {"pending_approval", "approved", "cancelled"},
    "pending_approval": {"approved", "rejected", "cancelled"},
    "approved": {"scheduled", "cancelled"},
    "scheduled": {"paid", "approved", "cancelled"},
    "rejected": {"pending_approval", "approved"},  # resubmission only; always creates a new approval
    "paid": set(),
    "cancelled": set(),
}

TERMINAL_STATES = {"paid", "cancelled", "rejected"}
EDITABLE_STATES = {"draft", "rejected"}
SUBMITTABLE_STATES = {"draft", "rejected"}
CANCELLABLE_STATES = {"draft", "pending_approval", "approved", "scheduled"}


def audit_payload(
    bill: Dict,
    event_type: str,
    from_state: Optional[str],
    to_state: Optional[str],
    actor_type: str = "system",
    actor_id: Optional[str] = None,
    payload: Optional[Dict] = None,
    idempotency_key: Optional[str] = None,
) -> Dict:
    """Audit event fields for ``BillPayDB.audit_insert``."""
    return {
        "organization_id": bill.get("organization_id"),
        "bill_id": bill["id"],
        "event_type": event_type,
        "from_state": from_state,
        "to_state": to_state,
        "actor_type": actor_type,
        "actor_id": actor_id,
        "payload": payload or {},
        "idempotency_key": idempotency_key,
    }


def _value(state) -> str:
    return state.value if isinstance(state, BillStatus) else str(state)


def is_valid_transition(from_state, to_state) -> bool:
    return _value(to_state) in VALID_TRANSITIONS.get(_value(from_state), set())


def assert_valid_transition(from_state, to_state, bill_id: Optional[str] = None) -> None:
    source, target = _value(from_state), _value(to_state)
    if source not in BILL_STATES or target not in BILL_STATES:
        raise InvalidBillTransition(source, target, bill_id)
    if target not in VALID_TRANSITIONS.get(source, set()):
        raise InvalidBillTransition(source, target, bill_id)
