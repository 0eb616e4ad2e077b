"""
Business predicates and the payment state machine.

Everything here is a pure function of a snapshot and `now`; none of it
touches the database. The services re-check the same conditions inside
their conditional UPDATEs, so a predicate answering True is advice, not a
reservation.
"""
from datetime import datetime
from typing import Optional

from domain.entities import ControlNumber, Service
from domain.enums import ControlNumberStatus, PaymentStatus, ServiceStatus

TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.COMPLETED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.CANCELLED.value,
})

# pending → processing → terminal; pending may jump straight to terminal
_ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING.value: frozenset({
        PaymentStatus.PROCESSING.value,
        *TERMINAL_PAYMENT_STATUSES,
    }),
    PaymentStatus.PROCESSING.value: TERMINAL_PAYMENT_STATUSES,
}


# ── Payments ────────────────────────────────────────────────────────

def is_terminal(status: str) -> bool:
    return status in TERMINAL_PAYMENT_STATUSES


def can_transition(current: str, new: str) -> bool:
    """True only for a forward move under the state machine."""
    return new in _ALLOWED_TRANSITIONS.get(current, frozenset())


# ── Control numbers ─────────────────────────────────────────────────

def is_expired(cn: ControlNumber, now: datetime) -> bool:
    return now > cn.expires_at or now > cn.valid_until


def unusable_reason(cn: ControlNumber, now: datetime) -> Optional[str]:
    """
    Why a control number cannot be redeemed right now, or None if it can.

    Checked in this order: inactive, expired, exhausted.
    """
    if cn.status != ControlNumberStatus.ACTIVE.value:
        return "inactive"
    if is_expired(cn, now):
        return "expired"
    if cn.current_uses >= cn.max_uses:
        return "exhausted"
    return None


def can_be_used(cn: ControlNumber, now: datetime) -> bool:
    return unusable_reason(cn, now) is None


# ── Services ────────────────────────────────────────────────────────

def is_accessible(service: Service, now: datetime) -> bool:
    if service.status != ServiceStatus.ACTIVE.value:
        return False
    return service.expires_at is None or now <= service.expires_at
