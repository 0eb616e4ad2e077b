"""
Reconciliation Engine — turns provider notifications into ledger updates.

Inputs arrive two ways:
    - push: POST /webhooks/{provider} (HMAC-signed, at-least-once, any order)
    - pull: poll_status() asks the provider adapter directly

Both end in on_external_event(), which maps the provider's raw status to a
canonical one and hands it to ledger_service.apply_status(). Duplicates and
stale updates are absorbed by the ledger's state machine; the dispatcher runs
only when apply_status reports a first transition into `completed`.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from domain.entities import Payment
from domain.enums import HistorySource, PaymentStatus
from domain.errors import NotFoundError, ProviderError
from services import delivery_service, ledger_service
from services.delivery_service import DeliveryReport
from services.provider_adapter import ProviderAdapter, call_with_timeout

logger = logging.getLogger(__name__)

_P = PaymentStatus

# Raw provider vocabulary → canonical status. Keys are upper-cased on lookup.
STATUS_MAPS = {
    "mobile_money": {
        "PENDING": _P.PENDING,
        "PROCESSING": _P.PROCESSING,
        "COMPLETED": _P.COMPLETED,
        "FAILED": _P.FAILED,
        "CANCELLED": _P.CANCELLED,
    },
    "bank_transfer": {
        "INITIATED": _P.PENDING,
        "PENDING": _P.PENDING,
        "PROCESSING": _P.PROCESSING,
        "IN_PROGRESS": _P.PROCESSING,
        "COMPLETED": _P.COMPLETED,
        "SUCCESSFUL": _P.COMPLETED,
        "SETTLED": _P.COMPLETED,
        "FAILED": _P.FAILED,
        "REJECTED": _P.FAILED,
        "RETURNED": _P.FAILED,
        "CANCELLED": _P.CANCELLED,
    },
    "card": {
        "REQUIRES_PAYMENT_METHOD": _P.PENDING,
        "REQUIRES_CONFIRMATION": _P.PENDING,
        "REQUIRES_ACTION": _P.PENDING,
        "PROCESSING": _P.PROCESSING,
        "SUCCEEDED": _P.COMPLETED,
        "CANCELED": _P.CANCELLED,
    },
    "generic": {
        "PENDING": _P.PENDING,
        "PROCESSING": _P.PROCESSING,
        "COMPLETED": _P.COMPLETED,
        "SUCCESS": _P.COMPLETED,
        "SUCCESSFUL": _P.COMPLETED,
        "PAID": _P.COMPLETED,
        "FAILED": _P.FAILED,
        "CANCELLED": _P.CANCELLED,
        "CANCELED": _P.CANCELLED,
    },
}

# Rail names accepted in webhook paths
PROVIDER_ALIASES = {
    "zenopay": "mobile_money",
    "mpesa": "mobile_money",
    "bank": "bank_transfer",
    "stripe": "card",
}


@dataclass
class ExternalEvent:
    provider: str
    order_id: str
    status: str
    external_reference: Optional[str] = None
    transaction_id: Optional[str] = None
    message: Optional[str] = None
    source: str = HistorySource.WEBHOOK.value


@dataclass(frozen=True)
class ReconciliationResult:
    accepted: bool
    payment: Optional[Payment] = None
    applied: bool = False
    delivery: Optional[DeliveryReport] = None
    outcome: str = "reconciled"  # reconciled | unknown


def status_map_for(provider: str) -> dict:
    key = (provider or "generic").lower()
    key = PROVIDER_ALIASES.get(key, key)
    return STATUS_MAPS.get(key, STATUS_MAPS["generic"])


def map_status(provider: str, raw_status: str) -> Tuple[str, bool]:
    """
    Translate a raw provider status.

    Returns:
        (canonical_status, mapped); unmapped statuses come back as
        ("pending", False) so they can never complete or fail a payment.
    """
    canonical = status_map_for(provider).get((raw_status or "").strip().upper())
    if canonical is None:
        logger.warning(f"Unmapped {provider} status {raw_status!r}; treating as pending")
        return _P.PENDING.value, False
    return canonical.value, True


def verify_webhook_signature(payload: bytes, signature: str) -> bool:
    """
    HMAC-SHA256 of the raw body, hex encoded, keyed by WEBHOOK_SECRET.

    Fails closed: with no secret configured every webhook is rejected.
    """
    if not settings.webhook_secret:
        logger.error("WEBHOOK_SECRET not configured, rejecting webhook")
        return False

    if not signature:
        logger.warning("Webhook received without signature header")
        return False

    expected = hmac.new(
        settings.webhook_secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected, signature.strip().lower())


async def on_external_event(db: AsyncSession, event: ExternalEvent) -> ReconciliationResult:
    """
    Reconcile one provider report into the ledger.

    Raises:
        NotFoundError: the event names a payment we never recorded
    """
    payment = await ledger_service.find_by_order(db, event.order_id)
    if payment is None:
        logger.error(
            f"{event.source} event from {event.provider} for unknown payment {event.order_id} "
            f"(status {event.status!r})"
        )
        raise NotFoundError("Payment", event.order_id)

    if event.external_reference:
        await ledger_service.set_external_reference(
            db, payment.order_id, event.external_reference, event.transaction_id
        )

    canonical, mapped = map_status(event.provider, event.status)
    message = event.message
    if not mapped:
        message = f"Unmapped {event.provider} status {event.status!r}" + (f": {message}" if message else "")

    status_update = await ledger_service.apply_status(db, payment.order_id, canonical, message, event.source)
    if not mapped and status_update.payment.status == canonical and not status_update.applied:
        # same-status no-op writes no history; keep the raw status on record
        await ledger_service.annotate(db, payment.order_id, message, event.source)

    delivery = None
    if status_update.completion_event is not None:
        delivery = await delivery_service.on_payment_completed(db, status_update.completion_event)

    return ReconciliationResult(
        accepted=True,
        payment=status_update.payment,
        applied=status_update.applied,
        delivery=delivery,
    )


async def poll_status(db: AsyncSession, adapter: ProviderAdapter, order_id: str) -> ReconciliationResult:
    """
    Ask the rail for a payment's status and reconcile the answer.

    A timeout or provider failure leaves the payment untouched and reports
    outcome "unknown".
    """
    payment = await ledger_service.get_payment(db, order_id)

    try:
        report = await call_with_timeout(adapter.query_status(payment.order_id))
    except ProviderError as e:
        logger.warning(f"Poll for {payment.order_id} via {adapter.name} inconclusive: {e.message}")
        return ReconciliationResult(accepted=False, payment=payment, outcome="unknown")

    return await on_external_event(
        db,
        ExternalEvent(
            provider=adapter.name,
            order_id=payment.order_id,
            status=report.provider_status,
            external_reference=report.external_reference,
            transaction_id=report.transaction_id,
            message=report.message,
            source=HistorySource.POLL.value,
        ),
    )
