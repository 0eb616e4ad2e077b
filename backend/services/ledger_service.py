"""
Payment Ledger — authoritative payment records and their status history.

State machine:
    pending → processing → completed | failed | cancelled
    pending → completed | failed | cancelled

Terminal statuses are sticky. An update that would move a terminal payment
(or move any payment backwards) is recorded as an informational history row
with applied=False and leaves the record untouched.

Status changes are compare-and-set on the status the caller observed:
    UPDATE payments SET status=:new WHERE id=:id AND status=:observed
If another request changed the status first, the row is re-read and the
update re-evaluated against the new status. Only the request whose CAS moves
the payment into `completed` gets a CompletionEvent, so the dispatcher fires
at most once per payment no matter how many notifications arrive.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import insert_ignore
from db_models import Payment as PaymentRow, PaymentStatusEvent
from domain.constants import MAX_STATUS_CAS_ATTEMPTS, ORDER_ID_PREFIX
from domain.entities import CompletionEvent, Payment, StatusEntry
from domain.enums import HistorySource, PaymentStatus
from domain.errors import ConflictError, InternalError, NotFoundError, ValidationError
from domain import rules
from utils.clock import utcnow
from utils.money import to_decimal, to_minor
from utils.validators import validate_email, validate_order_id, validate_phone

logger = logging.getLogger(__name__)

_VALID_STATUSES = {s.value for s in PaymentStatus}

# Timestamp column stamped on entry into each terminal status
_TERMINAL_STAMP = {
    PaymentStatus.COMPLETED.value: "completed_at",
    PaymentStatus.FAILED.value: "failed_at",
    PaymentStatus.CANCELLED.value: "cancelled_at",
}


@dataclass
class PaymentOrder:
    amount: Decimal
    currency: Optional[str] = None
    order_id: Optional[str] = None
    reference: Optional[str] = None  # legacy alias, defaults to order_id
    description: Optional[str] = None
    provider: str = "generic"
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    payer_phone: Optional[str] = None
    merchant_id: Optional[str] = None


@dataclass(frozen=True)
class StatusUpdate:
    payment: Payment
    applied: bool
    completion_event: Optional[CompletionEvent] = None


def new_order_id() -> str:
    return f"{ORDER_ID_PREFIX}{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


async def _row_by_order(db: AsyncSession, order_id: str) -> Optional[PaymentRow]:
    """Look up by order_id first, then by the legacy reference column."""
    result = await db.execute(
        select(PaymentRow)
        .where(PaymentRow.order_id == order_id)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is not None:
        return row

    result = await db.execute(
        select(PaymentRow)
        .where(PaymentRow.reference == order_id)
        .order_by(PaymentRow.id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def _row_by_id(db: AsyncSession, payment_id: int) -> PaymentRow:
    result = await db.execute(
        select(PaymentRow)
        .where(PaymentRow.id == payment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


def _history(payment_id: int, status: str, source: str, message: Optional[str], applied: bool = True):
    return PaymentStatusEvent(
        payment_id=payment_id,
        status=status,
        source=source,
        message=message,
        applied=applied,
        created_at=utcnow(),
    )


# ── Operations ──────────────────────────────────────────────────────

async def create_payment(db: AsyncSession, order: PaymentOrder) -> Payment:
    """
    Record a new pending payment.

    Raises:
        ValidationError: bad amount, currency, order id or payer contact
        ConflictError: order id already recorded
    """
    amount = to_decimal(order.amount, field="amount")
    if amount <= 0:
        raise ValidationError("must be greater than zero", field="amount")
    currency = (order.currency or settings.default_currency).upper()
    if currency not in settings.allowed_currencies_list:
        raise ValidationError(f"unsupported currency {currency}", field="currency")

    order_id = validate_order_id(order.order_id) if order.order_id else new_order_id()
    now = utcnow()

    res = await db.execute(
        insert_ignore(db, PaymentRow)
        .values(
            order_id=order_id,
            reference=order.reference or order_id,
            amount_minor=to_minor(amount),
            currency=currency,
            description=order.description,
            provider=(order.provider or "generic").lower(),
            payer_name=order.payer_name,
            payer_email=validate_email(order.payer_email),
            payer_phone=validate_phone(order.payer_phone),
            merchant_id=order.merchant_id,
            status=PaymentStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["order_id"])
    )
    if not res.rowcount:
        raise ConflictError(f"Payment {order_id} already exists", details={"order_id": order_id})

    row = await _row_by_order(db, order_id)
    db.add(_history(row.id, PaymentStatus.PENDING.value, HistorySource.CREATED.value, "Payment created"))
    await db.flush()

    logger.info(f"Payment {order_id} created: {amount} {currency} via {row.provider}")
    return Payment.from_row(row)


async def apply_status(
    db: AsyncSession,
    order_id: str,
    new_status: str,
    message: Optional[str] = None,
    source: str = HistorySource.MANUAL.value,
) -> StatusUpdate:
    """
    Apply a canonical status to a payment under the state machine.

    Returns:
        StatusUpdate: applied=False for no-ops and rejected moves;
        completion_event set only on the first transition into completed.

    Raises:
        ValidationError: new_status is not a canonical status
        NotFoundError: no payment with that order id (or legacy reference)
    """
    if new_status not in _VALID_STATUSES:
        raise ValidationError(f"unknown payment status {new_status}", field="status")

    for _ in range(MAX_STATUS_CAS_ATTEMPTS):
        row = await _row_by_order(db, order_id)
        if row is None:
            raise NotFoundError("Payment", order_id)

        current = row.status
        if current == new_status:
            return StatusUpdate(payment=Payment.from_row(row), applied=False)

        if not rules.can_transition(current, new_status):
            note = f"Ignored {new_status}: payment already {current}"
            if message:
                note = f"{note} ({message})"
            db.add(_history(row.id, new_status, source, note, applied=False))
            await db.flush()
            logger.warning(f"Payment {row.order_id}: rejected {current} → {new_status} from {source}")
            return StatusUpdate(payment=Payment.from_row(row), applied=False)

        now = utcnow()
        values = {"status": new_status, "updated_at": now}
        stamp = _TERMINAL_STAMP.get(new_status)
        if stamp:
            values[stamp] = now

        res = await db.execute(
            update(PaymentRow)
            .where(PaymentRow.id == row.id, PaymentRow.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            logger.info(f"Payment {row.order_id}: status moved under us ({current}), re-evaluating")
            continue

        db.add(_history(row.id, new_status, source, message))
        await db.flush()
        row = await _row_by_id(db, row.id)
        payment = Payment.from_row(row)
        logger.info(f"Payment {payment.order_id}: {current} → {new_status} ({source})")

        event = None
        if new_status == PaymentStatus.COMPLETED.value:
            event = CompletionEvent(payment_id=payment.id, order_id=payment.order_id, completed_at=now)
        return StatusUpdate(payment=payment, applied=True, completion_event=event)

    logger.error(f"Payment {order_id}: gave up after {MAX_STATUS_CAS_ATTEMPTS} contended status updates")
    raise InternalError("status update contention")


async def set_external_reference(
    db: AsyncSession,
    order_id: str,
    reference: str,
    transaction_id: Optional[str] = None,
) -> Payment:
    """Attach the provider's reference. Set once; later values are ignored."""
    row = await _row_by_order(db, order_id)
    if row is None:
        raise NotFoundError("Payment", order_id)

    res = await db.execute(
        update(PaymentRow)
        .where(PaymentRow.id == row.id, PaymentRow.external_reference.is_(None))
        .values(external_reference=reference, external_transaction_id=transaction_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    row = await _row_by_id(db, row.id)
    if res.rowcount == 0 and row.external_reference != reference:
        logger.warning(
            f"Payment {row.order_id}: keeping external reference {row.external_reference}, "
            f"ignoring {reference}"
        )
    return Payment.from_row(row)


async def find_by_order(db: AsyncSession, order_id: str) -> Optional[Payment]:
    row = await _row_by_order(db, order_id)
    return Payment.from_row(row) if row is not None else None


async def get_payment(db: AsyncSession, order_id: str) -> Payment:
    payment = await find_by_order(db, order_id)
    if payment is None:
        raise NotFoundError("Payment", order_id)
    return payment


async def get_payment_by_id(db: AsyncSession, payment_id: int) -> Payment:
    return Payment.from_row(await _row_by_id(db, payment_id))


async def get_status_history(db: AsyncSession, order_id: str) -> List[StatusEntry]:
    """Every recorded status, oldest first, including ignored updates."""
    payment = await get_payment(db, order_id)
    result = await db.execute(
        select(PaymentStatusEvent)
        .where(PaymentStatusEvent.payment_id == payment.id)
        .order_by(PaymentStatusEvent.id)
    )
    return [StatusEntry.from_row(r) for r in result.scalars().all()]


async def annotate(db: AsyncSession, order_id: str, message: str, source: str) -> None:
    """Append a history note at the payment's current status (no transition)."""
    payment = await get_payment(db, order_id)
    db.add(_history(payment.id, payment.status, source, message))
    await db.flush()
