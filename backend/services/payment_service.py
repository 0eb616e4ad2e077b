"""
Payment service — the flows that touch more than one component.

    initiate_payment          ledger record → provider adapter → reconcile
    initiate_service_payment  ledger record + pending service → initiate
    redeem_for_payment        ledger record + atomic control number redemption

Routes call these and commit; nothing here commits.
"""
import logging
from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from domain.entities import Payment, Service
from domain.enums import HistorySource
from domain.errors import ProviderError
from services import control_number_service, delivery_service, ledger_service, reconciliation_service
from services.control_number_service import RedemptionResult, Redeemer
from services.delivery_service import ServiceSpec
from services.ledger_service import PaymentOrder
from services.provider_adapter import ProviderAdapter, call_with_timeout
from services.reconciliation_service import ExternalEvent

logger = logging.getLogger(__name__)

OUTCOME_ACCEPTED = "accepted"
OUTCOME_UNKNOWN = "unknown"


@dataclass(frozen=True)
class InitiationResult:
    payment: Payment
    outcome: str  # accepted | unknown
    service: Optional[Service] = None


@dataclass(frozen=True)
class RedeemedPayment:
    payment: Payment
    redemption: RedemptionResult


async def _submit(db: AsyncSession, adapter: ProviderAdapter, payment: Payment) -> InitiationResult:
    try:
        initiation = await call_with_timeout(
            adapter.initiate_payment(payment.order_id, payment.amount, payment.currency, payment.payer)
        )
    except ProviderError as e:
        # Rails often settle after a timeout; leave it pending for webhook/poll
        logger.warning(
            f"Payment {payment.order_id}: {adapter.name} initiation inconclusive "
            f"({type(e).__name__}: {e.message}); outcome unknown"
        )
        return InitiationResult(payment=payment, outcome=OUTCOME_UNKNOWN)

    result = await reconciliation_service.on_external_event(
        db,
        ExternalEvent(
            provider=adapter.name,
            order_id=payment.order_id,
            status=initiation.provider_status,
            external_reference=initiation.external_reference,
            transaction_id=initiation.transaction_id,
            source=HistorySource.PROVIDER.value,
        ),
    )
    logger.info(f"Payment {payment.order_id} accepted by {adapter.name} ({initiation.provider_status})")
    return InitiationResult(payment=result.payment, outcome=OUTCOME_ACCEPTED)


async def initiate_payment(db: AsyncSession, adapter: ProviderAdapter, order: PaymentOrder) -> InitiationResult:
    """
    Record a payment and hand it to the provider.

    A ProviderError (timeout included) never fails the payment: it stays
    pending and the caller is told the outcome is unknown.
    """
    payment = await ledger_service.create_payment(db, order)
    return await _submit(db, adapter, payment)


async def initiate_service_payment(
    db: AsyncSession,
    adapter: ProviderAdapter,
    order: PaymentOrder,
    service_spec: ServiceSpec,
) -> InitiationResult:
    """Create a pending service paid for by a new payment, then initiate it."""
    payment = await ledger_service.create_payment(db, order)
    service = await delivery_service.create_service(db, payment.id, service_spec)
    result = await _submit(db, adapter, payment)
    service = await delivery_service.get_service(db, service.service_id)
    return replace(result, service=service)


async def redeem_for_payment(
    db: AsyncSession,
    code: str,
    order: PaymentOrder,
    redeemer: Optional[Redeemer] = None,
) -> RedeemedPayment:
    """
    Open a payment for a control number and consume the code against it.

    The amount and currency always come from the control number. If the
    redemption fails the payment insert is rolled back with it.
    """
    cn = await control_number_service.get_control_number(db, code)
    order = replace(
        order,
        amount=cn.amount,
        currency=cn.currency,
        merchant_id=cn.merchant_id,
        description=order.description or cn.description,
    )

    async with db.begin_nested():
        payment = await ledger_service.create_payment(db, order)
        redemption = await control_number_service.redeem_control_number(
            db, cn.code, payment.order_id, redeemer
        )
        await ledger_service.annotate(
            db, payment.order_id, f"Control number {cn.code} redeemed", HistorySource.REDEMPTION.value
        )

    return RedeemedPayment(payment=payment, redemption=redemption)
