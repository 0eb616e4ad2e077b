"""
Payment endpoints — initiate, inspect and poll ledger payments.

Endpoints:
    POST /payments                    — record + hand to the provider
    GET  /payments/{order_id}         — payment with full status history
    POST /payments/{order_id}/poll    — ask the provider and reconcile
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import AdapterLookup, get_adapter_lookup, require_permission
from domain.constants import PERM_PAYMENTS_READ, PERM_PAYMENTS_WRITE
from domain.errors import PermissionDeniedError
from domain.principal import Principal
from domain.responses import success_response
from models import DeliveryReportOut, PaymentCreateRequest, PaymentOut, StatusEntryOut, dump
from services import ledger_service, payment_service, reconciliation_service
from services.ledger_service import PaymentOrder
from utils.validators import validated_order_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


async def _owned(db: AsyncSession, order_id: str, principal: Principal):
    payment = await ledger_service.get_payment(db, order_id)
    if payment.merchant_id != principal.merchant_id:
        raise PermissionDeniedError("Payment belongs to another merchant")
    return payment


# ── POST /payments ─────────────────────────────────────────────────
@router.post("", status_code=201)
async def create_payment(
    request: PaymentCreateRequest,
    principal: Principal = Depends(require_permission(PERM_PAYMENTS_WRITE)),
    adapters: AdapterLookup = Depends(get_adapter_lookup),
    db: AsyncSession = Depends(get_db),
):
    """
    Record a payment and initiate it with the provider.

    meta.outcome is "unknown" when the provider timed out or failed; the
    payment stays pending and will be settled by webhook or poll.
    """
    order = PaymentOrder(
        amount=request.amount,
        currency=request.currency,
        order_id=request.order_id,
        reference=request.reference,
        description=request.description,
        provider=request.provider,
        payer_name=request.payer_name,
        payer_email=request.payer_email,
        payer_phone=request.payer_phone,
        merchant_id=principal.merchant_id,
    )
    result = await payment_service.initiate_payment(db, adapters(request.provider), order)
    await db.commit()
    return success_response(dump(PaymentOut.model_validate(result.payment)), meta={"outcome": result.outcome})


# ── GET /payments/{order_id} ───────────────────────────────────────
@router.get("/{order_id}")
async def get_payment(
    order_id: str = Depends(validated_order_id),
    principal: Principal = Depends(require_permission(PERM_PAYMENTS_READ)),
    db: AsyncSession = Depends(get_db),
):
    payment = await _owned(db, order_id, principal)
    history = await ledger_service.get_status_history(db, payment.order_id)
    data = dump(PaymentOut.model_validate(payment))
    data["statusHistory"] = [dump(StatusEntryOut.model_validate(h)) for h in history]
    return success_response(data)


# ── POST /payments/{order_id}/poll ─────────────────────────────────
@router.post("/{order_id}/poll")
async def poll_payment(
    order_id: str = Depends(validated_order_id),
    principal: Principal = Depends(require_permission(PERM_PAYMENTS_WRITE)),
    adapters: AdapterLookup = Depends(get_adapter_lookup),
    db: AsyncSession = Depends(get_db),
):
    payment = await _owned(db, order_id, principal)
    result = await reconciliation_service.poll_status(db, adapters(payment.provider), payment.order_id)
    await db.commit()

    meta = {"outcome": result.outcome, "applied": result.applied}
    if result.delivery is not None:
        meta["delivery"] = dump(DeliveryReportOut.model_validate(result.delivery))
    return success_response(dump(PaymentOut.model_validate(result.payment)), meta=meta)
