"""
Control number endpoints — issue, validate, redeem, extend, cancel.

Endpoints:
    POST /control-numbers                  — issue one code
    POST /control-numbers/batch            — issue up to the batch limit
    POST /control-numbers/cleanup-expired  — run the expiry sweep now
    GET  /control-numbers/{code}           — details
    GET  /control-numbers/{code}/validate  — public, throttled usability check
    POST /control-numbers/{code}/redeem    — atomic redemption
    POST /control-numbers/{code}/extend    — push expiry forward (active only)
    POST /control-numbers/{code}/cancel    — active → cancelled
"""
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import require_permission, validate_throttle
from domain.constants import (
    PERM_CONTROL_NUMBERS_REDEEM,
    PERM_CONTROL_NUMBERS_WRITE,
    PERM_PAYMENTS_READ,
)
from domain.errors import PermissionDeniedError
from domain.principal import Principal
from domain.responses import success_response
from models import (
    BatchCreateRequest,
    ControlNumberCreateRequest,
    ControlNumberOut,
    ExtendRequest,
    PaymentOut,
    RedeemRequest,
    dump,
)
from services import control_number_service, payment_service
from services.control_number_service import ControlNumberSpec, Redeemer
from services.ledger_service import PaymentOrder
from utils.validators import validated_code

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/control-numbers", tags=["control-numbers"])


def _spec(request: ControlNumberCreateRequest) -> ControlNumberSpec:
    return ControlNumberSpec(
        amount=request.amount,
        currency=request.currency,
        payment_method_type=request.payment_method_type,
        payment_provider=request.payment_provider,
        description=request.description,
        customer_name=request.customer_name,
        customer_email=request.customer_email,
        customer_phone=request.customer_phone,
        expires_in_hours=request.expires_in_hours,
        valid_for_days=request.valid_for_days,
        is_reusable=request.is_reusable,
        max_uses=request.max_uses,
    )


async def _owned(db: AsyncSession, code: str, principal: Principal):
    """Load a control number, hiding other merchants' codes behind a 403."""
    cn = await control_number_service.get_control_number(db, code)
    if cn.merchant_id != principal.merchant_id:
        raise PermissionDeniedError("Control number belongs to another merchant")
    return cn


# ── POST /control-numbers ──────────────────────────────────────────
@router.post("", status_code=201)
async def create_control_number(
    request: ControlNumberCreateRequest,
    principal: Principal = Depends(require_permission(PERM_CONTROL_NUMBERS_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    cn = await control_number_service.generate_control_number(db, _spec(request), principal)
    await db.commit()
    return success_response(dump(ControlNumberOut.model_validate(cn)))


# ── POST /control-numbers/batch ────────────────────────────────────
@router.post("/batch", status_code=201)
async def create_batch(
    request: BatchCreateRequest,
    principal: Principal = Depends(require_permission(PERM_CONTROL_NUMBERS_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    batch_id, issued = await control_number_service.batch_generate(
        db, _spec(request), request.count, principal
    )
    await db.commit()
    return success_response(
        [dump(ControlNumberOut.model_validate(cn)) for cn in issued],
        meta={"batchId": batch_id, "count": len(issued)},
    )


# ── POST /control-numbers/cleanup-expired ──────────────────────────
@router.post("/cleanup-expired")
async def cleanup_expired(
    principal: Principal = Depends(require_permission(PERM_CONTROL_NUMBERS_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    """Run the control number expiry sweep now instead of waiting for the sweeper."""
    expired = await control_number_service.sweep_expired(db)
    await db.commit()
    logger.info(f"Manual expiry sweep by {principal.merchant_id}: {expired} control numbers")
    return success_response({"expired": expired})


# ── GET /control-numbers/{code} ────────────────────────────────────
@router.get("/{code}")
async def get_control_number(
    code: str = Depends(validated_code),
    principal: Principal = Depends(require_permission(PERM_PAYMENTS_READ)),
    db: AsyncSession = Depends(get_db),
):
    cn = await _owned(db, code, principal)
    return success_response(dump(ControlNumberOut.model_validate(cn)))


# ── GET /control-numbers/{code}/validate ───────────────────────────
@router.get("/{code}/validate")
async def validate_control_number(
    code: str = Path(..., description="Control number as typed by the payer"),
    amount: Optional[Decimal] = Query(None, description="Amount the payer intends to pay"),
    _=Depends(validate_throttle),
    db: AsyncSession = Depends(get_db),
):
    """
    Public check used by payment channels before taking money.

    Only the verdict and the amount due are disclosed, never customer details.
    """
    result = await control_number_service.validate_control_number(db, code, amount)
    data = {"valid": result.valid, "reason": result.reason}
    if result.control_number is not None:
        cn = result.control_number
        data.update({
            "code": cn.code,
            "amount": str(cn.amount),
            "currency": cn.currency,
            "expiresAt": cn.expires_at.isoformat(),
            "paymentMethodType": cn.payment_method_type,
        })
    return success_response(data)


# ── POST /control-numbers/{code}/redeem ────────────────────────────
@router.post("/{code}/redeem")
async def redeem_control_number(
    request: RedeemRequest,
    code: str = Depends(validated_code),
    principal: Principal = Depends(require_permission(PERM_CONTROL_NUMBERS_REDEEM)),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, code, principal)
    redeemer = Redeemer(
        name=request.redeemer.name,
        phone=request.redeemer.phone,
        network=request.redeemer.network,
    )

    if request.create_payment:
        outcome = await payment_service.redeem_for_payment(
            db,
            code,
            PaymentOrder(
                amount=Decimal("0"),  # replaced by the control number's amount
                order_id=request.payment_reference,
                provider=request.provider,
                payer_name=request.redeemer.name,
                payer_phone=request.redeemer.phone,
            ),
            redeemer,
        )
        await db.commit()
        return success_response({
            "controlNumber": dump(ControlNumberOut.model_validate(outcome.redemption.control_number)),
            "paymentReference": outcome.redemption.payment_reference,
            "payment": dump(PaymentOut.model_validate(outcome.payment)),
        })

    redemption = await control_number_service.redeem_control_number(
        db, code, request.payment_reference, redeemer
    )
    await db.commit()
    return success_response({
        "controlNumber": dump(ControlNumberOut.model_validate(redemption.control_number)),
        "paymentReference": redemption.payment_reference,
    })


# ── POST /control-numbers/{code}/extend ────────────────────────────
@router.post("/{code}/extend")
async def extend_control_number(
    request: ExtendRequest,
    code: str = Depends(validated_code),
    principal: Principal = Depends(require_permission(PERM_CONTROL_NUMBERS_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, code, principal)
    cn = await control_number_service.extend_validity(db, code, request.extra_hours)
    await db.commit()
    return success_response(dump(ControlNumberOut.model_validate(cn)))


# ── POST /control-numbers/{code}/cancel ────────────────────────────
@router.post("/{code}/cancel")
async def cancel_control_number(
    code: str = Depends(validated_code),
    principal: Principal = Depends(require_permission(PERM_CONTROL_NUMBERS_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, code, principal)
    cn = await control_number_service.cancel_control_number(db, code)
    await db.commit()
    return success_response(dump(ControlNumberOut.model_validate(cn)))
