"""
Service endpoints — paid-for entitlements.

Endpoints:
    POST /services                      — create a pending service + its payment
    GET  /services/{service_id}         — details
    GET  /services/{service_id}/access  — may the customer use it right now?
    POST /services/check-expired        — run the service expiry sweep now
"""
import logging

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import AdapterLookup, get_adapter_lookup, require_permission
from domain.constants import PERM_SERVICES_READ, PERM_SERVICES_WRITE
from domain.errors import PermissionDeniedError
from domain.principal import Principal
from domain.responses import success_response
from models import PaymentOut, ServiceCreateRequest, ServiceOut, dump
from services import delivery_service, ledger_service, payment_service
from services.delivery_service import ServiceSpec
from services.ledger_service import PaymentOrder

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/services", tags=["services"])


async def _owned(db: AsyncSession, service_id: str, principal: Principal):
    service = await delivery_service.get_service(db, service_id)
    payment = await ledger_service.get_payment_by_id(db, service.payment_id)
    if payment.merchant_id != principal.merchant_id:
        raise PermissionDeniedError("Service belongs to another merchant")
    return service


# ── POST /services ─────────────────────────────────────────────────
@router.post("", status_code=201)
async def create_service(
    request: ServiceCreateRequest,
    principal: Principal = Depends(require_permission(PERM_SERVICES_WRITE)),
    adapters: AdapterLookup = Depends(get_adapter_lookup),
    db: AsyncSession = Depends(get_db),
):
    order = PaymentOrder(
        amount=request.amount,
        currency=request.currency,
        order_id=request.order_id,
        description=f"{request.service_type}: {request.name}",
        provider=request.provider,
        payer_name=request.payer_name,
        payer_email=request.payer_email,
        payer_phone=request.payer_phone,
        merchant_id=principal.merchant_id,
    )
    spec = ServiceSpec(
        customer_id=request.customer_id,
        service_type=request.service_type,
        name=request.name,
        description=request.description,
        duration_days=request.duration_days,
    )
    result = await payment_service.initiate_service_payment(db, adapters(request.provider), order, spec)
    await db.commit()

    return success_response(
        {
            "service": dump(ServiceOut.model_validate(result.service)),
            "payment": dump(PaymentOut.model_validate(result.payment)),
        },
        meta={"outcome": result.outcome},
    )


# ── POST /services/check-expired ───────────────────────────────────
@router.post("/check-expired")
async def check_expired(
    principal: Principal = Depends(require_permission(PERM_SERVICES_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    """Run the service expiry sweep now instead of waiting for the sweeper."""
    expired = await delivery_service.sweep_expired_services(db)
    await db.commit()
    logger.info(f"Manual service expiry sweep by {principal.merchant_id}: {expired} services")
    return success_response({"expired": expired})


# ── GET /services/{service_id} ─────────────────────────────────────
@router.get("/{service_id}")
async def get_service(
    service_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_permission(PERM_SERVICES_READ)),
    db: AsyncSession = Depends(get_db),
):
    service = await _owned(db, service_id, principal)
    return success_response(dump(ServiceOut.model_validate(service)))


# ── GET /services/{service_id}/access ──────────────────────────────
@router.get("/{service_id}/access")
async def check_access(
    service_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_permission(PERM_SERVICES_READ)),
    db: AsyncSession = Depends(get_db),
):
    """
    Access verdict, re-evaluated against the clock on every call.

    A pending service reports reason "payment_required" in the body rather
    than as an HTTP error, so callers can branch on `access`.
    """
    await _owned(db, service_id, principal)
    result = await delivery_service.check_service_access(db, service_id)
    await db.commit()
    return success_response({
        "access": result.access,
        "reason": result.reason,
        "service": dump(ServiceOut.model_validate(result.service)),
    })
