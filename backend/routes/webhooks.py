"""
Provider webhook endpoint.

    POST /webhooks/{provider}

Rails deliver at-least-once and out of order; every delivery is reconciled
and acknowledged with {accepted}. Duplicates and stale statuses are absorbed
by the ledger, so retries are always safe to acknowledge.

Body signature: hex HMAC-SHA256 of the raw body in X-Webhook-Signature.
"""
import json
import logging

from fastapi import APIRouter, Depends, Header, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from domain.constants import WEBHOOK_SIGNATURE_HEADER
from domain.errors import UnauthorizedError, ValidationError
from domain.responses import success_response
from models import DeliveryReportOut, WebhookEventRequest, dump
from services import reconciliation_service
from services.reconciliation_service import ExternalEvent

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    signature: str | None = Header(None, alias=WEBHOOK_SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_db),
):
    body = await request.body()
    if not reconciliation_service.verify_webhook_signature(body, signature or ""):
        raise UnauthorizedError("Invalid webhook signature")

    try:
        payload = WebhookEventRequest.model_validate(json.loads(body or b"{}"))
    except (ValueError, PydanticValidationError) as e:
        logger.warning(f"Malformed {provider} webhook: {e}")
        raise ValidationError("Malformed webhook body", field="body")

    logger.info(f"  📩 {provider} webhook: order={payload.order_id} status={payload.status}")

    result = await reconciliation_service.on_external_event(
        db,
        ExternalEvent(
            provider=provider,
            order_id=payload.order_id,
            status=payload.status,
            external_reference=payload.external_reference,
            transaction_id=payload.transaction_id,
            message=payload.message,
        ),
    )
    await db.commit()

    data = {
        "accepted": result.accepted,
        "applied": result.applied,
        "status": result.payment.status,
    }
    if result.delivery is not None:
        data["delivery"] = dump(DeliveryReportOut.model_validate(result.delivery))
    return success_response(data)
