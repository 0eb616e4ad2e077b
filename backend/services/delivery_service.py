"""
Service Delivery Dispatcher — activates paid-for services.

Flow:
    1. A service is created `pending` against a payment (create_service)
    2. The ledger emits a CompletionEvent on the payment's first move into
       `completed`; reconciliation hands it to on_payment_completed()
    3. Each pending service is activated inside its own SAVEPOINT, so one
       broken service is marked failed without blocking its siblings

Re-delivery of the same event is harmless: activation is a conditional
`pending → active` UPDATE and non-pending services are skipped.

Access checks re-evaluate expiry on every call; the sweep only brings the
stored status in line with what check_service_access already reports.
"""
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Service as ServiceRow
from domain.constants import SERVICE_ID_PREFIX
from domain.entities import CompletionEvent, Service
from domain.enums import DeliveryStatus, ServiceStatus
from domain.errors import NotFoundError, ValidationError
from domain import rules
from utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ServiceSpec:
    customer_id: str
    service_type: str
    name: str
    description: Optional[str] = None
    duration_days: Optional[int] = None


@dataclass(frozen=True)
class DeliveryReport:
    activated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: int = 0


@dataclass(frozen=True)
class AccessResult:
    access: bool
    reason: Optional[str] = None  # payment_required | expired | inactive
    service: Optional[Service] = None


def new_service_id() -> str:
    return f"{SERVICE_ID_PREFIX}{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


async def _row(db: AsyncSession, service_id: str) -> Optional[ServiceRow]:
    result = await db.execute(
        select(ServiceRow)
        .where(ServiceRow.service_id == service_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_service(db: AsyncSession, payment_id: int, spec: ServiceSpec) -> Service:
    """Register a pending service that activates when payment_id completes."""
    if not spec.customer_id:
        raise ValidationError("is required", field="customer_id")
    if not spec.name:
        raise ValidationError("is required", field="name")
    if spec.duration_days is not None and spec.duration_days <= 0:
        raise ValidationError("must be positive", field="duration_days")

    now = utcnow()
    row = ServiceRow(
        service_id=new_service_id(),
        payment_id=payment_id,
        customer_id=spec.customer_id,
        service_type=spec.service_type,
        name=spec.name,
        description=spec.description,
        duration_days=spec.duration_days,
        status=ServiceStatus.PENDING.value,
        delivery_status=DeliveryStatus.NOT_STARTED.value,
        access_count=0,
        delivery_attempts=0,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    await db.flush()

    logger.info(f"Service {row.service_id} ({spec.service_type}) created for payment {payment_id}")
    return Service.from_row(row)


async def _activate(db: AsyncSession, row: ServiceRow, now) -> bool:
    """Conditional pending → active; False if someone else got there first."""
    duration = row.duration_days or settings.default_service_duration_days
    expires_at = now + timedelta(days=duration) if duration else None

    res = await db.execute(
        update(ServiceRow)
        .where(ServiceRow.id == row.id, ServiceRow.status == ServiceStatus.PENDING.value)
        .values(
            status=ServiceStatus.ACTIVE.value,
            access_granted_at=now,
            delivered_at=now,
            expires_at=expires_at,
            access_token=row.access_token or secrets.token_urlsafe(32),
            delivery_status=DeliveryStatus.COMPLETED.value,
            delivery_error=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def on_payment_completed(db: AsyncSession, event: CompletionEvent) -> DeliveryReport:
    """
    Activate every pending service linked to a completed payment.

    Returns:
        DeliveryReport: service ids activated / failed, count skipped
    """
    result = await db.execute(
        select(ServiceRow)
        .where(ServiceRow.payment_id == event.payment_id)
        .order_by(ServiceRow.id)
        .execution_options(populate_existing=True)
    )
    rows = result.scalars().all()

    activated, failed, skipped = [], [], 0
    for row in rows:
        if row.status != ServiceStatus.PENDING.value:
            skipped += 1
            continue

        service_id = row.service_id
        now = utcnow()
        await db.execute(
            update(ServiceRow)
            .where(ServiceRow.id == row.id)
            .values(
                delivery_attempts=ServiceRow.delivery_attempts + 1,
                last_delivery_attempt=now,
                delivery_status=DeliveryStatus.IN_PROGRESS.value,
            )
            .execution_options(synchronize_session=False)
        )

        try:
            async with db.begin_nested():
                done = await _activate(db, row, now)
        except Exception as e:
            logger.error(f"Delivery of {service_id} for {event.order_id} failed: {e}", exc_info=True)
            await db.execute(
                update(ServiceRow)
                .where(ServiceRow.id == row.id)
                .values(delivery_status=DeliveryStatus.FAILED.value, delivery_error=str(e)[:1000])
                .execution_options(synchronize_session=False)
            )
            failed.append(service_id)
            continue

        if done:
            activated.append(service_id)
            logger.info(f"✅ Service {service_id} activated (payment {event.order_id})")
        else:
            skipped += 1

    return DeliveryReport(activated=activated, failed=failed, skipped=skipped)


async def check_service_access(db: AsyncSession, service_id: str) -> AccessResult:
    """
    Decide whether the customer may use a service right now.

    On a grant, access_count and last_accessed_at are bumped atomically.
    """
    row = await _row(db, service_id)
    if row is None:
        raise NotFoundError("Service", service_id)

    service = Service.from_row(row)
    now = utcnow()
    if not rules.is_accessible(service, now):
        if service.status == ServiceStatus.PENDING.value:
            reason = "payment_required"
        elif service.status == ServiceStatus.EXPIRED.value or (
            service.status == ServiceStatus.ACTIVE.value and service.expires_at is not None
        ):
            reason = "expired"
        else:
            reason = "inactive"
        return AccessResult(access=False, reason=reason, service=service)

    await db.execute(
        update(ServiceRow)
        .where(ServiceRow.id == row.id)
        .values(access_count=ServiceRow.access_count + 1, last_accessed_at=now)
        .execution_options(synchronize_session=False)
    )
    row = await _row(db, service_id)
    return AccessResult(access=True, service=Service.from_row(row))


async def get_service(db: AsyncSession, service_id: str) -> Service:
    row = await _row(db, service_id)
    if row is None:
        raise NotFoundError("Service", service_id)
    return Service.from_row(row)


async def sweep_expired_services(db: AsyncSession) -> int:
    """Mark active services past expires_at as expired. Safe to re-run."""
    now = utcnow()
    res = await db.execute(
        update(ServiceRow)
        .where(
            ServiceRow.status == ServiceStatus.ACTIVE.value,
            ServiceRow.expires_at.is_not(None),
            ServiceRow.expires_at < now,
        )
        .values(status=ServiceStatus.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    count = res.rowcount or 0
    if count:
        logger.info(f"Expiry sweep: {count} services marked expired")
    return count
