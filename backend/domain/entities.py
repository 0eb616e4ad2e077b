"""
Immutable snapshots of persisted records.

Services hand these out instead of live ORM rows, so callers cannot mutate
state behind the repository's back. All mutation goes through the
conditional writes in services/*.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from utils.money import from_minor


@dataclass(frozen=True)
class ControlNumber:
    code: str
    amount: Decimal
    currency: str
    payment_method_type: str
    payment_provider: str
    merchant_id: str
    status: str
    expires_at: datetime
    valid_until: datetime
    is_reusable: bool
    max_uses: int
    current_uses: int
    description: Optional[str] = None
    customer: dict = field(default_factory=dict)
    used_at: Optional[datetime] = None
    used_by: dict = field(default_factory=dict)
    payment_reference: Optional[str] = None
    batch_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "ControlNumber":
        return cls(
            code=row.code,
            amount=from_minor(row.amount_minor),
            currency=row.currency,
            payment_method_type=row.payment_method_type,
            payment_provider=row.payment_provider,
            merchant_id=row.merchant_id,
            status=row.status,
            expires_at=row.expires_at,
            valid_until=row.valid_until,
            is_reusable=row.is_reusable,
            max_uses=row.max_uses,
            current_uses=row.current_uses,
            description=row.description,
            customer=_compact(name=row.customer_name, email=row.customer_email, phone=row.customer_phone),
            used_at=row.used_at,
            used_by=_compact(name=row.used_by_name, phone=row.used_by_phone, network=row.used_by_network),
            payment_reference=row.payment_reference,
            batch_id=row.batch_id,
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class StatusEntry:
    status: str
    timestamp: datetime
    source: str
    message: Optional[str] = None
    applied: bool = True

    @classmethod
    def from_row(cls, row) -> "StatusEntry":
        return cls(
            status=row.status,
            timestamp=row.created_at,
            source=row.source,
            message=row.message,
            applied=row.applied,
        )


@dataclass(frozen=True)
class Payment:
    id: int
    order_id: str
    amount: Decimal
    currency: str
    status: str
    provider: str
    reference: Optional[str] = None
    external_reference: Optional[str] = None
    merchant_id: Optional[str] = None
    payer: dict = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Payment":
        return cls(
            id=row.id,
            order_id=row.order_id,
            amount=from_minor(row.amount_minor),
            currency=row.currency,
            status=row.status,
            provider=row.provider,
            reference=row.reference,
            external_reference=row.external_reference,
            merchant_id=row.merchant_id,
            payer=_compact(name=row.payer_name, email=row.payer_email, phone=row.payer_phone),
            completed_at=row.completed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


@dataclass(frozen=True)
class Service:
    service_id: str
    payment_id: int
    customer_id: str
    service_type: str
    name: str
    status: str
    delivery_status: str
    access_count: int
    delivery_attempts: int
    duration_days: Optional[int] = None
    access_token: Optional[str] = None
    access_granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    delivery_error: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Service":
        return cls(
            service_id=row.service_id,
            payment_id=row.payment_id,
            customer_id=row.customer_id,
            service_type=row.service_type,
            name=row.name,
            status=row.status,
            delivery_status=row.delivery_status,
            access_count=row.access_count,
            delivery_attempts=row.delivery_attempts,
            duration_days=row.duration_days,
            access_token=row.access_token,
            access_granted_at=row.access_granted_at,
            expires_at=row.expires_at,
            last_accessed_at=row.last_accessed_at,
            delivery_error=row.delivery_error,
        )


@dataclass(frozen=True)
class CompletionEvent:
    """Emitted once, on a payment's first transition into completed."""
    payment_id: int
    order_id: str
    completed_at: datetime


def _compact(**values) -> dict:
    return {k: v for k, v in values.items() if v is not None}
