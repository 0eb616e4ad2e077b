"""
Pydantic models for request/response validation.

Wire names are camelCase; every model also accepts its Python field names.
Range checks on amounts and limits live in the services so that they surface
as 400 ValidationErrors with the offending field, same as every other path.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiBase(BaseModel):
    """Shared base — allows construction by Python name or alias."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


def dump(model: BaseModel) -> dict:
    """JSON-ready dict using wire (camelCase) names."""
    return model.model_dump(by_alias=True, mode="json")


# ── Control Number Models ───────────────────────────────────────────

class ControlNumberCreateRequest(ApiBase):
    amount: Decimal = Field(..., description="Fixed amount the code is bound to")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    payment_method_type: str = Field("mobile_money", alias="paymentMethodType")
    payment_provider: str = Field("any", alias="paymentProvider", max_length=30)
    description: Optional[str] = Field(default=None, max_length=255)
    customer_name: Optional[str] = Field(default=None, alias="customerName", max_length=200)
    customer_email: Optional[str] = Field(default=None, alias="customerEmail", max_length=200)
    customer_phone: Optional[str] = Field(default=None, alias="customerPhone", max_length=20)
    expires_in_hours: Optional[int] = Field(default=None, alias="expiresInHours")
    valid_for_days: Optional[int] = Field(default=None, alias="validForDays")
    is_reusable: bool = Field(False, alias="isReusable")
    max_uses: int = Field(1, alias="maxUses")


class BatchCreateRequest(ControlNumberCreateRequest):
    count: int = Field(..., description="How many codes to issue (1 - batch limit)")


class RedeemerInfo(ApiBase):
    name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=20)
    network: Optional[str] = Field(default=None, max_length=30)


class RedeemRequest(ApiBase):
    payment_reference: str = Field(..., alias="paymentReference", min_length=1, max_length=100)
    redeemer: RedeemerInfo = Field(default_factory=RedeemerInfo)
    create_payment: bool = Field(
        False,
        alias="createPayment",
        description="Also open a ledger payment (orderId = paymentReference) for the code's amount",
    )
    provider: str = Field("generic", max_length=30)


class ExtendRequest(ApiBase):
    extra_hours: int = Field(..., alias="extraHours")


class ControlNumberOut(ApiBase):
    code: str
    amount: Decimal
    currency: str
    payment_method_type: str = Field(..., alias="paymentMethodType")
    payment_provider: str = Field(..., alias="paymentProvider")
    merchant_id: str = Field(..., alias="merchantId")
    status: str
    expires_at: datetime = Field(..., alias="expiresAt")
    valid_until: datetime = Field(..., alias="validUntil")
    is_reusable: bool = Field(..., alias="isReusable")
    max_uses: int = Field(..., alias="maxUses")
    current_uses: int = Field(..., alias="currentUses")
    description: Optional[str] = None
    customer: dict = Field(default_factory=dict)
    used_at: Optional[datetime] = Field(None, alias="usedAt")
    used_by: dict = Field(default_factory=dict, alias="usedBy")
    payment_reference: Optional[str] = Field(None, alias="paymentReference")
    batch_id: Optional[str] = Field(None, alias="batchId")
    created_at: Optional[datetime] = Field(None, alias="createdAt")


# ── Payment Models ──────────────────────────────────────────────────

class PayerFields(ApiBase):
    payer_name: Optional[str] = Field(default=None, alias="payerName", max_length=200)
    payer_email: Optional[str] = Field(default=None, alias="payerEmail", max_length=200)
    payer_phone: Optional[str] = Field(default=None, alias="payerPhone", max_length=20)


class PaymentCreateRequest(PayerFields):
    amount: Decimal
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    order_id: Optional[str] = Field(default=None, alias="orderId", max_length=100)
    reference: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=255)
    provider: str = Field("generic", max_length=30)


class PaymentOut(ApiBase):
    order_id: str = Field(..., alias="orderId")
    reference: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    provider: str
    external_reference: Optional[str] = Field(None, alias="externalReference")
    merchant_id: Optional[str] = Field(None, alias="merchantId")
    payer: dict = Field(default_factory=dict)
    completed_at: Optional[datetime] = Field(None, alias="completedAt")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")


class StatusEntryOut(ApiBase):
    status: str
    timestamp: datetime
    source: str
    message: Optional[str] = None
    applied: bool = True


class WebhookEventRequest(ApiBase):
    order_id: str = Field(..., alias="orderId", min_length=1, max_length=100)
    status: str = Field(..., min_length=1, max_length=50)
    external_reference: Optional[str] = Field(default=None, alias="externalReference", max_length=100)
    transaction_id: Optional[str] = Field(default=None, alias="transactionId", max_length=100)
    message: Optional[str] = Field(default=None, max_length=1000)


# ── Service Models ──────────────────────────────────────────────────

class ServiceCreateRequest(PayerFields):
    customer_id: str = Field(..., alias="customerId", min_length=1, max_length=100)
    service_type: str = Field(..., alias="serviceType", min_length=1, max_length=30)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    duration_days: Optional[int] = Field(default=None, alias="durationDays")
    amount: Decimal
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    order_id: Optional[str] = Field(default=None, alias="orderId", max_length=100)
    provider: str = Field("generic", max_length=30)


class ServiceOut(ApiBase):
    service_id: str = Field(..., alias="serviceId")
    customer_id: str = Field(..., alias="customerId")
    service_type: str = Field(..., alias="serviceType")
    name: str
    status: str
    delivery_status: str = Field(..., alias="deliveryStatus")
    duration_days: Optional[int] = Field(None, alias="durationDays")
    access_token: Optional[str] = Field(None, alias="accessToken")
    access_granted_at: Optional[datetime] = Field(None, alias="accessGrantedAt")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")
    last_accessed_at: Optional[datetime] = Field(None, alias="lastAccessedAt")
    access_count: int = Field(0, alias="accessCount")
    delivery_attempts: int = Field(0, alias="deliveryAttempts")
    delivery_error: Optional[str] = Field(None, alias="deliveryError")


class DeliveryReportOut(ApiBase):
    activated: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    skipped: int = 0
