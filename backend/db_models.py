"""
SQLAlchemy ORM models for the payment gateway.

Tables:
    control_numbers        — merchant-issued, time-boxed redemption codes
    payments               — payment attempts with denormalized current status
    payment_status_events  — append-only status history per payment
    services               — entitlements activated when a payment completes

Money is stored as integer minor units (BigInteger) so sums never drift.
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, DateTime, Text, ForeignKey,
    Index,
)

from database import Base
from utils.clock import utcnow


class ControlNumber(Base):
    """
    Redemption code bound to a fixed monetary commitment.

    Only ever mutated by redemption, extension, cancellation or the expiry
    sweep; never deleted, terminal statuses archive it.
    """
    __tablename__ = "control_numbers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(40), unique=True, nullable=False, index=True)
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    description = Column(String(255), nullable=True)

    # Payment-method constraint
    payment_method_type = Column(String(20), nullable=False, default="mobile_money")
    payment_provider = Column(String(30), nullable=False, default="any")

    # Ownership
    merchant_id = Column(String(64), nullable=False)
    generated_by = Column(String(64), nullable=False)

    # Optional customer the code was issued for
    customer_name = Column(String(200), nullable=True)
    customer_email = Column(String(200), nullable=True)
    customer_phone = Column(String(20), nullable=True)

    status = Column(String(20), nullable=False, default="active", index=True)  # active | used | expired | cancelled
    expires_at = Column(DateTime, nullable=False, index=True)
    valid_until = Column(DateTime, nullable=False)

    is_reusable = Column(Boolean, nullable=False, default=False)
    max_uses = Column(Integer, nullable=False, default=1)
    current_uses = Column(Integer, nullable=False, default=0)

    # Redemption metadata
    used_at = Column(DateTime, nullable=True)
    used_by_name = Column(String(200), nullable=True)
    used_by_phone = Column(String(20), nullable=True)
    used_by_network = Column(String(30), nullable=True)
    payment_reference = Column(String(100), nullable=True, index=True)

    batch_id = Column(String(64), nullable=True, index=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # Merchant dashboards: filter by merchant + status, newest first
        Index("ix_control_numbers_merchant_status_created", "merchant_id", "status", "created_at"),
    )


class Payment(Base):
    """
    One payment attempt. `status` is the authoritative current status;
    the full trail lives in payment_status_events.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(100), unique=True, nullable=False, index=True)
    reference = Column(String(100), nullable=True, index=True)  # legacy alias for order_id

    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    description = Column(String(255), nullable=True)
    provider = Column(String(30), nullable=False, default="generic")

    payer_name = Column(String(200), nullable=True)
    payer_email = Column(String(200), nullable=True)
    payer_phone = Column(String(20), nullable=True)
    merchant_id = Column(String(64), nullable=True, index=True)

    status = Column(String(20), nullable=False, default="pending")
    external_reference = Column(String(100), nullable=True, index=True)  # set once by the provider
    external_transaction_id = Column(String(100), nullable=True)

    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
    )


class PaymentStatusEvent(Base):
    """
    Append-only status history.

    applied=False rows are informational: updates that arrived for a payment
    already in a terminal state (or moving backwards) are kept for audit but
    never become the authoritative status.
    """
    __tablename__ = "payment_status_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    message = Column(Text, nullable=True)
    source = Column(String(20), nullable=False)  # created | webhook | poll | provider | redemption | manual
    applied = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)


class Service(Base):
    """
    Entitlement delivered after payment.

    payment_id is a weak reference (no ownership); the dispatcher activates a
    service exactly once when its payment first completes.
    """
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(String(64), unique=True, nullable=False, index=True)
    payment_id = Column(Integer, nullable=False, index=True)
    customer_id = Column(String(100), nullable=False, index=True)
    service_type = Column(String(30), nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default="pending")  # pending | active | expired | cancelled | suspended
    duration_days = Column(Integer, nullable=True)

    # Access control
    access_token = Column(String(64), unique=True, nullable=True)
    access_granted_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    last_accessed_at = Column(DateTime, nullable=True)
    access_count = Column(Integer, nullable=False, default=0)

    # Delivery tracking
    delivered_at = Column(DateTime, nullable=True)
    delivery_attempts = Column(Integer, nullable=False, default=0)
    last_delivery_attempt = Column(DateTime, nullable=True)
    delivery_status = Column(String(20), nullable=False, default="not_started")
    delivery_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # Dispatcher lookup: pending services for a payment
        Index("ix_services_payment_status", "payment_id", "status"),
    )
