"""
Domain enums shared by services, routers and the ORM layer.
"""

from enum import Enum


class ControlNumberStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ServiceStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class DeliveryStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class HistorySource(str, Enum):
    CREATED = "created"
    WEBHOOK = "webhook"
    POLL = "poll"
    PROVIDER = "provider"
    REDEMPTION = "redemption"
    MANUAL = "manual"


class PaymentMethodType(str, Enum):
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"
    CASH = "cash"


class PrincipalKind(str, Enum):
    API_KEY = "api_key"
    USER = "user"
