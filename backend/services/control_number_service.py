"""
Control Number Registry — issues and redeems merchant control numbers.

A control number is a short human-enterable code bound to a fixed amount.
Payers quote it on a mobile-money, bank or card channel; the merchant's
backend then redeems it against the resulting payment.

Concurrency:
    - Generation inserts with ON CONFLICT DO NOTHING; a zero rowcount is a
      collision and a fresh code is drawn (bounded by
      settings.control_number_max_attempts).
    - Redemption is one conditional UPDATE. Whichever request's UPDATE lands
      first wins; every other concurrent redeemer of a single-use code sees
      zero affected rows and gets ConflictError("already_used").
"""
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import insert_ignore
from db_models import ControlNumber as ControlNumberRow
from domain.constants import BATCH_ID_PREFIX, CODE_ALPHABET, CODE_TIME_DIGITS
from domain.entities import ControlNumber
from domain.enums import ControlNumberStatus, PaymentMethodType
from domain.errors import ConflictError, ExpiredError, InternalError, NotFoundError, ValidationError
from domain.principal import Principal
from domain import rules
from utils.clock import utcnow
from utils.money import parse_decimal, to_decimal, to_minor
from utils.validators import normalize_code, validate_email, validate_phone

logger = logging.getLogger(__name__)


@dataclass
class ControlNumberSpec:
    """What a merchant asks for when issuing a control number."""
    amount: Decimal
    currency: Optional[str] = None
    payment_method_type: str = PaymentMethodType.MOBILE_MONEY.value
    payment_provider: str = "any"
    description: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    expires_in_hours: Optional[int] = None
    valid_for_days: Optional[int] = None
    is_reusable: bool = False
    max_uses: int = 1


@dataclass
class Redeemer:
    name: Optional[str] = None
    phone: Optional[str] = None
    network: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None  # not_found | inactive | expired | exhausted | amount_mismatch
    control_number: Optional[ControlNumber] = None


@dataclass(frozen=True)
class RedemptionResult:
    control_number: ControlNumber
    payment_reference: str


# ── Code construction ───────────────────────────────────────────────

def new_code() -> str:
    """prefix + 6 time-derived digits + random suffix from CODE_ALPHABET."""
    time_part = str(int(time.time()) % 10 ** CODE_TIME_DIGITS).zfill(CODE_TIME_DIGITS)
    suffix = "".join(
        secrets.choice(CODE_ALPHABET) for _ in range(settings.control_number_random_length)
    )
    return f"{settings.control_number_prefix}{time_part}{suffix}"


def new_batch_id() -> str:
    return f"{BATCH_ID_PREFIX}{int(time.time())}_{secrets.token_hex(4).upper()}"


def _check_spec(spec: ControlNumberSpec) -> tuple[int, str]:
    """Validate a spec; returns (amount_minor, currency)."""
    amount = to_decimal(spec.amount, field="amount")
    if amount <= 0:
        raise ValidationError("must be greater than zero", field="amount")

    currency = (spec.currency or settings.default_currency).upper()
    if currency not in settings.allowed_currencies_list:
        raise ValidationError(
            f"unsupported currency {currency}; allowed: {', '.join(settings.allowed_currencies_list)}",
            field="currency",
        )

    if spec.payment_method_type not in {m.value for m in PaymentMethodType}:
        raise ValidationError(f"unknown payment method {spec.payment_method_type}", field="payment_method_type")

    if spec.max_uses < 1:
        raise ValidationError("must be at least 1", field="max_uses")
    if not spec.is_reusable and spec.max_uses > 1:
        raise ValidationError("a single-use control number cannot have max_uses > 1", field="max_uses")

    if spec.expires_in_hours is not None and spec.expires_in_hours <= 0:
        raise ValidationError("must be positive", field="expires_in_hours")
    if spec.valid_for_days is not None and spec.valid_for_days <= 0:
        raise ValidationError("must be positive", field="valid_for_days")

    return to_minor(amount), currency


async def _load(db: AsyncSession, code: str) -> Optional[ControlNumberRow]:
    result = await db.execute(
        select(ControlNumberRow)
        .where(ControlNumberRow.code == code)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# ── Operations ──────────────────────────────────────────────────────

async def generate_control_number(
    db: AsyncSession,
    spec: ControlNumberSpec,
    principal: Principal,
    *,
    code_factory: Optional[Callable[[], str]] = None,
    batch_id: Optional[str] = None,
) -> ControlNumber:
    """
    Issue a new active control number owned by the principal's merchant.

    Raises:
        ValidationError: bad amount, currency, method or use limits
        InternalError: every drawn code collided (generation exhausted)
    """
    amount_minor, currency = _check_spec(spec)
    factory = code_factory or new_code

    now = utcnow()
    expires_at = now + timedelta(hours=spec.expires_in_hours or settings.control_number_expiry_hours)
    valid_until = now + timedelta(days=spec.valid_for_days or settings.control_number_validity_days)

    values = dict(
        amount_minor=amount_minor,
        currency=currency,
        description=spec.description,
        payment_method_type=spec.payment_method_type,
        payment_provider=spec.payment_provider or "any",
        merchant_id=principal.merchant_id,
        generated_by=principal.id,
        customer_name=spec.customer_name,
        customer_email=validate_email(spec.customer_email),
        customer_phone=validate_phone(spec.customer_phone),
        status=ControlNumberStatus.ACTIVE.value,
        expires_at=expires_at,
        valid_until=valid_until,
        is_reusable=spec.is_reusable,
        max_uses=spec.max_uses,
        current_uses=0,
        batch_id=batch_id,
        created_at=now,
        updated_at=now,
    )

    attempts = settings.control_number_max_attempts
    for attempt in range(1, attempts + 1):
        code = factory()
        res = await db.execute(
            insert_ignore(db, ControlNumberRow)
            .values(code=code, **values)
            .on_conflict_do_nothing(index_elements=["code"])
        )
        if res.rowcount:
            break
        logger.warning(f"Control number collision on {code} (attempt {attempt}/{attempts})")
    else:
        logger.error(f"Control number generation exhausted after {attempts} attempts")
        raise InternalError("generation exhausted")

    row = await _load(db, code)
    logger.info(
        f"Control number {code} issued for merchant {principal.merchant_id}: "
        f"{row.amount_minor / 100:.2f} {currency}, expires {expires_at.isoformat()}"
    )
    return ControlNumber.from_row(row)


async def batch_generate(
    db: AsyncSession,
    spec: ControlNumberSpec,
    count: int,
    principal: Principal,
    *,
    code_factory: Optional[Callable[[], str]] = None,
) -> tuple[str, List[ControlNumber]]:
    """Issue `count` identical control numbers sharing one batch id."""
    limit = settings.control_number_batch_limit
    if count < 1 or count > limit:
        raise ValidationError(f"must be between 1 and {limit}", field="count")
    _check_spec(spec)

    batch_id = new_batch_id()
    issued = []
    for _ in range(count):
        issued.append(
            await generate_control_number(db, spec, principal, code_factory=code_factory, batch_id=batch_id)
        )
    logger.info(f"Batch {batch_id}: {len(issued)} control numbers issued")
    return batch_id, issued


async def validate_control_number(
    db: AsyncSession,
    code: str,
    expected_amount=None,
) -> ValidationResult:
    """
    Read-only check of whether a code could be redeemed right now.

    A malformed code is reported as not_found rather than raised.
    """
    try:
        code = normalize_code(code)
    except ValidationError:
        return ValidationResult(valid=False, reason="not_found")
    row = await _load(db, code)
    if row is None:
        return ValidationResult(valid=False, reason="not_found")

    cn = ControlNumber.from_row(row)
    reason = rules.unusable_reason(cn, utcnow())
    if reason is None and expected_amount is not None:
        if parse_decimal(expected_amount, field="amount") != cn.amount:
            reason = "amount_mismatch"
    return ValidationResult(valid=reason is None, reason=reason, control_number=cn)


async def redeem_control_number(
    db: AsyncSession,
    code: str,
    payment_reference: str,
    redeemer: Optional[Redeemer] = None,
) -> RedemptionResult:
    """
    Atomically consume one use of a control number.

    Raises:
        NotFoundError: no such code
        ExpiredError: past expires_at or valid_until
        ConflictError: already used, exhausted or cancelled
    """
    code = normalize_code(code)
    redeemer = redeemer or Redeemer()
    now = utcnow()

    res = await db.execute(
        update(ControlNumberRow)
        .where(
            ControlNumberRow.code == code,
            ControlNumberRow.status == ControlNumberStatus.ACTIVE.value,
            ControlNumberRow.current_uses < ControlNumberRow.max_uses,
            ControlNumberRow.expires_at >= now,
            ControlNumberRow.valid_until >= now,
        )
        .values(
            current_uses=ControlNumberRow.current_uses + 1,
            # SET expressions see the pre-update row
            status=case(
                (
                    and_(
                        ControlNumberRow.is_reusable == True,  # noqa: E712
                        ControlNumberRow.current_uses + 1 < ControlNumberRow.max_uses,
                    ),
                    ControlNumberStatus.ACTIVE.value,
                ),
                else_=ControlNumberStatus.USED.value,
            ),
            used_at=now,
            used_by_name=redeemer.name,
            used_by_phone=redeemer.phone,
            used_by_network=redeemer.network,
            payment_reference=payment_reference,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    row = await _load(db, code)
    if res.rowcount == 1:
        cn = ControlNumber.from_row(row)
        logger.info(
            f"Control number {code} redeemed for {payment_reference} "
            f"(use {cn.current_uses}/{cn.max_uses}, status {cn.status})"
        )
        return RedemptionResult(control_number=cn, payment_reference=payment_reference)

    if row is None:
        raise NotFoundError("Control number", code)

    cn = ControlNumber.from_row(row)
    if cn.status == ControlNumberStatus.EXPIRED.value or (
        cn.status == ControlNumberStatus.ACTIVE.value and rules.is_expired(cn, now)
    ):
        raise ExpiredError(
            f"Control number {code} has expired",
            details={"status": ControlNumberStatus.EXPIRED.value, "expires_at": cn.expires_at.isoformat()},
        )

    logger.info(f"Redemption of {code} rejected: status={cn.status}, uses={cn.current_uses}/{cn.max_uses}")
    raise ConflictError("already_used", details={"status": cn.status, "current_uses": cn.current_uses})


async def extend_validity(db: AsyncSession, code: str, extra_hours: int) -> ControlNumber:
    """Push both expires_at and valid_until forward while the code is active."""
    code = normalize_code(code)
    if extra_hours is None or extra_hours <= 0:
        raise ValidationError("must be a positive number of hours", field="extra_hours")

    row = await _load(db, code)
    if row is None:
        raise NotFoundError("Control number", code)

    # SQLite has no interval arithmetic; compute in Python and guard on the
    # deadline we read so a concurrent extend is not lost.
    extra = timedelta(hours=extra_hours)
    res = await db.execute(
        update(ControlNumberRow)
        .where(
            ControlNumberRow.code == code,
            ControlNumberRow.status == ControlNumberStatus.ACTIVE.value,
            ControlNumberRow.expires_at == row.expires_at,
        )
        .values(
            expires_at=row.expires_at + extra,
            valid_until=row.valid_until + extra,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )

    row = await _load(db, code)
    if res.rowcount == 0:
        raise ConflictError(
            f"Control number {code} is {row.status} and cannot be extended",
            details={"status": row.status},
        )

    logger.info(f"Control number {code} extended by {extra_hours}h to {row.valid_until.isoformat()}")
    return ControlNumber.from_row(row)


async def cancel_control_number(db: AsyncSession, code: str) -> ControlNumber:
    code = normalize_code(code)
    now = utcnow()
    res = await db.execute(
        update(ControlNumberRow)
        .where(
            ControlNumberRow.code == code,
            ControlNumberRow.status == ControlNumberStatus.ACTIVE.value,
        )
        .values(status=ControlNumberStatus.CANCELLED.value, cancelled_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )

    row = await _load(db, code)
    if row is None:
        raise NotFoundError("Control number", code)
    if res.rowcount == 0:
        raise ConflictError(
            f"Control number {code} is {row.status} and cannot be cancelled",
            details={"status": row.status},
        )

    logger.info(f"Control number {code} cancelled")
    return ControlNumber.from_row(row)


async def get_control_number(db: AsyncSession, code: str) -> ControlNumber:
    code = normalize_code(code)
    row = await _load(db, code)
    if row is None:
        raise NotFoundError("Control number", code)
    return ControlNumber.from_row(row)


async def sweep_expired(db: AsyncSession) -> int:
    """
    Mark active codes whose expires_at or valid_until has passed as expired.

    Redemption and validation already treat such codes as expired on their
    own; the sweep only brings the stored status in line. Safe to re-run.
    """
    now = utcnow()
    res = await db.execute(
        update(ControlNumberRow)
        .where(
            ControlNumberRow.status == ControlNumberStatus.ACTIVE.value,
            or_(ControlNumberRow.expires_at < now, ControlNumberRow.valid_until < now),
        )
        .values(status=ControlNumberStatus.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    count = res.rowcount or 0
    if count:
        logger.info(f"Expiry sweep: {count} control numbers marked expired")
    return count
