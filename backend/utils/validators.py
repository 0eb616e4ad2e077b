"""
Input validation utilities for the payment gateway.

Provides reusable validators for control numbers, order ids and payer
contact details. Control numbers are typed in by people, so they are
normalised (case, spaces, hyphens) before any lookup.
"""
import re

from fastapi import Path

from domain.errors import ValidationError

_PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
_ORDER_ID_RE = re.compile(r"^[A-Za-z0-9_\-:.]{1,100}$")
_CODE_RE = re.compile(r"^[A-Z0-9]{6,40}$")


def normalize_code(code: str) -> str:
    """Upper-case a control number and strip separators a payer may type."""
    if not code:
        raise ValidationError("Control number is required", field="code")
    cleaned = re.sub(r"[\s\-]", "", code).upper()
    if not _CODE_RE.match(cleaned):
        raise ValidationError(f"Malformed control number: {code[:12]}...", field="code")
    return cleaned


def validate_order_id(order_id: str) -> str:
    if not order_id or not _ORDER_ID_RE.match(order_id):
        raise ValidationError("Order id must be 1-100 chars of A-Z, 0-9, _-:.", field="order_id")
    return order_id


def validate_phone(phone: str | None) -> str | None:
    if phone is None:
        return None
    phone = phone.replace(" ", "")
    if not _PHONE_RE.match(phone):
        raise ValidationError("Invalid phone number (E.164 expected)", field="phone")
    return phone


def validate_email(email: str | None) -> str | None:
    if email is None:
        return None
    if not _EMAIL_RE.match(email):
        raise ValidationError("Invalid email address", field="email")
    return email.lower()


def validated_code(code: str = Path(..., description="Control number")) -> str:
    """FastAPI dependency for normalising control number path parameters."""
    return normalize_code(code)


def validated_order_id(order_id: str = Path(..., description="Payment order id")) -> str:
    """FastAPI dependency for validating order id path parameters."""
    return validate_order_id(order_id)
