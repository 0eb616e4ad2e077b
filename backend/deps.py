"""
Shared FastAPI dependencies.

Routers import DB session, auth guards, the provider adapter lookup and the
public-endpoint throttle from here so tests can override them in one place.
"""

from __future__ import annotations

from typing import Callable

from config import settings
from database import get_db  # noqa: F401
from middleware.auth import get_principal, require_permission  # noqa: F401
from middleware.rate_limit import rate_limit
from services import provider_adapter
from services.provider_adapter import ProviderAdapter

AdapterLookup = Callable[[str], ProviderAdapter]


def get_adapter_lookup() -> AdapterLookup:
    """Provider name → adapter. Overridden in tests with a fake rail."""
    return provider_adapter.get_adapter


validate_throttle = rate_limit(settings.validate_rate_limit_per_minute, 60)
