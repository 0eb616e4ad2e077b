"""
Provider Adapter — the boundary to external payment rails.

Adapters speak in raw provider vocabulary (e.g. "SUCCESSFUL", "succeeded");
translating that into canonical statuses is the reconciliation engine's job.

Every adapter call goes through call_with_timeout(). A timeout is reported as
ProviderTimeout, which callers must treat as "outcome unknown", never as a
failed payment: rails routinely settle after the client has given up.
"""
import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

import httpx

from config import settings
from domain.errors import NetworkError, ProviderRejected, ProviderTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderInitiation:
    external_reference: Optional[str]
    provider_status: str
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class ProviderStatus:
    provider_status: str
    external_reference: Optional[str] = None
    transaction_id: Optional[str] = None
    message: Optional[str] = None


class ProviderAdapter(ABC):
    """One external rail."""

    name: str = "generic"

    @abstractmethod
    async def initiate_payment(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        payer: dict,
    ) -> ProviderInitiation:
        ...

    @abstractmethod
    async def query_status(self, order_id: str) -> ProviderStatus:
        ...


async def call_with_timeout(coro, timeout: Optional[float] = None):
    """Await an adapter call, converting an overrun into ProviderTimeout."""
    limit = timeout if timeout is not None else settings.provider_timeout_seconds
    try:
        return await asyncio.wait_for(coro, timeout=limit)
    except asyncio.TimeoutError:
        logger.warning(f"Provider call exceeded {limit}s")
        raise ProviderTimeout(details={"timeout_seconds": limit})


# ════════════════════════════════════════════════════════════════════
# HTTP rail
# ════════════════════════════════════════════════════════════════════


class HttpProviderAdapter(ProviderAdapter):
    """
    Generic JSON-over-HTTPS rail client.

    POST {base}/payments          → {"reference", "status", "transactionId"}
    GET  {base}/payments/{order}  → {"status", "reference", "transactionId", "message"}
    """

    def __init__(self, name: str, base_url: str, api_key: str = "", timeout: Optional[float] = None):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException:
            raise ProviderTimeout(details={"provider": self.name})
        except httpx.HTTPError as e:
            logger.warning(f"{self.name}: {method} {path} failed: {e}")
            raise NetworkError(f"{self.name} unreachable", details={"provider": self.name})

        if response.status_code >= 400:
            logger.warning(f"{self.name}: {method} {path} → HTTP {response.status_code}")
            raise ProviderRejected(
                f"{self.name} rejected the request",
                details={"provider": self.name, "http_status": response.status_code},
            )
        try:
            return response.json()
        except ValueError:
            raise ProviderRejected(f"{self.name} returned a non-JSON body", details={"provider": self.name})

    async def initiate_payment(self, order_id, amount, currency, payer) -> ProviderInitiation:
        data = await self._request(
            "POST",
            "/payments",
            json={
                "orderId": order_id,
                "amount": str(amount),
                "currency": currency,
                "payer": payer,
            },
        )
        return ProviderInitiation(
            external_reference=data.get("reference"),
            provider_status=str(data.get("status", "")),
            transaction_id=data.get("transactionId"),
        )

    async def query_status(self, order_id: str) -> ProviderStatus:
        data = await self._request("GET", f"/payments/{order_id}")
        return ProviderStatus(
            provider_status=str(data.get("status", "")),
            external_reference=data.get("reference"),
            transaction_id=data.get("transactionId"),
            message=data.get("message"),
        )


# ════════════════════════════════════════════════════════════════════
# Simulated rail (SIMULATION_MODE=true)
# ════════════════════════════════════════════════════════════════════


@dataclass
class SimulatedProviderAdapter(ProviderAdapter):
    """
    In-process rail for development and tests.

    Payments start PENDING; settle() moves them to any raw status, which a
    later query_status() reports.
    """
    name: str = "generic"
    statuses: Dict[str, str] = field(default_factory=dict)

    async def initiate_payment(self, order_id, amount, currency, payer) -> ProviderInitiation:
        reference = f"SIM_{secrets.token_hex(6).upper()}"
        self.statuses[order_id] = "PENDING"
        logger.info(f"  🧪 Simulated {self.name} payment {order_id}: {amount} {currency} → {reference}")
        return ProviderInitiation(external_reference=reference, provider_status="PENDING")

    async def query_status(self, order_id: str) -> ProviderStatus:
        if order_id not in self.statuses:
            raise ProviderRejected(f"{self.name} has no payment {order_id}", details={"provider": self.name})
        return ProviderStatus(provider_status=self.statuses[order_id])

    def settle(self, order_id: str, raw_status: str) -> None:
        self.statuses[order_id] = raw_status


_adapters: Dict[str, ProviderAdapter] = {}


def get_adapter(name: str = "generic") -> ProviderAdapter:
    """Return the (cached) adapter for a provider name."""
    key = (name or "generic").lower()
    adapter = _adapters.get(key)
    if adapter is None:
        if settings.simulation_mode:
            adapter = SimulatedProviderAdapter(name=key)
        else:
            adapter = HttpProviderAdapter(
                name=key,
                base_url=settings.provider_base_url,
                api_key=settings.provider_api_key,
            )
        _adapters[key] = adapter
    return adapter
