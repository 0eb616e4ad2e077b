"""
Tests for the provider adapters and the timeout wrapper.

The HTTP rail is exercised with httpx.AsyncClient.request patched out.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from config import settings
from domain.errors import NetworkError, ProviderRejected, ProviderTimeout
from services import provider_adapter
from services.provider_adapter import (
    HttpProviderAdapter,
    SimulatedProviderAdapter,
    call_with_timeout,
    get_adapter,
)


def _response(status_code: int, json_body=None, text: str = None) -> httpx.Response:
    request = httpx.Request("GET", "https://rail.test/payments")
    if json_body is not None:
        return httpx.Response(status_code, json=json_body, request=request)
    return httpx.Response(status_code, text=text or "", request=request)


@pytest.fixture
def http_rail() -> HttpProviderAdapter:
    return HttpProviderAdapter(name="mpesa", base_url="https://rail.test/", api_key="secret", timeout=2)


class TestCallWithTimeout:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_passes_result_through(self):
        async def quick():
            return 42

        assert await call_with_timeout(quick(), timeout=1) == 42

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_overrun_raises_provider_timeout(self):
        with pytest.raises(ProviderTimeout) as exc_info:
            await call_with_timeout(asyncio.sleep(5), timeout=0.01)
        assert exc_info.value.status_code == 504


class TestHttpProviderAdapter:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initiate_payment(self, http_rail):
        mock = AsyncMock(return_value=_response(200, {"reference": "MP-1", "status": "PENDING", "transactionId": "T1"}))
        with patch.object(httpx.AsyncClient, "request", mock):
            initiation = await http_rail.initiate_payment("ORDER-1", Decimal("100.00"), "TZS", {"phone": "+255700"})

        assert initiation.external_reference == "MP-1"
        assert initiation.provider_status == "PENDING"
        assert initiation.transaction_id == "T1"

        method, url = mock.call_args.args
        assert (method, url) == ("POST", "https://rail.test/payments")
        assert mock.call_args.kwargs["json"]["amount"] == "100.00"
        assert mock.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_query_status(self, http_rail):
        mock = AsyncMock(return_value=_response(200, {"status": "COMPLETED", "message": "ok"}))
        with patch.object(httpx.AsyncClient, "request", mock):
            status = await http_rail.query_status("ORDER-1")

        assert status.provider_status == "COMPLETED"
        assert status.message == "ok"
        assert mock.call_args.args == ("GET", "https://rail.test/payments/ORDER-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_error_status_is_rejection(self, http_rail):
        with patch.object(httpx.AsyncClient, "request", AsyncMock(return_value=_response(422, {"error": "bad"}))):
            with pytest.raises(ProviderRejected) as exc_info:
                await http_rail.query_status("ORDER-1")
        assert exc_info.value.details["http_status"] == 422

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_json_body_is_rejection(self, http_rail):
        with patch.object(httpx.AsyncClient, "request", AsyncMock(return_value=_response(200, text="<html>"))):
            with pytest.raises(ProviderRejected):
                await http_rail.query_status("ORDER-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_timeout(self, http_rail):
        with patch.object(httpx.AsyncClient, "request", AsyncMock(side_effect=httpx.ReadTimeout("slow"))):
            with pytest.raises(ProviderTimeout):
                await http_rail.query_status("ORDER-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_error(self, http_rail):
        with patch.object(httpx.AsyncClient, "request", AsyncMock(side_effect=httpx.ConnectError("refused"))):
            with pytest.raises(NetworkError):
                await http_rail.query_status("ORDER-1")


class TestSimulatedProviderAdapter:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initiate_then_settle(self):
        rail = SimulatedProviderAdapter(name="mpesa")
        initiation = await rail.initiate_payment("ORDER-1", Decimal("10"), "TZS", {})

        assert initiation.provider_status == "PENDING"
        rail.settle("ORDER-1", "COMPLETED")
        assert (await rail.query_status("ORDER-1")).provider_status == "COMPLETED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(self):
        with pytest.raises(ProviderRejected):
            await SimulatedProviderAdapter().query_status("NOPE")


class TestGetAdapter:

    @pytest.mark.unit
    def test_cached_per_name(self, monkeypatch):
        monkeypatch.setattr(provider_adapter, "_adapters", {})
        monkeypatch.setattr(settings, "simulation_mode", True)

        first = get_adapter("MPESA")
        assert isinstance(first, SimulatedProviderAdapter)
        assert first is get_adapter("mpesa")
        assert first.name == "mpesa"

    @pytest.mark.unit
    def test_http_rail_outside_simulation(self, monkeypatch):
        monkeypatch.setattr(provider_adapter, "_adapters", {})
        monkeypatch.setattr(settings, "simulation_mode", False)

        adapter = get_adapter("bank")
        assert isinstance(adapter, HttpProviderAdapter)
        assert adapter.base_url == settings.provider_base_url.rstrip("/")
