"""
Tests for API route endpoints.

Tests: health, control number lifecycle, payments, webhooks, services,
error envelopes and merchant isolation, all through the ASGI app.
"""
import hashlib
import hmac
import json
import logging
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import update

from config import settings
from db_models import ControlNumber as ControlNumberRow
from db_models import Service as ServiceRow
from domain.errors import InternalError
from main import http_exception_handler
from utils.clock import utcnow


def _signed(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    signature = hmac.new(settings.webhook_secret.encode(), body, hashlib.sha256).hexdigest()
    return body, {"Content-Type": "application/json", "X-Webhook-Signature": signature}


async def _issue(client, headers, **fields) -> dict:
    body = {"amount": "5000", "currency": "TZS", "description": "School fees"}
    body.update(fields)
    response = await client.post("/control-numbers", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestHealthEndpoint:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True


class TestControlNumberEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_create(self, client, merchant_headers):
        data = await _issue(client, merchant_headers, customerPhone="+255 712 000 111")

        assert data["status"] == "active"
        assert data["amount"] == "5000.00"
        assert data["merchantId"] == "merchant-1"
        assert data["customer"] == {"phone": "+255712000111"}
        assert data["currentUses"] == 0

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_create_requires_auth(self, client):
        response = await client.post("/control-numbers", json={"amount": "5000"})
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "unauthorized"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_create_rejects_zero_amount(self, client, merchant_headers):
        response = await client.post("/control-numbers", json={"amount": "0"}, headers=merchant_headers)
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation"
        assert error["details"]["field"] == "amount"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_batch(self, client, merchant_headers):
        response = await client.post(
            "/control-numbers/batch",
            json={"amount": "2000", "count": 3},
            headers=merchant_headers,
        )
        assert response.status_code == 201
        body = response.json()
        assert body["meta"]["count"] == 3
        assert {cn["batchId"] for cn in body["data"]} == {body["meta"]["batchId"]}

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_validate_is_public_and_discloses_little(self, client, merchant_headers):
        cn = await _issue(client, merchant_headers, customerName="Neema")

        response = await client.get(f"/control-numbers/{cn['code'].lower()}/validate", params={"amount": "5000"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["valid"] is True
        assert data["amount"] == "5000.00"
        assert "customer" not in data

        response = await client.get(f"/control-numbers/{cn['code']}/validate", params={"amount": "10"})
        assert response.json()["data"]["reason"] == "amount_mismatch"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_malformed_code(self, client, merchant_headers):
        response = await client.get("/control-numbers/ab!/validate")
        assert response.status_code == 200
        assert response.json()["data"] == {"valid": False, "reason": "not_found"}

        response = await client.get("/control-numbers/ab!", headers=merchant_headers)
        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "code"

    @pytest.mark.api
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["1e20", "10.005"])
    async def test_create_rejects_unstorable_amount(self, client, merchant_headers, amount):
        response = await client.post("/control-numbers", json={"amount": amount}, headers=merchant_headers)
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation"
        assert error["details"]["field"] == "amount"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_double_redeem_conflicts(self, client, merchant_headers):
        cn = await _issue(client, merchant_headers)
        url = f"/control-numbers/{cn['code']}/redeem"

        first = await client.post(
            url,
            json={"paymentReference": "ORDER-1", "redeemer": {"name": "Asha", "network": "mpesa"}},
            headers=merchant_headers,
        )
        assert first.status_code == 200
        assert first.json()["data"]["controlNumber"]["status"] == "used"
        assert first.json()["data"]["controlNumber"]["usedBy"] == {"name": "Asha", "network": "mpesa"}

        second = await client.post(url, json={"paymentReference": "ORDER-2"}, headers=merchant_headers)
        assert second.status_code == 409
        error = second.json()["error"]
        assert error["code"] == "conflict"
        assert error["message"] == "already_used"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_redeem_with_payment(self, client, merchant_headers):
        cn = await _issue(client, merchant_headers)

        response = await client.post(
            f"/control-numbers/{cn['code']}/redeem",
            json={"paymentReference": "ORDER-CN-1", "createPayment": True},
            headers=merchant_headers,
        )
        assert response.status_code == 200
        payment = response.json()["data"]["payment"]
        assert payment["orderId"] == "ORDER-CN-1"
        assert payment["amount"] == "5000.00"
        assert payment["merchantId"] == "merchant-1"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_other_merchant_forbidden(self, client, merchant_headers, other_merchant_headers):
        cn = await _issue(client, merchant_headers)

        response = await client.get(f"/control-numbers/{cn['code']}", headers=other_merchant_headers)
        assert response.status_code == 403

        response = await client.post(
            f"/control-numbers/{cn['code']}/redeem",
            json={"paymentReference": "STOLEN"},
            headers=other_merchant_headers,
        )
        assert response.status_code == 403

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unknown_code_404(self, client, merchant_headers):
        response = await client.get("/control-numbers/CN999999ZZZZZZ", headers=merchant_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "notfound"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_extend_then_cancel(self, client, merchant_headers):
        cn = await _issue(client, merchant_headers)

        response = await client.post(
            f"/control-numbers/{cn['code']}/extend", json={"extraHours": 12}, headers=merchant_headers
        )
        assert response.status_code == 200
        assert response.json()["data"]["expiresAt"] > cn["expiresAt"]

        response = await client.post(f"/control-numbers/{cn['code']}/cancel", headers=merchant_headers)
        assert response.json()["data"]["status"] == "cancelled"

        response = await client.post(
            f"/control-numbers/{cn['code']}/extend", json={"extraHours": 12}, headers=merchant_headers
        )
        assert response.status_code == 409


class TestPaymentEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_create_get_and_poll(self, client, rail, merchant_headers):
        response = await client.post(
            "/payments",
            json={"amount": "15000", "orderId": "ORDER-P1", "payerPhone": "+255712345678"},
            headers=merchant_headers,
        )
        assert response.status_code == 201
        body = response.json()
        assert body["meta"]["outcome"] == "accepted"
        assert body["data"]["status"] == "pending"

        rail.settle("ORDER-P1", "COMPLETED")
        response = await client.post("/payments/ORDER-P1/poll", headers=merchant_headers)
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "completed"
        assert response.json()["meta"]["applied"] is True

        response = await client.get("/payments/ORDER-P1", headers=merchant_headers)
        history = response.json()["data"]["statusHistory"]
        assert [h["status"] for h in history] == ["pending", "completed"]
        assert history[-1]["source"] == "poll"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_duplicate_order_id(self, client, merchant_headers):
        body = {"amount": "100", "orderId": "ORDER-DUP"}
        await client.post("/payments", json=body, headers=merchant_headers)
        response = await client.post("/payments", json=body, headers=merchant_headers)
        assert response.status_code == 409

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_other_merchant_cannot_read(self, client, merchant_headers, other_merchant_headers):
        await client.post("/payments", json={"amount": "100", "orderId": "ORDER-M1"}, headers=merchant_headers)
        response = await client.get("/payments/ORDER-M1", headers=other_merchant_headers)
        assert response.status_code == 403


class TestWebhookEndpoint:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unsigned_rejected(self, client):
        response = await client.post("/webhooks/mpesa", json={"orderId": "X", "status": "COMPLETED"})
        assert response.status_code == 401

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client):
        body, headers = _signed({"orderId": "X", "status": "COMPLETED"})
        headers["X-Webhook-Signature"] = "0" * 64
        response = await client.post("/webhooks/mpesa", content=body, headers=headers)
        assert response.status_code == 401

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_malformed_body(self, client):
        body = b"not json"
        signature = hmac.new(settings.webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        response = await client.post(
            "/webhooks/mpesa", content=body, headers={"X-Webhook-Signature": signature}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unknown_payment(self, client):
        body, headers = _signed({"orderId": "GHOST", "status": "COMPLETED"})
        response = await client.post("/webhooks/mpesa", content=body, headers=headers)
        assert response.status_code == 404


class TestServiceEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_paid_service_flow(self, client, merchant_headers):
        """Create a service, complete its payment by webhook (twice), then use it."""
        response = await client.post(
            "/services",
            json={
                "customerId": "CUST-1",
                "serviceType": "subscription",
                "name": "Premium Plan",
                "durationDays": 30,
                "amount": "15000",
                "orderId": "ORDER-S1",
                "provider": "mpesa",
            },
            headers=merchant_headers,
        )
        assert response.status_code == 201
        service = response.json()["data"]["service"]
        assert service["status"] == "pending"
        service_id = service["serviceId"]

        response = await client.get(f"/services/{service_id}/access", headers=merchant_headers)
        data = response.json()["data"]
        assert data["access"] is False
        assert data["reason"] == "payment_required"

        body, headers = _signed({"orderId": "ORDER-S1", "status": "COMPLETED", "externalReference": "MP-9"})
        first = await client.post("/webhooks/mpesa", content=body, headers=headers)
        assert first.status_code == 200
        assert first.json()["data"]["delivery"]["activated"] == [service_id]

        second = await client.post("/webhooks/mpesa", content=body, headers=headers)
        assert second.status_code == 200
        assert second.json()["data"]["accepted"] is True
        assert second.json()["data"]["applied"] is False
        assert "delivery" not in second.json()["data"]

        response = await client.get(f"/services/{service_id}/access", headers=merchant_headers)
        data = response.json()["data"]
        assert data["access"] is True
        assert data["service"]["accessCount"] == 1

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_other_merchant_cannot_check_access(self, client, merchant_headers, other_merchant_headers):
        response = await client.post(
            "/services",
            json={"customerId": "C", "serviceType": "course", "name": "Course", "amount": "100"},
            headers=merchant_headers,
        )
        service_id = response.json()["data"]["service"]["serviceId"]

        response = await client.get(f"/services/{service_id}/access", headers=other_merchant_headers)
        assert response.status_code == 403


class TestSweeperStatusEndpoint:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_status_shape(self, client):
        response = await client.get("/sweeper/status")
        assert response.status_code == 200
        assert {"running", "runs", "lastRunAt", "lastResult", "errorsCount", "intervalSeconds"} <= set(
            response.json()
        )


class TestManualSweepEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_cleanup_expired_control_numbers(self, client, db_session, merchant_headers):
        stale = await _issue(client, merchant_headers)
        fresh = await _issue(client, merchant_headers)
        await db_session.execute(
            update(ControlNumberRow)
            .where(ControlNumberRow.code == stale["code"])
            .values(expires_at=utcnow() - timedelta(minutes=1))
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()

        response = await client.post("/control-numbers/cleanup-expired", headers=merchant_headers)
        assert response.status_code == 200
        assert response.json()["data"] == {"expired": 1}

        response = await client.get(f"/control-numbers/{stale['code']}", headers=merchant_headers)
        assert response.json()["data"]["status"] == "expired"
        response = await client.get(f"/control-numbers/{fresh['code']}", headers=merchant_headers)
        assert response.json()["data"]["status"] == "active"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_cleanup_requires_auth(self, client):
        response = await client.post("/control-numbers/cleanup-expired")
        assert response.status_code == 401

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_check_expired_services(self, client, db_session, merchant_headers):
        response = await client.post(
            "/services",
            json={
                "customerId": "CUST-2",
                "serviceType": "subscription",
                "name": "Monthly",
                "durationDays": 30,
                "amount": "1000",
                "orderId": "ORDER-S2",
                "provider": "mpesa",
            },
            headers=merchant_headers,
        )
        service_id = response.json()["data"]["service"]["serviceId"]
        body, headers = _signed({"orderId": "ORDER-S2", "status": "COMPLETED"})
        await client.post("/webhooks/mpesa", content=body, headers=headers)

        await db_session.execute(
            update(ServiceRow)
            .where(ServiceRow.service_id == service_id)
            .values(expires_at=utcnow() - timedelta(minutes=1))
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()

        response = await client.post("/services/check-expired", headers=merchant_headers)
        assert response.status_code == 200
        assert response.json()["data"] == {"expired": 1}

        response = await client.get(f"/services/{service_id}", headers=merchant_headers)
        assert response.json()["data"]["status"] == "expired"


class TestInternalErrorHandling:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_logged_with_traceback_but_hidden_from_client(self, caplog):
        exc = InternalError("generation exhausted", details={"attempts": 5})
        request = SimpleNamespace(url=SimpleNamespace(path="/control-numbers"))

        with caplog.at_level(logging.ERROR, logger="main"):
            response = await http_exception_handler(request, exc)

        assert response.status_code == 500
        assert b"generation exhausted" not in response.body
        record = next(r for r in caplog.records if r.name == "main")
        assert record.exc_info is not None
        assert record.exc_info[1] is exc
