"""Tests for the webhook models, schemas and management API."""

import json

import pytest
from pydantic import ValidationError

from app.services.webhook_signature import is_valid_secret
from tests.conftest import TENANT

HOOK = {
    "name": "Clinic CRM",
    "url": "https://hooks.example.com/vetify",
    "events": ["pet.created", "appointment.created"],
}


# ── Model tests ──────────────────────────────────────────
def test_webhook_endpoint_defaults():
    from app.models.webhook import WebhookEndpoint

    wh = WebhookEndpoint(tenant_id=TENANT, name="x", url="https://example.com/hook", secret="s")
    assert wh.is_active is True
    assert wh.consecutive_failures == 0
    assert wh.event_list == []


def test_webhook_endpoint_bad_events_json():
    from app.models.webhook import WebhookEndpoint

    wh = WebhookEndpoint(tenant_id=TENANT, name="x", url="https://x.com", secret="s", events="bad json")
    assert wh.event_list == []
    assert wh.is_subscribed("pet.created") is False


def test_delivery_log_defaults():
    from app.models.webhook import WebhookDeliveryLog

    log = WebhookDeliveryLog(webhook_id="ep1", event_type="pet.created")
    assert log.status == "pending"
    assert log.attempt == 1
    assert log.payload_data == {}


# ── Schema tests ─────────────────────────────────────────
def test_create_schema_requires_https():
    from app.api.webhooks import WebhookCreate

    with pytest.raises(ValidationError):
        WebhookCreate(name="x", url="http://insecure.example.com", events=["pet.created"])


def test_create_schema_requires_an_event():
    from app.api.webhooks import WebhookCreate

    with pytest.raises(ValidationError):
        WebhookCreate(name="x", url="https://example.com", events=[])


def test_update_schema_defaults():
    from app.api.webhooks import WebhookUpdate

    u = WebhookUpdate(is_active=False)
    assert u.is_active is False
    assert u.url is None
    assert u.regenerate_secret is False


# ── API endpoint tests ──────────────────────────────────
@pytest.mark.asyncio
async def test_list_event_types(client):
    resp = await client.get("/api/v1/webhooks/events")
    assert resp.status_code == 200
    events = {e["name"]: e for e in resp.json()}
    assert len(events) == 9
    assert events["pet.created"]["category"] == "pets"
    assert events["sale.completed"]["description"]


@pytest.mark.asyncio
async def test_tenant_header_required(client):
    resp = await client.get("/api/v1/webhooks/", headers={"X-Tenant-Id": ""})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_create_returns_secret_once(client):
    resp = await client.post("/api/v1/webhooks/", json=HOOK)
    assert resp.status_code == 201
    created = resp.json()
    assert is_valid_secret(created["secret"])
    assert created["events"] == HOOK["events"]
    assert created["is_active"] is True

    detail = (await client.get(f"/api/v1/webhooks/{created['id']}")).json()
    assert "secret" not in detail
    listed = (await client.get("/api/v1/webhooks/")).json()
    assert [w["id"] for w in listed] == [created["id"]]
    assert "secret" not in listed[0]


@pytest.mark.asyncio
async def test_create_lists_every_invalid_event(client):
    resp = await client.post("/api/v1/webhooks/", json={**HOOK, "events": ["pet.created", "bad.one", "bad.two"]})
    assert resp.status_code == 400
    assert "bad.one" in resp.json()["detail"]
    assert "bad.two" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_create_rejects_http_url(client):
    resp = await client.post("/api/v1/webhooks/", json={**HOOK, "url": "http://hooks.example.com"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_other_tenant_gets_404(client, make_endpoint):
    ep = await make_endpoint(tenant_id="tenant-2")
    resp = await client.get(f"/api/v1/webhooks/{ep.id}")
    assert resp.status_code == 404
    resp = await client.delete(f"/api/v1/webhooks/{ep.id}")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_get_webhook_404(client):
    resp = await client.get("/api/v1/webhooks/nonexistent")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_reenable_resets_failures(client, make_endpoint):
    ep = await make_endpoint(is_active=False, consecutive_failures=10)
    resp = await client.patch(f"/api/v1/webhooks/{ep.id}", json={"is_active": True})
    assert resp.status_code == 200
    body = resp.json()
    assert body["is_active"] is True
    assert body["consecutive_failures"] == 0
    assert body["secret"] is None


@pytest.mark.asyncio
async def test_update_events_and_regenerate_secret(client, make_endpoint):
    ep = await make_endpoint()
    resp = await client.patch(
        f"/api/v1/webhooks/{ep.id}",
        json={"events": ["sale.completed"], "regenerate_secret": True},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["events"] == ["sale.completed"]
    assert is_valid_secret(body["secret"])
    assert body["secret"] != ep.secret


@pytest.mark.asyncio
async def test_update_invalid_event(client, make_endpoint):
    ep = await make_endpoint()
    resp = await client.patch(f"/api/v1/webhooks/{ep.id}", json={"events": ["nope"]})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_delete_cascades_logs(client, make_endpoint, store, session_factory):
    from sqlalchemy import func, select

    from app.models.webhook import WebhookDeliveryLog

    ep = await make_endpoint()
    await store.create_log(ep.id, "pet.created", "{}", 1)

    resp = await client.delete(f"/api/v1/webhooks/{ep.id}")
    assert resp.status_code == 204
    assert await store.get_endpoint(ep.id) is None
    async with session_factory() as db:
        count = (await db.execute(select(func.count(WebhookDeliveryLog.id)))).scalar()
    assert count == 0


@pytest.mark.asyncio
async def test_test_ping_and_delivery_history(client, make_endpoint, receiver):
    ep = await make_endpoint()

    resp = await client.post(f"/api/v1/webhooks/{ep.id}/test")
    assert resp.status_code == 200
    result = resp.json()
    assert result["success"] is True
    assert result["http_status_code"] == 200
    assert receiver.requests[0].headers["X-Vetify-Event"] == "test.ping"

    deliveries = (await client.get(f"/api/v1/webhooks/{ep.id}/deliveries")).json()
    assert len(deliveries) == 1
    assert deliveries[0]["event_type"] == "test.ping"
    assert deliveries[0]["status"] == "delivered"

    detail = (await client.get(f"/api/v1/webhooks/{ep.id}")).json()
    assert detail["delivery_count"] == 1
    assert detail["recent_deliveries"][0]["id"] == deliveries[0]["id"]

    failed = (await client.get(f"/api/v1/webhooks/{ep.id}/deliveries", params={"status": "failed"})).json()
    assert failed == []


@pytest.mark.asyncio
async def test_test_ping_disabled(client, make_endpoint, receiver):
    ep = await make_endpoint(is_active=False)
    resp = await client.post(f"/api/v1/webhooks/{ep.id}/test")
    assert resp.status_code == 200
    assert resp.json() == {
        "success": False,
        "http_status_code": None,
        "response_body": None,
        "error": "Webhook is disabled",
        "delivered_at": None,
    }
    assert receiver.calls == 0


def test_payload_snapshot_is_json():
    from app.models.webhook import WebhookDeliveryLog

    log = WebhookDeliveryLog(webhook_id="ep1", event_type="pet.created", payload=json.dumps({"event": "pet.created"}))
    assert log.payload_data["event"] == "pet.created"
