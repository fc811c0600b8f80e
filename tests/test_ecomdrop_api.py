from __future__ import annotations

import asyncio

import httpx
import pytest

import ecomdrop_bridge.ecomdrop_api as ecomdrop_module
from ecomdrop_bridge.ecomdrop_api import EcomdropApiClient, EcomdropApiError, dispatch_idempotency_key


def _install_fake_client(monkeypatch, handler, calls: list[dict]):
    class FakeAsyncClient:
        def __init__(self, *args, **kwargs):
            assert kwargs.get("timeout") == ecomdrop_module.settings.ECOMDROP_REQUEST_TIMEOUT_SECONDS

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def request(self, method, url, json=None, data=None, headers=None):  # noqa: A002
            call = {"method": method, "url": url, "json": json, "data": data, "headers": headers}
            calls.append(call)
            return handler(call)

    monkeypatch.setattr(ecomdrop_module.httpx, "AsyncClient", FakeAsyncClient)


def test_list_flows_sends_access_token_and_caches_per_key(monkeypatch):
    calls: list[dict] = []
    _install_fake_client(
        monkeypatch,
        lambda call: httpx.Response(200, json=[{"id": 12, "name": "Nuevo pedido"}, "junk"]),
        calls,
    )
    client = EcomdropApiClient()

    first = asyncio.run(client.list_flows(api_key="key_1"))
    second = asyncio.run(client.list_flows(api_key="key_1"))

    assert first == [{"id": 12, "name": "Nuevo pedido"}]
    assert second == first
    assert len(calls) == 1
    assert calls[0]["method"] == "GET"
    assert calls[0]["url"] == "https://panel.ecomdrop.test/api/accounts/flows"
    assert calls[0]["headers"]["X-ACCESS-TOKEN"] == "key_1"

    client.clear_flows_cache("key_1")
    asyncio.run(client.list_flows(api_key="key_1"))
    assert len(calls) == 2


def test_list_flows_cache_expires(monkeypatch):
    calls: list[dict] = []
    _install_fake_client(monkeypatch, lambda call: httpx.Response(200, json=[]), calls)
    monkeypatch.setattr(ecomdrop_module.settings, "ECOMDROP_FLOWS_CACHE_SECONDS", 0.0)
    client = EcomdropApiClient()

    asyncio.run(client.list_flows(api_key="key_1"))
    asyncio.run(client.list_flows(api_key="key_1"))

    assert len(calls) == 2


def test_expired_cache_entries_for_other_keys_are_dropped(monkeypatch):
    calls: list[dict] = []
    _install_fake_client(monkeypatch, lambda call: httpx.Response(200, json=[]), calls)
    monkeypatch.setattr(ecomdrop_module.settings, "ECOMDROP_FLOWS_CACHE_SECONDS", 60.0)
    client = EcomdropApiClient()
    client._flows_cache["rotated_key"] = (ecomdrop_module.time.monotonic() - 120.0, [{"id": 1}])

    asyncio.run(client.list_flows(api_key="key_1"))

    assert "rotated_key" not in client._flows_cache
    assert set(client._flows_cache) == {"key_1"}


def test_trigger_flow_posts_event_with_idempotency_key(monkeypatch):
    calls: list[dict] = []
    _install_fake_client(monkeypatch, lambda call: httpx.Response(200, json={"ok": True}), calls)
    client = EcomdropApiClient()
    event = {"orderId": "gid://shopify/Order/1", "eventType": "order_created"}

    result = asyncio.run(
        client.trigger_flow(api_key="key_1", flow_id="77", event=event, idempotency_key="abc123")
    )

    assert result == {"ok": True}
    assert calls[0]["method"] == "POST"
    assert calls[0]["url"] == "https://panel.ecomdrop.test/api/accounts/flows/77/trigger"
    assert calls[0]["json"] == event
    assert calls[0]["headers"]["Idempotency-Key"] == "abc123"


def test_error_status_raises_with_body(monkeypatch):
    calls: list[dict] = []
    _install_fake_client(monkeypatch, lambda call: httpx.Response(401, text="Unauthorized"), calls)
    client = EcomdropApiClient()

    with pytest.raises(EcomdropApiError, match="API Error: 401 - Unauthorized"):
        asyncio.run(client.trigger_flow(api_key="bad", flow_id="77", event={}))


def test_timeout_maps_to_504(monkeypatch):
    def handler(call):
        raise httpx.ReadTimeout("The read operation timed out")

    _install_fake_client(monkeypatch, handler, [])
    client = EcomdropApiClient()

    with pytest.raises(EcomdropApiError) as exc_info:
        asyncio.run(client.trigger_flow(api_key="key_1", flow_id="77", event={}))

    assert exc_info.value.status_code == 504


def test_empty_body_returns_none(monkeypatch):
    _install_fake_client(monkeypatch, lambda call: httpx.Response(204), [])
    client = EcomdropApiClient()

    assert asyncio.run(client.trigger_flow(api_key="key_1", flow_id="77", event={})) is None


def test_trigger_flow_accepts_plain_text_acknowledgement(monkeypatch):
    _install_fake_client(monkeypatch, lambda call: httpx.Response(200, text="OK"), [])
    client = EcomdropApiClient()

    assert asyncio.run(client.trigger_flow(api_key="key_1", flow_id="77", event={"orderId": "1"})) == "OK"


def test_invalid_json_from_flow_listing_raises(monkeypatch):
    _install_fake_client(monkeypatch, lambda call: httpx.Response(200, text="<html>maintenance</html>"), [])
    client = EcomdropApiClient()

    with pytest.raises(EcomdropApiError, match="invalid JSON"):
        asyncio.run(client.list_flows(api_key="key_1"))


def test_validate_dropi_integration_posts_token_to_country_field(monkeypatch):
    calls: list[dict] = []
    _install_fake_client(monkeypatch, lambda call: httpx.Response(200, json={"success": True}), calls)
    client = EcomdropApiClient()

    asyncio.run(client.validate_dropi_integration(api_key="key_1", country="co", dropi_token="dropi_tok"))

    assert calls[0]["url"] == "https://panel.ecomdrop.test/api/accounts/bot_fields/640597"
    assert calls[0]["data"] == {"value": "dropi_tok"}
    assert calls[0]["json"] is None


def test_validate_dropi_integration_rejects_unknown_country(monkeypatch):
    calls: list[dict] = []
    _install_fake_client(monkeypatch, lambda call: httpx.Response(200, json={}), calls)
    client = EcomdropApiClient()

    with pytest.raises(EcomdropApiError, match="País no válido: US") as exc_info:
        asyncio.run(client.validate_dropi_integration(api_key="key_1", country="US", dropi_token="t"))

    assert exc_info.value.status_code == 400
    assert calls == []


def test_dispatch_idempotency_key_is_deterministic():
    first = dispatch_idempotency_key(shop="x.myshopify.com", resource_id="gid://shopify/Order/1", event_type="order_created")
    second = dispatch_idempotency_key(shop="x.myshopify.com", resource_id="gid://shopify/Order/1", event_type="order_created")
    other = dispatch_idempotency_key(shop="x.myshopify.com", resource_id="gid://shopify/Order/2", event_type="order_created")

    assert first == second
    assert first != other
    assert len(first) == 64
