import json

import httpx
import pytest

from app.services.autopilot.adapters import (
    AssistedChannelAdapter,
    ChannelRegistry,
    HttpChannelAdapter,
)
from app.services.autopilot.errors import FatalAdapterError, RetryableAdapterError
from app.services.autopilot.types import ActionType


def _adapter(handler):
    return HttpChannelAdapter(
        "ebay", "https://gateway.test/ebay/", timeout=2.0, transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_execute_posts_action_and_returns_after_state():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"afterState": {"price": 90.0}, "message": "ok"})

    result = await _adapter(handler).execute(ActionType.REPRICE, {"newPrice": 90.0})

    assert seen["url"] == "https://gateway.test/ebay/autopilot/execute"
    assert seen["body"] == {"actionType": "REPRICE", "payload": {"newPrice": 90.0}}
    assert result.success is True
    assert result.after_state == {"price": 90.0}
    assert result.message == "ok"


@pytest.mark.asyncio
async def test_reverse_posts_before_state():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={})

    result = await _adapter(handler).reverse(ActionType.DELIST, {"listingId": "l-1"})

    assert seen["path"] == "/ebay/autopilot/reverse"
    assert seen["body"]["beforeState"] == {"listingId": "l-1"}
    assert result.after_state == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_throttling_and_server_errors_are_retryable(status_code):
    adapter = _adapter(lambda request: httpx.Response(status_code, text="try later"))
    with pytest.raises(RetryableAdapterError):
        await adapter.execute(ActionType.OFFER_ACCEPT, {})


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 404, 422])
async def test_client_errors_are_fatal(status_code):
    adapter = _adapter(lambda request: httpx.Response(status_code, json={"error": "bad offer"}))
    with pytest.raises(FatalAdapterError):
        await adapter.execute(ActionType.OFFER_ACCEPT, {})


@pytest.mark.asyncio
async def test_connection_errors_are_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RetryableAdapterError):
        await _adapter(handler).execute(ActionType.DELIST, {})


@pytest.mark.asyncio
async def test_non_json_success_body_is_tolerated():
    adapter = _adapter(lambda request: httpx.Response(204))
    result = await adapter.execute(ActionType.DELIST, {})
    assert result.success is True
    assert result.after_state == {}


@pytest.mark.asyncio
async def test_assisted_adapter_never_acts():
    result = await AssistedChannelAdapter("poshmark").execute(ActionType.DELIST, {})
    assert result.success is False
    assert result.manual_action_required is True


def test_registry_capabilities():
    registry = ChannelRegistry(api_channels=["eBay", "mercari"])
    adapter = _adapter(lambda request: httpx.Response(200))
    registry.register("ebay", adapter)

    assert registry.is_api_channel("EBAY") is True
    assert registry.is_api_channel("poshmark") is False
    assert registry.is_api_channel(None) is False
    assert registry.get("ebay") is adapter
    assert isinstance(registry.get("depop"), AssistedChannelAdapter)

    with pytest.raises(FatalAdapterError):
        registry.get("mercari")
    with pytest.raises(FatalAdapterError):
        registry.get(None)
