"""Channel adapters: the only place autopilot actions touch a marketplace.

Adapters translate (action_type, payload) into a marketplace call and map
transport/HTTP failures onto RetryableAdapterError / FatalAdapterError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

import httpx

from app.config import settings
from app.utils.logger import logger

from .errors import FatalAdapterError, RetryableAdapterError
from .types import ActionType


@dataclass
class EffectResult:
    success: bool
    after_state: Dict[str, Any] = field(default_factory=dict)
    manual_action_required: bool = False
    message: Optional[str] = None


class ChannelAdapter:
    """Interface every marketplace adapter implements."""

    channel: str = "unknown"

    async def execute(self, action_type: ActionType, payload: Dict[str, Any]) -> EffectResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def reverse(self, action_type: ActionType, before_state: Dict[str, Any]) -> EffectResult:  # pragma: no cover - interface
        raise NotImplementedError


class AssistedChannelAdapter(ChannelAdapter):
    """Marketplaces without a write API. Never performs side effects."""

    def __init__(self, channel: str):
        self.channel = channel

    async def execute(self, action_type: ActionType, payload: Dict[str, Any]) -> EffectResult:
        return EffectResult(
            success=False,
            manual_action_required=True,
            message=f"{ActionType(action_type).value} on {self.channel} must be done manually",
        )

    async def reverse(self, action_type: ActionType, before_state: Dict[str, Any]) -> EffectResult:
        return EffectResult(
            success=False,
            manual_action_required=True,
            message=f"Undo of {ActionType(action_type).value} on {self.channel} must be done manually",
        )


class HttpChannelAdapter(ChannelAdapter):
    """Generic REST adapter talking to a channel gateway.

    POSTs ``{"actionType": ..., "payload": ...}`` to ``/autopilot/execute``
    and ``{"actionType": ..., "beforeState": ...}`` to ``/autopilot/reverse``.
    The gateway answers with a JSON object whose optional ``afterState``
    becomes the action's after-state.
    """

    def __init__(
        self,
        channel: str,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.channel = channel
        self.base_url = base_url.rstrip("/")
        self.timeout = settings.AUTOPILOT_ADAPTER_TIMEOUT_SECONDS if timeout is None else timeout
        self._transport = transport

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise RetryableAdapterError(f"{self.channel}: timeout calling {path}") from exc
        except httpx.TransportError as exc:
            raise RetryableAdapterError(f"{self.channel}: transport error calling {path}: {exc}") from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise RetryableAdapterError(
                f"{self.channel}: HTTP {resp.status_code} from {path}: {resp.text[:500]}"
            )
        if resp.status_code >= 400:
            raise FatalAdapterError(
                f"{self.channel}: HTTP {resp.status_code} from {path}: {resp.text[:500]}"
            )

        try:
            data = resp.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {}

    async def execute(self, action_type: ActionType, payload: Dict[str, Any]) -> EffectResult:
        data = await self._post(
            "/autopilot/execute",
            {"actionType": ActionType(action_type).value, "payload": payload},
        )
        return EffectResult(
            success=True,
            after_state=data.get("afterState") or {},
            message=data.get("message"),
        )

    async def reverse(self, action_type: ActionType, before_state: Dict[str, Any]) -> EffectResult:
        data = await self._post(
            "/autopilot/reverse",
            {"actionType": ActionType(action_type).value, "beforeState": before_state},
        )
        return EffectResult(
            success=True,
            after_state=data.get("afterState") or {},
            message=data.get("message"),
        )


class ChannelRegistry:
    """channel name -> adapter, plus the API/assisted capability lookup."""

    def __init__(self, api_channels: Optional[Iterable[str]] = None):
        channels = settings.api_channels if api_channels is None else api_channels
        self._api_channels = {c.lower() for c in channels}
        self._adapters: Dict[str, ChannelAdapter] = {}

    def register(self, channel: str, adapter: ChannelAdapter) -> None:
        self._adapters[channel.lower()] = adapter

    def is_api_channel(self, channel: Optional[str]) -> bool:
        return bool(channel) and channel.lower() in self._api_channels

    def get(self, channel: Optional[str]) -> ChannelAdapter:
        if not channel:
            raise FatalAdapterError("Action has no target channel")
        key = channel.lower()
        if not self.is_api_channel(key):
            return self._adapters.get(key) or AssistedChannelAdapter(key)
        adapter = self._adapters.get(key)
        if adapter is None:
            raise FatalAdapterError(f"No adapter configured for API channel '{key}'")
        return adapter

    @classmethod
    def from_settings(cls) -> "ChannelRegistry":
        registry = cls()
        for channel, base_url in settings.channel_base_urls.items():
            if registry.is_api_channel(channel):
                registry.register(channel, HttpChannelAdapter(channel, base_url))
            else:
                logger.warning(
                    "[autopilot] ignoring base URL for assisted channel %s", channel
                )
        return registry
