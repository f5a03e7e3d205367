"""Async client helpers for the Home Assistant REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import HomeAssistantConfig


class HomeAssistantError(RuntimeError):
    """Generic Home Assistant API failure."""


class HomeAssistantAuthError(HomeAssistantError):
    """Raised when HA returns 401/403."""


@dataclass(slots=True)
class HomeAssistantClient:
    config: HomeAssistantConfig
    timeout: float = 10.0
    _client: httpx.AsyncClient = field(init=False, repr=False)
    _closed: bool = field(init=False, default=True, repr=False)

    def __post_init__(self) -> None:
        if not self.config.base_url:
            raise ValueError("Home Assistant base URL is not configured")
        if not self.config.token:
            raise ValueError("Home Assistant token is not configured")
        base_url = self.config.base_url.rstrip("/")
        headers = {
            "Authorization": f"Bearer {self.config.token}",
            "Content-Type": "application/json",
        }
        try:
            self._client = httpx.AsyncClient(
                base_url=base_url,
                headers=headers,
                timeout=self.timeout,
                verify=self.config.verify_ssl,
                trust_env=False,
            )
        except PermissionError:
            logging.getLogger(__name__).warning(
                "Falling back to insecure SSL verification for Home Assistant client due to permission error"
            )
            self._client = httpx.AsyncClient(
                base_url=base_url,
                headers=headers,
                timeout=self.timeout,
                verify=False,
                trust_env=False,
            )
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()

    async def get_info(self) -> dict[str, Any]:
        """Return `/api/` payload with HA metadata."""
        return await self._request("GET", "/api/")

    async def get_state(self, entity_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/states/{entity_id}")

    async def list_states(self) -> list[dict[str, Any]]:
        """Return all entity state payloads."""
        payload = await self._request("GET", "/api/states")
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        return []

    async def list_entities(self, domain: str | None = None) -> list[dict[str, Any]]:
        """List entities, optionally filtered by domain (e.g., 'media_player')."""
        states = await self.list_states()
        if not domain:
            return states
        prefix = f"{domain}."
        return [state for state in states if str(state.get("entity_id") or "").startswith(prefix)]

    async def call_service(self, domain: str, service: str, data: dict[str, Any] | None = None) -> Any:
        payload = data or {}
        return await self._request("POST", f"/api/services/{domain}/{service}", json=payload)

    async def play_media(self, entity_id: str, content_id: str, content_type: str) -> None:
        await self.call_service(
            "media_player",
            "play_media",
            {"entity_id": entity_id, "media_content_id": content_id, "media_content_type": content_type},
        )

    async def media_command(self, entity_id: str, service: str, **extra: Any) -> None:
        """Invoke a bare media_player service (media_pause, media_stop, media_seek, ...)."""
        await self.call_service("media_player", service, {"entity_id": entity_id, **extra})

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:  # pragma: no cover - network errors
            raise HomeAssistantError(f"Failed to contact Home Assistant: {exc}") from exc
        if response.status_code in (401, 403):
            raise HomeAssistantAuthError("Home Assistant rejected the token")
        if response.status_code >= 400:
            raise HomeAssistantError(f"Home Assistant error {response.status_code}: {response.text}")
        if response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return response.text

