"""
rest/client.py — REST API client

Two calls sit around the gateway session:
  - GET /gateway resolves the WebSocket URL before dialing
  - POST /channels/{id}/messages lets command handlers reply

Usage:
    async with RestClient(token, base_url=settings.gateway.api_base_url) as rest:
        url = await rest.get_gateway_url()
        await rest.create_message(channel_id, "pong")
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from disgordian.exceptions import RestError
from disgordian.observability.logger import get_logger

log = get_logger(__name__)

_TIMEOUT = 10.0
_USER_AGENT = "DiscordBot (disgordian, 0.1.0)"


class RestClient:
    """Thin async wrapper over httpx for the handful of REST calls we need."""

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        base_url: str = "https://discord.com/api",
        timeout: float = _TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"User-Agent": _USER_AGENT}
        if token:
            headers["Authorization"] = f"Bot {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "RestClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            log.error("rest.request_failed", method=method, path=path, error=str(exc))
            raise RestError(f"{method} {path} failed: {exc}") from exc
        log.debug("rest.response", method=method, path=path, status=response.status_code)
        return response

    async def get_gateway_url(self) -> str:
        """Ask the API which gateway URL to dial."""
        response = await self._request("GET", "/gateway")
        if response.status_code != 200:
            raise RestError(
                f"gateway URL fetch returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise RestError(f"couldn't decode gateway response: {exc}") from exc

        url = body.get("url") if isinstance(body, dict) else None
        if not isinstance(url, str) or not url:
            raise RestError("gateway response carried no url")
        log.info("rest.gateway_url", url=url)
        return url

    async def create_message(self, channel_id: str, content: str) -> dict[str, Any]:
        """Post a text message to a channel and return the created message."""
        response = await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            json={"content": content},
        )
        if response.status_code not in (200, 201):
            raise RestError(
                f"create_message returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()
