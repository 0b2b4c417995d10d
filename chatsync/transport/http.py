"""HTTP implementation of :class:`AgentTransport` built on :mod:`httpx`."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Mapping
from typing import Any

import httpx

from .. import __version__
from ..settings import ServiceSettings
from ..telemetry import log_debug_payload, log_event
from .base import check_page_bounds
from .errors import (
    FatalTransportError,
    TransportError,
    classify_exception,
    classify_status,
    parse_retry_after,
)

__all__ = [
    "DONE_SENTINEL",
    "HttpAgentTransport",
    "SseDecoder",
    "iter_sse_events",
]

DONE_SENTINEL = "[DONE]"
PROJECT_HEADER = "X-Project"
_ERROR_BODY_LIMIT = 500


class SseDecoder:
    """Incrementally decode server-sent event lines into JSON payloads.

    :meth:`feed` returns a decoded event when *line* completes one.  Events
    named ``error`` are wrapped so the normalizer recognises them, and the
    ``[DONE]`` marker is returned verbatim.
    """

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event: str | None = None
        self.done = False

    def feed(self, line: str) -> Any | None:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value.strip() or None
        return None

    def flush(self) -> Any | None:
        return self._dispatch()

    def _dispatch(self) -> Any | None:
        if not self._data:
            self._event = None
            return None
        data = "\n".join(self._data)
        event = self._event
        self._data = []
        self._event = None
        if data.strip() == DONE_SENTINEL:
            self.done = True
            return DONE_SENTINEL
        try:
            payload = json.loads(data)
        except ValueError:
            log_event(
                "MESSAGE_MALFORMED",
                {"reason": "invalid stream JSON", "preview": data[:_ERROR_BODY_LIMIT]},
                level=logging.WARNING,
            )
            return None
        if event == "error" and not (
            isinstance(payload, Mapping) and "message_type" in payload
        ):
            return {"message_type": "error", "error": payload}
        return payload


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[Any]:
    """Yield decoded events from *lines* until the ``[DONE]`` marker."""
    decoder = SseDecoder()
    async for line in lines:
        event = decoder.feed(line)
        if event is not None:
            yield event
            if decoder.done:
                return
    event = decoder.flush()
    if event is not None:
        yield event


def _unwrap_list(payload: Any, *keys: str) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    raise FatalTransportError(
        f"Unexpected response shape: {type(payload).__name__}"
    )


class HttpAgentTransport:
    """Talk to a Letta-compatible agent service over HTTP."""

    def __init__(
        self,
        settings: ServiceSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Create a transport for *settings*.

        ``transport`` is forwarded to the lazily created
        :class:`httpx.AsyncClient`; passing ``client`` uses it as is and
        leaves closing it to the caller.
        """
        self.settings = settings
        self._transport = transport
        self._client = client
        self._owns_client = client is None

    # ------------------------------------------------------------------
    async def __aenter__(self) -> HttpAgentTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        client = self._client
        if client is not None and self._owns_client:
            self._client = None
            await client.aclose()

    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": f"chatsync/{__version__}",
        }
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        if self.settings.project:
            headers[PROJECT_HEADER] = self.settings.project
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                headers=self._headers(),
                timeout=httpx.Timeout(self.settings.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    # ------------------------------------------------------------------
    @staticmethod
    def _status_error(response: httpx.Response) -> TransportError:
        try:
            body = response.text
        except httpx.ResponseNotRead:  # pragma: no cover - callers read first
            body = ""
        message = f"HTTP {response.status_code}"
        detail = body.strip()[:_ERROR_BODY_LIMIT]
        if detail:
            message = f"{message}: {detail}"
        return classify_status(
            response.status_code,
            message,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )

    async def _get_json(self, path: str, *, params: Mapping[str, Any] | None = None) -> Any:
        client = self._get_client()
        start = time.monotonic()
        log_debug_payload(
            "HTTP_REQUEST",
            {"method": "GET", "path": path, "params": dict(params or {})},
        )
        try:
            response = await client.get(path, params=params)
        except httpx.HTTPError as exc:
            error = classify_exception(exc)
            log_event(
                "HTTP_ERROR",
                {"path": path, "error": error.to_dict()},
                start_time=start,
                level=logging.WARNING,
            )
            raise error from exc
        if not response.is_success:
            error = self._status_error(response)
            log_event(
                "HTTP_ERROR",
                {"path": path, "error": error.to_dict()},
                start_time=start,
                level=logging.WARNING,
            )
            raise error
        try:
            payload = response.json()
        except ValueError as exc:
            raise FatalTransportError(f"Invalid JSON from {path}: {exc}") from exc
        log_debug_payload("HTTP_RESPONSE", {"path": path, "body": payload})
        return payload

    # ------------------------------------------------------------------
    async def list_agents(self) -> list[Mapping[str, Any]]:
        payload = await self._get_json("/v1/agents/")
        agents = _unwrap_list(payload, "agents", "data")
        return [agent for agent in agents if isinstance(agent, Mapping)]

    async def fetch_messages_page(
        self,
        agent_id: str,
        *,
        before: str | None = None,
        after: str | None = None,
        limit: int,
    ) -> list[Any]:
        """Return one page of raw messages.

        Pages bounded by *after* are requested oldest first, every other page
        newest first; callers sort the normalized result anyway.
        """
        check_page_bounds(before, after, limit)
        params: dict[str, Any] = {"limit": limit, "order": "asc" if after else "desc"}
        if before is not None:
            params["before"] = before
        if after is not None:
            params["after"] = after
        payload = await self._get_json(f"/v1/agents/{agent_id}/messages", params=params)
        return _unwrap_list(payload, "messages", "data")

    async def open_message_stream(
        self, agent_id: str, user_input: str
    ) -> AsyncIterator[Any]:
        """Post *user_input* and yield decoded server-sent events."""
        client = self._get_client()
        body = {
            "messages": [
                {"role": "user", "content": [{"type": "text", "text": user_input}]}
            ],
            "stream_tokens": True,
        }
        path = f"/v1/agents/{agent_id}/messages/stream"
        log_debug_payload("HTTP_REQUEST", {"method": "POST", "path": path, "body": body})
        try:
            async with client.stream(
                "POST", path, json=body, headers={"Accept": "text/event-stream"}
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise self._status_error(response)
                async for event in iter_sse_events(response.aiter_lines()):
                    yield event
        except httpx.HTTPError as exc:
            raise classify_exception(exc) from exc
