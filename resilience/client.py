"""Conversation API contract and its HTTP implementation.

Components never talk to the host directly; they take a ``ConversationClient``
so tests can pass a fake and hosts can adapt their own transport.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from resilience.config import HOST_BASE_URL, HOST_TIMEOUT
from resilience.errors import ConversationAPIError
from resilience.transcript.parts import PersistedMessage, message_from_api

logger = logging.getLogger(__name__)


class ConversationClient(Protocol):
    """Operations the resilience layer needs from the host."""

    async def prompt(
        self,
        session_id: str,
        parts: list[dict[str, Any]],
        agent: str | None = None,
        model: dict[str, str] | None = None,
    ) -> None: ...

    async def abort(self, session_id: str) -> None: ...

    async def messages(self, session_id: str) -> list[PersistedMessage]: ...

    async def todos(self, session_id: str) -> list[dict[str, Any]]: ...

    async def summarize(self, session_id: str, provider_id: str, model_id: str) -> None: ...

    async def get_session(self, session_id: str) -> dict[str, Any]: ...

    async def create_session(self, parent_id: str | None = None, title: str | None = None) -> dict[str, Any]: ...

    async def show_toast(self, title: str, message: str, variant: str = "info", duration_ms: int = 3000) -> None: ...


class BackgroundTasks(Protocol):
    """Optional view of the host's background task manager."""

    def has_running_tasks(self, session_id: str) -> bool: ...


def text_part(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def model_ref(provider_id: str | None, model_id: str | None) -> dict[str, str] | None:
    if provider_id and model_id:
        return {"providerID": provider_id, "modelID": model_id}
    return None


async def notify(
    client: ConversationClient,
    title: str,
    message: str,
    variant: str = "info",
    duration_ms: int = 3000,
) -> None:
    """Show a toast; failures are logged and dropped."""
    try:
        await client.show_toast(title, message, variant, duration_ms)
    except Exception as e:
        logger.debug("[client] Toast failed (%s): %s", title, e)


class HttpConversationClient:
    """ConversationClient over the host's HTTP server.

    Example:
        async with HttpConversationClient("http://127.0.0.1:4096") as client:
            todos = await client.todos("ses_123")

    """

    def __init__(
        self,
        base_url: str = HOST_BASE_URL,
        timeout: float = HOST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        directory: str | None = None,
    ):
        params = {"directory": directory} if directory else None
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport, params=params)

    async def __aenter__(self) -> "HttpConversationClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> Any:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ConversationAPIError(operation, detail=str(e)) from e
        if resp.is_error:
            raise ConversationAPIError(operation, resp.status_code, resp.text[:200])
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    async def prompt(
        self,
        session_id: str,
        parts: list[dict[str, Any]],
        agent: str | None = None,
        model: dict[str, str] | None = None,
    ) -> None:
        body: dict[str, Any] = {"parts": parts}
        if agent:
            body["agent"] = agent
        if model:
            body["model"] = model
        await self._request("prompt", "POST", f"/session/{session_id}/message", json=body)

    async def abort(self, session_id: str) -> None:
        await self._request("abort", "POST", f"/session/{session_id}/abort")

    async def messages(self, session_id: str) -> list[PersistedMessage]:
        data = await self._request("messages", "GET", f"/session/{session_id}/message")
        return [message_from_api(item) for item in data or [] if isinstance(item, dict)]

    async def todos(self, session_id: str) -> list[dict[str, Any]]:
        data = await self._request("todos", "GET", f"/session/{session_id}/todo")
        return [item for item in data or [] if isinstance(item, dict)]

    async def summarize(self, session_id: str, provider_id: str, model_id: str) -> None:
        await self._request(
            "summarize",
            "POST",
            f"/session/{session_id}/summarize",
            json={"providerID": provider_id, "modelID": model_id},
        )

    async def get_session(self, session_id: str) -> dict[str, Any]:
        return await self._request("get_session", "GET", f"/session/{session_id}") or {}

    async def create_session(self, parent_id: str | None = None, title: str | None = None) -> dict[str, Any]:
        body = {}
        if parent_id:
            body["parentID"] = parent_id
        if title:
            body["title"] = title
        return await self._request("create_session", "POST", "/session", json=body) or {}

    async def show_toast(self, title: str, message: str, variant: str = "info", duration_ms: int = 3000) -> None:
        await self._request(
            "show_toast",
            "POST",
            "/tui/show-toast",
            json={"title": title, "message": message, "variant": variant, "duration": duration_ms},
        )
