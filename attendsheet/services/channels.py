"""
Notification channel provider contract and its HTTP adapter.

Two channels are used per employee: a broadcast message (``send_message`` /
``recall_message``) and an actionable task (``create_task`` / ``delete_task``).
Every call either returns normally or raises ``ChannelError``.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from attendsheet.core.exceptions import ChannelError, ChannelTimeoutError

logger = logging.getLogger(__name__)


class ChannelProvider(Protocol):
    async def send_message(self, user_id: str, payload: dict) -> str: ...

    async def recall_message(self, task_id: str) -> None: ...

    async def create_task(self, user_id: str, payload: dict) -> str: ...

    async def delete_task(self, task_id: str) -> None: ...


class HttpChannelProvider:
    """JSON-over-HTTP provider.

    Endpoints under ``base_url``: ``POST /message/send``, ``POST /message/recall``,
    ``POST /task/create``, ``POST /task/delete``. Responses look like
    ``{"success": true, "data": {"id": "..."}}``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict[str, Any]) -> dict:
        try:
            resp = await self._client.post(path, json=body)
        except httpx.TimeoutException as exc:
            raise ChannelTimeoutError(f"{path} timed out") from exc
        except httpx.HTTPError as exc:
            raise ChannelError(f"{path} request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise ChannelError(f"{path} returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise ChannelError(f"{path} returned a non-JSON body") from exc
        if not isinstance(data, dict) or data.get("success") is False:
            message = data.get("message") if isinstance(data, dict) else None
            logger.warning("Channel provider rejected %s: %s", path, message)
            raise ChannelError(f"{path} rejected: {message or 'unknown error'}")
        return data.get("data") or {}

    async def send_message(self, user_id: str, payload: dict) -> str:
        data = await self._post("/message/send", {"userid": user_id, "msg": payload})
        task_id = data.get("task_id") or data.get("id")
        if not task_id:
            raise ChannelError("/message/send returned no task id")
        return str(task_id)

    async def recall_message(self, task_id: str) -> None:
        await self._post("/message/recall", {"msg_task_id": task_id})

    async def create_task(self, user_id: str, payload: dict) -> str:
        data = await self._post("/task/create", {"unionId": user_id, **payload})
        task_id = data.get("id") or data.get("task_id")
        if not task_id:
            raise ChannelError("/task/create returned no task id")
        return str(task_id)

    async def delete_task(self, task_id: str) -> None:
        await self._post("/task/delete", {"taskId": task_id})
