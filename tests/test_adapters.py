"""
HTTP adapter tests using httpx.MockTransport (no network).
"""

import json

import httpx
import pytest

from attendsheet.core.exceptions import (ArchiveStoreError, ChannelError,
                                         ChannelTimeoutError)
from attendsheet.services.archive import HttpArchiveStore
from attendsheet.services.channels import HttpChannelProvider


def _client(handler, base_url="http://provider") -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


class TestHttpChannelProvider:
    async def test_send_and_create(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            if request.url.path == "/message/send":
                return httpx.Response(200, json={"success": True, "data": {"task_id": 881}})
            return httpx.Response(200, json={"success": True, "data": {"id": "todo-9"}})

        provider = HttpChannelProvider("http://provider", client=_client(handler))
        assert await provider.send_message("u1", {"msgtype": "oa"}) == "881"
        assert await provider.create_task("union-1", {"subject": "s"}) == "todo-9"
        await provider.aclose()

        assert seen[0] == ("/message/send", {"userid": "u1", "msg": {"msgtype": "oa"}})
        assert seen[1] == ("/task/create", {"unionId": "union-1", "subject": "s"})

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="boom"),
            httpx.Response(200, json={"success": False, "message": "already read"}),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"success": True, "data": {}}),
        ],
    )
    async def test_failures_raise_channel_error(self, response):
        provider = HttpChannelProvider("http://provider", client=_client(lambda request: response))
        with pytest.raises(ChannelError):
            await provider.send_message("u1", {})

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        provider = HttpChannelProvider("http://provider", client=_client(handler))
        with pytest.raises(ChannelTimeoutError):
            await provider.delete_task("todo-1")

    async def test_recall_ok(self):
        provider = HttpChannelProvider(
            "http://provider",
            client=_client(lambda request: httpx.Response(200, json={"success": True})),
        )
        await provider.recall_message("881")


class TestHttpArchiveStore:
    async def test_list_upload_delete(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path))
            if request.method == "GET":
                assert request.url.params["prefix"] == "attendance/signatures/2024-05/"
                return httpx.Response(
                    200, json={"success": True, "data": {"keys": ["attendance/signatures/2024-05/a-2024-05.png"]}}
                )
            return httpx.Response(200, json={"success": True})

        store = HttpArchiveStore("http://store", client=_client(handler, "http://store"))
        keys = await store.list("attendance/signatures/2024-05/")
        await store.upload("attendance/signatures/2024-05/a-2024-05.png", b"\x89PNG")
        await store.delete(["attendance/signatures/2024-05/a-2024-05.png"])
        await store.delete([])
        await store.aclose()

        assert keys == ["attendance/signatures/2024-05/a-2024-05.png"]
        assert [c[0] for c in calls] == ["GET", "PUT", "POST"]

    async def test_listing_rejected(self):
        store = HttpArchiveStore(
            "http://store",
            client=_client(lambda request: httpx.Response(200, json={"success": False}), "http://store"),
        )
        with pytest.raises(ArchiveStoreError):
            await store.list("x/")

    async def test_upload_http_error(self):
        store = HttpArchiveStore(
            "http://store",
            client=_client(lambda request: httpx.Response(503), "http://store"),
        )
        with pytest.raises(ArchiveStoreError):
            await store.upload("k.png", b"data")
