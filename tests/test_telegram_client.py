import json

import httpx
import pytest

from chatrelay.telegram import TelegramClient, TelegramRetryAfter


def _ok(result) -> dict:
    return {"ok": True, "result": result}


@pytest.mark.anyio
async def test_telegram_429_raises_retry_after() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(
            429,
            json={
                "ok": False,
                "description": "retry",
                "parameters": {"retry_after": 3},
            },
            request=request,
        )

    transport = httpx.MockTransport(handler)

    client = httpx.AsyncClient(transport=transport)
    try:
        tg = TelegramClient("123:abcDEF_ghij", client=client)
        with pytest.raises(TelegramRetryAfter) as excinfo:
            await tg._post("sendMessage", {"chat_id": 1, "text": "hi"})
    finally:
        await client.aclose()

    assert excinfo.value.retry_after == 3.0
    assert len(calls) == 1


@pytest.mark.anyio
async def test_retry_after_from_description() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"ok": False, "description": "Too Many Requests: retry after 7"},
            request=request,
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tg = TelegramClient("123:abc", client=client)
        with pytest.raises(TelegramRetryAfter) as excinfo:
            await tg.send_message(chat_id=1, text="hi")

    assert excinfo.value.retry_after == 7.0


@pytest.mark.anyio
async def test_http_error_returns_none_on_500() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(500, text="oops", request=request)

    transport = httpx.MockTransport(handler)

    client = httpx.AsyncClient(transport=transport)
    try:
        tg = TelegramClient("123:abcDEF_ghij", client=client)
        result = await tg._post("getUpdates", {"timeout": 1})
        assert result is None
    finally:
        await client.aclose()
    assert len(attempts) == 1


@pytest.mark.anyio
async def test_api_error_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "ok": False,
                "error_code": 400,
                "description": "Bad Request: chat not found",
            },
            request=request,
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        tg = TelegramClient("123:abc", client=client)
        result = await tg.send_message(chat_id=456, text="hello")
        assert result is None


@pytest.mark.anyio
async def test_network_error_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tg = TelegramClient("123:abc", client=client)
        assert await tg.get_me() is None


@pytest.mark.anyio
async def test_telegram_empty_token_raises() -> None:
    with pytest.raises(ValueError, match="empty"):
        TelegramClient("")


@pytest.mark.anyio
async def test_close_owned_client() -> None:
    client = TelegramClient("123:abc")
    await client.close()


@pytest.mark.anyio
async def test_send_message_reply() -> None:
    captured: dict | None = None

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal captured
        captured = json.loads(request.content)
        return httpx.Response(200, json=_ok({"message_id": 123}), request=request)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        tg = TelegramClient("123:abc", client=client)
        result = await tg.send_message(chat_id=456, text="hello", reply_to_message_id=9)

    assert result == {"message_id": 123}
    assert captured == {"chat_id": 456, "text": "hello", "reply_to_message_id": 9}


@pytest.mark.anyio
async def test_get_updates_params() -> None:
    captured: dict | None = None

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal captured
        captured = json.loads(request.content)
        return httpx.Response(200, json=_ok([{"update_id": 1}]), request=request)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        tg = TelegramClient("123:abc", client=client)
        result = await tg.get_updates(
            offset=5, timeout_s=1, allowed_updates=["message", "message_reaction"]
        )

    assert result == [{"update_id": 1}]
    assert captured == {
        "timeout": 1,
        "offset": 5,
        "allowed_updates": ["message", "message_reaction"],
    }


@pytest.mark.anyio
async def test_set_and_clear_reaction() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_ok(True), request=request)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        tg = TelegramClient("123:abc", client=client)
        assert await tg.set_message_reaction(1, 2, "👍") is True
        assert await tg.set_message_reaction(1, 2, None) is True

    assert bodies[0]["reaction"] == [{"type": "emoji", "emoji": "👍"}]
    assert bodies[1]["reaction"] == []


@pytest.mark.anyio
async def test_send_media_group_multipart() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200, json=_ok([{"message_id": 1}, {"message_id": 2}]), request=request
        )

    media = [
        {"type": "photo", "media": "attach://photo0", "caption": "hi"},
        {"type": "photo", "media": "attach://photo1"},
    ]
    files = {
        "photo0": ("image_1.png", b"one", "image/png"),
        "photo1": ("image_2.png", b"two", "image/png"),
    }
    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        tg = TelegramClient("123:abc", client=client)
        result = await tg.send_media_group(1, media, files, reply_to_message_id=7)

    assert result == [{"message_id": 1}, {"message_id": 2}]
    [request] = seen
    assert request.url.path.endswith("/sendMediaGroup")
    assert request.headers["content-type"].startswith("multipart/form-data")
    body = request.content
    assert json.dumps(media, separators=(",", ":")).encode() in body
    assert b'name="photo1"; filename="image_2.png"' in body
    assert b'name="reply_to_message_id"\r\n\r\n7' in body


@pytest.mark.anyio
async def test_get_file_and_download() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/getFile"):
            return httpx.Response(
                200, json=_ok({"file_id": "f", "file_path": "photos/a.jpg"}), request=request
            )
        assert request.url.path == "/file/bot123:abc/photos/a.jpg"
        return httpx.Response(200, content=b"jpeg", request=request)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        tg = TelegramClient("123:abc", client=client)
        info = await tg.get_file("f")
        assert info is not None
        assert await tg.download_file(info["file_path"]) == b"jpeg"


@pytest.mark.anyio
async def test_download_failure_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tg = TelegramClient("123:abc", client=client)
        assert await tg.download_file("missing") is None
