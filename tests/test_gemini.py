import base64
import json

import httpx
import pytest

from chatrelay.gemini import GeminiClient, GenerationResult, retry_delay

CONTENTS = [{"role": "user", "parts": [{"text": "hi"}]}]


def _ok(parts: list[dict], **candidate) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": parts}, **candidate}]}


async def _generate(
    handler, *, sleeps: list[float] | None = None, **kwargs
) -> GenerationResult:
    async def fake_sleep(delay: float) -> None:
        if sleeps is not None:
            sleeps.append(delay)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    try:
        gemini = GeminiClient("test-key", client=client, sleep=fake_sleep)
        return await gemini.generate(CONTENTS, model="gemini-test", **kwargs)
    finally:
        await client.aclose()


def test_retry_delay_grows() -> None:
    assert [retry_delay(n) for n in (1, 2, 3)] == [2.0, 3.0, 4.0]


def test_empty_key_raises() -> None:
    with pytest.raises(ValueError, match="empty"):
        GeminiClient("")


@pytest.mark.anyio
async def test_request_shape() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_ok([{"text": "hello"}]), request=request)

    result = await _generate(
        handler,
        config={"tools": [{"googleSearch": {}}]},
        system_instruction="be brief",
    )

    assert result.ok
    assert result.text == "hello"
    assert result.fragments == [{"text": "hello"}]
    [request] = seen
    assert request.url.path.endswith("/models/gemini-test:generateContent")
    assert request.headers["x-goog-api-key"] == "test-key"
    body = json.loads(request.content)
    assert body["contents"] == CONTENTS
    assert body["tools"] == [{"googleSearch": {}}]
    assert body["systemInstruction"] == {"parts": [{"text": "be brief"}]}


@pytest.mark.anyio
async def test_server_error_is_retried() -> None:
    statuses = [503, 200]
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.pop(0)
        if status != 200:
            return httpx.Response(status, json={"error": {"message": "busy"}}, request=request)
        return httpx.Response(200, json=_ok([{"text": "done"}]), request=request)

    result = await _generate(handler, sleeps=sleeps)

    assert result.text == "done"
    assert sleeps == [2.0]


@pytest.mark.anyio
async def test_gives_up_after_three_attempts() -> None:
    calls: list[int] = []
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(503, json={"error": {"message": "overloaded"}}, request=request)

    result = await _generate(handler, sleeps=sleeps)

    assert len(calls) == 3
    assert sleeps == [2.0, 3.0]
    assert result.error == "API error: overloaded"


@pytest.mark.anyio
async def test_transport_error_is_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            raise httpx.ConnectError("boom", request=request)
        return httpx.Response(200, json=_ok([{"text": "back"}]), request=request)

    result = await _generate(handler, sleeps=[])

    assert result.text == "back"
    assert len(calls) == 2


@pytest.mark.anyio
async def test_client_error_is_not_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(
            400, json={"error": {"message": "Invalid argument"}}, request=request
        )

    result = await _generate(handler)

    assert len(calls) == 1
    assert result.error == "API error: Invalid argument"


@pytest.mark.anyio
async def test_blocked_prompt_is_an_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"promptFeedback": {"blockReason": "OTHER"}}, request=request
        )

    result = await _generate(handler)

    assert result.error == "Prompt blocked: OTHER"


@pytest.mark.anyio
async def test_safety_finish_is_an_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json=_ok([], finishReason="SAFETY"), request=request
        )

    result = await _generate(handler)

    assert not result.ok
    assert "safety" in (result.error or "")


@pytest.mark.anyio
async def test_empty_response_is_an_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": []}, request=request)

    result = await _generate(handler)

    assert result.error == "The response contained no data."


@pytest.mark.anyio
async def test_images_and_thoughts() -> None:
    png = b"\x89PNG fake"
    parts = [
        {"text": "thinking...", "thought": True},
        {"text": "Here it is"},
        {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(png).decode()}},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=_ok(parts, groundingMetadata={"webSearchQueries": ["fox"]}),
            request=request,
        )

    result = await _generate(handler)

    assert result.text == "Here it is"
    assert [image.data for image in result.images] == [png]
    assert result.images[0].mime_type == "image/png"
    assert result.fragments == parts
    assert result.grounding == {"webSearchQueries": ["fox"]}
