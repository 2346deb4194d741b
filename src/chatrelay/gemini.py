from __future__ import annotations

import base64
import binascii
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import anyio
import httpx
import msgspec

from .logging import get_logger
from .model import Fragment

logger = get_logger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT_S = 600.0

_BLOCKED_FINISH_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT"})


class _InlineData(msgspec.Struct, forbid_unknown_fields=False, rename="camel"):
    mime_type: str | None = None
    data: str | None = None


class _Content(msgspec.Struct, forbid_unknown_fields=False):
    role: str | None = None
    parts: list[dict[str, Any]] = msgspec.field(default_factory=list)


class _Candidate(msgspec.Struct, forbid_unknown_fields=False, rename="camel"):
    content: _Content | None = None
    finish_reason: str | None = None
    grounding_metadata: dict[str, Any] | None = None


class _PromptFeedback(msgspec.Struct, forbid_unknown_fields=False, rename="camel"):
    block_reason: str | None = None


class _GenerateResponse(msgspec.Struct, forbid_unknown_fields=False, rename="camel"):
    candidates: list[_Candidate] = msgspec.field(default_factory=list)
    prompt_feedback: _PromptFeedback | None = None


@dataclass(frozen=True, slots=True)
class GeneratedImage:
    data: bytes
    mime_type: str = "image/png"


@dataclass(slots=True)
class GenerationResult:
    text: str | None = None
    images: list[GeneratedImage] = field(default_factory=list)
    fragments: list[Fragment] | None = None
    grounding: dict[str, Any] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def retry_delay(attempt: int) -> float:
    return attempt * 1.0 + 1.0


def _decode_image(part: Fragment) -> GeneratedImage | None:
    raw = part.get("inlineData")
    if not isinstance(raw, dict):
        return None
    try:
        inline = msgspec.convert(raw, type=_InlineData)
    except msgspec.ValidationError:
        return None
    if not inline.data or not (inline.mime_type or "").startswith("image/"):
        return None
    try:
        data = base64.b64decode(inline.data)
    except (binascii.Error, ValueError):
        logger.warning("gemini.bad_image", mime_type=inline.mime_type)
        return None
    return GeneratedImage(data=data, mime_type=inline.mime_type or "image/png")


def result_from_response(response: _GenerateResponse) -> GenerationResult:
    if response.prompt_feedback and response.prompt_feedback.block_reason:
        return GenerationResult(
            error=f"Prompt blocked: {response.prompt_feedback.block_reason}"
        )
    candidate = response.candidates[0] if response.candidates else None
    if candidate is not None:
        if candidate.finish_reason in _BLOCKED_FINISH_REASONS:
            return GenerationResult(
                error="The response was blocked by the safety policy."
            )
        if candidate.finish_reason == "MALFORMED_FUNCTION_CALL":
            return GenerationResult(error="The model produced a malformed function call.")

    images: list[GeneratedImage] = []
    for cand in response.candidates:
        if cand.content is None:
            continue
        for part in cand.content.parts:
            image = _decode_image(part)
            if image is not None:
                images.append(image)

    result = GenerationResult(images=images)
    if candidate is not None and candidate.content is not None:
        parts = candidate.content.parts
        texts = [
            part["text"]
            for part in parts
            if isinstance(part.get("text"), str) and not part.get("thought")
        ]
        if texts:
            result.text = "".join(texts)
        if parts:
            result.fragments = parts
    if candidate is not None and candidate.grounding_metadata:
        result.grounding = candidate.grounding_metadata

    if result.text is None and not result.images and result.fragments is None:
        return GenerationResult(error="The response contained no data.")
    return result


def _api_error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return f"HTTP {resp.status_code}"


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = GEMINI_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        if not api_key:
            raise ValueError("Google API key is empty")
        self._api_key = api_key
        self._base = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None
        self._sleep = sleep

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def generate(
        self,
        contents: list[dict[str, Any]],
        *,
        model: str,
        config: Mapping[str, Any] | None = None,
        system_instruction: str | None = None,
    ) -> GenerationResult:
        """Run one generateContent call.

        ``config`` holds top-level request fields such as ``tools`` and
        ``generationConfig``. Server errors and transport failures are retried
        with a growing delay; every other failure comes back as a result whose
        ``error`` is set.
        """
        body: dict[str, Any] = {"contents": contents}
        if config:
            body.update(config)
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        url = f"{self._base}/models/{model}:generateContent"
        headers = {"x-goog-api-key": self._api_key}

        for attempt in range(1, MAX_ATTEMPTS + 1):
            logger.info("gemini.request", model=model, attempt=attempt)
            try:
                resp = await self._client.post(url, json=body, headers=headers)
            except httpx.HTTPError as exc:
                if attempt < MAX_ATTEMPTS:
                    await self._backoff(model, attempt, error=str(exc))
                    continue
                logger.error(
                    "gemini.network_error",
                    model=model,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                return GenerationResult(error=f"API error: {exc}")

            if resp.status_code >= 500 and attempt < MAX_ATTEMPTS:
                await self._backoff(model, attempt, status=resp.status_code)
                continue
            if resp.status_code >= 400:
                message = _api_error_message(resp)
                logger.error(
                    "gemini.http_error",
                    model=model,
                    status=resp.status_code,
                    error=message,
                )
                return GenerationResult(error=f"API error: {message}")

            try:
                response = msgspec.json.decode(resp.content, type=_GenerateResponse)
            except (msgspec.DecodeError, msgspec.ValidationError) as exc:
                logger.error("gemini.bad_response", model=model, error=str(exc))
                return GenerationResult(error=f"API error: {exc}")
            result = result_from_response(response)
            if result.error is not None:
                logger.warning("gemini.rejected", model=model, error=result.error)
            return result

        return GenerationResult(error="Maximum number of retries exceeded.")

    async def _backoff(self, model: str, attempt: int, **context: Any) -> None:
        delay = retry_delay(attempt)
        logger.warning(
            "gemini.retry", model=model, attempt=attempt, delay_s=delay, **context
        )
        await self._sleep(delay)
