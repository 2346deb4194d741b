from __future__ import annotations

import re
from typing import Any, Protocol

import httpx
import msgspec

from ..logging import get_logger

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

_RETRY_AFTER_RE = re.compile(r"retry after (\d+)", re.IGNORECASE)

UploadFiles = dict[str, tuple[str, bytes, str]]


class TelegramRetryAfter(Exception):
    def __init__(self, retry_after: float) -> None:
        super().__init__(f"retry after {retry_after}")
        self.retry_after = retry_after


class BotClient(Protocol):
    async def close(self) -> None: ...

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        allowed_updates: list[str] | None = None,
    ) -> list[dict] | None: ...

    async def get_me(self) -> dict | None: ...

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
        parse_mode: str | None = None,
    ) -> dict | None: ...

    async def send_photo(
        self,
        chat_id: int,
        photo: bytes,
        *,
        caption: str | None = None,
        reply_to_message_id: int | None = None,
        filename: str = "image.png",
        mime_type: str = "image/png",
    ) -> dict | None: ...

    async def send_document(
        self,
        chat_id: int,
        document: bytes,
        *,
        filename: str,
        mime_type: str = "application/octet-stream",
        reply_to_message_id: int | None = None,
    ) -> dict | None: ...

    async def send_media_group(
        self,
        chat_id: int,
        media: list[dict[str, Any]],
        files: UploadFiles,
        *,
        reply_to_message_id: int | None = None,
    ) -> list[dict] | None: ...

    async def set_message_reaction(
        self,
        chat_id: int,
        message_id: int,
        emoji: str | None,
    ) -> bool: ...

    async def get_file(self, file_id: str) -> dict | None: ...

    async def download_file(self, file_path: str) -> bytes | None: ...


class _ResponseParameters(msgspec.Struct, forbid_unknown_fields=False):
    retry_after: float | None = None


class _Envelope(msgspec.Struct, forbid_unknown_fields=False):
    ok: bool = False
    result: Any = None
    error_code: int | None = None
    description: str | None = None
    parameters: _ResponseParameters | None = None


_envelope_decoder = msgspec.json.Decoder(_Envelope)


def _decode_envelope(content: bytes) -> _Envelope | None:
    try:
        return _envelope_decoder.decode(content)
    except (msgspec.DecodeError, msgspec.ValidationError):
        return None


def _retry_after_from_text(text: str | None) -> float | None:
    if not text:
        return None
    match = _RETRY_AFTER_RE.search(text)
    return float(match.group(1)) if match else None


def _retry_after(resp: httpx.Response, envelope: _Envelope | None) -> float | None:
    """Flood-control delay from the response, if Telegram asked for one."""
    if envelope is not None:
        if envelope.parameters is not None and envelope.parameters.retry_after is not None:
            return envelope.parameters.retry_after
        from_description = _retry_after_from_text(envelope.description)
        if from_description is not None:
            return from_description
    if resp.status_code == 429:
        return _retry_after_from_text(resp.text)
    return None


def _form_fields(params: dict[str, Any]) -> dict[str, str]:
    return {
        key: value if isinstance(value, str) else msgspec.json.encode(value).decode()
        for key, value in params.items()
    }


class TelegramClient:
    """Bot API client over httpx.

    Calls return the ``result`` field, or None when the request failed in a
    way worth logging and moving on from. Flood control raises
    TelegramRetryAfter so the caller decides whether to wait.
    """

    def __init__(
        self,
        token: str,
        timeout_s: float = 120,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._base = f"{TELEGRAM_API_BASE}/bot{token}"
        self._file_base = f"{TELEGRAM_API_BASE}/file/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(
        self,
        method: str,
        params: dict[str, Any],
        files: UploadFiles | None = None,
    ) -> Any | None:
        logger.debug("telegram.request", method=method, payload=params)
        url = f"{self._base}/{method}"
        try:
            if files is None:
                resp = await self._client.post(url, json=params)
            else:
                resp = await self._client.post(
                    url, data=_form_fields(params), files=files
                )
        except httpx.HTTPError as exc:
            logger.error(
                "telegram.network_error",
                method=method,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

        envelope = _decode_envelope(resp.content)
        if resp.is_success and envelope is not None and envelope.ok:
            logger.debug("telegram.response", method=method, result=envelope.result)
            return envelope.result

        retry_after = _retry_after(resp, envelope)
        if retry_after is not None:
            logger.info(
                "telegram.rate_limited",
                method=method,
                status=resp.status_code,
                retry_after=retry_after,
            )
            raise TelegramRetryAfter(retry_after)

        logger.error(
            "telegram.api_error",
            method=method,
            status=resp.status_code,
            error_code=envelope.error_code if envelope else None,
            description=envelope.description if envelope else None,
            body=None if envelope else resp.text,
        )
        return None

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        allowed_updates: list[str] | None = None,
    ) -> list[dict] | None:
        params: dict[str, Any] = {"timeout": timeout_s}
        if offset is not None:
            params["offset"] = offset
        if allowed_updates is not None:
            params["allowed_updates"] = allowed_updates
        res = await self._post("getUpdates", params)
        return res if isinstance(res, list) else None

    async def get_me(self) -> dict | None:
        res = await self._post("getMe", {})
        return res if isinstance(res, dict) else None

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
        parse_mode: str | None = None,
    ) -> dict | None:
        params: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_to_message_id is not None:
            params["reply_to_message_id"] = reply_to_message_id
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        res = await self._post("sendMessage", params)
        return res if isinstance(res, dict) else None

    async def _upload(
        self,
        method: str,
        chat_id: int,
        files: UploadFiles,
        *,
        reply_to_message_id: int | None,
        **extra: Any,
    ) -> Any | None:
        params: dict[str, Any] = {"chat_id": str(chat_id)}
        params.update({key: value for key, value in extra.items() if value})
        if reply_to_message_id is not None:
            params["reply_to_message_id"] = str(reply_to_message_id)
        return await self._post(method, params, files=files)

    async def send_photo(
        self,
        chat_id: int,
        photo: bytes,
        *,
        caption: str | None = None,
        reply_to_message_id: int | None = None,
        filename: str = "image.png",
        mime_type: str = "image/png",
    ) -> dict | None:
        res = await self._upload(
            "sendPhoto",
            chat_id,
            {"photo": (filename, photo, mime_type)},
            reply_to_message_id=reply_to_message_id,
            caption=caption,
        )
        return res if isinstance(res, dict) else None

    async def send_document(
        self,
        chat_id: int,
        document: bytes,
        *,
        filename: str,
        mime_type: str = "application/octet-stream",
        reply_to_message_id: int | None = None,
    ) -> dict | None:
        res = await self._upload(
            "sendDocument",
            chat_id,
            {"document": (filename, document, mime_type)},
            reply_to_message_id=reply_to_message_id,
        )
        return res if isinstance(res, dict) else None

    async def send_media_group(
        self,
        chat_id: int,
        media: list[dict[str, Any]],
        files: UploadFiles,
        *,
        reply_to_message_id: int | None = None,
    ) -> list[dict] | None:
        # Each media item points at its upload via "attach://<field name>".
        res = await self._upload(
            "sendMediaGroup",
            chat_id,
            files,
            reply_to_message_id=reply_to_message_id,
            media=media,
        )
        return res if isinstance(res, list) else None

    async def set_message_reaction(
        self,
        chat_id: int,
        message_id: int,
        emoji: str | None,
    ) -> bool:
        reaction = [] if emoji is None else [{"type": "emoji", "emoji": emoji}]
        res = await self._post(
            "setMessageReaction",
            {"chat_id": chat_id, "message_id": message_id, "reaction": reaction},
        )
        return res is True

    async def get_file(self, file_id: str) -> dict | None:
        res = await self._post("getFile", {"file_id": file_id})
        return res if isinstance(res, dict) else None

    async def download_file(self, file_path: str) -> bytes | None:
        try:
            resp = await self._client.get(f"{self._file_base}/{file_path}")
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "telegram.file_download_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None
        return resp.content
