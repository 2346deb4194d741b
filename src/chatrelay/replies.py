from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from .gemini import GeneratedImage, GenerationResult
from .logging import get_logger
from .model import GUIDANCE_CLASSIFICATION, Fragment, error_classification
from .store import MessageStore
from .telegram.api_models import Message
from .telegram.client import BotClient
from .telegram.parsing import message_from_payload

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 4096
MAX_CAPTION_LENGTH = 1024
EMPTY_RESPONSE_TEXT = "The model returned an empty response."

# A sent message with the Bot API result it was decoded from.
_Sent = tuple[Message, dict[str, Any]]


def split_text(
    text: str,
    *,
    first_limit: int = MAX_MESSAGE_LENGTH,
    limit: int = MAX_MESSAGE_LENGTH,
) -> list[str]:
    """Split on line boundaries so every chunk fits its message limit.

    The first chunk may have a tighter limit (a photo caption). Lines longer
    than a limit are cut hard.
    """
    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while True:
            max_len = first_limit if not chunks else limit
            candidate = f"{current}\n{line}" if current else line
            if len(candidate) <= max_len:
                current = candidate
                break
            if current:
                chunks.append(current)
                current = ""
                continue
            chunks.append(line[:max_len])
            line = line[max_len:]
    if current or not chunks:
        chunks.append(current)
    return chunks


def format_response(result: GenerationResult) -> str:
    parts = result.fragments or []
    pieces: list[str] = []
    for part in parts:
        if part.get("thought"):
            continue
        text = part.get("text")
        if isinstance(text, str):
            pieces.append(text)
            continue
        code = part.get("executableCode")
        if isinstance(code, dict):
            pieces.append(f"\n\n[Code]\n```python\n{code.get('code') or ''}\n```")
            continue
        outcome = part.get("codeExecutionResult")
        if isinstance(outcome, dict):
            mark = "ok" if outcome.get("outcome") == "OUTCOME_OK" else "failed"
            pieces.append(f"\n[Result: {mark}]\n```\n{outcome.get('output') or ''}\n```")
    body = "".join(pieces) if pieces else (result.text or "")
    return (body + _format_grounding(result.grounding)).strip()


def _format_grounding(grounding: dict[str, Any] | None) -> str:
    if not grounding:
        return ""
    lines: list[str] = []
    queries = grounding.get("webSearchQueries") or []
    if queries:
        joined = ", ".join(f"'{query}'" for query in queries)
        lines.append(f"\n---\nSearch: {joined}")
    sources: dict[str, str] = {}
    for chunk in grounding.get("groundingChunks") or []:
        web = chunk.get("web") if isinstance(chunk, dict) else None
        if isinstance(web, dict) and web.get("uri") and web.get("title"):
            sources[web["uri"]] = web["title"]
    if sources:
        lines.append("Sources:")
        lines.extend(f" - {title}: {uri}" for uri, title in sources.items())
    return "\n" + "\n".join(lines) if lines else ""


class ReplySender:
    """Sends a bot reply and persists every outbound message it produced.

    The first message of a batch owns the generation fragments; every other
    message of the batch links to it.
    """

    def __init__(self, bot: BotClient, store: MessageStore) -> None:
        self._bot = bot
        self._store = store

    async def send(
        self,
        chat_id: int,
        reply_to_message_id: int,
        text: str,
        *,
        images: Sequence[GeneratedImage] = (),
        command_type: str | None = None,
        fragments: list[Fragment] | None = None,
    ) -> list[Message]:
        if not text.strip() and not images:
            text = EMPTY_RESPONSE_TEXT
        first_limit = MAX_CAPTION_LENGTH if images else MAX_MESSAGE_LENGTH
        chunks = split_text(text, first_limit=first_limit)

        sent: list[_Sent] = []
        if images:
            sent.extend(
                await self._send_images(
                    chat_id, reply_to_message_id, images, caption=chunks[0]
                )
            )
        else:
            item = await self._send_text(chat_id, chunks[0], reply_to_message_id)
            if item is not None:
                sent.append(item)
        if not sent:
            logger.error(
                "replies.send_failed", chat_id=chat_id, reply_to=reply_to_message_id
            )
            return []

        first, first_raw = sent[0]
        reply_to = first.message_id
        for chunk in chunks[1:]:
            item = await self._send_text(chat_id, chunk, reply_to)
            if item is None:
                break
            sent.append(item)
            reply_to = item[0].message_id

        if images:
            sent.extend(await self._send_originals(chat_id, first.message_id, images))

        await self._store.persist(
            first,
            raw=first_raw,
            author_is_self=True,
            command_type=command_type,
            fragments=fragments,
        )
        for msg, raw in sent[1:]:
            await self._store.persist(
                msg,
                raw=raw,
                author_is_self=True,
                command_type=command_type,
                linked_message_id=first.message_id,
            )
        logger.info(
            "replies.sent",
            chat_id=chat_id,
            reply_to=reply_to_message_id,
            message_ids=[msg.message_id for msg, _ in sent],
            command_type=command_type,
        )
        return [msg for msg, _ in sent]

    async def send_result(
        self,
        chat_id: int,
        reply_to_message_id: int,
        result: GenerationResult,
        *,
        command_type: str,
    ) -> list[Message]:
        return await self.send(
            chat_id,
            reply_to_message_id,
            format_response(result),
            images=result.images,
            command_type=command_type,
            fragments=result.fragments,
        )

    async def send_error(
        self,
        chat_id: int,
        reply_to_message_id: int,
        text: str,
        *,
        detail: str | None = None,
    ) -> list[Message]:
        return await self.send(
            chat_id,
            reply_to_message_id,
            text,
            command_type=error_classification(detail),
        )

    async def send_guidance(
        self, chat_id: int, reply_to_message_id: int, text: str
    ) -> list[Message]:
        return await self.send(
            chat_id,
            reply_to_message_id,
            text,
            command_type=GUIDANCE_CLASSIFICATION,
        )

    async def _send_text(
        self, chat_id: int, text: str, reply_to_message_id: int
    ) -> _Sent | None:
        res = await self._bot.send_message(
            chat_id, text, reply_to_message_id=reply_to_message_id
        )
        return _decode_sent(res)

    async def _send_images(
        self,
        chat_id: int,
        reply_to_message_id: int,
        images: Sequence[GeneratedImage],
        *,
        caption: str,
    ) -> list[_Sent]:
        caption = caption if caption.strip() else ""
        if len(images) == 1:
            image = images[0]
            res = await self._bot.send_photo(
                chat_id,
                image.data,
                caption=caption or None,
                reply_to_message_id=reply_to_message_id,
                mime_type=image.mime_type,
            )
            item = _decode_sent(res)
            return [item] if item is not None else []
        media: list[dict[str, Any]] = []
        files: dict[str, tuple[str, bytes, str]] = {}
        for index, image in enumerate(images):
            name = f"photo{index}"
            entry: dict[str, Any] = {"type": "photo", "media": f"attach://{name}"}
            if index == 0 and caption:
                entry["caption"] = caption
            media.append(entry)
            files[name] = (f"image_{index + 1}.png", image.data, image.mime_type)
        res = await self._bot.send_media_group(
            chat_id, media, files, reply_to_message_id=reply_to_message_id
        )
        return _decode_many(res)

    async def _send_originals(
        self,
        chat_id: int,
        reply_to_message_id: int,
        images: Sequence[GeneratedImage],
    ) -> list[_Sent]:
        if len(images) == 1:
            image = images[0]
            res = await self._bot.send_document(
                chat_id,
                image.data,
                filename="image.png",
                mime_type=image.mime_type,
                reply_to_message_id=reply_to_message_id,
            )
            item = _decode_sent(res)
            return [item] if item is not None else []
        media: list[dict[str, Any]] = []
        files: dict[str, tuple[str, bytes, str]] = {}
        for index, image in enumerate(images):
            name = f"document{index}"
            media.append({"type": "document", "media": f"attach://{name}"})
            files[name] = (f"image_{index + 1}.png", image.data, image.mime_type)
        res = await self._bot.send_media_group(
            chat_id, media, files, reply_to_message_id=reply_to_message_id
        )
        return _decode_many(res)


def _decode_sent(res: dict | None) -> _Sent | None:
    if not isinstance(res, dict):
        return None
    msg = message_from_payload(res)
    return (msg, res) if msg is not None else None


def _decode_many(res: list[dict] | None) -> list[_Sent]:
    if not res:
        return []
    return [item for item in map(_decode_sent, res) if item is not None]
