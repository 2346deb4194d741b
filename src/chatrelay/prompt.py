"""Conversion of conversation turns into generateContent request contents."""

from __future__ import annotations

import base64
import re
from collections.abc import Iterable, Sequence
from typing import Any

from .cache import BoundedCache
from .commands import CommandSpec
from .logging import get_logger
from .model import Attachment, ConversationTurn, Fragment
from .telegram.api_models import Message
from .telegram.client import BotClient
from .telegram.parsing import extract_attachments, message_text

logger = get_logger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024
_MIB = 1024 * 1024

_MIME_BY_EXTENSION = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "pdf": "application/pdf",
    "py": "text/x-python",
    "js": "text/javascript",
    "ts": "text/typescript",
    "java": "text/x-java-source",
    "c": "text/x-c",
    "cpp": "text/x-c++",
    "cs": "text/x-csharp",
    "swift": "text/x-swift",
    "php": "text/x-php",
    "rb": "text/x-ruby",
    "kt": "text/x-kotlin",
    "go": "text/x-go",
    "rs": "text/rust",
    "html": "text/html",
    "css": "text/css",
}
_FUNCTION_PART_KEYS = ("functionCall", "functionResponse")


class PromptError(Exception):
    """A prompt that cannot be sent; the message is shown to the user."""


def mime_type_for(attachment: Attachment) -> str:
    if attachment.mime_type:
        return attachment.mime_type
    name = attachment.file_name or ""
    _, dot, ext = name.rpartition(".")
    if not dot:
        return "application/octet-stream"
    return _MIME_BY_EXTENSION.get(ext.lower(), "application/octet-stream")


def _command_prefix_re(command: CommandSpec) -> re.Pattern:
    triggers = "|".join(re.escape(trigger) for trigger in command.triggers)
    return re.compile(rf"^/(?:{triggers})\b(?:@\w+)?\s*", re.IGNORECASE)


def strip_command_text(text: str, command: CommandSpec) -> str:
    """Drop the command prefix and a leading parameter token from turn text."""
    cleaned = _command_prefix_re(command).sub("", text, count=1).strip()
    for param in command.parameters:
        if not param.allowed_values:
            continue
        head, _, rest = cleaned.partition(" ")
        if head and param.match(head) is not None:
            cleaned = rest.strip()
    return cleaned


def strip_function_parts(parts: Iterable[Fragment]) -> list[Fragment]:
    return [
        part for part in parts if not any(key in part for key in _FUNCTION_PART_KEYS)
    ]


class FileFetcher:
    def __init__(self, bot: BotClient, cache: BoundedCache[str, bytes]) -> None:
        self._bot = bot
        self._cache = cache

    async def fetch(self, file_id: str) -> bytes:
        cached = self._cache.get(file_id)
        if cached is not None:
            return cached
        info = await self._bot.get_file(file_id)
        file_path = info.get("file_path") if info else None
        if not isinstance(file_path, str) or not file_path:
            logger.warning("prompt.file_lookup_failed", file_id=file_id)
            raise PromptError("Failed to download an attached file.")
        data = await self._bot.download_file(file_path)
        if data is None:
            raise PromptError("Failed to download an attached file.")
        self._cache[file_id] = data
        return data


class PromptBuilder:
    def __init__(
        self,
        fetcher: FileFetcher,
        *,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
    ) -> None:
        self._fetcher = fetcher
        self._max_upload_bytes = max_upload_bytes

    async def build(
        self,
        turns: Sequence[ConversationTurn],
        *,
        command: CommandSpec,
        messages: Sequence[Message] = (),
        prompt_source: Message | None = None,
        prompt_text: str | None = None,
        strip_function_calls: bool = False,
    ) -> list[dict[str, Any]]:
        """Turn history (oldest first) into request contents.

        Turns with stored fragments are replayed verbatim. Other turns become
        file parts followed by their text with the command prefix removed.
        The turn of ``prompt_source`` takes ``prompt_text`` as its text when
        one is given, and is appended when the history does not reach it.
        Files on ``messages`` that no turn carries yet are appended to the
        last content. Raises PromptError when the files exceed the upload cap
        or nothing usable remains.
        """
        turns = list(turns)
        source_id = prompt_source.message_id if prompt_source is not None else None
        if prompt_source is not None and all(
            turn.message_id != source_id for turn in turns
        ):
            turns.append(
                ConversationTurn(
                    role="user",
                    text=message_text(prompt_source),
                    attachments=extract_attachments(prompt_source),
                    message_id=source_id,
                )
            )

        seen_files = {
            attachment.file_id for turn in turns for attachment in turn.attachments
        }
        extra: list[Attachment] = []
        for msg in messages:
            for attachment in extract_attachments(msg):
                if attachment.file_id in seen_files:
                    continue
                seen_files.add(attachment.file_id)
                extra.append(attachment)

        total = sum(
            attachment.byte_size or 0
            for turn in turns
            if not turn.fragments
            for attachment in turn.attachments
        ) + sum(attachment.byte_size or 0 for attachment in extra)
        if total > self._max_upload_bytes:
            raise PromptError(
                f"Attached files cannot exceed {self._max_upload_bytes // _MIB}MB "
                f"in total ({round(total / _MIB)}MB)."
            )

        contents: list[dict[str, Any]] = []
        for turn in turns:
            if turn.fragments:
                parts = (
                    strip_function_parts(turn.fragments)
                    if strip_function_calls
                    else list(turn.fragments)
                )
                contents.append({"role": turn.role, "parts": parts})
                continue
            parts = await self._file_parts(turn.attachments)
            is_source = source_id is not None and turn.message_id == source_id
            if is_source and prompt_text is not None:
                text = prompt_text.strip()
            else:
                text = strip_command_text(turn.text, command)
            if text:
                parts.append({"text": text})
            contents.append({"role": turn.role, "parts": parts})

        if extra and contents:
            contents[-1]["parts"].extend(await self._file_parts(extra))

        valid = [content for content in contents if content["parts"]]
        if not valid:
            raise PromptError("There is no message with usable content to send.")
        logger.debug(
            "prompt.built",
            command=command.name,
            contents=len(valid),
            upload_bytes=total,
        )
        return valid

    async def _file_parts(self, attachments: Iterable[Attachment]) -> list[Fragment]:
        parts: list[Fragment] = []
        for attachment in attachments:
            data = await self._fetcher.fetch(attachment.file_id)
            parts.append(
                {
                    "inlineData": {
                        "mimeType": mime_type_for(attachment),
                        "data": base64.b64encode(data).decode("ascii"),
                    }
                }
            )
        return parts
