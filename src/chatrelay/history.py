from __future__ import annotations

import msgspec

from .logging import get_logger
from .model import Attachment, ConversationTurn, RawMessage
from .store import MessageStore
from .telegram.api_models import Message
from .telegram.parsing import (
    dedupe_attachments,
    extract_attachments,
    is_from_self,
    message_text,
)

logger = get_logger(__name__)

DEFAULT_DEPTH_LIMIT = 15


def _stored_message(raw: RawMessage) -> Message | None:
    try:
        return raw.message
    except msgspec.ValidationError as exc:
        logger.warning(
            "history.bad_payload",
            chat_id=raw.chat_id,
            message_id=raw.message_id,
            error=str(exc),
        )
        return None


class HistoryBuilder:
    """Walks reply references backwards and returns the turns oldest first.

    Each step costs a bounded number of store lookups, and a message id is
    never visited twice, so malformed reply graphs cannot loop.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        bot_id: int | None = None,
        depth_limit: int = DEFAULT_DEPTH_LIMIT,
    ) -> None:
        self._store = store
        self._bot_id = bot_id
        self._depth_limit = depth_limit

    async def build(
        self,
        chat_id: int,
        start: Message,
        depth_limit: int | None = None,
    ) -> list[ConversationTurn]:
        limit = self._depth_limit if depth_limit is None else depth_limit
        turns: list[ConversationTurn] = []
        visited: set[int] = set()
        current: Message | None = start
        while current is not None and len(turns) < limit:
            if current.message_id in visited:
                break
            visited.add(current.message_id)
            turns.insert(0, await self._turn(chat_id, current, visited))
            current = await self._next(chat_id, current)
        logger.debug(
            "history.built",
            chat_id=chat_id,
            message_id=start.message_id,
            turns=len(turns),
        )
        return turns

    async def _turn(
        self, chat_id: int, msg: Message, visited: set[int]
    ) -> ConversationTurn:
        text = message_text(msg)
        attachments: list[Attachment] = extract_attachments(msg)
        if msg.media_group_id:
            siblings = await self._store.get_group_siblings(
                chat_id, msg.media_group_id
            )
            for sibling in siblings:
                visited.add(sibling.message_id)
                attachments.extend(
                    await self._store.get_attachments(chat_id, sibling.message_id)
                )
                if not text:
                    text = _payload_text(sibling)
        else:
            attachments.extend(
                await self._store.get_attachments(chat_id, msg.message_id)
            )
        return ConversationTurn(
            role="model" if is_from_self(msg, self._bot_id) else "user",
            text=text,
            attachments=dedupe_attachments(attachments),
            fragments=await self._store.resolve_fragments(chat_id, msg.message_id),
            message_id=msg.message_id,
        )

    async def _next(self, chat_id: int, msg: Message) -> Message | None:
        if msg.reply_to_message is not None:
            return msg.reply_to_message
        stored = await self._store.get(chat_id, msg.message_id)
        if stored is None:
            return None
        parent_id = stored.reply_to_message_id
        if parent_id is None:
            return None
        parent = await self._store.get(chat_id, parent_id)
        if parent is None:
            return None
        return _stored_message(parent)


def _payload_text(raw: RawMessage) -> str:
    for key in ("text", "caption"):
        value = raw.payload.get(key)
        if isinstance(value, str) and value:
            return value
    return ""
