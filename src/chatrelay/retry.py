from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol
from weakref import WeakValueDictionary

import anyio
import msgspec

from .logging import get_logger
from .model import is_error_classification
from .store import MessageStore
from .telegram.api_models import Message

logger = get_logger(__name__)

RetryKey = tuple[int, int]


class Redispatcher(Protocol):
    async def dispatch(
        self,
        message: Message,
        siblings: Sequence[Message] = (),
        *,
        raw: dict[str, Any] | None = None,
    ) -> bool: ...


class RetryController:
    """Re-runs the request behind a failed bot reply when a user reacts to it.

    Only one signal per ``(chat_id, message_id)`` runs the lookup sequence at
    a time; signals that arrive while it is in flight return immediately.
    """

    def __init__(self, *, store: MessageStore, dispatcher: Redispatcher) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._locks: WeakValueDictionary[RetryKey, anyio.Lock] = WeakValueDictionary()

    def _lock_for(self, key: RetryKey) -> anyio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = anyio.Lock()
            self._locks[key] = lock
        return lock

    async def on_acknowledge(self, chat_id: int, target_message_id: int) -> bool:
        lock = self._lock_for((chat_id, target_message_id))
        try:
            lock.acquire_nowait()
        except anyio.WouldBlock:
            logger.debug(
                "retry.in_flight", chat_id=chat_id, message_id=target_message_id
            )
            return False
        try:
            return await self._retry(chat_id, target_message_id)
        finally:
            lock.release()

    async def _retry(self, chat_id: int, target_message_id: int) -> bool:
        target = await self._store.get(chat_id, target_message_id)
        if target is None or not target.from_self:
            return False
        original_id = target.reply_to_message_id
        if original_id is None:
            return False

        metadata = await self._store.get_metadata(chat_id, target_message_id)
        if metadata is None or not is_error_classification(metadata.command_type):
            logger.debug(
                "retry.not_eligible",
                chat_id=chat_id,
                message_id=target_message_id,
                command_type=metadata.command_type if metadata else None,
            )
            return False

        original = await self._store.get(chat_id, original_id)
        if original is None:
            logger.warning(
                "retry.original_missing",
                chat_id=chat_id,
                message_id=target_message_id,
                original_id=original_id,
            )
            return False
        try:
            message = original.message
        except msgspec.ValidationError as exc:
            logger.warning(
                "retry.bad_payload",
                chat_id=chat_id,
                original_id=original_id,
                error=str(exc),
            )
            return False

        logger.info(
            "retry.redispatch",
            chat_id=chat_id,
            message_id=target_message_id,
            original_id=original_id,
            command_type=metadata.command_type,
        )
        await self._dispatcher.dispatch(message, raw=original.payload)
        return True
