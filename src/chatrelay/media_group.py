from __future__ import annotations

import itertools
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import anyio
from anyio.abc import TaskGroup

from .cache import BoundedCache
from .logging import get_logger
from .telegram.api_models import Message
from .telegram.parsing import message_text

logger = get_logger(__name__)

DEFAULT_DEBOUNCE_S = 1.0
DEFAULT_MAX_GROUPS = 256
COMMAND_MARKER = "/"

GroupKey = tuple[int, str]
RawPayloads = Mapping[int, dict[str, Any]]
OnReady = Callable[[Message, list[Message], RawPayloads], Awaitable[None]]


@dataclass(slots=True)
class _MediaGroupState:
    messages: list[Message]
    raws: dict[int, dict[str, Any]] = field(default_factory=dict)
    token: int = 0


def select_primary(messages: Sequence[Message]) -> tuple[Message, list[Message]]:
    if not messages:
        raise ValueError("media group is empty")
    primary = next(
        (
            msg
            for msg in messages
            if message_text(msg).lstrip().startswith(COMMAND_MARKER)
        ),
        messages[0],
    )
    siblings = [msg for msg in messages if msg is not primary]
    return primary, siblings


class MediaGroupBuffer:
    """Collects album messages and emits each album once it goes quiet.

    Every arrival restarts the debounce window. Flush tasks carry a token
    from a counter shared by all groups, so a task left over from an evicted
    group never matches a newer group under the same key.
    """

    def __init__(
        self,
        *,
        task_group: TaskGroup,
        on_ready: OnReady,
        debounce_s: float = DEFAULT_DEBOUNCE_S,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        max_groups: int = DEFAULT_MAX_GROUPS,
    ) -> None:
        self._task_group = task_group
        self._on_ready = on_ready
        self._debounce_s = debounce_s
        self._sleep = sleep
        self._tokens = itertools.count(1)
        self._groups: BoundedCache[GroupKey, _MediaGroupState] = BoundedCache(
            max_groups, on_evict=self._evicted
        )

    def __len__(self) -> int:
        return len(self._groups)

    def add(self, msg: Message, raw: dict[str, Any] | None = None) -> None:
        media_group_id = msg.media_group_id
        if media_group_id is None:
            return
        key = (msg.chat.id, media_group_id)
        state = self._groups.get(key)
        if state is None:
            state = _MediaGroupState(messages=[])
            self._groups[key] = state
        state.messages.append(msg)
        if raw is not None:
            state.raws[msg.message_id] = raw
        state.token = next(self._tokens)
        self._task_group.start_soon(self._flush_media_group, key, state.token)

    def _evicted(self, key: GroupKey, state: _MediaGroupState) -> None:
        logger.warning(
            "media_group.evicted",
            chat_id=key[0],
            media_group_id=key[1],
            messages=len(state.messages),
        )
        self._task_group.start_soon(self._dispatch, key, state)

    async def _flush_media_group(self, key: GroupKey, token: int) -> None:
        await self._sleep(self._debounce_s)
        state = self._groups.get(key)
        if state is None or token != state.token:
            return
        self._groups.pop(key)
        await self._dispatch(key, state)

    async def _dispatch(self, key: GroupKey, state: _MediaGroupState) -> None:
        primary, siblings = select_primary(state.messages)
        logger.info(
            "media_group.flush",
            chat_id=key[0],
            media_group_id=key[1],
            primary_id=primary.message_id,
            sibling_ids=[msg.message_id for msg in siblings],
        )
        await self._on_ready(primary, siblings, state.raws)
