from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import anyio
from anyio.abc import TaskGroup

from .auth import Authorizer
from .cache import BoundedCache
from .commands import default_command_table
from .config import RelaySettings
from .dispatch import Dispatcher
from .gemini import GeminiClient
from .handlers import build_handlers
from .history import HistoryBuilder
from .logging import get_logger
from .media_group import MediaGroupBuffer, RawPayloads
from .prompt import FileFetcher, PromptBuilder
from .replies import ReplySender
from .retry import RetryController
from .store import MessageStore
from .telegram.api_models import Message, Update, decode_update
from .telegram.client import BotClient, TelegramClient, TelegramRetryAfter
from .telegram.parsing import is_acknowledge_signal, raw_message_from_update

logger = get_logger(__name__)

ALLOWED_UPDATES = ["message", "message_reaction"]
POLL_TIMEOUT_S = 50
POLL_FAILURE_SLEEP_S = 2.0


class RelayStartupError(RuntimeError):
    pass


async def poll_updates(
    bot: BotClient,
    *,
    offset: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> AsyncIterator[tuple[Update, dict[str, Any]]]:
    while True:
        try:
            updates = await bot.get_updates(
                offset=offset,
                timeout_s=POLL_TIMEOUT_S,
                allowed_updates=ALLOWED_UPDATES,
            )
        except TelegramRetryAfter as exc:
            await sleep(exc.retry_after)
            continue
        if updates is None:
            logger.info("loop.get_updates.failed")
            await sleep(POLL_FAILURE_SLEEP_S)
            continue
        for raw in updates:
            update_id = raw.get("update_id")
            if isinstance(update_id, int):
                offset = update_id + 1
            update = decode_update(raw)
            if update is None:
                logger.warning("loop.bad_update", update_id=update_id)
                continue
            yield update, raw


class UpdateRouter:
    """Fans updates out to tasks: messages to dispatch, reactions to retry.

    Album messages go through the media-group buffer first. A failing task
    is logged and never stops the loop.
    """

    def __init__(
        self,
        *,
        task_group: TaskGroup,
        dispatcher: Dispatcher,
        retry: RetryController,
        debounce_s: float,
    ) -> None:
        self._task_group = task_group
        self._dispatcher = dispatcher
        self._retry = retry
        self.buffer = MediaGroupBuffer(
            task_group=task_group,
            on_ready=self._on_group_ready,
            debounce_s=debounce_s,
        )

    def route(self, update: Update, raw: dict[str, Any] | None = None) -> None:
        msg = update.message
        if msg is not None:
            payload = raw_message_from_update(raw)
            if msg.media_group_id is not None:
                self.buffer.add(msg, payload)
                return
            self._task_group.start_soon(self._dispatch, msg, [], payload, {})
            return
        reaction = update.message_reaction
        if reaction is not None and is_acknowledge_signal(update):
            self._task_group.start_soon(
                self._acknowledge, reaction.chat.id, reaction.message_id
            )

    async def _on_group_ready(
        self, primary: Message, siblings: list[Message], raws: RawPayloads
    ) -> None:
        await self._dispatch(primary, siblings, raws.get(primary.message_id), raws)

    async def _dispatch(
        self,
        msg: Message,
        siblings: list[Message],
        raw: dict[str, Any] | None,
        sibling_raws: RawPayloads,
    ) -> None:
        try:
            await self._dispatcher.dispatch(
                msg, siblings, raw=raw, sibling_raws=sibling_raws
            )
        except Exception:
            logger.exception(
                "loop.message_failed",
                chat_id=msg.chat.id,
                message_id=msg.message_id,
            )

    async def _acknowledge(self, chat_id: int, message_id: int) -> None:
        try:
            await self._retry.on_acknowledge(chat_id, message_id)
        except Exception:
            logger.exception(
                "loop.reaction_failed", chat_id=chat_id, message_id=message_id
            )


async def run_relay(
    settings: RelaySettings,
    *,
    bot: BotClient | None = None,
    gemini: GeminiClient | None = None,
) -> None:
    bot = bot or TelegramClient(settings.bot_token)
    gemini = gemini or GeminiClient(settings.google_api_key)
    try:
        me = await bot.get_me()
        if not me or not isinstance(me.get("id"), int):
            raise RelayStartupError(
                "Failed to fetch bot info; check that the bot token is valid."
            )
        bot_id: int = me["id"]
        bot_username = me.get("username")
        logger.info("relay.startup", bot_id=bot_id, bot_username=bot_username)

        async with MessageStore(settings.db_path, bot_id=bot_id) as store:
            table = default_command_table()
            replies = ReplySender(bot, store)
            prompts = PromptBuilder(
                FileFetcher(bot, BoundedCache(settings.file_cache_size)),
                max_upload_bytes=settings.max_upload_bytes,
            )
            dispatcher = Dispatcher(
                store=store,
                history=HistoryBuilder(
                    store, bot_id=bot_id, depth_limit=settings.history_depth
                ),
                table=table,
                handlers=build_handlers(
                    bot=bot,
                    gemini=gemini,
                    prompts=prompts,
                    replies=replies,
                    table=table,
                    chat_model=settings.chat_model,
                    image_model=settings.image_model,
                    summarize_model=settings.summarize_model,
                ),
                replies=replies,
                authorizer=Authorizer.from_settings(settings),
                bot_id=bot_id,
                bot_username=bot_username,
            )
            retry = RetryController(store=store, dispatcher=dispatcher)
            async with anyio.create_task_group() as tg:
                router = UpdateRouter(
                    task_group=tg,
                    dispatcher=dispatcher,
                    retry=retry,
                    debounce_s=settings.media_group_debounce_s,
                )
                async for update, raw in poll_updates(bot):
                    router.route(update, raw)
    finally:
        await gemini.close()
        await bot.close()
