from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .auth import Authorizer
from .commands import CommandTable, Resolution, resolve, resolve_explicit
from .handlers import CommandContext, CommandHandler
from .history import HistoryBuilder
from .logging import get_logger
from .replies import ReplySender
from .store import MessageStore
from .telegram.api_models import Message
from .telegram.parsing import (
    has_media,
    has_recoverable_content,
    is_from_self,
    message_text,
    sender_id,
)

logger = get_logger(__name__)

REPLY_NEEDS_CONTENT = "Reply to the bot or to another command with some content."
PROMPT_REQUIRED = "Send a prompt with the command, or reply to a message that has content."


@dataclass(frozen=True, slots=True)
class PromptCheck:
    prompt_source: Message | None = None
    guidance: str | None = None

    @property
    def ok(self) -> bool:
        return self.guidance is None


class Dispatcher:
    """Routes one inbound unit (a message plus its album siblings) to a handler.

    Every message is persisted whether or not it resolves to a command.
    """

    def __init__(
        self,
        *,
        store: MessageStore,
        history: HistoryBuilder,
        table: CommandTable,
        handlers: Mapping[str, CommandHandler],
        replies: ReplySender,
        authorizer: Authorizer,
        bot_id: int | None = None,
        bot_username: str | None = None,
    ) -> None:
        self._store = store
        self._history = history
        self._table = table
        self._handlers = handlers
        self._replies = replies
        self._authorizer = authorizer
        self._bot_id = bot_id
        self._bot_username = bot_username

    async def dispatch(
        self,
        message: Message,
        siblings: Sequence[Message] = (),
        *,
        raw: dict[str, Any] | None = None,
        sibling_raws: Mapping[int, dict[str, Any]] | None = None,
    ) -> bool:
        chat_id = message.chat.id
        sibling_raws = sibling_raws or {}
        for sibling in siblings:
            await self._store.persist(
                sibling, raw=sibling_raws.get(sibling.message_id)
            )

        if not self._authorizer.is_authorized(chat_id, sender_id(message)):
            logger.info(
                "dispatch.unauthorized",
                chat_id=chat_id,
                message_id=message.message_id,
                user_id=sender_id(message),
            )
            await self._store.persist(message, raw=raw)
            return False

        resolution = await self.resolve(message)
        if resolution is None:
            await self._store.persist(message, raw=raw)
            return False

        command = resolution.command
        await self._store.persist(message, raw=raw, command_type=command.name)
        logger.info(
            "dispatch.resolved",
            chat_id=chat_id,
            message_id=message.message_id,
            command=command.name,
            implicit=resolution.implicit,
            args=resolution.args,
        )

        check = self.check_prompt(message, siblings, resolution)
        if not check.ok:
            logger.info(
                "dispatch.rejected",
                chat_id=chat_id,
                message_id=message.message_id,
                command=command.name,
            )
            await self._replies.send_guidance(
                chat_id, message.message_id, check.guidance or ""
            )
            return False

        handler = self._handlers.get(command.name)
        if handler is None:
            logger.warning("dispatch.no_handler", command=command.name)
            return False

        history = await self._history.build(chat_id, message)
        ctx = CommandContext(
            message=message,
            resolution=resolution,
            history=history,
            siblings=[] if resolution.implicit else list(siblings),
            prompt_source=check.prompt_source,
        )
        await handler.execute(ctx)
        return True

    async def resolve(self, message: Message) -> Resolution | None:
        reply_type: str | None = None
        target = message.reply_to_message
        if target is not None and is_from_self(target, self._bot_id):
            metadata = await self._store.get_metadata(
                target.chat.id, target.message_id
            )
            if metadata is not None:
                reply_type = metadata.command_type
        return resolve(
            message_text(message),
            self._table,
            bot_username=self._bot_username,
            reply_metadata=reply_type,
        )

    def check_prompt(
        self,
        message: Message,
        siblings: Sequence[Message],
        resolution: Resolution,
    ) -> PromptCheck:
        if resolution.implicit or not resolution.command.requires_prompt:
            return PromptCheck(prompt_source=message)
        if resolution.cleaned_text.strip() or has_media(message):
            return PromptCheck(prompt_source=message)
        if any(has_media(sibling) for sibling in siblings):
            return PromptCheck(prompt_source=message)
        target = message.reply_to_message
        if target is None:
            return PromptCheck(guidance=PROMPT_REQUIRED)
        if is_from_self(target, self._bot_id) or self._is_bare_command(target):
            return PromptCheck(guidance=REPLY_NEEDS_CONTENT)
        if not has_recoverable_content(target):
            return PromptCheck(guidance=PROMPT_REQUIRED)
        return PromptCheck(prompt_source=target)

    def _is_bare_command(self, msg: Message) -> bool:
        if has_media(msg):
            return False
        resolution = resolve_explicit(
            message_text(msg), self._table, self._bot_username
        )
        return resolution is not None and not resolution.cleaned_text.strip()
