from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from .commands import CommandSpec, CommandTable, Resolution
from .gemini import GeminiClient
from .logging import get_logger
from .model import ConversationTurn
from .prompt import PromptBuilder, PromptError
from .replies import ReplySender
from .telegram.api_models import Message
from .telegram.client import BotClient, TelegramRetryAfter

logger = get_logger(__name__)

PROCESSING_REACTION = "👍"
FAILURE_TEXT = "Something went wrong."
THINKING_BUDGET = 32768

SUMMARIZE_SYSTEM_PROMPT = """\
You summarize conversations and documents for a group chat.
Read everything you are given, including attached files, and reply with a
concise summary in the language of the source material. Start with a one
sentence overview, then list the key points as short bullets. Keep names,
numbers and decisions exactly as they appear. Do not add information that is
not present in the source."""


@dataclass(slots=True)
class CommandContext:
    message: Message
    resolution: Resolution
    history: list[ConversationTurn] = field(default_factory=list)
    siblings: list[Message] = field(default_factory=list)
    prompt_source: Message | None = None

    @property
    def chat_id(self) -> int:
        return self.message.chat.id

    @property
    def message_id(self) -> int:
        return self.message.message_id

    @property
    def command(self) -> CommandSpec:
        return self.resolution.command

    @property
    def args(self) -> dict[str, str]:
        return self.resolution.args

    @property
    def cleaned_text(self) -> str:
        return self.resolution.cleaned_text

    @property
    def implicit(self) -> bool:
        return self.resolution.implicit


class CommandHandler(Protocol):
    name: str

    async def execute(self, ctx: CommandContext) -> None: ...


async def _react(bot: BotClient, chat_id: int, message_id: int, emoji: str | None) -> None:
    try:
        await bot.set_message_reaction(chat_id, message_id, emoji)
    except TelegramRetryAfter as exc:
        logger.info(
            "handler.reaction_skipped",
            chat_id=chat_id,
            message_id=message_id,
            retry_after=exc.retry_after,
        )


class GenerationHandler:
    """Shared flow for commands that call the generation service."""

    name = ""
    strip_function_calls = False
    system_instruction: str | None = None
    error_prefix = ""

    def __init__(
        self,
        *,
        bot: BotClient,
        gemini: GeminiClient,
        prompts: PromptBuilder,
        replies: ReplySender,
        model: str,
    ) -> None:
        self._bot = bot
        self._gemini = gemini
        self._prompts = prompts
        self._replies = replies
        self.model = model

    def request_config(self, ctx: CommandContext) -> dict[str, Any] | None:
        return None

    async def execute(self, ctx: CommandContext) -> None:
        await _react(self._bot, ctx.chat_id, ctx.message_id, PROCESSING_REACTION)
        try:
            await self._generate(ctx)
        except Exception as exc:
            logger.exception(
                "handler.failed",
                command=self.name,
                chat_id=ctx.chat_id,
                message_id=ctx.message_id,
            )
            await self._replies.send_error(
                ctx.chat_id,
                ctx.message_id,
                FAILURE_TEXT,
                detail=str(exc) or exc.__class__.__name__,
            )
        finally:
            await _react(self._bot, ctx.chat_id, ctx.message_id, None)

    async def _generate(self, ctx: CommandContext) -> None:
        source = ctx.prompt_source or ctx.message
        # cleaned_text has the command and its parameter tokens removed.
        prompt_text = ctx.cleaned_text if source is ctx.message else None
        try:
            contents = await self._prompts.build(
                ctx.history,
                command=ctx.command,
                messages=[ctx.message, *ctx.siblings],
                prompt_source=source,
                prompt_text=prompt_text,
                strip_function_calls=self.strip_function_calls,
            )
        except PromptError as exc:
            await self._replies.send_guidance(ctx.chat_id, ctx.message_id, str(exc))
            return

        result = await self._gemini.generate(
            contents,
            model=self.model,
            config=self.request_config(ctx),
            system_instruction=self.system_instruction,
        )
        if result.error is not None:
            await self._replies.send_error(
                ctx.chat_id,
                ctx.message_id,
                f"{self.error_prefix}{result.error}",
                detail=result.error,
            )
            return
        await self._replies.send_result(
            ctx.chat_id, ctx.message_id, result, command_type=self.name
        )


class ChatHandler(GenerationHandler):
    name = "gemini"

    def request_config(self, ctx: CommandContext) -> dict[str, Any] | None:
        return {
            "tools": [{"googleSearch": {}}, {"codeExecution": {}}, {"urlContext": {}}],
            "generationConfig": {"thinkingConfig": {"thinkingBudget": THINKING_BUDGET}},
        }


class ImageHandler(GenerationHandler):
    name = "image"
    strip_function_calls = True

    def request_config(self, ctx: CommandContext) -> dict[str, Any] | None:
        resolution = ctx.args.get("resolution") or "1k"
        return {
            "tools": [{"googleSearch": {}}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {"imageSize": resolution.upper()},
            },
        }


class MapHandler(GenerationHandler):
    name = "map"

    def request_config(self, ctx: CommandContext) -> dict[str, Any] | None:
        return {
            "tools": [{"googleSearch": {}}, {"googleMaps": {}}, {"urlContext": {}}],
            "generationConfig": {"thinkingConfig": {"thinkingBudget": THINKING_BUDGET}},
        }


class SummarizeHandler(GenerationHandler):
    name = "summarize"
    system_instruction = SUMMARIZE_SYSTEM_PROMPT
    error_prefix = "Failed to generate a summary: "


def _command_list(table: CommandTable) -> list[str]:
    return [f"/{command.name} - {command.description}" for command in table.listed()]


def describe_command(command: CommandSpec) -> str:
    lines = [f"/{command.name}", command.description]
    if command.aliases:
        lines.append(f"Aliases: {', '.join(command.aliases)}")
    if command.parameters:
        lines.append("")
        lines.append("Parameters:")
        for param in command.parameters:
            line = f"- {param.name}: {param.description}".rstrip()
            if param.default is not None:
                line += f" (default: {param.default})"
            if param.allowed_values:
                line += f" [{', '.join(param.allowed_values)}]"
            lines.append(line)
    return "\n".join(lines)


class HelpHandler:
    name = "help"

    def __init__(self, *, replies: ReplySender, table: CommandTable) -> None:
        self._replies = replies
        self._table = table

    async def execute(self, ctx: CommandContext) -> None:
        if ctx.cleaned_text:
            target = ctx.cleaned_text.split()[0].lower()
            command = self._table.get(target)
            if command is None:
                text = f"Unknown command: {target}"
            else:
                text = describe_command(command)
        else:
            text = "\n".join(
                [
                    "Available commands:",
                    "",
                    *_command_list(self._table),
                    "",
                    "Send /help <command> for details on one command.",
                ]
            )
        await self._replies.send(ctx.chat_id, ctx.message_id, text)


class StartHandler:
    name = "start"

    def __init__(self, *, replies: ReplySender, table: CommandTable) -> None:
        self._replies = replies
        self._table = table

    async def execute(self, ctx: CommandContext) -> None:
        text = "\n".join(
            [
                "Hello! This is a Gemini chat bot.",
                "",
                "Available commands:",
                *_command_list(self._table),
                "",
                "Reply to photos or messages to use them as a prompt.",
                "Reply to a bot answer to keep the conversation going without a command.",
                "Send an album with a captioned command to use every photo at once.",
            ]
        )
        await self._replies.send(ctx.chat_id, ctx.message_id, text)


def build_handlers(
    *,
    bot: BotClient,
    gemini: GeminiClient,
    prompts: PromptBuilder,
    replies: ReplySender,
    table: CommandTable,
    chat_model: str,
    image_model: str,
    summarize_model: str,
) -> dict[str, CommandHandler]:
    common = {"bot": bot, "gemini": gemini, "prompts": prompts, "replies": replies}
    handlers: list[CommandHandler] = [
        ChatHandler(model=chat_model, **common),
        ImageHandler(model=image_model, **common),
        MapHandler(model=chat_model, **common),
        SummarizeHandler(model=summarize_model, **common),
        HelpHandler(replies=replies, table=table),
        StartHandler(replies=replies, table=table),
    ]
    return {handler.name: handler for handler in handlers}
