from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .logging import get_logger
from .model import is_error_classification

logger = get_logger(__name__)

_COMMAND_NORMALIZE_RE = re.compile(r"[^a-z0-9_]")

# Classifications written by commands that no longer exist, or by aliases
# that used to be stored verbatim, mapped onto the command that continues
# those conversations.
LEGACY_COMMAND_TYPES: dict[str, str] = {
    "summarize": "gemini",
    "chat": "gemini",
}


@dataclass(frozen=True, slots=True)
class CommandParameter:
    name: str
    allowed_values: tuple[str, ...] = ()
    default: str | None = None
    description: str = ""

    def match(self, token: str) -> str | None:
        lowered = token.lower()
        for value in self.allowed_values:
            if value.lower() == lowered:
                return lowered
        return None


@dataclass(frozen=True, slots=True)
class CommandSpec:
    name: str
    description: str
    aliases: tuple[str, ...] = ()
    parameters: tuple[CommandParameter, ...] = ()
    show_in_list: bool = True
    requires_prompt: bool = True

    @property
    def triggers(self) -> tuple[str, ...]:
        return (self.name, *self.aliases)

    def defaults(self) -> dict[str, str]:
        return {
            param.name: param.default
            for param in self.parameters
            if param.default is not None
        }


@dataclass(frozen=True, slots=True)
class Resolution:
    command: CommandSpec
    args: dict[str, str] = field(default_factory=dict)
    cleaned_text: str = ""
    implicit: bool = False


@dataclass(frozen=True, slots=True)
class CommandTable:
    commands: tuple[CommandSpec, ...] = ()
    by_name: dict[str, CommandSpec] = field(default_factory=dict)
    by_trigger: dict[str, CommandSpec] = field(default_factory=dict)
    triggers: tuple[str, ...] = ()
    legacy: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_commands(
        cls,
        commands: Iterable[CommandSpec],
        *,
        legacy: Mapping[str, str] | None = None,
    ) -> CommandTable:
        by_name: dict[str, CommandSpec] = {}
        by_trigger: dict[str, CommandSpec] = {}
        order: list[str] = []
        for command in commands:
            name_key = normalize_command(command.name)
            if not name_key:
                continue
            if name_key in by_name:
                logger.warning("commands.duplicate", name=command.name)
            else:
                order.append(name_key)
            by_name[name_key] = command
            for trigger in command.triggers:
                key = normalize_command(trigger)
                if not key:
                    continue
                existing = by_trigger.get(key)
                if existing is not None and existing.name != command.name:
                    logger.warning(
                        "commands.alias_conflict",
                        alias=key,
                        existing=existing.name,
                        duplicate=command.name,
                    )
                by_trigger[key] = command
        triggers = tuple(sorted(by_trigger, key=len, reverse=True))
        return cls(
            commands=tuple(by_name[key] for key in order),
            by_name=by_name,
            by_trigger=by_trigger,
            triggers=triggers,
            legacy=dict(legacy or {}),
        )

    def get(self, name: str) -> CommandSpec | None:
        key = normalize_command(name)
        return self.by_name.get(key) or self.by_trigger.get(key)

    def listed(self) -> list[CommandSpec]:
        return [command for command in self.commands if command.show_in_list]


def normalize_command(name: str) -> str:
    value = name.strip().lstrip("/").lower()
    if not value:
        return ""
    value = _COMMAND_NORMALIZE_RE.sub("_", value)
    value = re.sub(r"_+", "_", value).strip("_")
    return value


def _command_pattern(table: CommandTable, bot_username: str | None) -> re.Pattern:
    alternation = "|".join(re.escape(trigger) for trigger in table.triggers)
    mention = ""
    if bot_username:
        mention = f"(?:@{re.escape(bot_username.lstrip('@'))})?"
    return re.compile(rf"^/({alternation})\b{mention}(?:\s+|$)", re.IGNORECASE)


def parse_arguments(
    command: CommandSpec, raw_args: str
) -> tuple[dict[str, str], str]:
    """Pull enumerated parameter values out of the argument text.

    A parameter consumes the first unused token equal to one of its allowed
    values, in any position; unmatched parameters keep their default. The
    unconsumed tokens, joined by single spaces, become the prompt text.
    Commands without parameters keep the argument text verbatim.
    """
    if not command.parameters:
        return {}, raw_args
    args = command.defaults()
    tokens = raw_args.split()
    used: set[int] = set()
    for param in command.parameters:
        if not param.allowed_values:
            continue
        for index, token in enumerate(tokens):
            if index in used:
                continue
            value = param.match(token)
            if value is not None:
                args[param.name] = value
                used.add(index)
                break
    cleaned = " ".join(
        token for index, token in enumerate(tokens) if index not in used
    )
    return args, cleaned


def resolve_explicit(
    text: str | None,
    table: CommandTable,
    bot_username: str | None = None,
) -> Resolution | None:
    if not text or not table.triggers:
        return None
    match = _command_pattern(table, bot_username).match(text)
    if match is None:
        return None
    command = table.by_trigger[match.group(1).lower()]
    raw_args = text[match.end() :].strip()
    args, cleaned = parse_arguments(command, raw_args)
    return Resolution(command=command, args=args, cleaned_text=cleaned)


def implicit_command(
    command_type: str | None, table: CommandTable
) -> CommandSpec | None:
    """Map the classification of a replied-to bot message onto a command."""
    if not command_type or is_error_classification(command_type):
        return None
    key = normalize_command(command_type)
    key = table.legacy.get(key, key)
    return table.by_name.get(key)


def resolve(
    text: str | None,
    table: CommandTable,
    *,
    bot_username: str | None = None,
    reply_metadata: str | None = None,
) -> Resolution | None:
    explicit = resolve_explicit(text, table, bot_username)
    if explicit is not None:
        return explicit
    command = implicit_command(reply_metadata, table)
    if command is None:
        return None
    return Resolution(
        command=command,
        args=command.defaults(),
        cleaned_text=(text or "").strip(),
        implicit=True,
    )


RESOLUTIONS = ("1k", "2k", "4k")

DEFAULT_COMMANDS: tuple[CommandSpec, ...] = (
    CommandSpec(
        name="gemini",
        description="Chat with Gemini. Reply to keep the conversation going.",
        aliases=("chat", "g"),
    ),
    CommandSpec(
        name="image",
        description="Generate or edit images from a prompt and attached photos.",
        aliases=("img",),
        parameters=(
            CommandParameter(
                name="resolution",
                allowed_values=RESOLUTIONS,
                default="1k",
                description="Output resolution.",
            ),
        ),
    ),
    CommandSpec(
        name="map",
        description="Answer questions about places using Google Maps grounding.",
    ),
    CommandSpec(
        name="summarize",
        description="Summarize the given text or the replied conversation.",
    ),
    CommandSpec(
        name="help",
        description="List commands, or describe one with /help <command>.",
        requires_prompt=False,
    ),
    CommandSpec(
        name="start",
        description="Start the bot and show help.",
        show_in_list=False,
        requires_prompt=False,
    ),
)


def default_command_table() -> CommandTable:
    return CommandTable.from_commands(DEFAULT_COMMANDS, legacy=LEGACY_COMMAND_TYPES)
