"""Chatrelay domain model types (persisted rows, derived conversation turns)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

import msgspec

from .telegram.api_models import Message

Role: TypeAlias = Literal["user", "model"]
AttachmentKind: TypeAlias = Literal["photo", "document"]

# Response fragments are opaque generation parts (the `parts` list of a
# generateContent candidate), persisted as JSON and replayed verbatim.
Fragment: TypeAlias = dict[str, Any]

ERROR_CLASSIFICATION = "error"
GUIDANCE_CLASSIFICATION = "guidance"


def is_error_classification(command_type: str | None) -> bool:
    if not command_type:
        return False
    return command_type == ERROR_CLASSIFICATION or command_type.startswith(
        f"{ERROR_CLASSIFICATION}:"
    )


def error_classification(detail: str | None = None) -> str:
    if not detail:
        return ERROR_CLASSIFICATION
    return f"{ERROR_CLASSIFICATION}: {detail}"


class Attachment(msgspec.Struct, frozen=True, forbid_unknown_fields=False):
    file_unique_id: str
    file_id: str
    kind: AttachmentKind
    file_name: str | None = None
    byte_size: int | None = None
    mime_type: str | None = None
    width: int | None = None
    height: int | None = None


@dataclass(frozen=True, slots=True)
class RawMessage:
    chat_id: int
    message_id: int
    sender_id: int | None
    timestamp: int
    payload: dict[str, Any]
    from_self: bool = False

    @property
    def message(self) -> Message:
        return msgspec.convert(self.payload, type=Message)

    @property
    def reply_to_message_id(self) -> int | None:
        reply = self.payload.get("reply_to_message")
        if isinstance(reply, dict):
            value = reply.get("message_id")
            if isinstance(value, int):
                return value
        return None


@dataclass(frozen=True, slots=True)
class CommandMetadata:
    chat_id: int
    message_id: int
    command_type: str


@dataclass(frozen=True, slots=True)
class GenerationLink:
    chat_id: int
    message_id: int
    fragments: list[Fragment] | None = None
    linked_message_id: int | None = None


@dataclass(slots=True)
class ConversationTurn:
    role: Role
    text: str
    attachments: list[Attachment] = field(default_factory=list)
    fragments: list[Fragment] | None = None
    message_id: int | None = None
