from __future__ import annotations

from typing import Any

import msgspec

__all__ = [
    "Chat",
    "Document",
    "Message",
    "MessageReactionUpdated",
    "PhotoSize",
    "ReactionType",
    "Update",
    "User",
    "decode_update",
]


class User(msgspec.Struct, forbid_unknown_fields=False, omit_defaults=True):
    id: int
    is_bot: bool = False
    username: str | None = None
    first_name: str | None = None


class Chat(msgspec.Struct, forbid_unknown_fields=False, omit_defaults=True):
    id: int
    type: str = "private"


class PhotoSize(msgspec.Struct, forbid_unknown_fields=False, omit_defaults=True):
    file_id: str
    file_unique_id: str
    width: int = 0
    height: int = 0
    file_size: int | None = None


class Document(msgspec.Struct, forbid_unknown_fields=False, omit_defaults=True):
    file_id: str
    file_unique_id: str
    file_name: str | None = None
    mime_type: str | None = None
    file_size: int | None = None
    thumbnail: PhotoSize | None = None
    thumb: PhotoSize | None = None


class Message(msgspec.Struct, forbid_unknown_fields=False, omit_defaults=True):
    message_id: int
    chat: Chat
    date: int = 0
    from_: User | None = msgspec.field(default=None, name="from")
    text: str | None = None
    caption: str | None = None
    photo: list[PhotoSize] | None = None
    document: Document | None = None
    media_group_id: str | None = None
    reply_to_message: Message | None = None
    forward_origin: dict[str, Any] | None = None
    forward_from: dict[str, Any] | None = None
    forward_from_chat: dict[str, Any] | None = None


class ReactionType(msgspec.Struct, forbid_unknown_fields=False):
    type: str
    emoji: str | None = None


class MessageReactionUpdated(msgspec.Struct, forbid_unknown_fields=False):
    chat: Chat
    message_id: int
    date: int = 0
    user: User | None = None
    new_reaction: list[ReactionType] = msgspec.field(default_factory=list)
    old_reaction: list[ReactionType] = msgspec.field(default_factory=list)


class Update(msgspec.Struct, forbid_unknown_fields=False):
    update_id: int
    message: Message | None = None
    message_reaction: MessageReactionUpdated | None = None


def decode_update(payload: bytes | dict[str, Any]) -> Update | None:
    try:
        if isinstance(payload, dict):
            return msgspec.convert(payload, type=Update)
        return msgspec.json.decode(payload, type=Update)
    except (msgspec.ValidationError, msgspec.DecodeError):
        return None
