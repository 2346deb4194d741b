from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import msgspec

from ..model import Attachment
from .api_models import Document, Message, PhotoSize, Update


def message_text(msg: Message) -> str:
    if msg.text is not None:
        return msg.text
    return msg.caption or ""


def sender_id(msg: Message) -> int | None:
    return msg.from_.id if msg.from_ is not None else None


def is_from_self(msg: Message, bot_id: int | None) -> bool:
    if msg.from_ is None:
        return False
    if bot_id is not None:
        return msg.from_.id == bot_id
    return msg.from_.is_bot


def has_media(msg: Message) -> bool:
    return bool(msg.photo) or msg.document is not None


def has_recoverable_content(msg: Message) -> bool:
    return bool(
        msg.text
        or msg.caption
        or has_media(msg)
        or msg.forward_origin
        or msg.forward_from
        or msg.forward_from_chat
    )


def _best_photo(photos: list[PhotoSize] | None) -> PhotoSize | None:
    if not photos:
        return None
    return photos[-1]


def _attachment_from_photo(photo: PhotoSize) -> Attachment:
    return Attachment(
        file_unique_id=photo.file_unique_id,
        file_id=photo.file_id,
        kind="photo",
        file_name=f"{photo.file_unique_id}.jpg",
        byte_size=photo.file_size,
        mime_type="image/jpeg",
        width=photo.width,
        height=photo.height,
    )


def _attachment_from_document(doc: Document) -> Attachment:
    thumb = doc.thumbnail or doc.thumb
    return Attachment(
        file_unique_id=doc.file_unique_id,
        file_id=doc.file_id,
        kind="document",
        file_name=doc.file_name,
        byte_size=doc.file_size,
        mime_type=doc.mime_type,
        width=thumb.width if thumb is not None else None,
        height=thumb.height if thumb is not None else None,
    )


def extract_attachments(msg: Message) -> list[Attachment]:
    attachments: list[Attachment] = []
    best = _best_photo(msg.photo)
    if best is not None:
        attachments.append(_attachment_from_photo(best))
    if msg.document is not None:
        attachments.append(_attachment_from_document(msg.document))
    return attachments


def dedupe_attachments(attachments: Iterable[Attachment]) -> list[Attachment]:
    seen: set[str] = set()
    unique: list[Attachment] = []
    for attachment in attachments:
        if attachment.file_unique_id in seen:
            continue
        seen.add(attachment.file_unique_id)
        unique.append(attachment)
    return unique


def message_to_payload(msg: Message) -> dict[str, Any]:
    return msgspec.to_builtins(msg)


def message_from_payload(payload: dict[str, Any]) -> Message | None:
    try:
        return msgspec.convert(payload, type=Message)
    except msgspec.ValidationError:
        return None


def raw_message_from_update(raw: dict[str, Any] | None) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    message = raw.get("message")
    return message if isinstance(message, dict) else None


def is_acknowledge_signal(update: Update) -> bool:
    reaction = update.message_reaction
    if reaction is None:
        return False
    if reaction.user is not None and reaction.user.is_bot:
        return False
    return bool(reaction.new_reaction)
