from __future__ import annotations

import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import anyio
import msgspec

from .logging import get_logger
from .model import (
    Attachment,
    CommandMetadata,
    Fragment,
    GenerationLink,
    RawMessage,
)
from .telegram.api_models import Message
from .telegram.parsing import extract_attachments, message_to_payload, sender_id

logger = get_logger(__name__)

T = TypeVar("T")

MEMORY_PATH = ":memory:"
# A reply to an unknown message persists that parent, but never the parent's
# own parent: live reply objects are one level deep.
ANCESTOR_DEPTH_LIMIT = 1

_FRAGMENTS_DECODER = msgspec.json.Decoder(list[dict[str, Any]])
_PAYLOAD_DECODER = msgspec.json.Decoder(dict[str, Any])


class StoreError(RuntimeError):
    pass


def _init_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS raw_messages (
            chat_id INTEGER NOT NULL,
            message_id INTEGER NOT NULL,
            sender_id INTEGER,
            timestamp INTEGER,
            media_group_id TEXT,
            reply_to_message_id INTEGER,
            from_self INTEGER NOT NULL DEFAULT 0,
            payload TEXT NOT NULL,
            PRIMARY KEY (chat_id, message_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS attachments (
            file_unique_id TEXT PRIMARY KEY,
            file_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            file_name TEXT,
            byte_size INTEGER,
            mime_type TEXT,
            width INTEGER,
            height INTEGER
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS message_attachments (
            chat_id INTEGER NOT NULL,
            message_id INTEGER NOT NULL,
            file_unique_id TEXT NOT NULL,
            PRIMARY KEY (chat_id, message_id, file_unique_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS message_metadata (
            chat_id INTEGER NOT NULL,
            message_id INTEGER NOT NULL,
            command_type TEXT NOT NULL,
            PRIMARY KEY (chat_id, message_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS generation_links (
            chat_id INTEGER NOT NULL,
            message_id INTEGER NOT NULL,
            fragments TEXT,
            linked_message_id INTEGER,
            PRIMARY KEY (chat_id, message_id)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_raw_messages_media_group "
        "ON raw_messages(chat_id, media_group_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_raw_messages_timestamp "
        "ON raw_messages(chat_id, timestamp)"
    )
    conn.commit()


def _raw_from_row(row: sqlite3.Row) -> RawMessage:
    return RawMessage(
        chat_id=row["chat_id"],
        message_id=row["message_id"],
        sender_id=row["sender_id"],
        timestamp=row["timestamp"] or 0,
        payload=_PAYLOAD_DECODER.decode(row["payload"]),
        from_self=bool(row["from_self"]),
    )


def _attachment_from_row(row: sqlite3.Row) -> Attachment:
    return Attachment(
        file_unique_id=row["file_unique_id"],
        file_id=row["file_id"],
        kind=row["kind"],
        file_name=row["file_name"],
        byte_size=row["byte_size"],
        mime_type=row["mime_type"],
        width=row["width"],
        height=row["height"],
    )


def _decode_fragments(
    raw: str | None, *, chat_id: int, message_id: int
) -> list[Fragment] | None:
    if raw is None:
        return None
    try:
        return _FRAGMENTS_DECODER.decode(raw)
    except (msgspec.DecodeError, msgspec.ValidationError) as exc:
        logger.warning(
            "store.bad_fragments",
            chat_id=chat_id,
            message_id=message_id,
            error=str(exc),
        )
        return None


class MessageStore:
    """SQLite-backed log of every chat event and its auxiliary metadata.

    All statements run on a worker thread, one at a time.
    """

    def __init__(self, path: Path | str, *, bot_id: int | None = None) -> None:
        self._path = str(path)
        self.bot_id = bot_id
        self._conn: sqlite3.Connection | None = None
        self._lock = anyio.Lock()

    async def open(self) -> None:
        if self._conn is not None:
            return
        path = self._path

        def connect() -> sqlite3.Connection:
            if path != MEMORY_PATH:
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            _init_schema(conn)
            return conn

        try:
            self._conn = await anyio.to_thread.run_sync(connect)
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"Failed to open message store {path}: {exc}") from exc

    async def close(self) -> None:
        conn = self._conn
        self._conn = None
        if conn is not None:
            async with self._lock:
                await anyio.to_thread.run_sync(conn.close)

    async def __aenter__(self) -> MessageStore:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        conn = self._conn
        if conn is None:
            raise StoreError("Message store is not open.")
        async with self._lock:
            try:
                return await anyio.to_thread.run_sync(fn, conn)
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    async def persist(
        self,
        message: Message,
        *,
        raw: dict[str, Any] | None = None,
        author_is_self: bool | None = None,
        command_type: str | None = None,
        fragments: list[Fragment] | None = None,
        linked_message_id: int | None = None,
    ) -> bool:
        """Upsert one message and everything attached to it.

        Returns False when the write failed; the failure is logged here and
        callers carry on with the data they hold in memory.
        """
        try:
            await self._persist(
                message,
                raw=raw,
                author_is_self=author_is_self,
                command_type=command_type,
                fragments=fragments,
                linked_message_id=linked_message_id,
                depth=0,
            )
        except StoreError as exc:
            logger.error(
                "store.persist_failed",
                chat_id=message.chat.id,
                message_id=message.message_id,
                error=str(exc),
            )
            return False
        return True

    async def _persist(
        self,
        message: Message,
        *,
        raw: dict[str, Any] | None,
        author_is_self: bool | None,
        command_type: str | None,
        fragments: list[Fragment] | None,
        linked_message_id: int | None,
        depth: int,
    ) -> None:
        payload = raw if raw is not None else message_to_payload(message)
        chat_id = message.chat.id
        message_id = message.message_id
        if author_is_self is None:
            author_is_self = (
                self.bot_id is not None
                and message.from_ is not None
                and message.from_.id == self.bot_id
            )
        reply = message.reply_to_message
        attachments = extract_attachments(message)
        encoded_payload = msgspec.json.encode(payload).decode()
        fragments_json = (
            msgspec.json.encode(fragments).decode() if fragments is not None else None
        )
        if linked_message_id == message_id:
            logger.warning(
                "store.self_link_ignored", chat_id=chat_id, message_id=message_id
            )
            linked_message_id = None

        def write(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO raw_messages (
                        chat_id, message_id, sender_id, timestamp,
                        media_group_id, reply_to_message_id, from_self, payload
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chat_id,
                        message_id,
                        sender_id(message),
                        message.date,
                        message.media_group_id,
                        reply.message_id if reply is not None else None,
                        int(bool(author_is_self)),
                        encoded_payload,
                    ),
                )
                for attachment in attachments:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO attachments (
                            file_unique_id, file_id, kind, file_name,
                            byte_size, mime_type, width, height
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            attachment.file_unique_id,
                            attachment.file_id,
                            attachment.kind,
                            attachment.file_name,
                            attachment.byte_size,
                            attachment.mime_type,
                            attachment.width,
                            attachment.height,
                        ),
                    )
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO message_attachments (
                            chat_id, message_id, file_unique_id
                        ) VALUES (?, ?, ?)
                        """,
                        (chat_id, message_id, attachment.file_unique_id),
                    )
                if command_type:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO message_metadata (
                            chat_id, message_id, command_type
                        ) VALUES (?, ?, ?)
                        """,
                        (chat_id, message_id, command_type),
                    )
                if fragments_json is not None or linked_message_id is not None:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO generation_links (
                            chat_id, message_id, fragments, linked_message_id
                        ) VALUES (?, ?, ?, ?)
                        """,
                        (chat_id, message_id, fragments_json, linked_message_id),
                    )

        await self._run(write)

        if reply is None or depth >= ANCESTOR_DEPTH_LIMIT:
            return
        if await self.get(reply.chat.id, reply.message_id) is not None:
            return
        logger.info(
            "store.persist_ancestor",
            chat_id=reply.chat.id,
            message_id=reply.message_id,
            child_id=message_id,
        )
        parent_raw = payload.get("reply_to_message")
        await self._persist(
            reply,
            raw=parent_raw if isinstance(parent_raw, dict) else None,
            author_is_self=None,
            command_type=None,
            fragments=None,
            linked_message_id=None,
            depth=depth + 1,
        )

    async def get(self, chat_id: int, message_id: int) -> RawMessage | None:
        def read(conn: sqlite3.Connection) -> RawMessage | None:
            row = conn.execute(
                "SELECT * FROM raw_messages WHERE chat_id = ? AND message_id = ?",
                (chat_id, message_id),
            ).fetchone()
            return _raw_from_row(row) if row is not None else None

        return await self._run(read)

    async def get_metadata(
        self, chat_id: int, message_id: int
    ) -> CommandMetadata | None:
        def read(conn: sqlite3.Connection) -> CommandMetadata | None:
            row = conn.execute(
                "SELECT command_type FROM message_metadata "
                "WHERE chat_id = ? AND message_id = ?",
                (chat_id, message_id),
            ).fetchone()
            if row is None:
                return None
            return CommandMetadata(
                chat_id=chat_id,
                message_id=message_id,
                command_type=row["command_type"],
            )

        return await self._run(read)

    async def get_attachments(self, chat_id: int, message_id: int) -> list[Attachment]:
        def read(conn: sqlite3.Connection) -> list[Attachment]:
            rows = conn.execute(
                """
                SELECT a.* FROM attachments a
                JOIN message_attachments ma ON a.file_unique_id = ma.file_unique_id
                WHERE ma.chat_id = ? AND ma.message_id = ?
                ORDER BY a.rowid
                """,
                (chat_id, message_id),
            ).fetchall()
            return [_attachment_from_row(row) for row in rows]

        return await self._run(read)

    async def get_group_siblings(
        self, chat_id: int, media_group_id: str
    ) -> list[RawMessage]:
        def read(conn: sqlite3.Connection) -> list[RawMessage]:
            rows = conn.execute(
                "SELECT * FROM raw_messages WHERE chat_id = ? AND media_group_id = ? "
                "ORDER BY message_id ASC",
                (chat_id, media_group_id),
            ).fetchall()
            return [_raw_from_row(row) for row in rows]

        return await self._run(read)

    async def record_classification(
        self, chat_id: int, message_id: int, command_type: str
    ) -> bool:
        def write(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO message_metadata (
                        chat_id, message_id, command_type
                    ) VALUES (?, ?, ?)
                    """,
                    (chat_id, message_id, command_type),
                )

        try:
            await self._run(write)
        except StoreError as exc:
            logger.error(
                "store.classification_failed",
                chat_id=chat_id,
                message_id=message_id,
                error=str(exc),
            )
            return False
        return True

    async def record_generation_link(
        self,
        chat_id: int,
        message_id: int,
        fragments: list[Fragment] | None = None,
        linked_message_id: int | None = None,
    ) -> bool:
        if linked_message_id == message_id:
            logger.warning(
                "store.self_link_ignored", chat_id=chat_id, message_id=message_id
            )
            linked_message_id = None
        if fragments is None and linked_message_id is None:
            return True
        fragments_json = (
            msgspec.json.encode(fragments).decode() if fragments is not None else None
        )

        def write(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO generation_links (
                        chat_id, message_id, fragments, linked_message_id
                    ) VALUES (?, ?, ?, ?)
                    """,
                    (chat_id, message_id, fragments_json, linked_message_id),
                )

        try:
            await self._run(write)
        except StoreError as exc:
            logger.error(
                "store.generation_link_failed",
                chat_id=chat_id,
                message_id=message_id,
                error=str(exc),
            )
            return False
        return True

    async def get_generation_link(
        self, chat_id: int, message_id: int
    ) -> GenerationLink | None:
        def read(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return conn.execute(
                "SELECT fragments, linked_message_id FROM generation_links "
                "WHERE chat_id = ? AND message_id = ?",
                (chat_id, message_id),
            ).fetchone()

        row = await self._run(read)
        if row is None:
            return None
        return GenerationLink(
            chat_id=chat_id,
            message_id=message_id,
            fragments=_decode_fragments(
                row["fragments"], chat_id=chat_id, message_id=message_id
            ),
            linked_message_id=row["linked_message_id"],
        )

    async def resolve_fragments(
        self, chat_id: int, message_id: int
    ) -> list[Fragment] | None:
        link = await self.get_generation_link(chat_id, message_id)
        if link is None:
            return None
        if link.fragments is not None:
            return link.fragments
        target = link.linked_message_id
        if target is None or target == message_id:
            return None
        owner = await self.get_generation_link(chat_id, target)
        return owner.fragments if owner is not None else None
