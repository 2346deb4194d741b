from __future__ import annotations

from dataclasses import dataclass

from .config import RelaySettings


@dataclass(frozen=True, slots=True)
class Authorizer:
    allowed_chat_ids: frozenset[int] = frozenset()
    trusted_user_ids: frozenset[int] = frozenset()

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> Authorizer:
        return cls(
            allowed_chat_ids=settings.allowed_chat_ids,
            trusted_user_ids=settings.trusted_user_ids,
        )

    def is_authorized(self, chat_id: int, user_id: int | None) -> bool:
        if user_id is None:
            return False
        return user_id in self.trusted_user_ids or chat_id in self.allowed_chat_ids
