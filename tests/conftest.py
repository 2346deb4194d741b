from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from chatrelay.store import MessageStore
from tests.factories import BOT_ID
from tests.telegram_fakes import FakeBot, FakeGemini


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_bot() -> FakeBot:
    return FakeBot()


@pytest.fixture
def fake_gemini() -> FakeGemini:
    return FakeGemini()


@pytest.fixture
async def store(tmp_path: Path) -> AsyncIterator[MessageStore]:
    async with MessageStore(tmp_path / "relay.db", bot_id=BOT_ID) as opened:
        yield opened
