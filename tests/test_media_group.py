from __future__ import annotations

import anyio
import pytest

from chatrelay.media_group import MediaGroupBuffer, RawPayloads, select_primary
from chatrelay.telegram.api_models import Message
from tests.factories import make_message


def _g1() -> list[Message]:
    return [
        make_message(1, photo="a", media_group_id="G1"),
        make_message(2, photo="b", caption="/image draw these", media_group_id="G1"),
        make_message(3, photo="c", media_group_id="G1"),
    ]


def test_primary_prefers_command_caption() -> None:
    primary, siblings = select_primary(_g1())

    assert primary.message_id == 2
    assert [msg.message_id for msg in siblings] == [1, 3]


def test_primary_falls_back_to_first_arrival() -> None:
    messages = [
        make_message(5, photo="a", caption="no command", media_group_id="G"),
        make_message(4, photo="b", media_group_id="G"),
    ]

    primary, siblings = select_primary(messages)

    assert primary.message_id == 5
    assert [msg.message_id for msg in siblings] == [4]


def test_primary_requires_messages() -> None:
    with pytest.raises(ValueError):
        select_primary([])


@pytest.mark.anyio
async def test_burst_emits_single_unit() -> None:
    emitted: list[tuple[int, list[int]]] = []

    async def on_ready(primary: Message, siblings: list[Message], raws: RawPayloads) -> None:
        emitted.append((primary.message_id, [msg.message_id for msg in siblings]))

    async with anyio.create_task_group() as tg:
        buffer = MediaGroupBuffer(task_group=tg, on_ready=on_ready, debounce_s=0.3)
        for msg in _g1():
            buffer.add(msg)
            await anyio.sleep(0.05)
        assert emitted == []

    assert emitted == [(2, [1, 3])]
    assert len(buffer) == 0


@pytest.mark.anyio
async def test_timer_restarts_on_each_arrival() -> None:
    slept: list[float] = []
    gate = anyio.Event()
    emitted: list[list[int]] = []

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)
        await gate.wait()

    async def on_ready(primary: Message, siblings: list[Message], raws: RawPayloads) -> None:
        emitted.append([primary.message_id, *(msg.message_id for msg in siblings)])

    async with anyio.create_task_group() as tg:
        buffer = MediaGroupBuffer(
            task_group=tg, on_ready=on_ready, debounce_s=1.0, sleep=fake_sleep
        )
        for msg in _g1():
            buffer.add(msg)
        await anyio.wait_all_tasks_blocked()
        gate.set()

    assert slept == [1.0, 1.0, 1.0]
    assert emitted == [[2, 1, 3]]


@pytest.mark.anyio
async def test_messages_without_group_are_ignored() -> None:
    async def on_ready(primary: Message, siblings: list[Message], raws: RawPayloads) -> None:
        raise AssertionError("should not flush")

    async with anyio.create_task_group() as tg:
        buffer = MediaGroupBuffer(task_group=tg, on_ready=on_ready)
        buffer.add(make_message(1, text="plain"))
        assert len(buffer) == 0


@pytest.mark.anyio
async def test_groups_are_keyed_per_chat() -> None:
    emitted: list[tuple[int, int]] = []

    async def on_ready(primary: Message, siblings: list[Message], raws: RawPayloads) -> None:
        emitted.append((primary.chat.id, len(siblings)))

    async with anyio.create_task_group() as tg:
        buffer = MediaGroupBuffer(task_group=tg, on_ready=on_ready, debounce_s=0.05)
        buffer.add(make_message(1, chat_id=1, photo="a", media_group_id="G"))
        buffer.add(make_message(2, chat_id=2, photo="b", media_group_id="G"))
        buffer.add(make_message(3, chat_id=1, photo="c", media_group_id="G"))

    assert sorted(emitted) == [(1, 1), (2, 0)]


@pytest.mark.anyio
async def test_eviction_flushes_oldest_group() -> None:
    emitted: list[str | None] = []

    async def on_ready(primary: Message, siblings: list[Message], raws: RawPayloads) -> None:
        emitted.append(primary.media_group_id)

    async with anyio.create_task_group() as tg:
        buffer = MediaGroupBuffer(
            task_group=tg, on_ready=on_ready, debounce_s=0.2, max_groups=1
        )
        buffer.add(make_message(1, photo="a", media_group_id="A"))
        buffer.add(make_message(2, photo="b", media_group_id="B"))
        await anyio.sleep(0.05)
        assert emitted == ["A"]

    assert emitted == ["A", "B"]


@pytest.mark.anyio
async def test_stale_flush_does_not_fire_new_group_with_same_key() -> None:
    gates: list[anyio.Event] = []
    emitted: list[list[int]] = []

    async def fake_sleep(delay: float) -> None:
        gate = anyio.Event()
        gates.append(gate)
        await gate.wait()

    async def on_ready(primary: Message, siblings: list[Message], raws: RawPayloads) -> None:
        emitted.append([primary.message_id, *(msg.message_id for msg in siblings)])

    async with anyio.create_task_group() as tg:
        buffer = MediaGroupBuffer(
            task_group=tg, on_ready=on_ready, sleep=fake_sleep, max_groups=1
        )
        buffer.add(make_message(1, photo="a", media_group_id="A"))
        buffer.add(make_message(2, photo="b", media_group_id="B"))
        buffer.add(make_message(3, photo="c", media_group_id="A"))
        await anyio.wait_all_tasks_blocked()
        assert emitted == [[1], [2]]

        # Wake the flush task left over from the first "A" group.
        gates[0].set()
        await anyio.wait_all_tasks_blocked()
        assert emitted == [[1], [2]]
        assert len(buffer) == 1

        for gate in gates:
            gate.set()

    assert emitted == [[1], [2], [3]]


@pytest.mark.anyio
async def test_raw_payloads_travel_with_the_album() -> None:
    received: list[dict[int, dict]] = []

    async def on_ready(primary: Message, siblings: list[Message], raws: RawPayloads) -> None:
        received.append(dict(raws))

    async with anyio.create_task_group() as tg:
        buffer = MediaGroupBuffer(task_group=tg, on_ready=on_ready, debounce_s=0.05)
        buffer.add(make_message(1, photo="a", media_group_id="G"), {"message_id": 1})
        buffer.add(make_message(2, photo="b", media_group_id="G"))

    assert received == [{1: {"message_id": 1}}]
