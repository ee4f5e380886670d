"""
Tests for MessageStore: append validation, ordering and backward pagination.
"""

from datetime import datetime, timezone

import pytest

from channel_chat.database import make_engine, make_session_maker
from channel_chat.exceptions import (
    ChannelNotFound, StorageUnavailable, ValidationError
)
from channel_chat.message_service import MessageStore
from channel_chat.models import Message


async def read_full_history(store: MessageStore, channel_id: int) -> list[Message]:
    """Walk pages backwards until an empty page, return oldest first."""
    collected: list[Message] = []
    before = None
    while True:
        page = await store.page(channel_id, before=before)
        if not page:
            break
        collected.extend(page)
        before = page[-1].message_id
    return list(reversed(collected))


class TestAppend:

    @pytest.mark.asyncio
    async def test_append_assigns_increasing_ids(self, components, users, general):
        first = await components.messages.append(general.channel_id, users.alice.user_id, "one")
        second = await components.messages.append(general.channel_id, users.bob.user_id, "two")

        assert second.message_id > first.message_id
        assert first.author.username == "alice"
        assert first.created_at is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["", "   ", "\n\t"])
    async def test_append_rejects_empty_body(self, components, users, general, body):
        with pytest.raises(ValidationError):
            await components.messages.append(general.channel_id, users.alice.user_id, body)

        assert await components.messages.page(general.channel_id) == []

    @pytest.mark.asyncio
    async def test_append_rejects_too_long_body(self, session_maker, users, general):
        store = MessageStore(session_maker, max_length=5)

        with pytest.raises(ValidationError):
            await store.append(general.channel_id, users.alice.user_id, "x" * 6)

    @pytest.mark.asyncio
    async def test_append_to_unknown_channel_persists_nothing(
        self, components, users, session_maker
    ):
        with pytest.raises(ChannelNotFound):
            await components.messages.append(999, users.alice.user_id, "hello")

        async with session_maker() as session:
            assert await session.get(Message, 1) is None


class TestPage:

    @pytest.mark.asyncio
    async def test_newest_page_is_descending(self, components, users, general):
        for i in range(5):
            await components.messages.append(general.channel_id, users.alice.user_id, f"m{i}")

        page = await components.messages.page(general.channel_id)

        assert [m.body for m in page] == ["m4", "m3", "m2"]
        assert all(m.author.username == "alice" for m in page)

    @pytest.mark.asyncio
    async def test_before_cursor_is_exclusive(self, components, users, general):
        sent = [
            await components.messages.append(general.channel_id, users.alice.user_id, f"#{i}")
            for i in range(1, 7)
        ]

        page = await components.messages.page(general.channel_id, before=sent[4].message_id)

        assert [m.body for m in reversed(page)] == ["#2", "#3", "#4"]

    @pytest.mark.asyncio
    async def test_short_history_returns_fewer(self, components, users, general):
        sent = [
            await components.messages.append(general.channel_id, users.alice.user_id, f"#{i}")
            for i in range(1, 3)
        ]

        page = await components.messages.page(general.channel_id, before=sent[1].message_id)

        assert [m.body for m in page] == ["#1"]
        assert await components.messages.page(general.channel_id, before=sent[0].message_id) == []

    @pytest.mark.asyncio
    async def test_pagination_round_trip_rebuilds_history(self, components, users, general):
        other = await components.channels.create("random")
        expected = []
        for i in range(10):
            author = users.alice if i % 2 else users.bob
            msg = await components.messages.append(general.channel_id, author.user_id, f"g{i}")
            expected.append(msg.message_id)
            await components.messages.append(other.channel_id, author.user_id, f"r{i}")

        history = await read_full_history(components.messages, general.channel_id)

        assert [m.message_id for m in history] == expected
        assert [m.body for m in history] == [f"g{i}" for i in range(10)]

    @pytest.mark.asyncio
    async def test_same_timestamp_messages_paginate_by_id(
        self, components, users, general, session_maker
    ):
        stamp = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        async with session_maker() as session:
            session.add_all([
                Message(
                    channel_id=general.channel_id,
                    user_id=users.alice.user_id,
                    body=f"tie{i}",
                    created_at=stamp,
                )
                for i in range(7)
            ])
            await session.commit()

        history = await read_full_history(components.messages, general.channel_id)

        assert [m.body for m in history] == [f"tie{i}" for i in range(7)]
        ids = [m.message_id for m in history]
        assert ids == sorted(set(ids))

    @pytest.mark.asyncio
    async def test_page_unknown_channel(self, components):
        with pytest.raises(ChannelNotFound):
            await components.messages.page(42)


class TestStorageFailures:

    @pytest.mark.asyncio
    async def test_unreachable_database_raises_storage_unavailable(self, tmp_path):
        engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'chat.db'}")
        store = MessageStore(make_session_maker(engine))
        try:
            with pytest.raises(StorageUnavailable):
                await store.page(1)
            with pytest.raises(StorageUnavailable):
                await store.append(1, 1, "hello")
        finally:
            await engine.dispose()
