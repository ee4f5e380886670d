"""
Shared test fixtures for the chat backend.

Provides: SQLite-backed components, seeded users and channels, fake connections
Dependencies: pytest, pytest-asyncio, sqlalchemy, aiosqlite
"""

import asyncio
import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from types import SimpleNamespace

import pytest

from channel_chat.broadcast_service import MessageRouter
from channel_chat.channel_service import ChannelRegistry
from channel_chat.database import (
    create_db_and_tables, make_engine, make_session_maker
)
from channel_chat.message_service import MessageStore
from channel_chat.models import User
from channel_chat.presence_service import PresenceTracker
from channel_chat.session_service import SessionManager
from channel_chat.user_service import AuthService


class FakeConnection:
    """Connection double that records every JSON frame sent to it."""

    def __init__(self, fail: bool = False, block: bool = False):
        self.sent: list[dict] = []
        self.fail = fail
        self.block = block
        self.close_code: int | None = None

    async def send_json(self, data):
        if self.fail:
            raise ConnectionResetError("socket half-closed")
        if self.block:
            # a reader that never catches up
            await asyncio.Event().wait()
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.close_code = code

    def events(self, name: str) -> list[dict]:
        return [frame["data"] for frame in self.sent if frame["event"] == name]


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}"


@pytest.fixture
async def engine(database_url):
    engine = make_engine(database_url)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return make_session_maker(engine)


@pytest.fixture
async def components(session_maker):
    """Wire the chat components the same way the application lifespan does."""
    c = SimpleNamespace()
    c.auth = AuthService(session_maker, secret_key="unit-test-secret")
    c.messages = MessageStore(session_maker, page_size=3)
    c.channels = ChannelRegistry(session_maker)
    c.presence = PresenceTracker()
    c.sessions = SessionManager(c.auth, c.channels, c.presence)
    c.router = MessageRouter(c.messages, c.channels, c.sessions)
    yield c
    await c.sessions.close_all()


@pytest.fixture
async def users(session_maker) -> SimpleNamespace:
    """Two users inserted directly, skipping password hashing."""
    async with session_maker() as session:
        alice = User(username="alice", email="alice@example.com", password_hash="x")
        bob = User(username="bob", email="bob@example.com", password_hash="x")
        session.add_all([alice, bob])
        await session.commit()
    return SimpleNamespace(alice=alice, bob=bob)


@pytest.fixture
def tokens(components, users) -> SimpleNamespace:
    def token_for(user: User) -> str:
        return components.auth.create_access_token(
            {"sub": str(user.user_id), "name": user.username}
        )

    return SimpleNamespace(alice=token_for(users.alice), bob=token_for(users.bob))


@pytest.fixture
async def general(components):
    return await components.channels.create("general")


@pytest.fixture
def make_conn():
    """Factory for fake connections: ``make_conn()``, ``make_conn(fail=True)`` or ``make_conn(block=True)``."""
    return FakeConnection
