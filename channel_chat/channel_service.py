import asyncio
import logging
from collections import defaultdict

from sqlalchemy import select, asc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .database import storage_errors
from .exceptions import ChannelNotFound, DuplicateName, ValidationError
from .models import Channel

# Настройка логирования
logger = logging.getLogger(__name__)


# Реестр каналов: существование (в БД) и текущие участники (в памяти)
class ChannelRegistry:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        self._members: dict[int, set[int]] = defaultdict(set)
        self._locks: dict[int, asyncio.Lock] = {}

    # Точка сериализации изменений одного канала (только для существующих)
    def lock(self, channel_id: int) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = self._locks[channel_id] = asyncio.Lock()
        return lock

    # Создание канала с уникальным именем
    async def create(self, name: str) -> Channel:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Channel name required")

        logger.info(f"Creating channel: {name}")
        async with storage_errors("create channel"):
            async with self._session_maker() as session:
                existing = await session.execute(
                    select(Channel.channel_id).where(Channel.name == name)
                )
                if existing.scalar_one_or_none() is not None:
                    raise DuplicateName(name)
                channel = Channel(name=name)
                session.add(channel)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    raise DuplicateName(name)

        logger.info(f"Channel created with id={channel.channel_id}")
        return channel

    # Список всех каналов
    async def list_channels(self) -> list[Channel]:
        async with storage_errors("list channels"):
            async with self._session_maker() as session:
                result = await session.execute(
                    select(Channel).order_by(asc(Channel.channel_id))
                )
                channels = list(result.scalars().all())
        logger.info(f"Fetched {len(channels)} channels")
        return channels

    async def get(self, channel_id: int) -> Channel:
        async with storage_errors("get channel"):
            async with self._session_maker() as session:
                channel = await session.get(Channel, channel_id)
        if channel is None:
            raise ChannelNotFound(channel_id)
        return channel

    async def exists(self, channel_id: int) -> bool:
        try:
            await self.get(channel_id)
        except ChannelNotFound:
            return False
        return True

    # Добавление участника (повторный вход ничего не меняет)
    async def add_member(self, channel_id: int, user_id: int) -> None:
        await self.get(channel_id)
        self.admit(channel_id, user_id)

    # Добавление участника в уже проверенный канал
    def admit(self, channel_id: int, user_id: int) -> None:
        members = self._members[channel_id]
        if user_id not in members:
            members.add(user_id)
            logger.info(f"User {user_id} joined channel_id={channel_id}")

    # Удаление участника (выход без входа ничего не меняет)
    async def remove_member(self, channel_id: int, user_id: int) -> None:
        members = self._members.get(channel_id)
        if members and user_id in members:
            members.discard(user_id)
            logger.info(f"User {user_id} left channel_id={channel_id}")

    def is_member(self, channel_id: int, user_id: int) -> bool:
        return user_id in self._members.get(channel_id, ())

    def members(self, channel_id: int) -> set[int]:
        return set(self._members.get(channel_id, ()))

    async def member_count(self, channel_id: int) -> int:
        await self.get(channel_id)
        return len(self._members.get(channel_id, ()))
