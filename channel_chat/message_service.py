import logging

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import joinedload

from . import config
from .database import storage_errors
from .exceptions import ChannelNotFound, ValidationError
from .models import Channel, Message

# Настройка логирования
logger = logging.getLogger(__name__)


# Журнал сообщений каналов: только добавление и постраничное чтение назад
class MessageStore:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        page_size: int | None = None,
        max_length: int | None = None
    ):
        self._session_maker = session_maker
        self.page_size = page_size or config.MESSAGE_PAGE_SIZE
        self.max_length = max_length or config.MAX_MESSAGE_LENGTH

    # Создание нового сообщения и его сохранение в БД
    async def append(
        self,
        channel_id: int,
        author_id: int,
        body: str
    ) -> Message:
        if body is None or not body.strip():
            raise ValidationError("Message body is empty")
        if len(body) > self.max_length:
            raise ValidationError(
                "Message is too long", {"max_length": self.max_length}
            )

        async with storage_errors("append message"):
            async with self._session_maker() as session:
                await self._ensure_channel(session, channel_id)
                message = Message(
                    channel_id=channel_id, user_id=author_id, body=body
                )
                session.add(message)
                await session.flush()
                # id присвоен БД внутри транзакции; автор нужен для рассылки
                await session.refresh(message, attribute_names=["author"])
                await session.commit()

        logger.info(
            f"Message created with id={message.message_id} "
            f"in channel_id={channel_id}"
        )
        return message

    # Получение страницы сообщений старше курсора (новые первыми)
    async def page(
        self,
        channel_id: int,
        before: int | None = None,
        limit: int | None = None
    ) -> list[Message]:
        limit = limit or self.page_size
        logger.info(
            f"Fetching messages for channel_id={channel_id} "
            f"before={before} limit={limit}"
        )

        async with storage_errors("page messages"):
            async with self._session_maker() as session:
                await self._ensure_channel(session, channel_id)
                query = (
                    select(Message)
                    .options(joinedload(Message.author))
                    .where(Message.channel_id == channel_id)
                )
                if before is not None:
                    # Курсор по id: строго монотонен, в отличие от времени
                    query = query.where(Message.message_id < before)
                query = query.order_by(desc(Message.message_id)).limit(limit)
                result = await session.execute(query)
                messages = list(result.scalars().all())

        logger.info(f"Fetched {len(messages)} messages")
        return messages

    async def _ensure_channel(
        self, session: AsyncSession, channel_id: int
    ) -> None:
        channel = await session.get(Channel, channel_id)
        if channel is None:
            raise ChannelNotFound(channel_id)
