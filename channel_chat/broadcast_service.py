import logging

from .channel_service import ChannelRegistry
from .exceptions import ChannelNotFound, NotSubscribed
from .message_service import MessageStore
from .models import Message
from .schemas import ReceiveMessageEvent, event
from .session_service import Session, SessionManager

# Настройка логирования
logger = logging.getLogger(__name__)


# Приём сообщений: проверка подписки, запись в журнал и рассылка подписчикам
class MessageRouter:
    def __init__(
        self,
        store: MessageStore,
        registry: ChannelRegistry,
        sessions: SessionManager
    ):
        self._store = store
        self._registry = registry
        self._sessions = sessions

    async def submit(
        self,
        session: Session,
        channel_id: int,
        body: str
    ) -> Message:
        if channel_id not in session.channels:
            if not await self._registry.exists(channel_id):
                raise ChannelNotFound(channel_id)
            raise NotSubscribed(
                "Join the channel before sending messages",
                {"channel_id": channel_id}
            )

        # Порядок рассылки в канале совпадает с порядком записи
        async with self._registry.lock(channel_id):
            if channel_id not in session.channels:
                raise NotSubscribed(
                    "Join the channel before sending messages",
                    {"channel_id": channel_id}
                )
            message = await self._store.append(
                channel_id, session.user_id, body
            )
            self._fan_out(message)
        return message

    # Постановка события во все очереди подписчиков, включая отправителя
    def _fan_out(self, message: Message) -> int:
        payload = event(
            "receive_message",
            ReceiveMessageEvent.from_model(message, message.author.username)
        )
        recipients = self._sessions.subscribers(message.channel_id)
        delivered = sum(1 for s in recipients if s.deliver(payload))
        logger.info(
            f"Message id={message.message_id} queued for {delivered}/"
            f"{len(recipients)} subscriber(s) of channel_id={message.channel_id}"
        )
        return delivered
