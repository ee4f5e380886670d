import asyncio
import logging
import uuid
from typing import Any, Callable, Protocol

from . import config
from .channel_service import ChannelRegistry
from .presence_service import PresenceTracker
from .schemas import OnlineUsersEvent, event
from .user_service import AuthService

# Настройка логирования
logger = logging.getLogger(__name__)

# Маркер остановки очереди отправки
_STOP = object()

# Код закрытия соединения при переполнении очереди (policy violation)
_OVERFLOW_CLOSE_CODE = 1008


# Транспорт соединения (WebSocket или тестовая заглушка)
class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


# Живое соединение пользователя: подписки и очередь исходящих событий
class Session:
    def __init__(
        self,
        connection: Connection,
        user_id: int,
        username: str,
        outbox_size: int = 0,
        on_overflow: Callable[["Session"], None] | None = None
    ):
        self.session_id = uuid.uuid4().hex
        self.connection = connection
        self.user_id = user_id
        self.username = username
        self.channels: set[int] = set()
        self.closed = False
        self.overflowed = False
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self._on_overflow = on_overflow
        self._pump_task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"Session(id={self.session_id}, user_id={self.user_id})"

    # Постановка события в очередь без ожидания отправки
    def deliver(self, payload: dict) -> bool:
        if self.closed or self.overflowed:
            return False
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            # Клиент не успевает читать: сессию нужно закрыть
            self.overflowed = True
            logger.warning(
                f"Outbox of session {self.session_id} is full, "
                f"dropping {payload.get('event')}"
            )
            if self._on_overflow is not None:
                self._on_overflow(self)
            return False
        return True

    # Отправка событий по порядку; сбой доставки не прерывает цикл
    async def pump(self) -> None:
        while True:
            payload = await self._outbox.get()
            try:
                if payload is _STOP:
                    return
                await self.connection.send_json(payload)
                logger.debug(
                    f"Delivered {payload.get('event')} to session {self.session_id}"
                )
            except Exception as e:
                logger.warning(
                    f"Delivery to session {self.session_id} failed: {e!r}"
                )
            finally:
                self._outbox.task_done()

    def start(self) -> None:
        self._pump_task = asyncio.create_task(
            self.pump(), name=f"session-pump-{self.session_id}"
        )

    # Ожидание отправки всех поставленных событий
    async def drain(self) -> None:
        await self._outbox.join()

    async def stop(self) -> None:
        self.closed = True
        if self._pump_task is None:
            return
        if self.overflowed or self._outbox.full():
            # Очередь переполнена: неотправленные события отбрасываются
            self._pump_task.cancel()
        else:
            self._outbox.put_nowait(_STOP)
        await asyncio.gather(self._pump_task, return_exceptions=True)


# Менеджер сессий: соединения, подписки на каналы и присутствие
class SessionManager:
    def __init__(
        self,
        auth: AuthService,
        registry: ChannelRegistry,
        presence: PresenceTracker,
        outbox_size: int | None = None
    ):
        self._auth = auth
        self._registry = registry
        self._presence = presence
        self._outbox_size = (
            config.OUTBOX_MAX_SIZE if outbox_size is None else outbox_size
        )
        self._sessions: dict[str, Session] = {}
        self._subscribers: dict[int, dict[str, Session]] = {}
        self._evictions: set[asyncio.Task] = set()

    # Открытие сессии по токену соединения
    async def open(self, connection: Connection, token: str | None) -> Session:
        user = await self._auth.authenticate(token)
        session = Session(
            connection,
            user.user_id,
            user.username,
            outbox_size=self._outbox_size,
            on_overflow=self._evict
        )
        self._sessions[session.session_id] = session
        session.start()
        logger.info(f"Session opened: {session}")

        if self._presence.connect(user.user_id):
            self.broadcast_presence()
        else:
            # Состав онлайн не изменился, но новому клиенту нужен снимок
            session.deliver(self.presence_snapshot())
        return session

    # Закрытие сессии; повторный вызов ничего не делает
    async def close(self, session: Session) -> None:
        if session.closed or session.session_id not in self._sessions:
            return
        session.closed = True
        del self._sessions[session.session_id]

        for channel_id in sorted(session.channels):
            await self.leave(session, channel_id)

        if self._presence.disconnect(session.user_id):
            self.broadcast_presence()
        await session.stop()
        logger.info(f"Session closed: {session}")

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            await self.close(session)
        await asyncio.gather(*self._evictions, return_exceptions=True)

    # Подписка сессии на канал
    async def join(self, session: Session, channel_id: int) -> None:
        # Канал проверяется до создания его блокировки
        await self._registry.get(channel_id)
        async with self._registry.lock(channel_id):
            # Сессия могла закрыться, пока шла проверка канала
            if not self._is_live(session):
                logger.info(f"{session} closed before joining channel_id={channel_id}")
                return
            self._registry.admit(channel_id, session.user_id)
            if channel_id in session.channels:
                return
            session.channels.add(channel_id)
            self._subscribers.setdefault(channel_id, {})[session.session_id] = session
        logger.info(f"{session} joined channel_id={channel_id}")

    # Отписка сессии от канала
    async def leave(self, session: Session, channel_id: int) -> None:
        if channel_id not in session.channels:
            return
        async with self._registry.lock(channel_id):
            if channel_id not in session.channels:
                return
            session.channels.discard(channel_id)
            subscribers = self._subscribers.get(channel_id, {})
            subscribers.pop(session.session_id, None)
            if not subscribers:
                self._subscribers.pop(channel_id, None)
            # Участник остаётся, пока подписана хотя бы одна его сессия
            if not any(s.user_id == session.user_id for s in subscribers.values()):
                await self._registry.remove_member(channel_id, session.user_id)
        logger.info(f"{session} left channel_id={channel_id}")

    # Вход пользователя в канал вместе со всеми его сессиями
    async def join_user(self, user_id: int, channel_id: int) -> None:
        await self._registry.add_member(channel_id, user_id)
        for session in self.sessions_for_user(user_id):
            if self._is_live(session):
                await self.join(session, channel_id)

    # Выход пользователя из канала во всех его сессиях
    async def leave_user(self, user_id: int, channel_id: int) -> None:
        for session in self.sessions_for_user(user_id):
            await self.leave(session, channel_id)
        await self._registry.remove_member(channel_id, user_id)

    def subscribers(self, channel_id: int) -> list[Session]:
        return list(self._subscribers.get(channel_id, {}).values())

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def sessions_for_user(self, user_id: int) -> list[Session]:
        return [s for s in self._sessions.values() if s.user_id == user_id]

    def presence_snapshot(self) -> dict:
        return event(
            "online_users",
            OnlineUsersEvent(
                count=self._presence.online_count(),
                users=self._presence.online_users()
            )
        )

    # Рассылка снимка присутствия всем живым сессиям
    def broadcast_presence(self) -> None:
        snapshot = self.presence_snapshot()
        for session in self._sessions.values():
            session.deliver(snapshot)
        logger.info(
            f"Presence changed: {snapshot['data']['count']} user(s) online"
        )

    def _is_live(self, session: Session) -> bool:
        return not session.closed and session.session_id in self._sessions

    # Отключение клиента, который не успевает читать события
    def _evict(self, session: Session) -> None:
        task = asyncio.create_task(
            self._close_slow(session), name=f"session-evict-{session.session_id}"
        )
        self._evictions.add(task)
        task.add_done_callback(self._evictions.discard)

    async def _close_slow(self, session: Session) -> None:
        await self.close(session)
        try:
            await session.connection.close(code=_OVERFLOW_CLOSE_CODE)
        except Exception as e:
            logger.warning(
                f"Closing connection of session {session.session_id} failed: {e!r}"
            )
