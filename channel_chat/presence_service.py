import logging

# Настройка логирования
logger = logging.getLogger(__name__)


# Учёт присутствия: число живых сессий на пользователя
class PresenceTracker:
    def __init__(self):
        self._counts: dict[int, int] = {}

    # Новая сессия пользователя; True, если он только что стал онлайн
    def connect(self, user_id: int) -> bool:
        count = self._counts.get(user_id, 0) + 1
        self._counts[user_id] = count
        logger.debug(f"User {user_id} has {count} live session(s)")
        if count == 1:
            logger.info(f"User {user_id} is online")
        return count == 1

    # Закрытие сессии; счётчик не уходит ниже нуля
    def disconnect(self, user_id: int) -> bool:
        count = self._counts.get(user_id, 0)
        if count == 0:
            logger.debug(f"Ignoring duplicate disconnect for user {user_id}")
            return False
        if count == 1:
            del self._counts[user_id]
            logger.info(f"User {user_id} is offline")
            return True
        self._counts[user_id] = count - 1
        return False

    def session_count(self, user_id: int) -> int:
        return self._counts.get(user_id, 0)

    def is_online(self, user_id: int) -> bool:
        return user_id in self._counts

    def online_count(self) -> int:
        return len(self._counts)

    def online_users(self) -> list[int]:
        return sorted(self._counts)
