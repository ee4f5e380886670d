from typing import Any


# Базовое исключение чата: сообщение для клиента + контекст для логов
class ChatError(Exception):
    status_code = 500
    code = "internal"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Некорректные или отсутствующие входные данные
class ValidationError(ChatError):
    status_code = 400
    code = "validation_error"


# Токен отсутствует, невалиден или истёк
class Unauthenticated(ChatError):
    status_code = 401
    code = "unauthenticated"


class Unauthorized(ChatError):
    status_code = 403
    code = "unauthorized"


# Сессия пишет или читает канал, в который не входила
class NotSubscribed(Unauthorized):
    code = "not_subscribed"


class NotFound(ChatError):
    status_code = 404
    code = "not_found"


class ChannelNotFound(NotFound):
    code = "channel_not_found"

    def __init__(self, channel_id: int):
        super().__init__(
            f"Channel {channel_id} not found", {"channel_id": channel_id}
        )


class Conflict(ChatError):
    status_code = 409
    code = "conflict"


# Канал с таким именем уже существует
class DuplicateName(Conflict):
    code = "duplicate_name"

    def __init__(self, name: str):
        super().__init__(f"Channel '{name}' already exists", {"name": name})


# Регистрация с занятым email отвечает 400, как и остальные ошибки формы
class EmailAlreadyExists(Conflict):
    status_code = 400
    code = "email_exists"

    def __init__(self, email: str):
        super().__init__("Email already exists", {"email": email})


# Хранилище недоступно или не ответило вовремя
class StorageUnavailable(ChatError):
    status_code = 503
    code = "storage_unavailable"


class InternalError(ChatError):
    status_code = 500
    code = "internal"
