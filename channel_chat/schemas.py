from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel

from .models import Channel, Message


# --- REST: аутентификация ---
class SignupRequest(BaseModel):
    name: str
    email: str
    password: str

class LoginRequest(BaseModel):
    email: str
    password: str

class UserOut(BaseModel):
    id: int
    username: str

class LoginResponse(BaseModel):
    message: str
    token: str
    user: UserOut

class StatusResponse(BaseModel):
    message: str

class ErrorResponse(BaseModel):
    message: str
    error: str


# --- REST: каналы ---
class ChannelCreateRequest(BaseModel):
    name: str

class MembershipRequest(BaseModel):
    channel_id: int

class ChannelResponse(BaseModel):
    id: int
    name: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, channel: Channel) -> "ChannelResponse":
        return cls(
            id=channel.channel_id,
            name=channel.name,
            created_at=channel.created_at
        )

class ChannelCreatedResponse(BaseModel):
    message: str
    channel: ChannelResponse

class MemberCountResponse(BaseModel):
    count: int


# --- REST: история сообщений ---
class HistoryMessage(BaseModel):
    id: int
    channel_id: int
    user_id: int
    username: str
    message: str
    timestamp: datetime

    @classmethod
    def from_model(cls, message: Message) -> "HistoryMessage":
        return cls(
            id=message.message_id,
            channel_id=message.channel_id,
            user_id=message.user_id,
            username=message.author.username,
            message=message.body,
            timestamp=message.created_at
        )


# --- Realtime: входящие события клиента ---
class ChannelPayload(BaseModel):
    channel_id: int

class SendMessagePayload(BaseModel):
    channel_id: int
    message: str
    # Клиент может прислать user, но автор всегда берётся из сессии
    user: Optional[dict[str, Any]] = None


# --- Realtime: исходящие события сервера ---
class ReceiveMessageEvent(BaseModel):
    id: int
    channel_id: int
    message: str
    user: UserOut
    timestamp: datetime

    @classmethod
    def from_model(cls, message: Message, username: str) -> "ReceiveMessageEvent":
        return cls(
            id=message.message_id,
            channel_id=message.channel_id,
            message=message.body,
            user=UserOut(id=message.user_id, username=username),
            timestamp=message.created_at
        )

class OnlineUsersEvent(BaseModel):
    count: int
    users: List[int]


# Конверт realtime-события: {"event": ..., "data": ...}
def event(name: str, data: Any) -> dict:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"event": name, "data": data}
