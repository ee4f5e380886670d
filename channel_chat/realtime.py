import json
import logging
from types import SimpleNamespace
from typing import Any

import pydantic
from fastapi import WebSocket, WebSocketDisconnect, status

from .exceptions import ChatError, InternalError, Unauthenticated, ValidationError
from .schemas import ChannelPayload, SendMessagePayload, event
from .session_service import Session

# --- Логирование ---
logger = logging.getLogger(__name__)


# --- Разбор полезной нагрузки события ---
def parse_payload(model: type[pydantic.BaseModel], data: Any):
    # join_channel может прийти как голый id канала
    if isinstance(data, (int, str)) and model is ChannelPayload:
        data = {"channel_id": data}
    try:
        return model.model_validate(data or {})
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Invalid event payload",
            {"errors": [err["msg"] for err in e.errors()]}
        )


# Цикл обработки одного соединения: приём событий и диспетчеризация
class ConnectionHandler:
    def __init__(self, websocket: WebSocket, store: SimpleNamespace):
        self.websocket = websocket
        self.store = store
        self.session: Session | None = None
        self.handlers = {
            "join_channel": self.handle_join,
            "leave_channel": self.handle_leave,
            "send_message": self.handle_send,
        }

    async def run(self, token: str | None) -> None:
        await self.websocket.accept()
        try:
            self.session = await self.store.sessions.open(self.websocket, token)
        except Unauthenticated as e:
            logger.info(f"Rejected realtime connection: {e.message}")
            await self.websocket.close(
                code=status.WS_1008_POLICY_VIOLATION, reason=e.message
            )
            return
        except ChatError:
            logger.exception("Failed to open realtime session")
            await self.websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return

        try:
            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(
                        message.get("code", status.WS_1000_NORMAL_CLOSURE),
                        message.get("reason")
                    )
                if message.get("text") is not None:
                    await self.dispatch(message["text"])
                else:
                    # Протокол текстовый: бинарные кадры не разбираются
                    self.send_error(
                        ValidationError("Binary frames are not supported")
                    )
        except WebSocketDisconnect as e:
            logger.info(f"{self.session} disconnected (code={e.code})")
        finally:
            await self.store.sessions.close(self.session)

    # Разбор кадра и вызов обработчика; ошибки уходят клиенту событием error
    async def dispatch(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
            if not isinstance(frame, dict):
                raise ValidationError("Event must be a JSON object")
            name = frame.get("event")
            handler = self.handlers.get(name)
            if handler is None:
                raise ValidationError(f"Unknown event: {name}")
            await handler(frame.get("data"))
        except json.JSONDecodeError:
            self.send_error(ValidationError("Malformed JSON"))
        except ChatError as e:
            if e.status_code >= 500:
                logger.exception(f"Realtime event failed for {self.session}")
            self.send_error(e)
        except Exception:
            logger.exception(f"Realtime event failed for {self.session}")
            self.send_error(InternalError("Server error"))

    async def handle_join(self, data: Any) -> None:
        payload = parse_payload(ChannelPayload, data)
        await self.store.sessions.join(self.session, payload.channel_id)
        self.session.deliver(
            event("joined_channel", {"channel_id": payload.channel_id})
        )

    async def handle_leave(self, data: Any) -> None:
        payload = parse_payload(ChannelPayload, data)
        await self.store.sessions.leave(self.session, payload.channel_id)
        self.session.deliver(
            event("left_channel", {"channel_id": payload.channel_id})
        )

    async def handle_send(self, data: Any) -> None:
        payload = parse_payload(SendMessagePayload, data)
        if payload.user and payload.user.get("id") != self.session.user_id:
            logger.warning(
                f"Ignoring client-supplied user {payload.user.get('id')} "
                f"from {self.session}"
            )
        await self.store.router.submit(
            self.session, payload.channel_id, payload.message
        )

    def send_error(self, error: ChatError) -> None:
        message = error.message
        if error.status_code >= 500:
            # Внутренние детали клиенту не раскрываются
            message = "Server error"
        self.session.deliver(
            event("error", {"message": message, "error": error.code})
        )
