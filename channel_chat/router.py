import logging
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import List, Optional

from fastapi import (
    APIRouter, Depends, FastAPI, Query, Request, WebSocket
)
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import config
from .broadcast_service import MessageRouter
from .channel_service import ChannelRegistry
from .database import create_db_and_tables, make_engine, make_session_maker
from .exceptions import (
    ChatError, InternalError, NotSubscribed, Unauthenticated, ValidationError
)
from .message_service import MessageStore
from .models import User
from .presence_service import PresenceTracker
from .realtime import ConnectionHandler
from .schemas import (
    ChannelCreatedResponse, ChannelCreateRequest, ChannelResponse,
    HistoryMessage, LoginRequest, LoginResponse, MemberCountResponse,
    MembershipRequest, SignupRequest, StatusResponse, UserOut
)
from .session_service import SessionManager
from .user_service import AuthService

# --- Логирование ---
logger = logging.getLogger(__name__)
logging.basicConfig(level=config.LOG_LEVEL)

# --- Инициализация маршрутов ---
router = APIRouter()

# --- Lifespan (инициализация/деинициализация компонентов) ---
@asynccontextmanager
async def lifespan_context(app: FastAPI):
    logger.info("App starting... initializing DB and chat components")
    engine = make_engine(getattr(app.state, "database_url", None))
    await create_db_and_tables(engine)
    session_maker = make_session_maker(engine)

    store = SimpleNamespace()
    store.engine = engine
    store.auth = AuthService(session_maker)
    store.messages = MessageStore(
        session_maker, page_size=getattr(app.state, "page_size", None)
    )
    store.channels = ChannelRegistry(session_maker)
    store.presence = PresenceTracker()
    store.sessions = SessionManager(store.auth, store.channels, store.presence)
    store.router = MessageRouter(store.messages, store.channels, store.sessions)
    app.state.store = store
    logger.info("Chat components initialized")
    yield
    logger.info("App shutting down")
    await store.sessions.close_all()
    await engine.dispose()

# --- Получение компонентов из состояния приложения ---
def get_store(request: Request) -> SimpleNamespace:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise RuntimeError("Chat components not initialized")
    return store

# --- Получение текущего пользователя из JWT ---
async def get_current_user(
    request: Request,
    store: SimpleNamespace = Depends(get_store)
) -> User:
    auth = request.headers.get("Authorization")
    if not auth or not auth.startswith("Bearer "):
        raise Unauthenticated("No token")
    token = auth.split("Bearer ")[1]
    return await store.auth.authenticate(token)

# --- Обработчики ошибок ---
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    message = exc.message
    if exc.status_code >= 500:
        logger.error(
            f"{request.method} {request.url.path} failed: {exc}",
            exc_info=exc
        )
        message = "Server error"
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": message, "error": exc.code}
    )

# Сообщение об ошибке по первому неверному полю запроса
def validation_message(errors: list[dict]) -> str:
    if not errors:
        return "Invalid request"
    if all(err.get("type") == "missing" and err["loc"][0] == "body" for err in errors):
        return "All fields required"
    first = errors[0]
    field = str(first["loc"][-1]) if first.get("loc") else "request"
    if first.get("type") == "missing":
        return f"Missing {field}"
    return f"Invalid {field}: {first.get('msg', 'invalid value')}"

async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "message": validation_message(exc.errors()),
            "error": ValidationError.code,
            "details": jsonable_encoder(exc.errors(), exclude={"ctx", "input"}),
        }
    )

async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"{request.method} {request.url.path} failed")
    return JSONResponse(
        status_code=InternalError.status_code,
        content={"message": "Server error", "error": InternalError.code}
    )

def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

# --- Проверка доступности ---
@router.get("/")
async def root() -> StatusResponse:
    return StatusResponse(message="Backend is live")

# --- Регистрация пользователя ---
@router.post("/signup")
async def signup(
    request: SignupRequest,
    store: SimpleNamespace = Depends(get_store)
) -> StatusResponse:
    await store.auth.signup(request.name, request.email, request.password)
    return StatusResponse(message="Signup success")

# --- Аутентификация пользователя ---
@router.post("/login")
async def login(
    request: LoginRequest,
    store: SimpleNamespace = Depends(get_store)
) -> LoginResponse:
    token, user = await store.auth.login(request.email, request.password)
    return LoginResponse(
        message="Login success",
        token=token,
        user=UserOut(id=user.user_id, username=user.username)
    )

# --- Список каналов ---
@router.get("/channels", response_model=List[ChannelResponse])
async def list_channels(
    user: User = Depends(get_current_user),
    store: SimpleNamespace = Depends(get_store)
):
    channels = await store.channels.list_channels()
    return [ChannelResponse.from_model(c) for c in channels]

# --- Создание канала ---
@router.post("/channels")
async def create_channel(
    request: ChannelCreateRequest,
    user: User = Depends(get_current_user),
    store: SimpleNamespace = Depends(get_store)
) -> ChannelCreatedResponse:
    channel = await store.channels.create(request.name)
    logger.info(f"User {user.user_id} created channel {channel.name}")
    return ChannelCreatedResponse(
        message="Channel created",
        channel=ChannelResponse.from_model(channel)
    )

# --- Вход в канал ---
@router.post("/channels/join")
async def join_channel(
    request: MembershipRequest,
    user: User = Depends(get_current_user),
    store: SimpleNamespace = Depends(get_store)
) -> StatusResponse:
    await store.sessions.join_user(user.user_id, request.channel_id)
    return StatusResponse(message="Joined channel")

# --- Выход из канала ---
@router.post("/channels/leave")
async def leave_channel(
    request: MembershipRequest,
    user: User = Depends(get_current_user),
    store: SimpleNamespace = Depends(get_store)
) -> StatusResponse:
    await store.sessions.leave_user(user.user_id, request.channel_id)
    return StatusResponse(message="Left channel")

# --- Число участников канала ---
@router.get("/channels/{channel_id}/members")
async def channel_members(
    channel_id: int,
    user: User = Depends(get_current_user),
    store: SimpleNamespace = Depends(get_store)
) -> MemberCountResponse:
    count = await store.channels.member_count(channel_id)
    return MemberCountResponse(count=count)

# --- История сообщений канала (cursor-based, назад во времени) ---
@router.get("/messages/{channel_id}", response_model=List[HistoryMessage])
async def channel_messages(
    channel_id: int,
    before: Optional[int] = Query(None, ge=1),
    user: User = Depends(get_current_user),
    store: SimpleNamespace = Depends(get_store)
):
    await store.channels.get(channel_id)
    if not store.channels.is_member(channel_id, user.user_id):
        raise NotSubscribed(
            "Join the channel to read its history",
            {"channel_id": channel_id}
        )
    messages = await store.messages.page(channel_id, before=before)
    # Страница хранится от новых к старым, клиенту отдаём по порядку
    return [HistoryMessage.from_model(m) for m in reversed(messages)]

# --- Realtime-соединение ---
@router.websocket("/ws")
async def realtime(websocket: WebSocket, token: Optional[str] = Query(None)):
    if token is None:
        auth = websocket.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            token = auth.split("Bearer ")[1]
    handler = ConnectionHandler(websocket, websocket.app.state.store)
    await handler.run(token)
