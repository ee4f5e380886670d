import logging
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.hash import bcrypt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import config
from .database import storage_errors
from .exceptions import EmailAlreadyExists, Unauthenticated, ValidationError
from .models import User

# --- Логирование ---
logger = logging.getLogger(__name__)

# --- Получить пользователя по email ---
async def get_user_by_email(
    session: AsyncSession,
    email: str
) -> User | None:
    logger.info(f"Searching for user by email: {email}")
    result = await session.execute(
        select(User).where(User.email == email)
    )
    user = result.scalar_one_or_none()
    if user:
        logger.info("User found by email")
    else:
        logger.info("User not found by email")
    return user

# --- Получить пользователя по ID ---
async def get_user_by_id(
    session: AsyncSession,
    id: int
) -> User | None:
    logger.debug(f"Searching for user by ID: {id}")
    result = await session.execute(
        select(User).where(User.user_id == id)
    )
    user = result.scalar_one_or_none()
    if user is None:
        logger.warning(f"User not found by ID: {id}")
    return user

# --- Хеширование пароля ---
def hash_password(password: str) -> str:
    logger.debug("Hashing password")
    return bcrypt.hash(password)

# --- Проверка пароля ---
def verify_password(user: User, password: str) -> bool:
    logger.debug("Verifying password")
    return bcrypt.verify(password, user.password_hash)

# --- Создание нового пользователя ---
async def create_user(
    session: AsyncSession,
    username: str,
    email: str,
    password: str
) -> User:
    logger.info(f"Creating new user: {username} <{email}>")
    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password)
    )
    session.add(user)
    await session.flush()
    logger.info(f"User created with id={user.user_id}")
    return user


# Регистрация, вход и проверка токенов (JWT)
class AuthService:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        secret_key: str | None = None,
        algorithm: str | None = None,
        expire_minutes: int | None = None
    ):
        self._session_maker = session_maker
        self.secret_key = secret_key or config.SECRET_KEY
        self.algorithm = algorithm or config.ALGORITHM
        self.expire_minutes = expire_minutes or config.ACCESS_TOKEN_EXPIRE_MINUTES
        if not self.secret_key:
            raise RuntimeError("SECRET_KEY is not configured")

    # --- Регистрация ---
    async def signup(self, name: str, email: str, password: str) -> User:
        name, email = name.strip(), email.strip().lower()
        if not name or not email or not password:
            raise ValidationError("All fields required")

        async with storage_errors("signup"):
            async with self._session_maker() as session:
                if await get_user_by_email(session, email):
                    raise EmailAlreadyExists(email)
                try:
                    user = await create_user(session, name, email, password)
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    raise EmailAlreadyExists(email)
        logger.info(f"User registered: {email}")
        return user

    # --- Вход: проверка пароля и выдача токена ---
    async def login(self, email: str, password: str) -> tuple[str, User]:
        email = email.strip().lower()
        async with storage_errors("login"):
            async with self._session_maker() as session:
                user = await get_user_by_email(session, email)
        if not user or not verify_password(user, password):
            raise ValidationError("Invalid email or password")
        token = self.create_access_token(
            data={"sub": str(user.user_id), "name": user.username}
        )
        logger.info(f"User logged in: {email}")
        return token, user

    # --- Создание JWT токена ---
    def create_access_token(
        self, data: dict, expires_delta: timedelta | None = None
    ) -> str:
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + (
            expires_delta or timedelta(minutes=self.expire_minutes)
        )
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    # --- Проверка токена и получение пользователя ---
    async def authenticate(self, token: str | None) -> User:
        if not token:
            raise Unauthenticated("No token")
        try:
            payload = jwt.decode(
                token, self.secret_key, algorithms=[self.algorithm]
            )
        except ExpiredSignatureError:
            raise Unauthenticated("Token has expired")
        except JWTError:
            raise Unauthenticated("Invalid token")

        user_id = payload.get("sub")
        if user_id is None or not str(user_id).isdigit():
            raise Unauthenticated("Invalid token payload")

        async with storage_errors("authenticate"):
            async with self._session_maker() as session:
                user = await get_user_by_id(session, int(user_id))
        if user is None:
            raise Unauthenticated("User not found")
        return user
