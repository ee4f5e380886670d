import os

# База данных
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./chat.db")
DB_ECHO = os.getenv("DB_ECHO", "false").lower() in ("1", "true", "yes")
DB_POOL_TIMEOUT = float(os.getenv("DB_POOL_TIMEOUT", "10"))

# JWT
SECRET_KEY = os.getenv("SECRET_KEY")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "10080"))

# Сообщения
MESSAGE_PAGE_SIZE = int(os.getenv("MESSAGE_PAGE_SIZE", "50"))
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", "2000"))

# Сессии
OUTBOX_MAX_SIZE = int(os.getenv("OUTBOX_MAX_SIZE", "1000"))

# Сервер
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "5000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]
