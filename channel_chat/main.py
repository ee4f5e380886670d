import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .router import lifespan_context, register_exception_handlers, router


# Создаём экземпляр FastAPI и передаём ему lifespan-контекст
def create_app(
    database_url: str | None = None,
    page_size: int | None = None
) -> FastAPI:
    app = FastAPI(title="channel-chat", lifespan=lifespan_context)
    app.state.database_url = database_url
    app.state.page_size = page_size
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    # Подключаем маршруты из router.py
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "channel_chat.main:app",
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    run()
