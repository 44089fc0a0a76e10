from contextlib import asynccontextmanager

from fastapi import FastAPI

from chatsync.core.config import settings
from chatsync.core.errors import register_exception_handlers
from chatsync.core.logging import configure_logging
from chatsync.database.connection import close_store, connect_store
from chatsync.routers.conversations import router as conversations_router
from chatsync.routers.groups import router as groups_router
from chatsync.routers.session import router as session_router
from chatsync.services.registry import SessionRegistry
from chatsync.utils.realtime_bus import close_bus, get_bus


@asynccontextmanager
async def lifespan(app: FastAPI):

    store = await connect_store()
    bus = await get_bus()
    app.state.registry = SessionRegistry(store, bus=bus, settings=settings)
    try:
        yield
    finally:
        app.state.registry.close_all()
        await close_bus()
        await close_store()


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)
    register_exception_handlers(app)

    app.include_router(conversations_router)
    app.include_router(groups_router)
    app.include_router(session_router)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
