from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tablehold.core import redis_client as redis_module
from tablehold.core.clock import drain_background_tasks
from tablehold.core.config import settings
from tablehold.core.errors import BookingError
from tablehold.core.logging import configure_logging
from tablehold.core.redis_client import close_redis, init_redis
from tablehold.db.session import SessionLocal
from tablehold.deps import Services, build_services
from tablehold.services.notifier import LoggingNotifier, RedisNotifier
from tablehold.services.store import SqlRequestStore
import tablehold.routers.health as health
import tablehold.routers.holds as holds
import tablehold.routers.requests as requests


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if getattr(app.state, "services", None) is not None:
        try:
            yield
        finally:
            await drain_background_tasks()
        return

    await init_redis()
    try:
        gateway = (
            RedisNotifier(redis_module.redis_client)
            if redis_module.redis_client is not None
            else LoggingNotifier()
        )
        app.state.services = build_services(SqlRequestStore(SessionLocal), gateway)
        await app.state.services.engine.rearm_timers()
        yield
    finally:
        await drain_background_tasks()
        await close_redis()


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(
        title="Table Request API",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_exception_handler(BookingError, booking_error_handler)
    app.include_router(health.router, prefix=settings.API_PREFIX)
    app.include_router(requests.router, prefix=settings.API_PREFIX)
    app.include_router(holds.router, prefix=settings.API_PREFIX)
    return app


app = create_app()
