from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from erasmus_crm.api.routes import router as api_router
from erasmus_crm.core.config import get_settings
from erasmus_crm.core.database import Database
from erasmus_crm.logging import configure_logging
from erasmus_crm.middleware.request_context import RequestContextMiddleware
from erasmus_crm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("erasmus_crm.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    # Tests install their own handle before startup.
    database = getattr(app.state, "database", None)
    owns_database = database is None
    if owns_database:
        database = Database.from_settings(settings.database_url, allow_degraded=settings.allow_degraded_storage)
        app.state.database = database
    logger.info(
        "system.started",
        extra={"status": "database available" if database.available else "database unavailable"},
    )
    try:
        yield
    finally:
        if owns_database:
            database.dispose()
            app.state.database = None


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    application.add_middleware(RequestContextMiddleware)
    application.include_router(api_router)

    if settings.otel_enabled:
        setup_otel("erasmus-crm", True)
    if not getattr(application, "_is_instrumented_by_opentelemetry", False):
        FastAPIInstrumentor().instrument_app(application, server_request_hook=get_fastapi_server_request_hook())
    return application


app = create_app()
