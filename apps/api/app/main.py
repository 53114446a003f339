from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.errors import register_error_handlers
from app.api.routes import router as api_router
from app.core.cache import InMemoryCache
from app.core.config import get_settings
from app.crm.service import build_crm_services
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("system.started", extra={"entity_type": "service", "entity_id": settings.app_name})
    yield
    evicted = app.state.cache.clear()
    logger.info("system.stopped", extra={"entity_type": "service", "entity_id": settings.app_name, "evicted": evicted})


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.state.cache = InMemoryCache()
app.state.crm_services = build_crm_services(app.state.cache, cache_enabled=settings.cache_enabled)

register_error_handlers(app)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("minicrm-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
