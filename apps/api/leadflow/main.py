import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadflow.api.routes import router as api_router
from leadflow.core.config import get_settings
from leadflow.core.events import InternalEvent, event_bus
from leadflow.logging import configure_logging
from leadflow.middleware.correlation_id import CorrelationIdMiddleware
from leadflow.middleware.rate_limit import CrmMutationRateLimitMiddleware
from leadflow.middleware.request_logging import RequestLoggingMiddleware
from leadflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("leadflow.startup")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"operation": event.name, "status": event.payload.get("service")})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.publish("system.started", {"service": "api"})
    try:
        yield
    finally:
        event_bus.unsubscribe("system.started", _on_system_started)


app = FastAPI(title="Leadflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("leadflow-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
