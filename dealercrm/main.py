from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from starlette.requests import Request

from dealercrm.api.errors import error_response
from dealercrm.api.routes import router as api_router
from dealercrm.core.config import get_settings
from dealercrm.core.database import Base, engine
from dealercrm.events import DOMAIN_EVENT_TYPES, SYSTEM_STARTED, DomainEvent, event_bus
from dealercrm.logging import configure_logging
from dealercrm.middleware.correlation_id import CorrelationIdMiddleware
from dealercrm.middleware.request_logging import RequestLoggingMiddleware
from dealercrm.otel import get_fastapi_server_request_hook, setup_otel
import dealercrm.models  # noqa: F401


configure_logging()
logger = logging.getLogger("dealercrm.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: DomainEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_domain_event(event: DomainEvent) -> None:
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "user_id": event.actor_user_id,
            "lead_id": event.payload.get("lead_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe(SYSTEM_STARTED, _on_system_started)
        for event_name in DOMAIN_EVENT_TYPES:
            event_bus.subscribe(event_name, _on_domain_event)
        _subscriptions_registered = True

    if get_settings().auto_create_schema:
        Base.metadata.create_all(bind=engine)
    event_bus.dispatch(SYSTEM_STARTED, {"service": "api"})
    yield


app = FastAPI(title="Dealer CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", extra={"path": request.url.path, "error": str(exc)})
    settings = get_settings()
    details = None if settings.is_production or not settings.app_debug else {"error": type(exc).__name__}
    return error_response(request, status_code=500, code="internal_error", message="internal server error", details=details)


setup_otel("dealercrm-api", get_settings().otel_enabled)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
