from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_pipeline_event_types = [
    "sales.lead.won",
    "sales.lead.stage_reverted",
    "projects.project.created",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_pipeline_event(event: InternalEvent) -> None:
    envelope = event.payload
    logger.info(
        "pipeline_event",
        extra={
            "event_name": event.name,
            "lead_id": envelope.get("lead_id"),
            "project_id": envelope.get("project_id") or envelope.get("payload", {}).get("project_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _pipeline_event_types:
            event_bus.subscribe(event_name, _on_pipeline_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

set_policy_backend(InMemoryPolicyBackend(default_allow=settings.authz_default_allow))

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
