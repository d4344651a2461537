from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any
import uuid

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.events import InternalEvent, event_bus
from app.core.database import SessionLocal, get_db
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.territories.service import territory_service


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_entity_deleted_event_types = {
    "crm.company.deleted": "company",
    "crm.contact.deleted": "contact",
    "crm.deal.deleted": "deal",
}


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _entity_id_from_envelope(envelope: dict[str, Any], entity_type: str) -> uuid.UUID | None:
    payload = envelope.get("payload")
    if not isinstance(payload, dict):
        return None
    raw = payload.get("entity_id") or payload.get(f"{entity_type}_id")
    if raw is None:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


def _on_entity_deleted(event: InternalEvent) -> None:
    entity_type = _entity_deleted_event_types.get(event.name)
    if entity_type is None or not isinstance(event.payload, dict):
        return
    entity_id = _entity_id_from_envelope(event.payload, entity_type)
    if entity_id is None:
        logger.warning("territory_purge_skipped", extra={"event_name": event.name, "entity_type": entity_type})
        return

    try:
        with _session_scope() as session:
            territory_service.purge_entity(session, entity_type, entity_id)
    except Exception as exc:
        logger.exception(
            "territory_purge_failed",
            extra={"event_name": event.name, "entity_type": entity_type, "entity_id": str(entity_id), "error": str(exc)[:500]},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _entity_deleted_event_types:
            event_bus.subscribe(event_name, _on_entity_deleted)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()
app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
