"""
FastAPI application factory.

Run locally:  uvicorn fhir_server.main:create_app --factory --reload

``create_app`` builds the whole service context (engine, session factory,
kind registry, validation engine, store) from ``Settings`` and hangs it on
``app.state``; nothing is module-global, so tests build isolated apps.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fhir_server.api.errors import FhirJSONResponse, register_exception_handlers
from fhir_server.api.routes import router
from fhir_server.config import Settings
from fhir_server.models.database import Base, build_engine, build_session_factory
from fhir_server.services.encryption import EncryptionService
from fhir_server.services.registry import KindRegistry, default_registry
from fhir_server.services.store import ResourceStore
from fhir_server.services.validation import ValidationEngine

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format="%(levelname)s | %(name)s | %(message)s")


def build_store(settings: Settings, session_factory, registry: KindRegistry | None = None, **kwargs) -> ResourceStore:
    registry = registry or default_registry()
    return ResourceStore(
        session_factory,
        registry,
        ValidationEngine(registry, profiles=settings.profiles),
        EncryptionService(settings.PHI_ENCRYPTION_KEY),
        require_version_token=settings.FHIR_REQUIRE_IF_MATCH,
        page_size=settings.PAGE_SIZE,
        max_page_size=settings.MAX_PAGE_SIZE,
        **kwargs,
    )


def create_app(settings: Settings | None = None, **store_options) -> FastAPI:
    """Build the application; ``store_options`` go to ``ResourceStore`` (id_factory, clock)."""
    settings = settings or Settings()
    configure_logging(settings.LOG_LEVEL)

    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=engine)
        logger.info("FHIR server ready (%s, profiles: %s)", settings.ENVIRONMENT, settings.profiles or "none")
        yield
        engine.dispose()

    app = FastAPI(
        title="FHIR R4 Resource Server",
        description=(
            "Versioned create/read/update/delete/search of FHIR R4 resources "
            "with schema and profile validation, optimistic concurrency, "
            "encrypted storage and audit logging."
        ),
        version="1.0.0",
        default_response_class=FhirJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.store = build_store(settings, session_factory, **store_options)

    register_exception_handlers(app)
    app.include_router(router)
    return app
