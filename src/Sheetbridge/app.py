"""FastAPI app entrypoint for Sheetbridge."""

import contextlib
import time
import uuid
from collections.abc import AsyncIterator

import structlog
from fastapi import FastAPI, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from Sheetbridge import repos
from Sheetbridge.adapters import AdapterRegistry
from Sheetbridge.api import ImporterState, register_exception_handlers, router
from Sheetbridge.config import AdapterConfig, Settings, load_settings
from Sheetbridge.db import build_engine, build_sessionmaker, create_schema, session_scope
from Sheetbridge.detector import Detector
from Sheetbridge.errors import AdapterConfigurationError
from Sheetbridge.logging import redact_settings, setup_logging
from Sheetbridge.metrics import get_counters
from Sheetbridge.reconciler import Reconciler
from Sheetbridge.schemas import AdapterMetadata
from Sheetbridge.security import RateLimiters
from Sheetbridge.services.import_service import ImportService
from Sheetbridge.validation import Validator

log = structlog.get_logger()


def adapter_metadata_from_config(cfg: AdapterConfig) -> AdapterMetadata:
    # Configured adapters start unhealthy until the first probe answers
    return AdapterMetadata(
        id=cfg.id,
        name=cfg.name or cfg.id,
        version=cfg.version,
        bmrt_versions=cfg.bmrt_versions,
        supported_extensions=cfg.supported_extensions,
        base_url=cfg.base_url,
        capabilities=cfg.capabilities,
        healthy=False,
    )


def build_state(
    settings: Settings,
    *,
    registry: AdapterRegistry,
    sessionmaker: async_sessionmaker[AsyncSession],
) -> ImporterState:
    return ImporterState(
        settings=settings,
        registry=registry,
        detector=Detector(
            registry,
            cache_ttl_s=settings.detect_cache_ttl_seconds,
            cache_max_entries=settings.detect_cache_max_entries,
        ),
        import_service=ImportService(
            sessionmaker, Reconciler(default_game_system=settings.default_game_system)
        ),
        validator=Validator(),
        limiters=RateLimiters.from_settings(settings),
        sessionmaker=sessionmaker,
    )


def create_app(
    settings: Settings | None = None,
    *,
    registry: AdapterRegistry | None = None,
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    settings = settings or load_settings()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings)
        try:
            log.info("app.startup", config=redact_settings(settings))
        except Exception:
            # Avoid crashing startup due to logging issues
            pass

        engine = None
        sm = sessionmaker
        if sm is None:
            engine = build_engine(settings.database_url)
            sm = build_sessionmaker(engine)
            if engine.dialect.name == "sqlite":
                await create_schema(engine)

        reg = registry or AdapterRegistry.from_settings(settings)
        for cfg in settings.adapters:
            try:
                await reg.register(adapter_metadata_from_config(cfg))
            except AdapterConfigurationError as exc:
                log.error("adapters.config.invalid", adapter_id=cfg.id, error=str(exc))
        await reg.health_check()
        reg.start_health_checker()

        app.state.importer = build_state(settings, registry=reg, sessionmaker=sm)
        try:
            yield
        finally:
            await reg.aclose()
            if engine is not None:
                await engine.dispose()
            log.info("app.shutdown")

    app = FastAPI(title="Sheetbridge", lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(router)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Assign a request_id, bind it to structlog context, and measure duration."""
        from structlog.contextvars import bind_contextvars, clear_contextvars

        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        start = time.perf_counter()
        bind_contextvars(request_id=request_id)
        status_code = 500
        try:
            response = await call_next(request)
            status_code = getattr(response, "status_code", 200)
            response.headers["X-Request-Id"] = request_id
            return response
        finally:
            duration_ms = int((time.perf_counter() - start) * 1000)
            log.info(
                "http.request.completed",
                http_path=str(request.url.path),
                http_method=request.method,
                http_status_code=status_code,
                duration_ms=duration_ms,
            )
            clear_contextvars()

    @app.get("/healthz")
    async def healthz(request: Request):
        try:
            async with session_scope(request.app.state.importer.sessionmaker) as s:
                await repos.healthcheck(s)
        except SQLAlchemyError as err:
            raise HTTPException(status_code=500, detail="db not ready") from err
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics_endpoint():
        if not settings.metrics_endpoint_enabled:
            raise HTTPException(status_code=404, detail="not enabled")
        return get_counters()

    return app


app = create_app()
