import asyncio
import logging
from contextlib import asynccontextmanager

import alembic.command
import alembic.config
from fastapi import FastAPI, Request

from sqlgate.api.router import api_router
from sqlgate.core.config import settings
from sqlgate.core.correlation import CorrelationIdFilter, CorrelationIdMiddleware
from sqlgate.core.database import AsyncSessionLocal, create_target_engine, engine
from sqlgate.core.errors import install_error_handlers
from sqlgate.core.gateway.audit import AuditRecorder, RetentionPolicy, SqlAuditStore
from sqlgate.core.gateway.backend import SqlServerBackend
from sqlgate.core.gateway.executor import StoredProcedureExecutor
from sqlgate.core.gateway.registry import default_registry
from sqlgate.core.gateway.resilience import BreakerConfig, CircuitBreaker, RetryPolicy
from sqlgate.core.gateway.secrets import (
    CONNECTION_STRING_SECRET,
    ApiKeyStore,
    EnvironmentSecretStore,
)
from sqlgate.core.gateway.service import ToolService
from sqlgate.core.schemas import HealthResponse

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"


def configure_logging():
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        handler.addFilter(CorrelationIdFilter())


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic_cfg.attributes["configure_logger"] = False
    alembic.command.upgrade(alembic_cfg, "head")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings.validate_ranges()

    # Apply any pending migrations automatically when the app starts
    if settings.RUN_MIGRATIONS:
        try:
            await asyncio.to_thread(run_migrations)
            logger.info("Migrations applied successfully (or already up-to-date)")
        except Exception as e:
            logger.error(f"Migration error during startup: {e}")

    # ===== Stores =====
    fallbacks = {CONNECTION_STRING_SECRET: settings.DATABASE_URL} if settings.DATABASE_URL else None
    secret_store = EnvironmentSecretStore(fallbacks=fallbacks)
    secret_store.open()
    api_key_store = ApiKeyStore()
    api_key_store.open(settings.API_KEYS)

    audit_store = SqlAuditStore(AsyncSessionLocal, settings.AUDIT_ELEVATED_ROLES)
    recorder = AuditRecorder.from_settings(audit_store, settings)
    await recorder.start()

    # ===== Gateway =====
    registry = default_registry()
    backend = SqlServerBackend(create_target_engine(secret_store.get_secret(CONNECTION_STRING_SECRET)))
    executor = StoredProcedureExecutor(
        backend,
        registry.procedure_names(),
        recorder,
        retry_policy=RetryPolicy.from_settings(settings),
        breaker=CircuitBreaker(BreakerConfig.from_settings(settings)),
        default_timeout=settings.COMMAND_TIMEOUT_SECONDS,
    )

    app.state.api_key_store = api_key_store
    app.state.audit_store = audit_store
    app.state.recorder = recorder
    app.state.retention_policy = RetentionPolicy.from_settings(settings)
    app.state.executor = executor
    app.state.tool_service = ToolService(registry, executor, recorder)
    logger.info(f"Gateway ready with {len(registry.definitions())} tools")

    try:
        yield
    finally:
        # Flush audit before the engines are disposed
        await recorder.stop()
        await backend.dispose()
        api_key_store.close()
        secret_store.close()
        await engine.dispose()


app = FastAPI(title="SQL Gate", lifespan=lifespan)
app.add_middleware(CorrelationIdMiddleware)
install_error_handlers(app)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/health", response_model=HealthResponse)
async def health(request: Request):
    recorder = getattr(request.app.state, "recorder", None)
    executor = getattr(request.app.state, "executor", None)
    circuit_state = executor.breaker.state if executor else "unknown"
    return HealthResponse(
        status="ok" if recorder and circuit_state == "closed" else "degraded",
        audit_queue_depth=recorder.depth if recorder else 0,
        circuit_state=circuit_state,
    )
