import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from src.core.config import get_settings
from src.core.logging_config import setup_logging

settings = get_settings()
setup_logging(settings.log_level, service=settings.service_name)

from services.reflection_engine.draft_store import RedisDraftStore
from services.reflection_engine.hub import SessionHub
from services.reflection_engine.registry import default_registry
from services.reflection_engine.submission import SubmissionController
from src.cache.connection import close_redis, get_redis
from src.db.models import Base
from src.db.session import get_async_engine, get_session_factory
from src.messaging.kafka_client import KafkaCompletionPublisher, flush_producer, get_producer
from src.routers import reflections as reflections_router
from src.services.record_store import SQLAlchemyRecordStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Reflection service starting up...")

    engine = get_async_engine(settings.database_url)
    if settings.database_url.startswith("sqlite"):
        # Local runs have no migration step.
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    registry = default_registry(settings.templates_dir)
    draft_store = RedisDraftStore(
        get_redis,
        namespace=settings.draft_namespace,
        ttl_seconds=settings.draft_ttl_seconds,
    )
    record_store = SQLAlchemyRecordStore(
        get_session_factory(engine),
        timeout=settings.record_store_timeout_seconds,
        retry_attempts=settings.record_store_retry_attempts,
    )
    producer = get_producer(settings.kafka_bootstrap)
    publisher = KafkaCompletionPublisher(producer, settings.completion_topic) if producer else None
    if publisher is None:
        logger.info("Kafka not configured; completion events disabled.")

    # Identity is supplied per request by the router.
    controller = SubmissionController(
        registry,
        record_store,
        draft_store,
        identity=None,
        publisher=publisher,
        max_remembered=settings.finished_sessions_kept,
    )
    app.state.engine = engine
    app.state.hub = SessionHub(
        registry,
        draft_store,
        controller,
        idle_timeout=timedelta(seconds=settings.session_idle_seconds),
        max_finished=settings.finished_sessions_kept,
    )

    yield

    logger.info("Reflection service shutting down...")
    flush_producer(timeout=5.0)
    await close_redis()
    await engine.dispose()
    logger.info("Reflection service stopped.")


app = FastAPI(title="Reflection Session Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(reflections_router.router, prefix="/api/v1")


@app.get("/health", tags=["Health Check"])
async def health():
    return {"status": "ok", "templates": len(app.state.hub.registry)}


@app.get("/health/db", tags=["Health Check"])
async def health_check_db():
    try:
        async with app.state.engine.connect() as conn:
            result = (await conn.execute(text("SELECT 1"))).scalar_one()
        return {"status": "ok", "db_check": result}
    except Exception as e:
        logger.error(f"DB health check failed: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Database connection error: {e}")


@app.get("/health/cache", tags=["Health Check"])
async def health_check_cache():
    client = await get_redis()
    if client is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cache unavailable")
    try:
        await client.ping()
    except Exception as e:
        logger.error(f"Cache health check failed: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Cache connection error: {e}")
    return {"status": "ok", "cache_check": "ping"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
