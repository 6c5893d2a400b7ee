import logging
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from .api.router import router
from .config import settings
from .database import AsyncSessionLocal, create_tables
from .services.job_queue import JobQueue
from .services.notifier import StudyNotifier
from .services.pipeline import process_stable_study
from .services.result_cache import ResultCache

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def build_job_queue(result_cache: ResultCache, notifier: StudyNotifier, session_factory=AsyncSessionLocal) -> JobQueue:
    processor = partial(
        process_stable_study,
        session_factory=session_factory,
        result_cache=result_cache,
        notifier=notifier,
    )
    return JobQueue(
        processor,
        concurrency=settings.queue_concurrency,
        idle_interval=settings.queue_idle_interval,
        retention_seconds=settings.job_retention_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    result_cache = ResultCache.from_url(settings.redis_url, ttl_seconds=settings.result_ttl_seconds)
    notifier = StudyNotifier(send_timeout=settings.notifier_send_timeout)
    app.state.result_cache = result_cache
    app.state.notifier = notifier
    app.state.job_queue = build_job_queue(result_cache, notifier)
    yield
    await result_cache.close()


app = FastAPI(title="DCM Intake Service", version="0.1.0", lifespan=lifespan)

Instrumentator().instrument(app).expose(app)

app.include_router(router)


@app.get("/health", tags=["ops"])
async def health():
    return {"status": "ok", "service": "dcm-intake-service"}
