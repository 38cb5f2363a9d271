import logging
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from luogu_archive.api.routes import router
from luogu_archive.config import settings
from luogu_archive.db.connection import run_migrations
from luogu_archive.errors import NotFoundError, ValidationError
from luogu_archive.models.job import JobEvent, JobNotification
from luogu_archive.repositories.content_repository import ContentRepository
from luogu_archive.repositories.job_repository import JobRepository
from luogu_archive.services.crawler_service import CrawlerService
from luogu_archive.services.session_fetcher import SessionFetcher
from luogu_archive.services.task_scheduler import TaskScheduler


def _configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _log_job_event(notification: JobNotification) -> None:
    logger = logging.getLogger("luogu_archive.jobs")
    if notification.event is JobEvent.FAILED:
        error = notification.snapshot.error
        logger.warning(
            "[jobs] %s | id=%s | type=%s | class=%s",
            notification.event.value,
            notification.job_id,
            notification.job_type,
            error.classification if error else "-",
        )
    else:
        logger.info(
            "[jobs] %s | id=%s | type=%s | status=%s",
            notification.event.value,
            notification.job_id,
            notification.job_type,
            notification.status,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    _configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("Luogu archive starting | db=%s | port=%s", settings.DB_PATH, settings.PORT)
    run_migrations(settings.DB_PATH)

    client = httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT, follow_redirects=False)
    app.state.content_repository = ContentRepository(settings.DB_PATH)
    app.state.job_repository = JobRepository(settings.DB_PATH)
    app.state.crawler = CrawlerService(app.state.content_repository, SessionFetcher(client))
    app.state.scheduler = TaskScheduler(app.state.job_repository, app.state.crawler)
    unsubscribe = app.state.scheduler.subscribe(_log_job_event)
    await app.state.scheduler.initialize()
    try:
        yield
    finally:
        logger.info("Luogu archive shutting down")
        unsubscribe()
        await app.state.scheduler.close()
        await client.aclose()


def create_app() -> FastAPI:
    app = FastAPI(title="Luogu Archive", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"status": "error", "message": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_exception_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"status": "error", "message": str(exc)})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logging.getLogger(__name__).exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Internal server error"},
        )

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("luogu_archive.main:app", host="0.0.0.0", port=settings.PORT, log_level=settings.LOG_LEVEL)
