import logging

from fastapi import APIRouter, HTTPException, Request

from luogu_archive.models.content import ContentKind
from luogu_archive.schemas.tasks import (
    CancelResponse,
    EntityResponse,
    JobStatusResponse,
    QueueStatsResponse,
    SaveRequest,
    SaveResponse,
    SubmitTaskRequest,
    SubmitTaskResponse,
)
from luogu_archive.services.crawler_service import make_target

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict:
    return {"status": "ok", "queue_running": request.app.state.scheduler.running}


# Task routes are registered before the content routes so /tasks/stats is never
# mistaken for a job id.


@router.post("/tasks", response_model=SubmitTaskResponse, status_code=202)
async def submit_task(payload: SubmitTaskRequest, request: Request) -> SubmitTaskResponse:
    scheduler = request.app.state.scheduler
    job_id = await scheduler.submit(
        payload.type,
        payload.payload,
        max_attempts=payload.max_attempts,
        priority=payload.priority,
    )
    return SubmitTaskResponse(job_id=job_id)


@router.get("/tasks/stats", response_model=QueueStatsResponse)
async def task_stats(request: Request) -> QueueStatsResponse:
    return QueueStatsResponse(**await request.app.state.scheduler.get_stats())


@router.get("/tasks/{job_id}", response_model=JobStatusResponse)
async def task_status(job_id: str, request: Request) -> JobStatusResponse:
    view = await request.app.state.scheduler.get_status(job_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"job {job_id} not found")
    return JobStatusResponse.model_validate(view)


@router.delete("/tasks/{job_id}", response_model=CancelResponse)
async def cancel_task(job_id: str, request: Request) -> CancelResponse:
    cancelled = await request.app.state.scheduler.cancel(job_id)
    return CancelResponse(cancelled=cancelled)


async def _save(kind: ContentKind, source_id: str, body: SaveRequest | None, request: Request) -> SaveResponse:
    crawler = request.app.state.crawler
    target = make_target(kind, source_id)
    result = await crawler.save_directly(target, body.cookie if body else None)
    if not result.success:
        logger.info(
            "[api] save failed | kind=%s | source_id=%s | attempts=%d | message=%s",
            kind.value,
            target.source_id,
            result.attempts,
            result.message,
        )
        return SaveResponse(
            status="failed",
            message=result.message,
            failure_class=result.failure_class.value if result.failure_class else "network_error",
        )
    return SaveResponse(
        status="saved",
        message=result.message,
        action=result.action,
        entity=EntityResponse.model_validate(result.entity),
    )


@router.post("/articles/{source_id}/save", response_model=SaveResponse)
async def save_article(source_id: str, request: Request, body: SaveRequest | None = None) -> SaveResponse:
    return await _save(ContentKind.ARTICLE, source_id, body, request)


@router.post("/pastes/{source_id}/save", response_model=SaveResponse)
async def save_paste(source_id: str, request: Request, body: SaveRequest | None = None) -> SaveResponse:
    return await _save(ContentKind.PASTE, source_id, body, request)


@router.get("/articles/{source_id}", response_model=EntityResponse)
async def get_article(source_id: str, request: Request) -> EntityResponse:
    entity = await request.app.state.crawler.get_entity(ContentKind.ARTICLE, source_id)
    return EntityResponse.model_validate(entity)


@router.get("/pastes/{source_id}", response_model=EntityResponse)
async def get_paste(source_id: str, request: Request) -> EntityResponse:
    entity = await request.app.state.crawler.get_entity(ContentKind.PASTE, source_id)
    return EntityResponse.model_validate(entity)
