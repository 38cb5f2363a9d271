"""In-memory job scheduler with bounded concurrency and delayed retries."""
import asyncio
import contextlib
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import pydantic

from luogu_archive.config import settings
from luogu_archive.errors import CrawlFailed, NetworkError, ValidationError
from luogu_archive.models.content import ContentKind
from luogu_archive.models.job import (
    PRIORITY_RANK,
    JobError,
    JobEvent,
    JobNotification,
    JobStatus,
    JobStatusView,
    JobType,
    TaskJob,
)
from luogu_archive.repositories.base import AbstractJobRepository
from luogu_archive.schemas.tasks import BatchSavePayload, CleanupPayload, SavePayload
from luogu_archive.services.crawler_service import CrawlerService, make_target

logger = logging.getLogger(__name__)

Handler = Callable[[TaskJob], Awaitable[dict]]
Subscriber = Callable[[JobNotification], None]

_MAX_ERROR_LENGTH = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


def project_error(exc: BaseException) -> JobError:
    """Reduce an exception to the {message, classification} pair that is safe to persist."""
    if isinstance(exc, CrawlFailed):
        message, classification = exc.message, exc.failure_class.value
    elif isinstance(exc, NetworkError):
        message, classification = str(exc), "network_error"
    elif isinstance(exc, ValidationError):
        message, classification = str(exc), "validation_error"
    else:
        message, classification = str(exc) or type(exc).__name__, "internal_error"
    return JobError(message=message[:_MAX_ERROR_LENGTH], classification=classification)


class TaskScheduler:
    def __init__(
        self,
        repository: AbstractJobRepository,
        crawler: CrawlerService,
        *,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
        retry_base_delay: float | None = None,
        retry_delay_cap: float | None = None,
        bootstrap_limit: int | None = None,
        batch_item_delay: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._crawler = crawler
        self._concurrency = settings.QUEUE_CONCURRENCY if concurrency is None else concurrency
        if self._concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._poll_interval = settings.QUEUE_POLL_INTERVAL if poll_interval is None else poll_interval
        self._max_attempts = settings.JOB_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self._retry_base_delay = (
            settings.RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        )
        self._retry_delay_cap = settings.RETRY_DELAY_CAP if retry_delay_cap is None else retry_delay_cap
        self._bootstrap_limit = settings.BOOTSTRAP_LIMIT if bootstrap_limit is None else bootstrap_limit
        self._batch_item_delay = (
            settings.BATCH_ITEM_DELAY if batch_item_delay is None else batch_item_delay
        )
        self._clock = clock

        self._queue: list[TaskJob] = []
        self._in_flight: dict[str, TaskJob] = {}
        self._tasks: set[asyncio.Task] = set()
        self._subscribers: list[Subscriber] = []
        self._running = False
        self._loop_task: asyncio.Task | None = None

        self._handlers: dict[str, Handler] = {}
        self._schemas: dict[str, type[pydantic.BaseModel] | None] = {}
        self.register_handler(JobType.ARTICLE_SAVE, self._handle_article_save, SavePayload)
        self.register_handler(JobType.PASTE_SAVE, self._handle_paste_save, SavePayload)
        self.register_handler(JobType.BATCH_SAVE, self._handle_batch_save, BatchSavePayload)
        self.register_handler(JobType.CLEANUP, self._handle_cleanup, CleanupPayload)

    def register_handler(
        self,
        job_type: JobType | str,
        handler: Handler,
        payload_schema: type[pydantic.BaseModel] | None = None,
    ) -> None:
        key = job_type.value if isinstance(job_type, JobType) else str(job_type)
        self._handlers[key] = handler
        self._schemas[key] = payload_schema

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a lifecycle listener. Returns a callable that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, event: JobEvent, job: TaskJob) -> None:
        notification = JobNotification(
            event=event,
            job_id=job.id,
            job_type=job.job_type,
            status=job.status.value,
            snapshot=job.to_view(),
        )
        for callback in list(self._subscribers):
            try:
                callback(notification)
            except Exception:
                logger.exception("[queue] subscriber failed | event=%s | job=%s", event.value, job.id)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def processing_count(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._dispatch_loop())
        logger.info("[queue] started | concurrency=%d", self._concurrency)

    async def stop(self, wait: bool = True) -> None:
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        if wait and self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("[queue] stopped")

    async def initialize(self) -> None:
        await self.start()
        await self.bootstrap()

    async def close(self) -> None:
        await self.stop()

    async def bootstrap(self) -> int:
        """Reload persisted pending jobs. Jobs left in `processing` are not resumed."""
        jobs = await asyncio.to_thread(self._repository.find_pending_jobs, self._bootstrap_limit)
        known = {job.id for job in self._queue} | set(self._in_flight)
        loaded = 0
        for job in jobs:
            if job.id in known:
                continue
            if job.job_type not in self._handlers:
                logger.warning("[queue] skipping persisted job of unknown type | id=%s | type=%s", job.id, job.job_type)
                continue
            self._queue.append(job)
            loaded += 1
        logger.info("[queue] loaded %d pending jobs from store", loaded)
        return loaded

    def _validate_payload(self, job_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        schema = self._schemas.get(job_type)
        if schema is None:
            return dict(payload)
        try:
            model = schema.model_validate(payload)
        except pydantic.ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ValidationError(f"invalid payload for {job_type}: {details}") from exc
        return model.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def submit(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        *,
        max_attempts: int | None = None,
        priority: str = "normal",
    ) -> str:
        key = job_type.value if isinstance(job_type, JobType) else str(job_type)
        if key not in self._handlers:
            raise ValidationError(f"unknown job type: {key!r}")
        if priority not in PRIORITY_RANK:
            raise ValidationError(f"unknown priority: {priority!r}")
        if max_attempts is not None and max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        if not isinstance(payload or {}, dict):
            raise ValidationError("payload must be an object")

        job = TaskJob(
            id=f"task_{uuid.uuid4().hex}",
            job_type=key,
            payload=self._validate_payload(key, payload or {}),
            priority=priority,
            max_attempts=max_attempts or self._max_attempts,
        )
        await asyncio.to_thread(self._repository.create_job, job)
        self._queue.append(job)
        logger.info("[queue] job added | id=%s | type=%s", job.id, job.job_type)
        self._notify(JobEvent.ADDED, job)
        return job.id

    async def get_status(self, job_id: str) -> JobStatusView | None:
        job = self._in_flight.get(job_id)
        if job is None:
            job = next((j for j in self._queue if j.id == job_id), None)
        if job is not None:
            return job.to_view()
        return await asyncio.to_thread(self._repository.find_job, job_id)

    async def get_stats(self) -> dict[str, int]:
        completed, failed = await asyncio.gather(
            asyncio.to_thread(self._repository.count_jobs_by_status, JobStatus.COMPLETED.value),
            asyncio.to_thread(self._repository.count_jobs_by_status, JobStatus.FAILED.value),
        )
        return {
            "waiting": sum(1 for job in self._queue if job.status is JobStatus.PENDING),
            "active": len(self._in_flight),
            "completed": completed,
            "failed": failed,
        }

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job that is still waiting in the queue. In-flight and finished jobs return False."""
        for index, job in enumerate(self._queue):
            if job.id != job_id or job.status is not JobStatus.PENDING:
                continue
            del self._queue[index]
            job.status = JobStatus.CANCELLED
            job.cancelled_at = _now()
            await self._persist(job, "status", "cancelled_at")
            logger.info("[queue] job cancelled | id=%s", job.id)
            self._notify(JobEvent.CANCELLED, job)
            return True
        if job_id in self._in_flight:
            logger.info("[queue] cancel refused, job in flight | id=%s", job_id)
        return False

    async def _dispatch_loop(self) -> None:
        while self._running:
            self._dispatch_ready()
            await asyncio.sleep(self._poll_interval)

    def _pop_ready(self) -> TaskJob | None:
        now = self._clock()
        best: int | None = None
        for index, job in enumerate(self._queue):
            if job.status is not JobStatus.PENDING or job.not_before > now:
                continue
            if best is None or job.priority_rank > self._queue[best].priority_rank:
                best = index
        return self._queue.pop(best) if best is not None else None

    def _dispatch_ready(self) -> int:
        started = 0
        while len(self._in_flight) < self._concurrency:
            job = self._pop_ready()
            if job is None:
                break
            self._in_flight[job.id] = job
            task = asyncio.create_task(self._process(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    async def _process(self, job: TaskJob) -> None:
        try:
            job.status = JobStatus.PROCESSING
            job.started_at = _now()
            job.progress = 10
            await self._persist(job, "status", "progress", "started_at")
            logger.info("[queue] job started | id=%s | type=%s | attempt=%d", job.id, job.job_type, job.attempts + 1)
            self._notify(JobEvent.STARTED, job)

            try:
                result = await self._handlers[job.job_type](job)
            except Exception as exc:
                await self._handle_failure(job, exc)
                return

            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.completed_at = _now()
            job.result = result or {}
            job.error = None
            await self._persist(job, "status", "progress", "completed_at", "result", "error")
            logger.info("[queue] job completed | id=%s | type=%s", job.id, job.job_type)
            self._notify(JobEvent.COMPLETED, job)
        finally:
            self._in_flight.pop(job.id, None)

    async def _handle_failure(self, job: TaskJob, exc: Exception) -> None:
        job.attempts += 1
        job.error = project_error(exc)
        if job.error.classification == "internal_error":
            logger.exception("[queue] job crashed | id=%s | attempt=%d/%d", job.id, job.attempts, job.max_attempts)
        else:
            logger.warning(
                "[queue] job failed | id=%s | attempt=%d/%d | class=%s | error=%s",
                job.id,
                job.attempts,
                job.max_attempts,
                job.error.classification,
                job.error.message,
            )

        if job.attempts >= job.max_attempts:
            job.status = JobStatus.FAILED
            job.failed_at = job.completed_at = _now()
            await self._persist(job, "status", "attempts", "failed_at", "completed_at", "error")
            self._notify(JobEvent.FAILED, job)
            return

        delay = min(self._retry_base_delay * 2**job.attempts, self._retry_delay_cap)
        job.status = JobStatus.PENDING
        job.progress = 0
        await self._persist(job, "status", "progress", "attempts", "error")

        duplicate = next(
            (
                queued
                for queued in self._queue
                if queued.job_type == job.job_type and queued.payload == job.payload
            ),
            None,
        )
        if duplicate is not None:
            logger.info(
                "[queue] retry dropped, equivalent job already queued | id=%s | duplicate=%s",
                job.id,
                duplicate.id,
            )
            return

        job.not_before = self._clock() + delay
        self._queue.append(job)
        logger.info("[queue] retry scheduled | id=%s | delay=%.1fs | attempts=%d", job.id, delay, job.attempts)
        self._notify(JobEvent.RETRY_SCHEDULED, job)

    async def _persist(self, job: TaskJob, *names: str) -> None:
        fields: dict[str, Any] = {}
        for name in names:
            if name == "error":
                fields["error_message"] = job.error.message if job.error else None
                fields["error_classification"] = job.error.classification if job.error else None
            elif name == "status":
                fields["status"] = job.status.value
            else:
                fields[name] = getattr(job, name)
        try:
            await asyncio.to_thread(self._repository.update_job_status, job.id, fields)
        except Exception:
            logger.exception("[queue] failed to persist job state | id=%s | status=%s", job.id, job.status.value)

    async def _save(self, job: TaskJob, kind: ContentKind) -> dict:
        payload = SavePayload.model_validate(job.payload)
        target = make_target(kind, payload.source_id)
        job.progress = 30
        outcome = await self._crawler.crawl(target, payload.cookie)
        if not outcome.success:
            raise CrawlFailed(outcome.message, outcome.failure_class)
        job.progress = 70
        entity, action = await self._crawler.upsert(target, outcome.record, outcome.metadata)
        return {
            "kind": kind.value,
            "source_id": target.source_id,
            "title": entity.title,
            "url": target.source_url,
            "status": entity.status,
            "action": action,
        }

    async def _handle_article_save(self, job: TaskJob) -> dict:
        return await self._save(job, ContentKind.ARTICLE)

    async def _handle_paste_save(self, job: TaskJob) -> dict:
        return await self._save(job, ContentKind.PASTE)

    async def _handle_batch_save(self, job: TaskJob) -> dict:
        payload = BatchSavePayload.model_validate(job.payload)
        total = len(payload.source_ids)
        results = []
        for index, source_id in enumerate(payload.source_ids, start=1):
            logger.info("[queue] batch save [%d/%d] | kind=%s | source_id=%s", index, total, payload.kind.value, source_id)
            saved = await self._crawler.save_directly(make_target(payload.kind, source_id), payload.cookie)
            entry: dict[str, Any] = {"source_id": source_id, "success": saved.success}
            if saved.success:
                entry["title"] = saved.entity.title
                entry["action"] = saved.action
            else:
                entry["error"] = saved.message
                entry["classification"] = saved.failure_class.value if saved.failure_class else "network_error"
            results.append(entry)
            job.progress = round(index / total * 100)
            if index < total and self._batch_item_delay > 0:
                await asyncio.sleep(self._batch_item_delay)

        succeeded = sum(1 for r in results if r["success"])
        return {"total": total, "success": succeeded, "failed": total - succeeded, "results": results}

    async def _handle_cleanup(self, job: TaskJob) -> dict:
        payload = CleanupPayload.model_validate(job.payload)
        now = _now()
        cutoff = now - timedelta(days=payload.older_than_days)
        deleted = await asyncio.to_thread(self._repository.delete_completed_jobs_before, cutoff)
        job.progress = 50
        reconciled = 0
        if payload.reconcile_stranded:
            reconciled = await asyncio.to_thread(
                self._repository.fail_stranded_jobs,
                now - timedelta(minutes=payload.stranded_after_minutes),
                set(self._in_flight),
                "stranded in processing; reconciled by cleanup",
            )
        logger.info("[queue] cleanup done | deleted=%d | reconciled=%d", deleted, reconciled)
        return {"deleted_count": deleted, "reconciled_count": reconciled, "cutoff": cutoff.isoformat()}
