from __future__ import annotations

import json
import logging
import time
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import PlainTextResponse, Response
from rq.job import Job
from rq.registry import FailedJobRegistry, StartedJobRegistry
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from colorkey.application.remove_background_use_case import (
    RemoveBackgroundOptions,
    RemoveBackgroundUseCase,
)
from colorkey.config import settings
from colorkey.domain.errors import ConfigurationError, InvalidInputError
from colorkey.infrastructure.color_key_background_remover import ColorKeyBackgroundRemover
from colorkey.infrastructure.image_validation import ImageValidationError, validate_image_bytes
from colorkey.infrastructure.jobs import build_retry, get_queue, get_redis_connection
from colorkey.infrastructure.metrics import metrics
from colorkey.infrastructure.object_storage import S3ObjectStorage, bootstrap_bucket

logger = logging.getLogger("colorkey.api")
if not logger.handlers:
    logging.basicConfig(level=settings.log_level)

redis_connection = get_redis_connection()
queue = get_queue(redis_connection)
storage = S3ObjectStorage()
use_case = RemoveBackgroundUseCase(ColorKeyBackgroundRemover(max_side=settings.max_process_side))


@asynccontextmanager
async def lifespan(_: FastAPI):
    bootstrap_bucket(storage)
    yield


app = FastAPI(title="Color Key Background Remover", lifespan=lifespan)


RATE_LIMIT_WINDOW_SECONDS = 60.0


@dataclass
class SlidingWindow:
    timestamps: deque[float]


class RequestContextMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI) -> None:
        super().__init__(app)
        self._buckets: dict[str, SlidingWindow] = {}
        self._last_sweep = 0.0

    def _sweep(self, window_start: float) -> None:
        for client_ip in list(self._buckets):
            timestamps = self._buckets[client_ip].timestamps
            while timestamps and timestamps[0] < window_start:
                timestamps.popleft()
            if not timestamps:
                del self._buckets[client_ip]

    def allow(self, client_ip: str, now: float) -> bool:
        """Record a hit for ``client_ip`` unless it already used up the current window."""
        window_start = now - RATE_LIMIT_WINDOW_SECONDS
        if now - self._last_sweep >= RATE_LIMIT_WINDOW_SECONDS:
            self._sweep(window_start)
            self._last_sweep = now

        bucket = self._buckets.get(client_ip)
        if bucket is None:
            bucket = self._buckets[client_ip] = SlidingWindow(deque())

        while bucket.timestamps and bucket.timestamps[0] < window_start:
            bucket.timestamps.popleft()

        if len(bucket.timestamps) >= settings.rate_limit_per_minute:
            return False
        bucket.timestamps.append(now)
        return True

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        start = time.perf_counter()

        request.state.request_id = request_id
        metrics.incr("http_requests_total")

        if request.url.path.startswith("/api/"):
            client_ip = request.client.host if request.client else "unknown"
            if not self.allow(client_ip, time.time()):
                metrics.incr("rate_limited_total")
                return Response(
                    content='{"detail":"Rate limit exceeded. Try again in a minute."}',
                    status_code=429,
                    media_type="application/json",
                    headers={"x-request-id": request_id},
                )

        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        response.headers["x-request-id"] = request_id
        logger.info(
            json.dumps(
                {
                    "request_id": request_id,
                    "method": request.method,
                    "path": str(request.url.path),
                    "status": response.status_code,
                    "elapsed_ms": elapsed_ms,
                }
            )
        )
        return response


app.add_middleware(RequestContextMiddleware)


def _parse_form_number(raw: str | None, name: str, cast, default):
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"{name} must be a number") from exc


def _build_options(
    white_threshold: str | None,
    feather_radius: str | None,
    background_color: str | None,
) -> RemoveBackgroundOptions:
    threshold = _parse_form_number(white_threshold, "white_threshold", int, settings.default_white_threshold)
    radius = _parse_form_number(feather_radius, "feather_radius", float, settings.default_feather_radius)
    if radius > settings.max_feather_radius:
        raise HTTPException(
            status_code=400,
            detail=f"feather_radius must be at most {settings.max_feather_radius:g}",
        )

    options = RemoveBackgroundOptions(
        white_threshold=threshold,
        feather_radius=radius,
        background_color=background_color or None,
    )
    try:
        options.to_config()
        options.fill_rgb()
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return options


def _ensure_image_content_type(file: UploadFile) -> None:
    if not file.content_type or not file.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail=f"{file.filename or 'file'} is not an image")


def _read_and_validate_image(file: UploadFile, image_bytes: bytes) -> None:
    _ensure_image_content_type(file)
    if len(image_bytes) > settings.max_image_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"{file.filename or 'file'} is too large. Max size is {settings.max_image_bytes // (1024 * 1024)} MB",
        )
    try:
        validate_image_bytes(image_bytes, max_pixels=settings.max_image_pixels)
    except ImageValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _fetch_job(job_id: str) -> Job:
    try:
        return Job.fetch(job_id, connection=redis_connection)
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=404, detail="Job not found") from exc


def _status_payload(job: Job) -> dict:
    status = job.get_status(refresh=True)
    meta = job.meta or {}

    payload: dict[str, str | int | None] = {
        "job_id": job.id,
        "status": status,
        "download_path": None,
        "download_url": None,
        "filename": None,
        "progress": int(meta.get("progress", 0)),
        "stage": str(meta.get("stage", "queued")),
        "error": None,
        "eta_seconds": None,
    }

    if status == "failed":
        payload["error"] = str(meta.get("error") or "Job failed")

    if status == "finished":
        result = job.result or {}
        if isinstance(result, dict):
            payload["filename"] = result.get("filename")
            if result.get("key"):
                payload["download_url"] = storage.presigned_get_url(
                    result["key"], settings.signed_url_ttl_seconds
                )
        payload["download_path"] = f"/api/jobs/{job.id}/download"
        payload["progress"] = 100
        payload["stage"] = "done"
        payload["eta_seconds"] = 0
    elif status in {"started", "queued"}:
        started_at = float(meta.get("started_at_ts", 0) or 0)
        progress = int(payload["progress"] or 0)
        if started_at > 0 and progress > 0:
            elapsed = max(1, int(time.time() - started_at))
            estimated_total = max(elapsed, int((elapsed / progress) * 100))
            payload["eta_seconds"] = max(0, estimated_total - elapsed)

    return payload


def _enqueue_cleanup_job() -> str:
    job = queue.enqueue(
        "colorkey.tasks.maintenance_jobs.cleanup_expired_outputs_job",
        settings.cleanup_older_than_seconds,
        result_ttl=settings.job_result_ttl_seconds,
        failure_ttl=settings.job_failure_ttl_seconds,
        retry=build_retry(),
    )
    return job.id


def _queue_stats() -> tuple[int, int, int]:
    try:
        started_registry = StartedJobRegistry(name=queue.name, connection=redis_connection)
        failed_registry = FailedJobRegistry(name=queue.name, connection=redis_connection)
        return queue.count, len(started_registry.get_job_ids()), len(failed_registry.get_job_ids())
    except Exception:  # noqa: BLE001
        return 0, 0, 0


def _refresh_queue_gauges() -> None:
    queue_depth, queue_started, queue_failed = _queue_stats()
    metrics.set_gauges(
        {"queue_depth": queue_depth, "queue_started": queue_started, "queue_failed": queue_failed}
    )


@app.post("/api/remove-background")
async def remove_background(
    image: UploadFile | None = File(None),
    white_threshold: str | None = Form(None),
    feather_radius: str | None = Form(None),
    background_color: str | None = Form(None),
) -> Response:
    if image is None:
        raise HTTPException(status_code=400, detail="No image provided")

    options = _build_options(white_threshold, feather_radius, background_color)
    image_bytes = await image.read()
    _read_and_validate_image(image, image_bytes)

    try:
        output_png = await run_in_threadpool(use_case.execute, image_bytes, options)
    except (InvalidInputError, ConfigurationError) as exc:
        metrics.incr("images_failed_total")
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        metrics.incr("images_failed_total")
        logger.exception("background removal failed for %s", image.filename or "upload")
        raise HTTPException(status_code=500, detail="Failed to process image") from exc

    metrics.incr("images_processed_total")
    return Response(
        content=output_png,
        media_type="image/png",
        headers={"Content-Disposition": 'attachment; filename="transparent.png"'},
    )


@app.post("/api/jobs/remove-bg")
async def enqueue_remove_bg(
    file: UploadFile = File(...),
    white_threshold: str | None = Form(None),
    feather_radius: str | None = Form(None),
    background_color: str | None = Form(None),
) -> dict[str, str]:
    options = _build_options(white_threshold, feather_radius, background_color)
    image_bytes = await file.read()
    _read_and_validate_image(file, image_bytes)

    job = queue.enqueue(
        "colorkey.tasks.background_jobs.process_single_image_job",
        image_bytes,
        file.filename or "image.png",
        options.white_threshold,
        options.feather_radius,
        options.background_color,
        result_ttl=settings.job_result_ttl_seconds,
        failure_ttl=settings.job_failure_ttl_seconds,
        retry=build_retry(),
    )

    metrics.incr("jobs_submitted_total")
    return {"job_id": job.id, "status": "queued"}


@app.post("/api/jobs/remove-bg-batch")
async def enqueue_remove_bg_batch(
    files: list[UploadFile] = File(...),
    white_threshold: str | None = Form(None),
    feather_radius: str | None = Form(None),
    background_color: str | None = Form(None),
) -> dict[str, str]:
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")
    if len(files) > settings.max_batch_files:
        raise HTTPException(status_code=400, detail=f"Max {settings.max_batch_files} files per batch")

    options = _build_options(white_threshold, feather_radius, background_color)

    payload: list[dict[str, bytes | str]] = []
    for index, file in enumerate(files, start=1):
        image_bytes = await file.read()
        try:
            _read_and_validate_image(file, image_bytes)
        except HTTPException as exc:
            raise HTTPException(status_code=exc.status_code, detail=f"file-{index}: {exc.detail}") from exc
        payload.append({"name": file.filename or f"file-{index}.png", "bytes": image_bytes})

    job = queue.enqueue(
        "colorkey.tasks.background_jobs.process_batch_images_job",
        payload,
        options.white_threshold,
        options.feather_radius,
        options.background_color,
        result_ttl=settings.job_result_ttl_seconds,
        failure_ttl=settings.job_failure_ttl_seconds,
        retry=build_retry(),
    )

    metrics.incr("jobs_submitted_total")
    return {"job_id": job.id, "status": "queued"}


@app.get("/api/jobs/{job_id}")
def get_job_status(job_id: str) -> dict:
    return _status_payload(_fetch_job(job_id))


@app.post("/api/jobs/{job_id}/cancel")
def cancel_job(job_id: str) -> dict[str, str]:
    job = _fetch_job(job_id)

    status = job.get_status(refresh=True)
    if status in {"finished", "failed", "stopped", "canceled"}:
        return {"job_id": job.id, "status": status}

    job.cancel()
    metrics.incr("jobs_canceled_total")
    return {"job_id": job.id, "status": "canceled"}


@app.post("/api/jobs/{job_id}/retry")
def retry_job(job_id: str) -> dict[str, str]:
    job = _fetch_job(job_id)

    if job.get_status(refresh=True) != "failed":
        raise HTTPException(status_code=409, detail="Only failed jobs can be retried")

    try:
        requeued = queue.enqueue_call(
            func=job.func_name,
            args=job.args,
            kwargs=job.kwargs,
            result_ttl=settings.job_result_ttl_seconds,
            failure_ttl=settings.job_failure_ttl_seconds,
            retry=build_retry(),
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("requeue failed for job %s", job_id)
        raise HTTPException(status_code=500, detail="Failed to requeue job") from exc

    metrics.incr("jobs_retried_total")
    return {"job_id": requeued.id, "status": "queued"}


@app.get("/api/failed-jobs")
def list_failed_jobs(limit: int = 20) -> dict:
    registry = FailedJobRegistry(name=queue.name, connection=redis_connection)
    job_ids = registry.get_job_ids()[: max(1, min(limit, 100))]
    items: list[dict] = []

    for job_id in job_ids:
        try:
            job = Job.fetch(job_id, connection=redis_connection)
            payload = _status_payload(job)
            payload["created_at"] = (
                job.created_at.replace(tzinfo=timezone.utc).isoformat() if job.created_at else None
            )
            items.append(payload)
        except Exception:  # noqa: BLE001
            logger.warning("skipping unreadable failed job %s", job_id)
            continue

    return {"items": items}


@app.get("/api/jobs/{job_id}/download")
def download_job_result(job_id: str) -> Response:
    job = _fetch_job(job_id)

    if job.get_status(refresh=True) != "finished":
        raise HTTPException(status_code=409, detail="Job is not finished")

    result = job.result or {}
    if not isinstance(result, dict) or "key" not in result:
        raise HTTPException(status_code=500, detail="Job result key not found")

    key = result["key"]
    filename = str(result.get("filename") or "result.bin")
    content_type = str(result.get("content_type") or "application/octet-stream")

    try:
        data = storage.get_bytes(key)
    except Exception as exc:  # noqa: BLE001
        logger.exception("failed to read %s from storage", key)
        raise HTTPException(status_code=500, detail="Failed to read result from storage") from exc

    metrics.incr("downloads_total")
    return Response(
        content=data,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/admin/cleanup")
def run_cleanup() -> dict[str, str]:
    job_id = _enqueue_cleanup_job()
    return {"cleanup_job_id": job_id, "status": "queued"}


@app.get("/api/metrics")
def get_metrics() -> dict:
    _refresh_queue_gauges()
    snapshot = metrics.snapshot()
    snapshot["timestamp"] = int(datetime.now(timezone.utc).timestamp())
    return snapshot


@app.get("/api/metrics/prometheus")
def get_prometheus_metrics() -> PlainTextResponse:
    _refresh_queue_gauges()
    return PlainTextResponse(metrics.to_prometheus_text(), media_type="text/plain; version=0.0.4")


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/")
def root() -> dict[str, str]:
    return {"status": "ok", "endpoint": "/api/remove-background"}
