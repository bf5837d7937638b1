from __future__ import annotations

import io
import time
import traceback
import zipfile

from rq import get_current_job

from colorkey.application.remove_background_use_case import (
    RemoveBackgroundOptions,
    RemoveBackgroundUseCase,
)
from colorkey.config import settings
from colorkey.domain.color_key import STAGE_ALPHA, STAGE_DISTANCE, STAGE_FLOOD_FILL
from colorkey.infrastructure.color_key_background_remover import ColorKeyBackgroundRemover
from colorkey.infrastructure.metrics import metrics
from colorkey.infrastructure.object_storage import S3ObjectStorage, job_result_key, safe_stem

BATCH_FILENAME = "removed-backgrounds.zip"

STAGE_PROGRESS = {
    STAGE_FLOOD_FILL: 20,
    STAGE_DISTANCE: 40,
    STAGE_ALPHA: 70,
}

use_case = RemoveBackgroundUseCase(ColorKeyBackgroundRemover(max_side=settings.max_process_side))
storage = S3ObjectStorage()


def _update_job_meta(**entries: str | int | float) -> None:
    job = get_current_job()
    if not job:
        return
    job.meta.update(entries)
    job.save_meta()


def _archive_name(name: str, index: int, used: set[str]) -> str:
    stem = safe_stem(name, f"image-{index}")
    candidate = f"{stem}.png"
    suffix = index
    while candidate in used:
        candidate = f"{stem}-{suffix}.png"
        suffix += 1
    used.add(candidate)
    return candidate


def _report_stage(stage: str) -> None:
    _update_job_meta(progress=STAGE_PROGRESS.get(stage, 50), stage=stage)


def process_single_image_job(
    image_bytes: bytes,
    original_name: str,
    white_threshold: int,
    feather_radius: float,
    background_color: str | None = None,
) -> dict[str, str]:
    job = get_current_job()
    job_id = job.id if job else "sync"
    _update_job_meta(progress=5, stage="prepare", started_at_ts=time.time())

    try:
        options = RemoveBackgroundOptions(
            white_threshold=white_threshold,
            feather_radius=feather_radius,
            background_color=background_color,
        )
        output_png = use_case.execute(image_bytes, options, on_stage=_report_stage)
        metrics.incr("images_processed_total")

        key = job_result_key(job_id, f"{safe_stem(original_name, 'result')}.png")
        _update_job_meta(progress=80, stage="upload")
        storage.put_bytes(key, output_png, "image/png")
        _update_job_meta(progress=100, stage="done")
    except Exception as exc:  # noqa: BLE001
        metrics.incr("images_failed_total")
        _update_job_meta(progress=0, stage="failed", error=str(exc), traceback=traceback.format_exc())
        raise

    return {
        "kind": "single",
        "key": key,
        "filename": key.rsplit("/", 1)[-1],
        "content_type": "image/png",
    }


def process_batch_images_job(
    files_payload: list[dict[str, bytes | str]],
    white_threshold: int,
    feather_radius: float,
    background_color: str | None = None,
) -> dict[str, str]:
    job = get_current_job()
    job_id = job.id if job else "sync"
    total = max(1, len(files_payload))
    _update_job_meta(progress=3, stage="prepare", total=total, current=0, started_at_ts=time.time())

    try:
        options = RemoveBackgroundOptions(
            white_threshold=white_threshold,
            feather_radius=feather_radius,
            background_color=background_color,
        )
        output_buffer = io.BytesIO()
        used_names: set[str] = set()

        with zipfile.ZipFile(output_buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
            for index, payload in enumerate(files_payload, start=1):
                name = str(payload.get("name") or f"image-{index}.png")
                image_bytes = payload["bytes"]
                if not isinstance(image_bytes, bytes):
                    raise ValueError(f"Invalid payload bytes for {name}")

                output_png = use_case.execute(image_bytes, options)
                metrics.incr("images_processed_total")
                archive.writestr(_archive_name(name, index, used_names), output_png)
                progress = int((index / total) * 90)
                _update_job_meta(progress=progress, stage="processing", total=total, current=index)

        key = job_result_key(job_id, BATCH_FILENAME)
        _update_job_meta(progress=95, stage="upload")
        storage.put_bytes(key, output_buffer.getvalue(), "application/zip")
        _update_job_meta(progress=100, stage="done")
    except Exception as exc:  # noqa: BLE001
        metrics.incr("images_failed_total")
        _update_job_meta(progress=0, stage="failed", error=str(exc), traceback=traceback.format_exc())
        raise

    return {
        "kind": "batch",
        "key": key,
        "filename": BATCH_FILENAME,
        "content_type": "application/zip",
    }
