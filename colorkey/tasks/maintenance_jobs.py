from __future__ import annotations

import logging
import time

from colorkey.infrastructure.object_storage import JOBS_PREFIX, S3ObjectStorage

logger = logging.getLogger("colorkey.maintenance")

storage = S3ObjectStorage()


def cleanup_expired_outputs_job(older_than_seconds: int) -> dict[str, int]:
    """Delete stored job results whose last modification is older than the cutoff."""
    now = int(time.time())
    deleted = 0
    scanned = 0

    for item in storage.list_objects(prefix=JOBS_PREFIX):
        scanned += 1
        age_seconds = now - int(item.last_modified.timestamp())
        if age_seconds < older_than_seconds:
            continue
        storage.delete_object(item.key)
        deleted += 1

    logger.info("cleanup scanned=%d deleted=%d", scanned, deleted)
    return {"scanned": scanned, "deleted": deleted}
