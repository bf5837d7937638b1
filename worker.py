from __future__ import annotations

import logging
import multiprocessing
import threading
import time

from rq import Queue, Worker

from colorkey.config import settings
from colorkey.infrastructure.jobs import QUEUE_NAME, get_queue, get_redis_connection
from colorkey.infrastructure.object_storage import S3ObjectStorage, bootstrap_bucket

logger = logging.getLogger("colorkey.worker")


class CleanupScheduler(threading.Thread):
    def __init__(self, queue: Queue) -> None:
        super().__init__(daemon=True)
        self._queue = queue

    def run(self) -> None:
        while True:
            if settings.cleanup_enabled:
                self._queue.enqueue(
                    "colorkey.tasks.maintenance_jobs.cleanup_expired_outputs_job",
                    settings.cleanup_older_than_seconds,
                    result_ttl=settings.job_result_ttl_seconds,
                    failure_ttl=settings.job_failure_ttl_seconds,
                )
            time.sleep(max(60, settings.cleanup_interval_seconds))


def run_worker_instance(index: int) -> None:
    connection = get_redis_connection()
    worker = Worker([QUEUE_NAME], connection=connection, name=f"colorkey-worker-{index}")
    worker.work()


if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)

    bootstrap_bucket(S3ObjectStorage())

    CleanupScheduler(get_queue()).start()

    worker_count = max(1, settings.worker_concurrency)
    logger.info("starting %d worker(s) on queue %s", worker_count, QUEUE_NAME)
    if worker_count == 1:
        run_worker_instance(1)
    else:
        processes: list[multiprocessing.Process] = []
        for idx in range(worker_count):
            process = multiprocessing.Process(target=run_worker_instance, args=(idx + 1,))
            process.start()
            processes.append(process)
        for process in processes:
            process.join()
