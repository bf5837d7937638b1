from __future__ import annotations

import argparse

from colorkey.config import settings
from colorkey.tasks.maintenance_jobs import cleanup_expired_outputs_job


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete stored job results older than a cutoff")
    parser.add_argument("--older-than", type=int, default=settings.cleanup_older_than_seconds)
    args = parser.parse_args()
    print(cleanup_expired_outputs_job(args.older_than))
