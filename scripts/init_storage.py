from __future__ import annotations

import argparse
import logging
import sys

from colorkey.config import settings
from colorkey.infrastructure.object_storage import S3ObjectStorage, bootstrap_bucket


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the result bucket if it does not exist")
    parser.add_argument("--check-url", action="store_true", help="also print a presigned URL to confirm signing works")
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level)
    storage = S3ObjectStorage()
    if not bootstrap_bucket(storage):
        print(f"bucket-failed:{storage.bucket}")
        return 1

    print(f"bucket-ready:{storage.bucket}")
    if args.check_url:
        print(storage.presigned_get_url("jobs/ping/ping.png", settings.signed_url_ttl_seconds))
    return 0


if __name__ == "__main__":
    sys.exit(main())
