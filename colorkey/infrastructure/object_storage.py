from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from urllib.parse import urlparse, urlunparse

from botocore.client import Config
from botocore.exceptions import ClientError
import boto3

from colorkey.config import Settings, settings

JOBS_PREFIX = "jobs/"

logger = logging.getLogger("colorkey.storage")


@dataclass
class StoredObject:
    key: str
    last_modified: datetime


def safe_stem(name: str, fallback: str) -> str:
    stem = Path(name).stem
    safe = "".join(ch for ch in stem if ch.isalnum() or ch in ("-", "_"))
    return safe or fallback


def job_result_key(job_id: str, filename: str) -> str:
    return f"{JOBS_PREFIX}{job_id}/{filename}"


class S3ObjectStorage:
    def __init__(self, config: Settings = settings) -> None:
        if not config.s3_access_key or not config.s3_secret_key:
            raise RuntimeError("S3_ACCESS_KEY and S3_SECRET_KEY are required")

        self._bucket = config.s3_bucket
        self._public_endpoint_url = config.s3_public_endpoint_url
        self._client = boto3.client(
            "s3",
            endpoint_url=config.s3_endpoint_url,
            region_name=config.s3_region,
            aws_access_key_id=config.s3_access_key,
            aws_secret_access_key=config.s3_secret_key,
            use_ssl=config.s3_secure,
            config=Config(signature_version="s3v4", s3={"addressing_style": config.s3_addressing_style}),
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def ensure_bucket(self) -> None:
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchBucket"}:
                logger.info("creating bucket %s", self._bucket)
                self._client.create_bucket(Bucket=self._bucket)
                return
            raise

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        self._client.put_object(Bucket=self._bucket, Key=key, Body=data, ContentType=content_type)

    def get_bytes(self, key: str) -> bytes:
        response = self._client.get_object(Bucket=self._bucket, Key=key)
        body = response["Body"].read()
        response["Body"].close()
        return body

    def delete_object(self, key: str) -> None:
        self._client.delete_object(Bucket=self._bucket, Key=key)

    def list_objects(self, prefix: str = JOBS_PREFIX) -> list[StoredObject]:
        paginator = self._client.get_paginator("list_objects_v2")
        items: list[StoredObject] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                items.append(StoredObject(key=obj["Key"], last_modified=obj["LastModified"]))
        return items

    def presigned_get_url(self, key: str, ttl_seconds: int) -> str:
        url = self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=ttl_seconds,
        )
        return self._to_public_url(url)

    def _to_public_url(self, signed_url: str) -> str:
        if not self._public_endpoint_url:
            return signed_url

        signed = urlparse(signed_url)
        public = urlparse(self._public_endpoint_url)
        return urlunparse(
            (
                public.scheme or signed.scheme,
                public.netloc or signed.netloc,
                signed.path,
                signed.params,
                signed.query,
                signed.fragment,
            )
        )


def bootstrap_bucket(target: S3ObjectStorage) -> bool:
    """Create the bucket if needed. Returns False when storage is unreachable."""
    try:
        target.ensure_bucket()
    except Exception as exc:  # noqa: BLE001
        logger.warning("storage init failed for bucket %s: %s", target.bucket, exc)
        return False
    return True
