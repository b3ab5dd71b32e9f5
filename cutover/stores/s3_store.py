"""S3-compatible object store (boto3), targeting MinIO in practice."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..errors import TransientStoreError
from .base import ObjectInfo, ObjectStore
from .retry import retried

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


@contextmanager
def translate_errors(operation: str):
    """Map network failures and throttling onto TransientStoreError."""
    try:
        yield
    except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
        raise TransientStoreError(f"S3 {operation} failed: {e}") from e
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code in ("SlowDown", "RequestTimeout", "ServiceUnavailable", "InternalError"):
            raise TransientStoreError(f"S3 {operation} failed: {code}") from e
        raise


def _is_not_found(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code", "") in NOT_FOUND_CODES


class S3ObjectStore(ObjectStore):
    """
    Object store on S3 or MinIO.

    Path-style addressing is used so a bare MinIO endpoint works without
    bucket DNS.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = "us-east-1",
        **kwargs
    ):
        super().__init__(bucket, **kwargs)
        self.endpoint_url = endpoint_url
        self.region = region
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(
                s3={"addressing_style": "path"},
                connect_timeout=10,
                read_timeout=60,
                retries={"max_attempts": 1},
            ),
        )

    @retried
    def ping(self) -> bool:
        with translate_errors("ping"):
            self.client.list_buckets()
        return True

    @retried
    def ensure_bucket(self) -> bool:
        with translate_errors("ensure_bucket"):
            try:
                self.client.head_bucket(Bucket=self.bucket)
                return False
            except ClientError as e:
                if not _is_not_found(e):
                    raise
            logger.info(f"Creating bucket {self.bucket}")
            if self.region and self.region != "us-east-1":
                self.client.create_bucket(
                    Bucket=self.bucket,
                    CreateBucketConfiguration={"LocationConstraint": self.region},
                )
            else:
                self.client.create_bucket(Bucket=self.bucket)
            return True

    @retried
    def put(self, key, data, content_type="application/octet-stream") -> ObjectInfo:
        with translate_errors(f"put {key}"):
            response = self.client.put_object(
                Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
            )
        return ObjectInfo(key=key, size=len(data), etag=response.get("ETag", "").strip('"') or None)

    @retried
    def get(self, key) -> bytes:
        with translate_errors(f"get {key}"):
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

    @retried
    def head(self, key) -> Optional[ObjectInfo]:
        with translate_errors(f"head {key}"):
            try:
                response = self.client.head_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if _is_not_found(e):
                    return None
                raise
        return ObjectInfo(
            key=key,
            size=response.get("ContentLength", 0),
            etag=response.get("ETag", "").strip('"') or None,
        )

    def list(self, prefix="") -> Iterator[ObjectInfo]:
        paginator = self.client.get_paginator("list_objects_v2")
        with translate_errors(f"list {prefix}"):
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    yield ObjectInfo(
                        key=obj["Key"],
                        size=obj.get("Size", 0),
                        etag=obj.get("ETag", "").strip('"') or None,
                    )

    def url_for(self, key) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return super().url_for(key)
