"""S3-compatible object store backed by boto3."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from capsule.errors import TransientNetworkError
from capsule.providers.storage.base import ObjectStore, StoredObject

logger = logging.getLogger(__name__)


class S3ObjectStore(ObjectStore):
    def __init__(
        self,
        bucket: str,
        public_base_url: str | None = None,
        client: Any | None = None,
        endpoint_url: str | None = None,
    ) -> None:
        self._bucket = bucket
        self._client = client or boto3.Session().client("s3", endpoint_url=endpoint_url)
        self._public_base_url = (
            public_base_url.rstrip("/")
            if public_base_url
            else f"https://{bucket}.s3.amazonaws.com"
        )

    def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000, immutable",
            )
        except (BotoCoreError, ClientError) as exc:
            raise TransientNetworkError(f"Failed to upload {key}: {exc}") from exc
        return StoredObject(key=key, url=self._url(key), size=len(data))

    def list(self, prefix: str) -> Sequence[StoredObject]:
        objects: list[StoredObject] = []
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append(
                        StoredObject(
                            key=item["Key"],
                            url=self._url(item["Key"]),
                            size=int(item.get("Size", 0)),
                        )
                    )
        except (BotoCoreError, ClientError) as exc:
            raise TransientNetworkError(f"Failed to list {prefix}: {exc}") from exc
        return objects

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise TransientNetworkError(f"Failed to delete {key}: {exc}") from exc

    def _url(self, key: str) -> str:
        return f"{self._public_base_url}/{key}"
