"""
S3 attachment store for order images. Used when S3_BUCKET is set.
"""
import asyncio
import uuid
from typing import Any

import boto3

from fulfillment.config import settings
from fulfillment.stages import ImageType

_s3_client: Any = None


def _get_client():
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client("s3", region_name=settings.aws_region)
    return _s3_client


class S3AttachmentStore:
    def __init__(self, bucket: str | None = None) -> None:
        self.bucket = bucket or settings.s3_bucket

    async def put(self, order_id: str, image_type: ImageType, blob: bytes, content_type: str) -> str:
        """Upload blob (boto3 in a thread) and return its object key."""
        key = f"orders/{order_id}/{image_type.value}/{uuid.uuid4().hex}"
        await asyncio.to_thread(
            _get_client().put_object,
            Bucket=self.bucket,
            Key=key,
            Body=blob,
            ContentType=content_type,
        )
        return key

    async def delete(self, blob_ref: str) -> None:
        await asyncio.to_thread(_get_client().delete_object, Bucket=self.bucket, Key=blob_ref)
