"""S3 object storage for uploaded documents."""

import asyncio
import logging
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from mcacrm.config import settings
from mcacrm.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class S3Storage:
    """
    Thin async wrapper over a boto3 S3 client.

    boto3 is blocking, so every call runs in a worker thread.
    """

    def __init__(self, bucket: Optional[str] = None, client=None):
        self.bucket = bucket or settings.S3_DOCUMENTS_BUCKET
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
                region_name=settings.AWS_REGION,
                config=BotoConfig(
                    connect_timeout=settings.S3_TIMEOUT_SECONDS,
                    read_timeout=settings.S3_TIMEOUT_SECONDS,
                    retries={"max_attempts": 1},
                ),
            )
            logger.info(f"S3 client initialized ({settings.AWS_REGION}, bucket {self.bucket})")
        return self._client

    def object_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{settings.AWS_REGION}.amazonaws.com/{key}"

    async def _call(self, operation: str, **kwargs) -> Any:
        method = getattr(self.client, operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 {operation} failed: {e}")
            raise ExternalServiceError("s3", str(e)) from e

    async def upload_bytes(self, key: str, data: bytes, content_type: str,
                           metadata: Optional[Dict[str, str]] = None) -> str:
        await self._call(
            "put_object",
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            Metadata=metadata or {},
        )
        logger.info(f"Stored {key} in S3 ({len(data)} bytes)")
        return self.object_url(key)

    async def download_bytes(self, key: str, bucket: Optional[str] = None) -> bytes:
        response = await self._call("get_object", Bucket=bucket or self.bucket, Key=key)
        try:
            return await asyncio.to_thread(response["Body"].read)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 read of {key} failed: {e}")
            raise ExternalServiceError("s3", str(e)) from e

    async def delete_object(self, key: str, bucket: Optional[str] = None):
        await self._call("delete_object", Bucket=bucket or self.bucket, Key=key)
        logger.info(f"Deleted {key} from S3")

    async def presigned_url(self, key: str, bucket: Optional[str] = None,
                            filename: Optional[str] = None,
                            expires_in: Optional[int] = None) -> str:
        params = {"Bucket": bucket or self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f'inline; filename="{filename}"'
        return await self._call(
            "generate_presigned_url",
            ClientMethod="get_object",
            Params=params,
            ExpiresIn=expires_in or settings.S3_PRESIGNED_URL_EXPIRY,
        )

    async def check_bucket(self) -> Dict[str, Any]:
        try:
            await self._call("head_bucket", Bucket=self.bucket)
            return {"status": "OK", "bucket": self.bucket}
        except ExternalServiceError as e:
            return {"status": "ERROR", "bucket": self.bucket, "error": e.message}


storage = S3Storage()
