from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .storage import ObjectNotFound, ObjectSummary, StorageError, StoredObject

if TYPE_CHECKING:
    from botocore.client import BaseClient


_NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")


def make_s3_client(*, max_pool_connections: int = 50) -> BaseClient:
    """Create an S3 client with connection pooling.

    botocore's own retries are disabled: every call goes through RetryingTransport,
    so the retry policy lives in one place.
    """
    config = Config(
        max_pool_connections=max_pool_connections,
        retries={
            'max_attempts': 1,
            'mode': 'standard',
        },
    )
    return boto3.client('s3', config=config)


def _parse_boto3_error(error: ClientError) -> str:
    """Parse boto3 ClientError and return actionable guidance."""
    error_code = error.response.get('Error', {}).get('Code', '')
    error_message = error.response.get('Error', {}).get('Message', str(error))
    error_message_lower = error_message.lower()

    if error_code == 'NoCredentialsError' or 'credentials' in error_message_lower:
        return (
            "AWS credentials not configured.\n"
            "  Check the function's execution role, or set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY."
        )
    if error_code == 'AccessDenied' or 'access denied' in error_message_lower or 'forbidden' in error_message_lower:
        return (
            "Access denied. Check the IAM permissions:\n"
            "  - s3:GetObject and s3:DeleteObject on the ingress bucket\n"
            "  - s3:PutObject and s3:ListBucket on the processed bucket"
        )
    if error_code == 'NoSuchBucket' or 'does not exist' in error_message_lower:
        return (
            "S3 bucket does not exist or is not accessible.\n"
            "  Verify DARKROOM_BUCKET_MAPPINGS and the bucket names."
        )
    if error_code in ('SlowDown', 'RequestTimeout', 'ServiceUnavailable', 'InternalError'):
        return "Transient S3 error; the request can be retried."

    return f"Error code: {error_code}"


def _storage_error(action: str, bucket: str, key: str, e: Exception) -> StorageError:
    if isinstance(e, ClientError):
        code = e.response.get('Error', {}).get('Code', '')
        msg = f"Failed to {action} s3://{bucket}/{key}\n{_parse_boto3_error(e)}\nError: {e}"
        if code in _NOT_FOUND_CODES:
            return ObjectNotFound(msg)
        return StorageError(msg)
    return StorageError(f"Unexpected error during {action} s3://{bucket}/{key}: {e}")


class S3Store:
    """ObjectStore backed by boto3. The client is thread-safe and shared across uploads."""

    def __init__(self, client: BaseClient | None = None) -> None:
        self._client = client

    @property
    def client(self) -> BaseClient:
        if self._client is None:
            self._client = make_s3_client()
        return self._client

    def get(self, bucket: str, key: str) -> StoredObject:
        try:
            resp = self.client.get_object(Bucket=bucket, Key=key)
            body = resp.get('Body')
            if body is None:
                raise StorageError(f"Empty S3 body for s3://{bucket}/{key}")
            data = body.read()
        except (ClientError, BotoCoreError) as e:
            raise _storage_error("download", bucket, key, e) from e
        return StoredObject(
            bucket=bucket,
            key=key,
            data=data,
            content_type=resp.get('ContentType'),
            metadata=dict(resp.get('Metadata') or {}),
        )

    def list(self, bucket: str, prefix: str, *, max_keys: int) -> list[ObjectSummary]:
        try:
            resp = self.client.list_objects_v2(Bucket=bucket, Prefix=prefix, MaxKeys=max_keys)
        except (ClientError, BotoCoreError) as e:
            raise _storage_error("list", bucket, prefix, e) from e
        return [
            ObjectSummary(key=obj['Key'], size=int(obj.get('Size', 0)), last_modified=obj.get('LastModified'))
            for obj in resp.get('Contents') or []
        ]

    def put(
        self,
        bucket: str,
        key: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        params = {'Bucket': bucket, 'Key': key, 'Body': data, 'ContentType': content_type}
        if cache_control:
            params['CacheControl'] = cache_control
        if metadata:
            params['Metadata'] = metadata
        try:
            self.client.put_object(**params)
        except (ClientError, BotoCoreError) as e:
            raise _storage_error("upload", bucket, key, e) from e

    def copy(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        *,
        content_type: str | None = None,
        cache_control: str | None = None,
        content_disposition: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        params = {
            'Bucket': dst_bucket,
            'Key': dst_key,
            'CopySource': f"{src_bucket}/{quote(src_key)}",
        }
        if metadata is not None:
            # REPLACE drops the source's headers, so content type has to be restated
            params['MetadataDirective'] = 'REPLACE'
            params['Metadata'] = metadata
            params['ContentType'] = content_type or 'application/octet-stream'
        elif content_type:
            params['ContentType'] = content_type
        if cache_control:
            params['CacheControl'] = cache_control
        if content_disposition:
            params['ContentDisposition'] = content_disposition
        try:
            self.client.copy_object(**params)
        except (ClientError, BotoCoreError) as e:
            raise _storage_error("copy", src_bucket, src_key, e) from e

    def delete(self, bucket: str, key: str) -> None:
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise _storage_error("delete", bucket, key, e) from e
