"""S3-compatible object storage for JSON documents using MinIO.

Holds the durable training corpus when the minio training backend is
selected. Objects are small JSON documents read and replaced whole.

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import io
import logging

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from docparse.shared.config import Settings

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


class StorageResult(BaseModel):
    """Result of storage operation.

    Attributes:
        success: Whether operation succeeded
        object_name: Full object path in storage
        bucket: Bucket name
        error: Error message if operation failed
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    error: str | None = None
    etag: str | None = None
    size: int | None = None


class StorageService:
    """JSON document storage on an on-premises MinIO deployment."""

    def __init__(self, settings: Settings, client: Minio | None = None) -> None:
        """Initialize storage service.

        Args:
            settings: Application settings with storage configuration
            client: Pre-built MinIO client (tests inject a mock)
        """
        self.settings = settings
        self._client = client
        self._bucket_exists_cache: set[str] = set()

    def _get_client(self) -> Minio:
        """Get or create MinIO client (lazy initialization).

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is None:
            if not self.settings.storage_access_key or not self.settings.storage_secret_key:
                raise ValueError(
                    "Storage credentials not configured. "
                    "Set APP_STORAGE_ACCESS_KEY and APP_STORAGE_SECRET_KEY."
                )
            self._client = Minio(
                endpoint=self.settings.storage_endpoint,
                access_key=self.settings.storage_access_key,
                secret_key=self.settings.storage_secret_key,
                secure=self.settings.storage_secure,
            )
            logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")
        return self._client

    def is_available(self) -> bool:
        """True if storage is enabled and credentials are set."""
        if not self.settings.storage_enabled:
            return False
        return bool(self.settings.storage_access_key and self.settings.storage_secret_key)

    def health_check(self) -> bool:
        """Check if storage backend is reachable."""
        if not self.is_available():
            return False
        try:
            self._get_client().list_buckets()
            return True
        except Exception as e:
            logger.warning(f"Storage health check failed: {e}")
            return False

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._bucket_exists_cache:
            return
        client = self._get_client()
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info(f"Created bucket: {bucket}")
        self._bucket_exists_cache.add(bucket)

    @retry(
        retry=retry_if_exception_type(S3Error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _put(self, bucket: str, object_name: str, data: bytes) -> StorageResult:
        client = self._get_client()
        self._ensure_bucket(bucket)
        result = client.put_object(
            bucket_name=bucket,
            object_name=object_name,
            data=io.BytesIO(data),
            length=len(data),
            content_type=JSON_CONTENT_TYPE,
        )
        return StorageResult(
            success=True,
            object_name=object_name,
            bucket=bucket,
            etag=result.etag,
            size=len(data),
        )

    def put_json(self, object_name: str, payload: str, bucket: str | None = None) -> StorageResult:
        """Store a JSON document, replacing any previous version.

        Args:
            object_name: Target object name
            payload: Serialized JSON
            bucket: Target bucket (defaults to settings.storage_bucket)

        Returns:
            StorageResult with upload details or error
        """
        bucket = bucket or self.settings.storage_bucket
        try:
            result = self._put(bucket, object_name, payload.encode("utf-8"))
            logger.info(f"Stored {object_name} in {bucket} ({result.size} bytes)")
            return result
        except S3Error as e:
            logger.error(f"S3 error storing {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=bucket,
                error=f"S3 error: {e.code} - {e.message}",
            )
        except Exception as e:
            logger.error(f"Error storing {object_name}: {e}")
            return StorageResult(
                success=False, object_name=object_name, bucket=bucket, error=str(e)
            )

    def get_json(self, object_name: str, bucket: str | None = None) -> str | None:
        """Read a JSON document.

        Returns:
            The document text, or None if the object does not exist

        Raises:
            S3Error: For storage faults other than a missing object
        """
        bucket = bucket or self.settings.storage_bucket
        client = self._get_client()
        try:
            response = client.get_object(bucket_name=bucket, object_name=object_name)
        except S3Error as e:
            if e.code in {"NoSuchKey", "NoSuchBucket"}:
                return None
            raise
        try:
            return response.read().decode("utf-8")
        finally:
            response.close()
            response.release_conn()
