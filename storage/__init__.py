"""
Durable storage backends for promoted export files.

Backends:
    local: Filesystem directory (development, tests)
    s3: S3-compatible object storage (AWS S3, MinIO)
"""

from core.config import settings
from storage.base import FileInfo, Storage


def get_storage() -> Storage:
    """Build the storage backend selected by STORAGE_BACKEND."""
    if settings.STORAGE_BACKEND == "s3":
        from storage.s3 import S3Storage

        return S3Storage(
            bucket=settings.S3_BUCKET,
            endpoint_url=settings.S3_ENDPOINT_URL,
            region=settings.S3_REGION,
            access_key=settings.S3_ACCESS_KEY,
            secret_key=settings.S3_SECRET_KEY,
        )

    from storage.local import LocalStorage

    return LocalStorage(settings.STORAGE_LOCAL_ROOT)


__all__ = ["FileInfo", "Storage", "get_storage"]
