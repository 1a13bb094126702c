"""S3-compatible object storage backend."""

import hashlib
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Union

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from storage.base import FileInfo, Storage
import logging

logger = logging.getLogger(__name__)

# S3 multipart copy needs every part except the last to be at least 5 MiB
MIN_PART_SIZE = 5 * 1024 * 1024


class S3Storage(Storage):
    """
    S3-compatible object storage backend.

    Works with AWS S3, MinIO, LocalStack, and other S3-compatible services.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region: str = "us-east-1",
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region = region

        if client is None:
            client_kwargs = {
                "service_name": "s3",
                "region_name": region,
                "config": Config(signature_version="s3v4"),
            }

            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url

            if access_key and secret_key:
                client_kwargs["aws_access_key_id"] = access_key
                client_kwargs["aws_secret_access_key"] = secret_key

            client = boto3.client(**client_kwargs)

        self.client = client

        logger.info(f"S3 storage initialized (bucket={bucket}, endpoint={endpoint_url}, region={region})")

    @staticmethod
    def _key(path: str) -> str:
        return path.lstrip("/")

    @staticmethod
    def _not_found(error: ClientError) -> bool:
        return error.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound")

    def write(self, path: str, content: Union[bytes, str], content_type: Optional[str] = None) -> FileInfo:
        key = self._key(path)

        if isinstance(content, str):
            content = content.encode("utf-8")

        extra_args = {}
        if content_type:
            extra_args["ContentType"] = content_type

        self.client.put_object(Bucket=self.bucket, Key=key, Body=content, **extra_args)

        logger.info(f"S3 object written: s3://{self.bucket}/{key} ({len(content)} bytes)")

        return FileInfo(
            path=path,
            size_bytes=len(content),
            content_type=content_type,
            last_modified=datetime.now(),
            checksum=hashlib.sha256(content).hexdigest(),
        )

    def upload_file(self, path: str, local_file: Union[str, Path], content_type: Optional[str] = None) -> FileInfo:
        key = self._key(path)

        extra_args = {}
        if content_type:
            extra_args["ContentType"] = content_type

        self.client.upload_file(
            str(local_file),
            self.bucket,
            key,
            ExtraArgs=extra_args if extra_args else None,
        )

        logger.info(f"S3 file uploaded: {local_file} -> s3://{self.bucket}/{key}")

        return FileInfo(
            path=path,
            size_bytes=Path(local_file).stat().st_size,
            content_type=content_type,
            last_modified=datetime.now(),
        )

    def read(self, path: str) -> bytes:
        key = self._key(path)

        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if self._not_found(e):
                raise FileNotFoundError(f"File not found: {path}")
            raise

    def exists(self, path: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(path))
            return True
        except ClientError as e:
            if self._not_found(e):
                return False
            raise

    def delete(self, path: str) -> bool:
        if not self.exists(path):
            return False

        key = self._key(path)
        self.client.delete_object(Bucket=self.bucket, Key=key)
        logger.info(f"S3 object deleted: s3://{self.bucket}/{key}")
        return True

    def list(self, prefix: str = "") -> Iterator[FileInfo]:
        paginator = self.client.get_paginator("list_objects_v2")

        for page in paginator.paginate(Bucket=self.bucket, Prefix=self._key(prefix)):
            for obj in page.get("Contents", []):
                yield FileInfo(
                    path=obj["Key"],
                    size_bytes=obj["Size"],
                    content_type=None,
                    last_modified=obj["LastModified"],
                )

    def _size(self, key: str) -> int:
        try:
            return self.client.head_object(Bucket=self.bucket, Key=key)["ContentLength"]
        except ClientError as e:
            if self._not_found(e):
                raise FileNotFoundError(f"File not found: {key}")
            raise

    def compose(self, path: str, sources: List[str], content_type: Optional[str] = None) -> FileInfo:
        """
        Concatenate source objects server side when the part sizes allow a
        multipart copy, otherwise download and re-upload.
        """
        key = self._key(path)
        source_keys = [self._key(s) for s in sources]
        sizes = [self._size(k) for k in source_keys]

        if len(source_keys) > 1 and all(size >= MIN_PART_SIZE for size in sizes[:-1]):
            extra_args = {"ContentType": content_type} if content_type else {}
            upload = self.client.create_multipart_upload(Bucket=self.bucket, Key=key, **extra_args)
            upload_id = upload["UploadId"]
            try:
                parts = []
                for number, source_key in enumerate(source_keys, start=1):
                    result = self.client.upload_part_copy(
                        Bucket=self.bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=number,
                        CopySource={"Bucket": self.bucket, "Key": source_key},
                    )
                    parts.append({"ETag": result["CopyPartResult"]["ETag"], "PartNumber": number})
                self.client.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                )
            except ClientError:
                self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
                raise

            logger.info(f"S3 composed {len(source_keys)} parts into s3://{self.bucket}/{key}")
            return FileInfo(
                path=path,
                size_bytes=sum(sizes),
                content_type=content_type,
                last_modified=datetime.now(),
            )

        content = b"".join(self.read(k) for k in source_keys)
        return self.write(path, content, content_type)
