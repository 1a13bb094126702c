"""Local filesystem storage backend."""

import hashlib
import mimetypes
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Union

from storage.base import FileInfo, Storage
import logging

logger = logging.getLogger(__name__)


class LocalStorage(Storage):
    """
    Local filesystem storage backend.

    Stores objects under a base directory with the key structure preserved.
    """

    def __init__(self, base_path: Union[str, Path] = "./data"):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Local storage initialized at {self.base_path}")

    def _resolve_path(self, path: str) -> Path:
        """Resolve an object key to an absolute filesystem path."""
        clean_path = Path(path).as_posix().lstrip("/")
        full_path = self.base_path / clean_path

        # Keys must stay inside base_path
        try:
            full_path.resolve().relative_to(self.base_path)
        except ValueError:
            raise ValueError(f"Invalid path: {path} (outside base directory)")

        return full_path

    @staticmethod
    def _compute_checksum(content: bytes) -> str:
        return hashlib.sha256(content).hexdigest()

    @staticmethod
    def _detect_content_type(path: str) -> Optional[str]:
        content_type, _ = mimetypes.guess_type(path)
        return content_type

    def _info(self, path: str, full_path: Path, content_type: Optional[str] = None) -> FileInfo:
        stat = full_path.stat()
        return FileInfo(
            path=path,
            size_bytes=stat.st_size,
            content_type=content_type or self._detect_content_type(path),
            last_modified=datetime.fromtimestamp(stat.st_mtime),
        )

    def write(self, path: str, content: Union[bytes, str], content_type: Optional[str] = None) -> FileInfo:
        """Write content to the local filesystem."""
        full_path = self._resolve_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)

        if isinstance(content, str):
            content = content.encode("utf-8")

        full_path.write_bytes(content)
        logger.info(f"Object written: {path} ({len(content)} bytes)")

        info = self._info(path, full_path, content_type)
        info.checksum = self._compute_checksum(content)
        return info

    def upload_file(self, path: str, local_file: Union[str, Path], content_type: Optional[str] = None) -> FileInfo:
        """Copy a local file into storage."""
        full_path = self._resolve_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_file, full_path)
        logger.info(f"File uploaded: {local_file} -> {path}")
        return self._info(path, full_path, content_type)

    def read(self, path: str) -> bytes:
        full_path = self._resolve_path(path)

        if not full_path.is_file():
            raise FileNotFoundError(f"File not found: {path}")

        return full_path.read_bytes()

    def exists(self, path: str) -> bool:
        full_path = self._resolve_path(path)
        return full_path.is_file()

    def delete(self, path: str) -> bool:
        full_path = self._resolve_path(path)

        if not full_path.exists():
            return False

        full_path.unlink()
        logger.info(f"Object deleted: {path}")
        return True

    def list(self, prefix: str = "") -> Iterator[FileInfo]:
        """List objects whose key starts with `prefix`."""
        for file_path in sorted(self.base_path.rglob("*")):
            if not file_path.is_file():
                continue
            rel_path = file_path.relative_to(self.base_path).as_posix()
            if rel_path.startswith(prefix.lstrip("/")):
                yield self._info(rel_path, file_path)

    def compose(self, path: str, sources: List[str], content_type: Optional[str] = None) -> FileInfo:
        """Concatenate source objects into `path`."""
        source_paths = []
        for source in sources:
            source_path = self._resolve_path(source)
            if not source_path.is_file():
                raise FileNotFoundError(f"File not found: {source}")
            source_paths.append(source_path)

        full_path = self._resolve_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        with open(full_path, "wb") as target:
            for source_path in source_paths:
                with open(source_path, "rb") as part:
                    shutil.copyfileobj(part, target)

        logger.info(f"Composed {len(sources)} parts into {path}")
        return self._info(path, full_path, content_type)
