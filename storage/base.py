"""Base storage interface for durable export objects."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Union


@dataclass
class FileInfo:
    """Information about a stored object."""

    path: str
    size_bytes: int
    content_type: Optional[str]
    last_modified: Optional[datetime]
    checksum: Optional[str] = None


class Storage(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def write(self, path: str, content: Union[bytes, str], content_type: Optional[str] = None) -> FileInfo:
        """
        Write content to storage.

        Args:
            path: Object key (e.g., "bulk-edit/<job>/<job>.csv")
            content: File content (bytes or string)
            content_type: Optional MIME type
        """
        ...

    @abstractmethod
    def upload_file(self, path: str, local_file: Union[str, Path], content_type: Optional[str] = None) -> FileInfo:
        """Upload a local file to `path`."""
        ...

    @abstractmethod
    def read(self, path: str) -> bytes:
        """
        Read content from storage.

        Raises:
            FileNotFoundError: If the object doesn't exist
        """
        ...

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Check if an object exists."""
        ...

    @abstractmethod
    def delete(self, path: str) -> bool:
        """
        Delete an object.

        Returns:
            True if deleted, False if didn't exist
        """
        ...

    @abstractmethod
    def list(self, prefix: str = "") -> Iterator[FileInfo]:
        """List objects with the given prefix."""
        ...

    @abstractmethod
    def compose(self, path: str, sources: List[str], content_type: Optional[str] = None) -> FileInfo:
        """
        Concatenate `sources` (in order) into a single object at `path`.

        Raises:
            FileNotFoundError: If any source doesn't exist
        """
        ...

    def read_text(self, path: str, encoding: str = "utf-8") -> str:
        """Read content as text."""
        return self.read(path).decode(encoding)
