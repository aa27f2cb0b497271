"""Files that can be queued for sending."""

import io
import mimetypes
import os
import time
from abc import ABC, abstractmethod
from typing import BinaryIO


class FileSource(ABC):
    """A file as the sender sees it: declared metadata plus a way to read it."""

    name: str
    size: int
    type: str
    last_modified: float

    @abstractmethod
    def open(self) -> BinaryIO:
        """Open for reading. Raises OSError if the file is gone."""

    @property
    def key(self) -> str:
        """Identity used to give re-added files the same transfer id."""
        return f"{self.name}:{self.size}:{self.last_modified}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, size={self.size})"


class LocalFile(FileSource):
    """A file on the local disk. Metadata is captured when it is queued."""

    def __init__(self, path: str) -> None:
        stat = os.stat(path)
        self.path = path
        self.name = os.path.basename(path)
        self.size = stat.st_size
        self.last_modified = stat.st_mtime
        self.type = mimetypes.guess_type(self.name)[0] or ""

    def open(self) -> BinaryIO:
        return open(self.path, "rb")


class InMemoryFile(FileSource):
    def __init__(
        self,
        name: str,
        data: bytes,
        type: str = "",
        last_modified: float | None = None,
    ) -> None:
        self.name = name
        self.data = bytes(data)
        self.size = len(self.data)
        self.type = type or mimetypes.guess_type(name)[0] or ""
        self.last_modified = last_modified if last_modified is not None else time.time()

    def open(self) -> BinaryIO:
        return io.BytesIO(self.data)
