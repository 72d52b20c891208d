"""Lazy byte stream over one blob of a checkout."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Callable, Iterator

from dulwich.objects import Blob

from gitvault.exceptions import RepositoryCorruptError

if TYPE_CHECKING:
    from dulwich.repo import Repo

DEFAULT_CHUNK_SIZE = 64 * 1024


class BlobStream:
    """Readable stream over a blob that owns a read lock and a repo handle.

    The blob is only loaded on the first read. Both the lock and the handle
    are released when the stream is exhausted, closed or collected.

    dulwich inflates a blob into a single ``bytes`` value, from a loose
    object and from a pack alike. The first read therefore holds the whole
    blob in memory, and later reads slice it into chunks.
    """

    def __init__(
        self,
        repo: Repo,
        sha: bytes,
        release: Callable[[], None],
        name: str = "",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.name = name
        self.sha = sha.decode("ascii")
        self.chunk_size = chunk_size
        self._repo = repo
        self._blob_id = sha
        self._release = release
        self._data: memoryview | None = None
        self._pos = 0
        self._closed = False
        self._close_lock = threading.Lock()

    def _load(self) -> memoryview:
        if self._closed:
            raise ValueError("I/O operation on closed stream")
        if self._data is None:
            try:
                blob = self._repo[self._blob_id]
            except KeyError as e:
                raise RepositoryCorruptError(f"missing blob {self.sha} for {self.name}") from e
            if not isinstance(blob, Blob):
                raise RepositoryCorruptError(f"object {self.sha} for {self.name} is not a blob")
            self._data = memoryview(blob.data)
        return self._data

    def read(self, size: int = -1) -> bytes:
        data = self._load()
        if size is None or size < 0:
            end = len(data)
        else:
            end = min(len(data), self._pos + size)
        chunk = bytes(data[self._pos:end])
        self._pos = end
        return chunk

    def readall(self) -> bytes:
        try:
            return self.read()
        finally:
            self.close()

    def __iter__(self) -> Iterator[bytes]:
        try:
            while True:
                chunk = self.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._data = None
        try:
            self._repo.close()
        finally:
            self._release()

    def __enter__(self) -> "BlobStream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __del__(self) -> None:
        # Never leave a read lock held by an abandoned stream
        if not getattr(self, "_closed", True):
            self.close()
