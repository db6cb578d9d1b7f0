from __future__ import annotations

import concurrent.futures as _fut
import contextlib
import logging
from typing import List, Optional

from .cache import PageCache, PageHandle
from .cancel import CancelToken
from .config import ArchiveLimits
from .constants import DEFAULT_PREFETCH_COUNT
from .errors import InvalidPageIndex, OperationTimeout
from .factory import open_reader
from .hashutil import archive_identity, vault_item_identity
from .reader import ArchiveEntry

logger = logging.getLogger(__name__)


class ComicSession:
    """One open comic: its reader, its page list and its share of the cache.

    Pages are loaded through the cache so a page requested while it is
    being prefetched waits for that extraction instead of starting another.
    """

    def __init__(
        self,
        path: str,
        cache: Optional[PageCache] = None,
        limits: Optional[ArchiveLimits] = None,
        executor: Optional[_fut.Executor] = None,
        prefetch_count: int = DEFAULT_PREFETCH_COUNT,
        temp_dir: Optional[str] = None,
        archive_id: Optional[str] = None,
    ):
        self.path = path
        self.prefetch_count = prefetch_count
        self._resources = contextlib.ExitStack()
        self.reader = open_reader(path, limits=limits, temp_dir=temp_dir)
        self._own_cache = cache is None
        self.cache = cache or PageCache(executor=executor, temp_dir=temp_dir)
        self.archive_id = archive_id or archive_identity(path)
        self.cache.attach(self.archive_id, self.reader)
        try:
            self.entries: List[ArchiveEntry] = self.reader.list_entries()
        except BaseException:
            self.close()
            raise
        logger.debug("Opened %s (%d pages)", path, len(self.entries))

    @classmethod
    def from_vault(cls, vault, item, cancel: Optional[CancelToken] = None, **kwargs) -> "ComicSession":
        """Open a vault item through a scratch copy deleted on ``close()``."""
        stack = contextlib.ExitStack()
        scratch = stack.enter_context(vault.open_item(item, cancel))
        try:
            session = cls(scratch, archive_id=vault_item_identity(item.id), **kwargs)
        except BaseException:
            stack.close()
            raise
        session._resources.push(stack)
        return session

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def page_count(self) -> int:
        return len(self.entries)

    def page(self, index: int, timeout: Optional[float] = None) -> PageHandle:
        """Handle on page ``index``, extracting it if it is not cached.

        Raises ``OperationTimeout`` when the page is not ready within
        ``timeout`` seconds; the extraction keeps running and a retry
        picks up its result.
        """
        if not 0 <= index < len(self.entries):
            raise InvalidPageIndex(index, len(self.entries))
        handle = self.cache.get(self.archive_id, index)
        if handle is not None:
            return handle
        future = self.cache.fetch(self.archive_id, index)
        try:
            return future.result(timeout)
        except _fut.TimeoutError:
            future.add_done_callback(_close_late_handle)
            raise OperationTimeout(f"Page {index} was not ready within {timeout}s") from None

    def page_bytes(self, index: int, timeout: Optional[float] = None) -> bytes:
        with self.page(index, timeout) as handle:
            return handle.read()

    def prefetch_around(self, index: int) -> List[_fut.Future]:
        """Schedule the pages after ``index`` and then those before it."""
        count = self.prefetch_count
        ahead = range(index + 1, min(len(self.entries), index + count + 1))
        behind = range(index - 1, max(-1, index - count - 1), -1)
        return self.cache.prefetch(list(ahead) + list(behind), self.archive_id)

    def close(self) -> None:
        self.cache.detach(self.archive_id)
        self.reader.close()
        if self._own_cache:
            self.cache.close()
        self._resources.close()


def _close_late_handle(future: _fut.Future) -> None:
    if not future.cancelled() and future.exception() is None:
        future.result().close()


def extract_cover(
    path: str,
    limits: Optional[ArchiveLimits] = None,
    temp_dir: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
) -> bytes:
    """Bytes of the first page of ``path``, for thumbnailing.

    Only the first entry is decompressed; the temporary file is gone by the
    time this returns.
    """
    with open_reader(path, limits=limits, temp_dir=temp_dir) as reader:
        cover = reader.extract_cover(cancel=cancel)
        with open(cover, "rb") as f:
            return f.read()
