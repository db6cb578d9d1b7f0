from __future__ import annotations

import concurrent.futures as _fut
import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterable, List, Optional, Tuple, Union

from .cancel import CancelToken
from .constants import CACHE_DIR_PREFIX, DEFAULT_CACHE_MAX_BYTES, DEFAULT_CACHE_MAX_PAGES
from .errors import InvalidPageIndex, OperationCancelled
from .hashutil import archive_identity
from .reader import ArchiveReader

logger = logging.getLogger(__name__)

PageKey = Tuple[str, int]
Payload = Union[bytes, bytearray, memoryview, str, os.PathLike]


@dataclass
class CachedPage:
    key: PageKey
    size_bytes: int
    last_access: float
    data: Optional[bytes] = None
    path: Optional[str] = None


class PageHandle:
    """Read-only view of one cached page.

    File-backed handles hold their own open descriptor, so a page evicted
    (and unlinked) after ``get()`` returned stays readable through the
    handle on POSIX systems.
    """

    def __init__(self, key: PageKey, size: int, *, data: Optional[bytes] = None, fh: Optional[BinaryIO] = None):
        self.key = key
        self.size = size
        self._data = data
        self._fh = fh
        self._lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def read(self) -> bytes:
        if self._data is not None:
            return self._data
        with self._lock:
            if self._fh is None:
                raise ValueError("page handle is closed")
            self._fh.seek(0)
            return self._fh.read()

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None


@dataclass
class _InFlight:
    task: _fut.Future
    token: CancelToken
    epoch: int
    discard: bool = False
    waiters: List[_fut.Future] = field(default_factory=list)


class PageCache:
    """Bounded LRU store of decoded pages keyed by (archive id, page index).

    Budgets are a byte total and a page count; the most recently inserted
    page is always kept, even when it alone exceeds the byte budget.
    Background loads run on a ``concurrent.futures`` executor with at most
    one extraction in flight per key. Every structural change (insert,
    evict, clear) happens under one lock; page contents are read outside it
    through independent handles.
    """

    def __init__(
        self,
        *,
        max_bytes: int = DEFAULT_CACHE_MAX_BYTES,
        max_pages: int = DEFAULT_CACHE_MAX_PAGES,
        executor: Optional[_fut.Executor] = None,
        temp_dir: Optional[str] = None,
        max_workers: int = 4,
    ):
        if max_bytes <= 0 or max_pages <= 0:
            raise ValueError("cache budgets must be positive")
        self.max_bytes = max_bytes
        self.max_pages = max_pages
        self._own_executor = executor is None
        self._executor = executor or _fut.ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)), thread_name_prefix="comicvault-cache"
        )
        self._temp_parent = temp_dir
        self._dir: Optional[str] = None
        self._entries: "OrderedDict[PageKey, CachedPage]" = OrderedDict()
        self._total_bytes = 0
        self._inflight: Dict[PageKey, _InFlight] = {}
        self._sources: Dict[str, ArchiveReader] = {}
        self._epoch = 0
        self._lock = threading.RLock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: PageKey) -> bool:
        with self._lock:
            return key in self._entries

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return self._total_bytes

    def keys(self) -> List[PageKey]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries)

    # sources
    def attach(self, archive_id: str, reader: ArchiveReader) -> None:
        with self._lock:
            self._sources[archive_id] = reader

    def detach(self, archive_id: str) -> None:
        """Forget the reader for ``archive_id`` and drop its pages."""
        with self._lock:
            self._sources.pop(archive_id, None)
            victims = self._remove_where(lambda k: k[0] == archive_id)
            self._abandon_inflight(lambda k: k[0] == archive_id)
        self._destroy(victims)

    # lookups
    def get(self, archive_id: str, index: int) -> Optional[PageHandle]:
        key = (archive_id, index)
        with self._lock:
            page = self._entries.get(key)
            if page is None:
                return None
            self._entries.move_to_end(key)
            page.last_access = time.monotonic()
            return self._open_handle(page)

    def put(self, archive_id: str, index: int, payload: Payload) -> None:
        """Insert or replace a page.

        ``payload`` is either the decoded bytes or the path of a file the
        cache takes ownership of (it is moved into the cache directory).
        """
        key = (archive_id, index)
        page = self._adopt(key, payload)
        with self._lock:
            victims = self._insert(page)
        self._destroy(victims)

    # background loading
    def fetch(self, archive_id: str, index: int) -> _fut.Future:
        """Future resolving to a ``PageHandle`` for the page.

        Concurrent requests for the same key share one extraction; each
        caller receives its own handle.
        """
        key = (archive_id, index)
        waiter: _fut.Future = _fut.Future()
        with self._lock:
            page = self._entries.get(key)
            if page is not None:
                self._entries.move_to_end(key)
                page.last_access = time.monotonic()
                waiter.set_result(self._open_handle(page))
                return waiter
            flight = self._ensure_inflight(key)
            flight.waiters.append(waiter)
        return waiter

    def prefetch(self, indices: Iterable[int], archive_id: str) -> List[_fut.Future]:
        """Schedule background loads without blocking.

        Indices already cached or already loading are no-ops. Returns the
        load tasks; each resolves to True once its page is cached (False
        when the result was discarded by ``clear()``/``detach()``/``prune()``).
        """
        tasks: List[_fut.Future] = []
        with self._lock:
            for index in indices:
                key = (archive_id, index)
                if key in self._entries:
                    continue
                tasks.append(self._ensure_inflight(key).task)
        return tasks

    def cancel(self, archive_id: str, index: int) -> bool:
        """Ask an in-flight load to stop at its next checkpoint."""
        with self._lock:
            flight = self._inflight.get((archive_id, index))
            if flight is None:
                return False
            flight.token.cancel()
            return True

    def in_flight(self) -> List[PageKey]:
        with self._lock:
            return list(self._inflight)

    # maintenance
    def clear(self) -> None:
        with self._lock:
            victims = self._remove_where(lambda k: True)
            self._abandon_inflight(lambda k: True)
            self._epoch += 1
        self._destroy(victims)
        logger.debug("Page cache cleared (%d page(s))", len(victims))

    def prune(self, existing_archives: Iterable[str]) -> int:
        """Drop pages whose archive is not among ``existing_archives`` on disk."""
        keep = {archive_identity(p) for p in existing_archives if os.path.exists(p)}
        with self._lock:
            victims = self._remove_where(lambda k: k[0] not in keep)
            self._abandon_inflight(lambda k: k[0] not in keep)
            for archive_id in [a for a in self._sources if a not in keep]:
                del self._sources[archive_id]
        self._destroy(victims)
        if victims:
            logger.info("Pruned %d cached page(s) of missing archives", len(victims))
        return len(victims)

    def close(self) -> None:
        self.clear()
        if self._own_executor:
            self._executor.shutdown(wait=True)
        with self._lock:
            if self._dir is not None:
                shutil.rmtree(self._dir, ignore_errors=True)
                self._dir = None

    # internals
    def _ensure_dir(self) -> str:
        with self._lock:
            if self._dir is None:
                if self._temp_parent:
                    os.makedirs(self._temp_parent, exist_ok=True)
                self._dir = tempfile.mkdtemp(prefix=CACHE_DIR_PREFIX, dir=self._temp_parent)
            return self._dir

    def _adopt(self, key: PageKey, payload: Payload) -> CachedPage:
        now = time.monotonic()
        if isinstance(payload, (bytes, bytearray, memoryview)):
            data = bytes(payload)
            return CachedPage(key=key, size_bytes=len(data), last_access=now, data=data)
        src = os.fspath(payload)
        _, ext = os.path.splitext(src)
        dst = os.path.join(self._ensure_dir(), f"{key[0][:16]}-{key[1]}-{uuid.uuid4().hex}{ext}")
        shutil.move(src, dst)
        return CachedPage(key=key, size_bytes=os.path.getsize(dst), last_access=now, path=dst)

    def _insert(self, page: CachedPage) -> List[CachedPage]:
        victims: List[CachedPage] = []
        old = self._entries.pop(page.key, None)
        if old is not None:
            self._total_bytes -= old.size_bytes
            victims.append(old)
        self._entries[page.key] = page
        self._total_bytes += page.size_bytes
        while len(self._entries) > 1 and (
            self._total_bytes > self.max_bytes or len(self._entries) > self.max_pages
        ):
            _, lru = self._entries.popitem(last=False)
            self._total_bytes -= lru.size_bytes
            victims.append(lru)
        return victims

    def _remove_where(self, pred) -> List[CachedPage]:
        victims = [p for k, p in self._entries.items() if pred(k)]
        for p in victims:
            del self._entries[p.key]
            self._total_bytes -= p.size_bytes
        return victims

    def _abandon_inflight(self, pred) -> None:
        # Later requests for these keys start a fresh load
        for key in [k for k in self._inflight if pred(k)]:
            flight = self._inflight.pop(key)
            flight.discard = True
            flight.token.cancel()

    @staticmethod
    def _open_handle(page: CachedPage) -> PageHandle:
        if page.data is not None:
            return PageHandle(page.key, page.size_bytes, data=page.data)
        return PageHandle(page.key, page.size_bytes, fh=open(page.path, "rb"))

    @staticmethod
    def _destroy(pages: Iterable[CachedPage]) -> None:
        for page in pages:
            if page.path is None:
                continue
            try:
                os.remove(page.path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not delete cached page file %s: %s", page.path, exc)

    def _ensure_inflight(self, key: PageKey) -> _InFlight:
        # Caller holds the lock
        flight = self._inflight.get(key)
        if flight is not None:
            return flight
        reader = self._sources.get(key[0])
        if reader is None:
            raise LookupError(f"no reader attached for archive {key[0][:16]}")
        token = CancelToken()
        task: _fut.Future = _fut.Future()
        flight = _InFlight(task=task, token=token, epoch=self._epoch)
        self._inflight[key] = flight
        self._executor.submit(self._load, key, reader, flight)
        return flight

    def _load(self, key: PageKey, reader: ArchiveReader, flight: _InFlight) -> None:
        page: Optional[CachedPage] = None
        try:
            entries = reader.list_entries()
            index = key[1]
            if not 0 <= index < len(entries):
                raise InvalidPageIndex(index, len(entries))
            extracted = reader.extract_entry(entries[index], cancel=flight.token)
            page = self._adopt(key, extracted)
        except BaseException as exc:
            with self._lock:
                if self._inflight.get(key) is flight:
                    del self._inflight[key]
                waiters = list(flight.waiters)
            if not isinstance(exc, OperationCancelled):
                logger.debug("Loading page %d of %s failed: %s", key[1], key[0][:16], exc)
            _fail(waiters, exc)
            if flight.task.set_running_or_notify_cancel():
                flight.task.set_exception(exc)
            if not isinstance(exc, Exception):
                raise
            return

        handles: List[Tuple[_fut.Future, PageHandle]] = []
        errors: List[Tuple[_fut.Future, OSError]] = []
        victims: List[CachedPage] = []
        with self._lock:
            if self._inflight.get(key) is flight:
                del self._inflight[key]
            stale = flight.discard or flight.epoch != self._epoch
            if stale:
                victims = [page]
            else:
                victims = self._insert(page)
                for waiter in flight.waiters:
                    if not waiter.set_running_or_notify_cancel():
                        continue
                    try:
                        handles.append((waiter, self._open_handle(page)))
                    except OSError as exc:
                        errors.append((waiter, exc))
        self._destroy(victims)
        if stale:
            _fail(flight.waiters, OperationCancelled("page load discarded"))
        for waiter, handle in handles:
            waiter.set_result(handle)
        for waiter, exc in errors:
            waiter.set_exception(exc)
        if flight.task.set_running_or_notify_cancel():
            flight.task.set_result(not stale)


def _fail(waiters: Iterable[_fut.Future], exc: BaseException) -> None:
    for waiter in waiters:
        if waiter.set_running_or_notify_cancel():
            waiter.set_exception(exc)
