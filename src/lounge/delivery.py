from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Sequence

from .errors import ChapterNotFoundError, StoreError
from .history import ProgressRecorder
from .models import Book, Chapter
from .persistence import BOOKS_COLLECTION, chapters_collection
from .stores import MAX_KEYS_PER_QUERY, DocumentStore, Increment

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 64
DEFAULT_PREFETCH_WINDOW = 10


@dataclass
class PrefetchResult:
    requested: list[int] = field(default_factory=list)
    loaded: list[int] = field(default_factory=list)
    already_cached: list[int] = field(default_factory=list)
    missing: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    discarded: bool = False


def _chunks(values: Sequence[int], size: int) -> list[list[int]]:
    return [list(values[i : i + size]) for i in range(0, len(values), size)]


class ChapterDeliveryCache:
    """
    Per-reading-session chapter cache for one book at a time.

    Entries are kept in LRU order up to ``max_entries``.  Switching to another
    book drops every entry and resets the view counter; reads that were in
    flight for the previous book are discarded when they land.
    """

    def __init__(
        self,
        documents: DocumentStore,
        *,
        recorder: ProgressRecorder | None = None,
        max_entries: int = DEFAULT_CACHE_SIZE,
        batch_limit: int = MAX_KEYS_PER_QUERY,
    ) -> None:
        self.documents = documents
        self.recorder = recorder
        self.max_entries = max(1, max_entries)
        self.batch_limit = max(1, min(batch_limit, MAX_KEYS_PER_QUERY))
        self.book_id: str | None = None
        self.book: Book | None = None
        self._entries: OrderedDict[int, Chapter] = OrderedDict()
        self._generation = 0
        self._view_counted = False

    # ---------- session lifecycle ----------

    def enter_book(self, book_id: str) -> None:
        if book_id == self.book_id:
            return
        self.leave_book()
        self.book_id = book_id

    def leave_book(self) -> None:
        self._entries.clear()
        self._generation += 1
        self.book_id = None
        self.book = None
        self._view_counted = False

    # ---------- cache state ----------

    def __contains__(self, chapter_number: object) -> bool:
        return chapter_number in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def cached_numbers(self) -> list[int]:
        return sorted(self._entries)

    def preloaded_count(self, start: int, window: int = DEFAULT_PREFETCH_WINDOW) -> int:
        return sum(1 for number in range(start, start + max(0, window)) if number in self._entries)

    def _store(self, chapter: Chapter) -> None:
        self._entries[chapter.chapter_number] = chapter
        self._entries.move_to_end(chapter.chapter_number)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted chapter %d of %s", evicted, self.book_id)

    # ---------- reads ----------

    async def _fetch(self, book_id: str, chapter_number: int) -> Chapter:
        collection = chapters_collection(book_id)
        payload = await self.documents.get(collection, str(chapter_number))
        if payload is not None:
            chapter = Chapter.from_payload(book_id, payload, doc_id=str(chapter_number))
            if chapter.chapter_number == chapter_number:
                return chapter
            logger.debug(
                "Key %d of %s holds chapter %d", chapter_number, book_id, chapter.chapter_number
            )
        matches = await self.documents.query(
            collection, [("chapter_number", "==", chapter_number)], limit=1
        )
        if matches:
            logger.debug("Chapter %d of %s found by fallback query", chapter_number, book_id)
            return Chapter.from_payload(book_id, matches[0].data, doc_id=matches[0].id)
        raise ChapterNotFoundError(book_id, chapter_number)

    async def get(self, book_id: str, chapter_number: int) -> Chapter:
        """Return a chapter, fetching and caching it on a miss."""
        self.enter_book(book_id)
        generation = self._generation
        chapter = self._entries.get(chapter_number)
        if chapter is not None:
            self._entries.move_to_end(chapter_number)
        else:
            chapter = await self._fetch(book_id, chapter_number)
            if generation != self._generation:
                return chapter
            self._store(chapter)
        await self._after_load(book_id, chapter, generation)
        return chapter

    async def _load_book(self, book_id: str) -> Book:
        if self.book is not None and self.book.id == book_id:
            return self.book
        try:
            payload = await self.documents.get(BOOKS_COLLECTION, book_id)
        except StoreError as exc:
            logger.warning("Book %s metadata unavailable: %s", book_id, exc)
            payload = None
        book = Book.from_payload(book_id, payload or {})
        self.book = book
        return book

    async def _after_load(self, book_id: str, chapter: Chapter, generation: int) -> None:
        book = await self._load_book(book_id)
        if generation != self._generation:
            return
        if not self._view_counted:
            self._view_counted = True
            await self._increment_views(book)
        if self.recorder is not None:
            try:
                await self.recorder.record(book, chapter.chapter_number)
            except StoreError as exc:
                logger.warning("Progress for %s not saved: %s", book_id, exc)

    async def _increment_views(self, book: Book) -> None:
        try:
            if await self.documents.get(BOOKS_COLLECTION, book.id) is None:
                return
            await self.documents.set(
                BOOKS_COLLECTION, book.id, {"views": Increment(1)}, merge=True
            )
            payload = await self.documents.get(BOOKS_COLLECTION, book.id) or {}
        except StoreError as exc:
            logger.warning("View counter for %s not updated: %s", book.id, exc)
            return
        views = payload.get("views")
        book.views = views if isinstance(views, int) else book.views + 1

    async def _fetch_by_keys(self, book_id: str, numbers: list[int]) -> dict[int, Chapter]:
        snapshots = await self.documents.get_many(
            chapters_collection(book_id), [str(number) for number in numbers]
        )
        found: dict[int, Chapter] = {}
        for snapshot in snapshots:
            chapter = Chapter.from_payload(book_id, snapshot.data, doc_id=snapshot.id)
            if str(chapter.chapter_number) == snapshot.id:
                found[chapter.chapter_number] = chapter
        return found

    async def _fetch_by_filter(self, book_id: str, numbers: list[int]) -> dict[int, Chapter]:
        snapshots = await self.documents.query(
            chapters_collection(book_id), [("chapter_number", "in", numbers)]
        )
        found: dict[int, Chapter] = {}
        for snapshot in snapshots:
            chapter = Chapter.from_payload(book_id, snapshot.data, doc_id=snapshot.id)
            if chapter.chapter_number in numbers:
                found.setdefault(chapter.chapter_number, chapter)
        return found

    async def _run_batches(
        self, book_id: str, numbers: list[int], fetcher
    ) -> tuple[dict[int, Chapter], list[int]]:
        batches = _chunks(numbers, self.batch_limit)
        results = await asyncio.gather(
            *(fetcher(book_id, batch) for batch in batches), return_exceptions=True
        )
        found: dict[int, Chapter] = {}
        failed: list[int] = []
        for batch, result in zip(batches, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Prefetch batch %s of %s failed: %s", batch, book_id, result)
                failed.extend(batch)
            else:
                found.update(result)
        return found, failed

    async def prefetch_range(self, book_id: str, start: int, count: int) -> PrefetchResult:
        """
        Load up to ``count`` chapters from ``start`` in key batches of at most
        ``batch_limit``, skipping chapters already cached.  Never raises for
        store failures; failed numbers are reported in the result.
        """
        self.enter_book(book_id)
        generation = self._generation
        count = max(0, min(count, self.max_entries))
        first = max(1, start)
        requested = list(range(first, start + count))
        result = PrefetchResult(requested=requested)
        result.already_cached = [number for number in requested if number in self._entries]
        needed = [number for number in requested if number not in self._entries]
        if not needed:
            return result

        found, failed = await self._run_batches(book_id, needed, self._fetch_by_keys)
        unresolved = [number for number in needed if number not in found and number not in failed]
        if unresolved:
            extra, extra_failed = await self._run_batches(book_id, unresolved, self._fetch_by_filter)
            found.update(extra)
            failed.extend(extra_failed)

        if generation != self._generation:
            result.discarded = True
            return result
        for number in needed:
            chapter = found.get(number)
            if chapter is not None:
                self._store(chapter)
                result.loaded.append(number)
            elif number in failed:
                result.failed.append(number)
            else:
                result.missing.append(number)
        return result

    async def next_chapter_number(self, book_id: str, chapter_number: int) -> int | None:
        """Next existing chapter number, skipping gaps."""
        matches = await self.documents.query(
            chapters_collection(book_id),
            [("chapter_number", ">=", chapter_number + 1)],
            order_by="chapter_number",
            limit=1,
        )
        return Chapter.from_payload(book_id, matches[0].data, matches[0].id).chapter_number if matches else None

    async def previous_chapter_number(self, book_id: str, chapter_number: int) -> int | None:
        matches = await self.documents.query(
            chapters_collection(book_id),
            [("chapter_number", "<=", chapter_number - 1)],
            order_by="chapter_number",
            descending=True,
            limit=1,
        )
        return Chapter.from_payload(book_id, matches[0].data, matches[0].id).chapter_number if matches else None


__all__ = [
    "ChapterDeliveryCache",
    "DEFAULT_CACHE_SIZE",
    "DEFAULT_PREFETCH_WINDOW",
    "PrefetchResult",
]
