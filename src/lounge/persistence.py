"""Routing of uploads to the device store or the shared cloud store.

``route_upload`` is the single place the local/cloud decision is made; the two
write paths live behind ``LocalPersistence`` and ``CloudPersistence``.  Every
write is a keyed ``set(..., merge=True)`` so a retried upload never duplicates
a book or a chapter.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Sequence

from .assets import NormalizedAsset
from .core import ExtractedChapter
from .errors import (
    AuthorizationViolation,
    BookWriteError,
    PartialWriteError,
    StoreError,
)
from .models import (
    CLOUD,
    LOCAL,
    TIER_UNAPPROVED,
    Book,
    Chapter,
    StorageTarget,
    normalize_target,
    normalize_tier,
)
from .stores import SERVER_TIMESTAMP, BlobStore, DocumentStore, Increment, join_path

logger = logging.getLogger(__name__)

BOOKS_COLLECTION = "books"
STATS_COLLECTION = "stats"
STORAGE_USAGE_DOC = "storageUsage"


def chapters_collection(book_id: str) -> str:
    return join_path(BOOKS_COLLECTION, book_id, "chapters")


def metadata_collection(book_id: str) -> str:
    return join_path(BOOKS_COLLECTION, book_id, "metadata")


@dataclass(frozen=True)
class RoutingDecision:
    target: StorageTarget
    reason: str


def route_upload(tier: str | None, preference: str | None) -> RoutingDecision:
    normalized_tier = normalize_tier(tier)
    if normalize_target(preference) != CLOUD:
        return RoutingDecision(LOCAL, "local storage requested")
    if normalized_tier == TIER_UNAPPROVED:
        return RoutingDecision(LOCAL, "caller is not approved for cloud publishing")
    return RoutingDecision(CLOUD, f"{normalized_tier} caller requested cloud storage")


@dataclass
class PersistResult:
    book: Book
    target: StorageTarget
    saved: list[int] = field(default_factory=list)
    cover_ref: str | None = None


def build_chapters(book_id: str, extracted: Iterable[ExtractedChapter]) -> list[Chapter]:
    return [
        Chapter(
            book_id=book_id,
            chapter_number=chapter.chapter_number,
            content=chapter.content,
            title=chapter.title,
        )
        for chapter in extracted
    ]


def _highest_chapter(chapters: Sequence[Chapter]) -> int:
    return max((chapter.chapter_number for chapter in chapters), default=0)


class _Persistence(ABC):
    target: StorageTarget = LOCAL

    def __init__(
        self,
        documents: DocumentStore,
        blobs: BlobStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.documents = documents
        self.blobs = blobs
        self.clock = clock

    async def _existing_book(self, book_id: str) -> Book | None:
        try:
            payload = await self.documents.get(BOOKS_COLLECTION, book_id)
        except StoreError as exc:
            raise BookWriteError(book_id, f"could not read existing book: {exc}") from exc
        return Book.from_payload(book_id, payload) if payload else None

    async def _upload_cover(self, book_id: str, cover: NormalizedAsset | None) -> str | None:
        if cover is None or self.blobs is None:
            return None
        path = f"bookCovers/{book_id}/{int(self.clock() * 1000)}_{cover.filename}"
        try:
            return await self.blobs.upload(path, cover.data, cover.content_type)
        except (StoreError, OSError) as exc:
            logger.warning("Cover upload for %s failed; continuing without cover: %s", book_id, exc)
            return None

    def _merge_book(
        self,
        book: Book,
        existing: Book | None,
        chapters: Sequence[Chapter],
        cover_ref: str | None,
        cover: NormalizedAsset | None,
    ) -> Book:
        previous_total = existing.total_chapters if existing else 0
        merged = replace(
            book,
            total_chapters=max(previous_total, book.total_chapters, _highest_chapter(chapters)),
            storage_target=self.target,
        )
        if cover_ref:
            merged.cover_ref = cover_ref
            merged.cover_size = cover.size if cover else 0
        elif existing and existing.cover_ref:
            merged.cover_ref = existing.cover_ref
            merged.cover_size = existing.cover_size
        if existing:
            merged.views = existing.views
            merged.created_at = existing.created_at
            merged.genres = merged.genres or existing.genres
            merged.owner_id = merged.owner_id or existing.owner_id
        return merged

    def _book_payload(self, book: Book, is_new: bool) -> dict[str, object]:
        payload = book.as_payload()
        payload["last_updated"] = SERVER_TIMESTAMP
        if is_new:
            payload["created_at"] = SERVER_TIMESTAMP
        else:
            # Views of an existing book only change through Increment.
            payload.pop("created_at", None)
            payload.pop("views", None)
        return payload

    def _chapter_payload(self, book: Book, chapter: Chapter) -> dict[str, object]:
        payload = chapter.as_payload()
        payload["book_id"] = book.id
        payload["updated_at"] = SERVER_TIMESTAMP
        return payload

    async def _write_chapters(self, book: Book, chapters: Sequence[Chapter]) -> list[int]:
        collection = chapters_collection(book.id)
        results = await asyncio.gather(
            *(
                self.documents.set(
                    collection,
                    str(chapter.chapter_number),
                    self._chapter_payload(book, chapter),
                    merge=True,
                )
                for chapter in chapters
            ),
            return_exceptions=True,
        )
        saved: list[int] = []
        errors: dict[int, BaseException] = {}
        for chapter, result in zip(chapters, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "Chapter %d of %s failed to save: %s", chapter.chapter_number, book.id, result
                )
                errors[chapter.chapter_number] = result
            else:
                saved.append(chapter.chapter_number)
        if errors:
            raise PartialWriteError(book.id, errors.keys(), saved, errors)
        return saved

    @abstractmethod
    async def persist(
        self,
        book: Book,
        chapters: Sequence[Chapter],
        cover: NormalizedAsset | None = None,
        *,
        tier: str | None = None,
    ) -> PersistResult:
        """Write ``book`` then ``chapters``; raises PartialWriteError for failed chapters."""


class LocalPersistence(_Persistence):
    """Device store writer; a repeat upload of the same slug merges into one book."""

    target: StorageTarget = LOCAL

    async def persist(
        self,
        book: Book,
        chapters: Sequence[Chapter],
        cover: NormalizedAsset | None = None,
        *,
        tier: str | None = None,
    ) -> PersistResult:
        existing = await self._existing_book(book.id)
        cover_ref = None
        if not (existing and existing.cover_ref):
            cover_ref = await self._upload_cover(book.id, cover)
        merged = self._merge_book(book, existing, chapters, cover_ref, cover)
        try:
            await self.documents.set(
                BOOKS_COLLECTION,
                merged.id,
                self._book_payload(merged, existing is None),
                merge=True,
            )
        except StoreError as exc:
            raise BookWriteError(merged.id, f"local book write failed: {exc}") from exc
        saved = await self._write_chapters(merged, chapters)
        logger.info(
            "Saved %d chapter(s) of %s locally (total_chapters=%d)",
            len(saved),
            merged.id,
            merged.total_chapters,
        )
        return PersistResult(book=merged, target=LOCAL, saved=saved, cover_ref=merged.cover_ref)


class CloudPersistence(_Persistence):
    """Shared store writer: cover, then book + metadata, then chapters."""

    target: StorageTarget = CLOUD

    async def persist(
        self,
        book: Book,
        chapters: Sequence[Chapter],
        cover: NormalizedAsset | None = None,
        *,
        tier: str | None = None,
    ) -> PersistResult:
        if route_upload(tier, CLOUD).target != CLOUD:
            raise AuthorizationViolation(
                f"{normalize_tier(tier)} callers may not write to cloud storage"
            )
        existing = await self._existing_book(book.id)
        cover_ref = await self._upload_cover(book.id, cover)
        merged = self._merge_book(book, existing, chapters, cover_ref, cover)
        book_payload = self._book_payload(merged, existing is None)
        info_payload = {
            "author": merged.author,
            "author_lower": merged.author.lower(),
            "book_title": merged.title,
            "book_title_lower": merged.title.lower(),
            "owner_id": merged.owner_id,
            "total_chapters": merged.total_chapters,
            "genres": list(merged.genres),
            "cover_ref": merged.cover_ref,
            "cover_size": merged.cover_size,
            "last_updated": SERVER_TIMESTAMP,
        }
        book_result, info_result = await asyncio.gather(
            self.documents.set(BOOKS_COLLECTION, merged.id, book_payload, merge=True),
            self.documents.set(metadata_collection(merged.id), "info", info_payload, merge=True),
            return_exceptions=True,
        )
        if isinstance(book_result, BaseException):
            if not isinstance(book_result, Exception):
                raise book_result
            raise BookWriteError(merged.id, f"cloud book write failed: {book_result}") from book_result
        if isinstance(info_result, Exception):
            logger.warning("Metadata info for %s not written: %s", merged.id, info_result)
        if cover_ref and cover is not None:
            await self._add_storage_usage(cover.size)
        saved = await self._write_chapters(merged, chapters)
        logger.info(
            "Published %d chapter(s) of %s to cloud (total_chapters=%d)",
            len(saved),
            merged.id,
            merged.total_chapters,
        )
        return PersistResult(book=merged, target=CLOUD, saved=saved, cover_ref=merged.cover_ref)

    async def _add_storage_usage(self, delta: int) -> None:
        await adjust_storage_usage(self.documents, delta)


async def adjust_storage_usage(documents: DocumentStore, delta: int) -> None:
    """Best-effort atomic update of the shared ``storage_bytes_used`` counter."""
    if not delta:
        return
    try:
        await documents.set(
            STATS_COLLECTION,
            STORAGE_USAGE_DOC,
            {"storage_bytes_used": Increment(delta)},
            merge=True,
        )
    except StoreError as exc:
        logger.warning("Storage usage counter not updated (%+d bytes): %s", delta, exc)


class PersistenceRouter:
    def __init__(self, local: LocalPersistence, cloud: CloudPersistence | None = None) -> None:
        self.local = local
        self.cloud = cloud

    def decide(self, tier: str | None, preference: str | None) -> RoutingDecision:
        decision = route_upload(tier, preference)
        if decision.target == CLOUD and self.cloud is None:
            return RoutingDecision(LOCAL, "cloud storage is not configured")
        return decision

    def strategy_for(self, target: StorageTarget) -> _Persistence:
        if target == CLOUD:
            if self.cloud is None:
                raise AuthorizationViolation("cloud storage is not configured")
            return self.cloud
        return self.local

    async def persist(
        self,
        decision: RoutingDecision,
        book: Book,
        chapters: Sequence[Chapter],
        cover: NormalizedAsset | None = None,
        *,
        tier: str | None,
    ) -> PersistResult:
        # The decision may come from a client; re-derive it from the tier.
        if decision.target == CLOUD and route_upload(tier, CLOUD).target != CLOUD:
            raise AuthorizationViolation(
                f"{normalize_tier(tier)} callers may not write to cloud storage"
            )
        strategy = self.strategy_for(decision.target)
        logger.debug("Routing %s to %s: %s", book.id, decision.target, decision.reason)
        return await strategy.persist(book, chapters, cover, tier=tier)

    async def retry_failed(
        self,
        error: PartialWriteError,
        decision: RoutingDecision,
        book: Book,
        chapters: Sequence[Chapter],
        *,
        tier: str | None,
    ) -> PersistResult:
        """Re-persist only the chapters listed in ``error.failed``."""
        failed = set(error.failed)
        subset = [chapter for chapter in chapters if chapter.chapter_number in failed]
        return await self.persist(decision, book, subset, None, tier=tier)


__all__ = [
    "BOOKS_COLLECTION",
    "CloudPersistence",
    "LocalPersistence",
    "PersistResult",
    "PersistenceRouter",
    "RoutingDecision",
    "STATS_COLLECTION",
    "STORAGE_USAGE_DOC",
    "adjust_storage_usage",
    "build_chapters",
    "chapters_collection",
    "metadata_collection",
    "route_upload",
]
