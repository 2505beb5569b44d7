from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from .assets import normalize_cover
from .errors import AssetNormalizationError, AuthorizationViolation, BookWriteError
from .history import to_epoch_millis
from .models import CLOUD, TIER_ADMIN, Book, normalize_tier
from .persistence import (
    BOOKS_COLLECTION,
    adjust_storage_usage,
    chapters_collection,
    metadata_collection,
)
from .stores import SERVER_TIMESTAMP, BlobStore, DocumentStore

logger = logging.getLogger(__name__)

SORT_MODES = ("author", "recent", "popular")


@dataclass(slots=True)
class BookListing:
    book: Book
    updated: int

    @property
    def id(self) -> str:
        return self.book.id


def _sort_key(listing: BookListing, mode: str) -> tuple[object, ...]:
    book = listing.book
    author = book.author.strip().casefold()
    title = book.title.strip().casefold()
    if mode == "recent":
        return (-listing.updated, author, title, book.id)
    if mode == "popular":
        return (-book.views, -listing.updated, author, title, book.id)
    return (0 if author else 1, author, title, book.id)


def _normalize_mode(mode: str | None) -> str:
    normalized = (mode or "").lower().strip()
    return normalized if normalized in SORT_MODES else "author"


def sort_listings(listings: list[BookListing], mode: str = "author") -> list[BookListing]:
    normalized_mode = _normalize_mode(mode)
    return sorted(listings, key=lambda listing: _sort_key(listing, normalized_mode))


async def list_books(
    documents: DocumentStore,
    mode: str = "author",
    *,
    genre: str | None = None,
    author: str | None = None,
) -> list[BookListing]:
    """List books sorted by ``author``, ``recent`` (last updated) or ``popular`` (views)."""
    filters = []
    if genre:
        filters.append(("genres", "array-contains", genre))
    if author:
        filters.append(("author_lower", "==", author.strip().lower()))
    snapshots = await documents.query(BOOKS_COLLECTION, filters)
    listings = []
    for snapshot in snapshots:
        book = Book.from_payload(snapshot.id, snapshot.data)
        updated = to_epoch_millis(book.last_updated) or to_epoch_millis(book.created_at)
        listings.append(BookListing(book=book, updated=updated))
    return sort_listings(listings, mode)


def require_admin(tier: str | None) -> None:
    if normalize_tier(tier) != TIER_ADMIN:
        raise AuthorizationViolation("only administrators may change published books")


async def _load_book(documents: DocumentStore, book_id: str) -> Book | None:
    payload = await documents.get(BOOKS_COLLECTION, book_id)
    return Book.from_payload(book_id, payload) if payload else None


async def delete_book(documents: DocumentStore, book_id: str, *, tier: str | None) -> int:
    """Delete a book with its chapters and metadata; returns the number of chapters removed."""
    require_admin(tier)
    book = await _load_book(documents, book_id)
    collection = chapters_collection(book_id)
    chapters = await documents.query(collection)
    for snapshot in chapters:
        await documents.delete(collection, snapshot.id)
    await documents.delete(metadata_collection(book_id), "info")
    await documents.delete(BOOKS_COLLECTION, book_id)
    if book is not None and book.storage_target == CLOUD and book.cover_size:
        await adjust_storage_usage(documents, -book.cover_size)
    logger.info("Deleted %s (%d chapter(s))", book_id, len(chapters))
    return len(chapters)


async def update_cover(
    documents: DocumentStore,
    blobs: BlobStore,
    book_id: str,
    data: bytes,
    filename: str = "cover",
    content_type: str | None = None,
    *,
    tier: str | None,
    clock: Callable[[], float] = time.time,
) -> Book:
    require_admin(tier)
    book = await _load_book(documents, book_id)
    if book is None:
        raise BookWriteError(book_id, "book does not exist")
    cover = normalize_cover(data, filename, content_type)
    if cover is None:
        raise AssetNormalizationError(f"{filename} is not a usable cover image")
    path = f"bookCovers/{book_id}/{int(clock() * 1000)}_{cover.filename}"
    cover_ref = await blobs.upload(path, cover.data, cover.content_type)
    previous_size = book.cover_size
    book.cover_ref = cover_ref
    book.cover_size = cover.size
    update = {"cover_ref": cover_ref, "cover_size": cover.size, "last_updated": SERVER_TIMESTAMP}
    await documents.set(BOOKS_COLLECTION, book_id, update, merge=True)
    if book.storage_target == CLOUD:
        await documents.set(metadata_collection(book_id), "info", update, merge=True)
        await adjust_storage_usage(documents, cover.size - previous_size)
    return book


async def update_metadata(
    documents: DocumentStore,
    book_id: str,
    *,
    tier: str | None,
    title: str | None = None,
    author: str | None = None,
    genres: Iterable[str] | None = None,
) -> Book:
    require_admin(tier)
    book = await _load_book(documents, book_id)
    if book is None:
        raise BookWriteError(book_id, "book does not exist")
    update: dict[str, object] = {"last_updated": SERVER_TIMESTAMP}
    info: dict[str, object] = {"last_updated": SERVER_TIMESTAMP}
    if title is not None and title.strip():
        book.title = title.strip()
        update.update(title=book.title, title_lower=book.title.lower())
        info.update(book_title=book.title, book_title_lower=book.title.lower())
    if author is not None and author.strip():
        book.author = author.strip()
        update.update(author=book.author, author_lower=book.author.lower())
        info.update(author=book.author, author_lower=book.author.lower())
    if genres is not None:
        book.genres = [genre.strip() for genre in genres if genre and genre.strip()]
        update["genres"] = list(book.genres)
        info["genres"] = list(book.genres)
    await documents.set(BOOKS_COLLECTION, book_id, update, merge=True)
    if book.storage_target == CLOUD:
        await documents.set(metadata_collection(book_id), "info", info, merge=True)
    return book


__all__ = [
    "BookListing",
    "SORT_MODES",
    "delete_book",
    "list_books",
    "require_admin",
    "sort_listings",
    "update_cover",
    "update_metadata",
]
