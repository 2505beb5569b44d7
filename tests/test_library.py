from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import png_bytes
from lounge.errors import AuthorizationViolation
from lounge.library import delete_book, list_books, update_cover, update_metadata
from lounge.stores import MemoryBlobStore, MemoryDocumentStore


def _seed_books(store: MemoryDocumentStore) -> None:
    books = [
        ("b1", "Zeta", "Alice", 5, datetime(2024, 1, 3, tzinfo=timezone.utc), ["fantasy"]),
        ("b2", "Alpha", "Bob", 50, datetime(2024, 1, 1, tzinfo=timezone.utc), ["romance"]),
        ("b3", "Beta", "alice", 5, datetime(2024, 1, 5, tzinfo=timezone.utc), ["fantasy"]),
    ]

    async def scenario():
        for book_id, title, author, views, updated, genres in books:
            await store.set(
                "books",
                book_id,
                {
                    "title": title,
                    "author": author,
                    "author_lower": author.lower(),
                    "views": views,
                    "last_updated": updated,
                    "genres": genres,
                    "storage_target": "cloud",
                },
            )

    asyncio.run(scenario())


def test_books_sort_by_author_then_title() -> None:
    store = MemoryDocumentStore()
    _seed_books(store)

    listings = asyncio.run(list_books(store, "author"))

    assert [listing.id for listing in listings] == ["b3", "b1", "b2"]


def test_books_sort_by_recent_and_popular() -> None:
    store = MemoryDocumentStore()
    _seed_books(store)

    recent = asyncio.run(list_books(store, "recent"))
    popular = asyncio.run(list_books(store, "popular"))

    assert [listing.id for listing in recent] == ["b3", "b1", "b2"]
    assert [listing.id for listing in popular] == ["b2", "b3", "b1"]


def test_unknown_sort_mode_falls_back_to_author() -> None:
    store = MemoryDocumentStore()
    _seed_books(store)

    assert [listing.id for listing in asyncio.run(list_books(store, "shuffle"))] == ["b3", "b1", "b2"]


def test_books_filter_by_genre_and_author() -> None:
    store = MemoryDocumentStore()
    _seed_books(store)

    fantasy = asyncio.run(list_books(store, genre="fantasy"))
    alice = asyncio.run(list_books(store, author="ALICE"))

    assert sorted(listing.id for listing in fantasy) == ["b1", "b3"]
    assert sorted(listing.id for listing in alice) == ["b1", "b3"]


def _seed_published(store: MemoryDocumentStore) -> None:
    async def scenario():
        await store.set(
            "books",
            "b1",
            {"title": "Saga", "author": "A", "storage_target": "cloud", "cover_size": 300},
        )
        await store.set("books/b1/metadata", "info", {"book_title": "Saga"})
        for number in (1, 2):
            await store.set("books/b1/chapters", str(number), {"chapter_number": number})
        await store.set("stats", "storageUsage", {"storage_bytes_used": 1000})

    asyncio.run(scenario())


def test_delete_book_requires_admin() -> None:
    store = MemoryDocumentStore()
    _seed_published(store)

    with pytest.raises(AuthorizationViolation):
        asyncio.run(delete_book(store, "b1", tier="approved-contributor"))

    assert asyncio.run(store.get("books", "b1")) is not None


def test_delete_book_removes_everything_and_releases_storage() -> None:
    store = MemoryDocumentStore()
    _seed_published(store)

    removed = asyncio.run(delete_book(store, "b1", tier="admin"))

    assert removed == 2
    assert asyncio.run(store.get("books", "b1")) is None
    assert asyncio.run(store.get("books/b1/metadata", "info")) is None
    assert asyncio.run(store.query("books/b1/chapters")) == []
    assert asyncio.run(store.get("stats", "storageUsage"))["storage_bytes_used"] == 700


def test_update_cover_adjusts_storage_by_size_difference() -> None:
    store = MemoryDocumentStore()
    blobs = MemoryBlobStore()
    _seed_published(store)

    book = asyncio.run(
        update_cover(
            store, blobs, "b1", png_bytes(900, 300), "new.png", "image/png",
            tier="admin", clock=lambda: 5.0,
        )
    )

    assert book.cover_ref == "memory://bookCovers/b1/5000_new.jpg"
    usage = asyncio.run(store.get("stats", "storageUsage"))["storage_bytes_used"]
    assert usage == 1000 - 300 + book.cover_size
    info = asyncio.run(store.get("books/b1/metadata", "info"))
    assert info["cover_ref"] == book.cover_ref


def test_update_metadata_keeps_lowercase_fields_in_sync() -> None:
    store = MemoryDocumentStore()
    _seed_published(store)

    asyncio.run(
        update_metadata(store, "b1", tier="admin", title="New Saga", author="B. Writer", genres=["sci-fi"])
    )

    stored = asyncio.run(store.get("books", "b1"))
    assert stored["title_lower"] == "new saga"
    assert stored["author_lower"] == "b. writer"
    assert stored["genres"] == ["sci-fi"]
    info = asyncio.run(store.get("books/b1/metadata", "info"))
    assert info["book_title"] == "New Saga"
